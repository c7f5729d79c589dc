from __future__ import annotations

import os
from typing import Any, Dict

from fastapi import APIRouter, Request

from carbonledger.api.routes_public_parts.common import _executor, _mempool, _snapshot

router = APIRouter()

Json = Dict[str, Any]


@router.get("/status")
def status(request: Request) -> Json:
    """Public node status summary (GET /v1/status)."""
    ex = _executor(request)
    st = _snapshot(request)

    profiles = st.get("profiles") if isinstance(st.get("profiles"), dict) else {}

    return {
        "ok": True,
        "chain_id": str(st.get("chain_id") or ""),
        "node_id": str(getattr(ex, "node_id", "") or ""),
        "height": int(st.get("height") or 0),
        "tip": str(st.get("tip") or ""),
        "tip_hash": str(st.get("tip_hash") or ""),
        "mempool_size": int(_mempool(request).size()),
        "profile_count": len(profiles),
        "mode": (os.environ.get("CARBON_MODE") or "prod").strip().lower(),
    }
