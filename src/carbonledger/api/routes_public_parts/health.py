from __future__ import annotations

import os
import time
from typing import Any

from fastapi import APIRouter, Request

router = APIRouter()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _block_loop_status(ex: Any) -> dict[str, object]:
    """Producer loop status as published by BlockProducerLoop on the executor."""
    if ex is None:
        return {"running": None, "unhealthy": None, "last_error": None, "consecutive_failures": None}
    return {
        "running": getattr(ex, "block_loop_running", None),
        "unhealthy": getattr(ex, "block_loop_unhealthy", None),
        "last_error": getattr(ex, "block_loop_last_error", None),
        "consecutive_failures": getattr(ex, "block_loop_consecutive_failures", None),
    }


@router.get("/health")
def health(request: Request) -> dict[str, object]:
    # Liveness only; must not fail when the executor is not attached.
    ex = getattr(request.app.state, "executor", None)
    st = ex.read_state() if ex is not None else None

    chain_id = os.environ.get("CARBON_CHAIN_ID") or None
    height = None
    if isinstance(st, dict):
        chain_id = str(st.get("chain_id") or "") or chain_id
        height = int(st.get("height") or 0)

    return {
        "ok": True,
        "service": "carbonledger-node",
        "version": "v1",
        "ts_ms": _now_ms(),
        "chain_id": chain_id,
        "height": height,
        "executor": {"attached": ex is not None, "block_loop": _block_loop_status(ex)},
    }
