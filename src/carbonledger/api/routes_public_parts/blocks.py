from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from carbonledger.api.errors import ApiError
from carbonledger.api.routes_public_parts.common import _executor

router = APIRouter()

Json = Dict[str, Any]


@router.get("/blocks/{height}")
def block_by_height(request: Request, height: int) -> Json:
    if int(height) <= 0:
        raise ApiError.bad_request("bad_request", "height must be >= 1", {"height": int(height)})
    blk = _executor(request).get_block_by_height(int(height))
    if blk is None:
        raise ApiError.not_found("block_not_found", "no block at height", {"height": int(height)})
    return {"ok": True, "block": blk}
