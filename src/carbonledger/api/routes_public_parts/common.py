from __future__ import annotations

from typing import Any, Dict

from fastapi import Request

from carbonledger.api.errors import ApiError

Json = Dict[str, Any]


def _executor(request: Request):
    ex = getattr(request.app.state, "executor", None)
    if ex is None:
        raise ApiError.internal("not_ready", "executor not attached to app.state", {})
    return ex


def _snapshot(request: Request) -> Json:
    """Current ledger state dict from the attached executor."""
    st = _executor(request).read_state()
    if not isinstance(st, dict):
        raise ApiError.internal("bad_state", "executor state is not a dict", {})
    return st


def _mempool(request: Request):
    mp = getattr(_executor(request), "mempool", None)
    if mp is None:
        raise ApiError.internal("not_ready", "mempool not available", {})
    return mp


def _require_actor(actor: str) -> str:
    a = str(actor or "").strip()
    if not a:
        raise ApiError.bad_request("bad_request", "missing actor", {})
    return a
