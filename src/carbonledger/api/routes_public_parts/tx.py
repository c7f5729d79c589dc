from __future__ import annotations

import json
from typing import Any, Dict

from fastapi import APIRouter, Request
from pydantic import ValidationError

from carbonledger.api.errors import ApiError
from carbonledger.api.routes_public_parts.common import _executor, _mempool
from carbonledger.api.schemas import TxSubmitOut, TxSubmitRequest
from carbonledger.runtime.mempool import compute_tx_id

router = APIRouter()

Json = Dict[str, Any]

# Admission / mempool error code -> HTTP status. Anything else is a 400.
_SUBMIT_STATUS = {
    "bad_sig": 403,
    "tx_id_conflict": 409,
    "mempool_full": 429,
    "mempool_signer_quota": 429,
}


@router.post("/tx/submit", response_model=TxSubmitOut)
async def tx_submit(request: Request) -> Json:
    """Submit a signed tx envelope to the mempool.

    Submission is idempotent: re-sending an identical envelope returns the same
    tx_id with status "already_known". Ledger rules (profile existence, emission
    ranges, one emission per tick) are only decided at block time; poll
    GET /v1/tx/{tx_id} for the receipt.
    """
    ex = _executor(request)
    mp = _mempool(request)

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ApiError.bad_request("bad_request", "Body must be JSON", {})
    if not isinstance(body, dict):
        raise ApiError.bad_request("bad_request", "Body must be a tx envelope object", {})

    try:
        TxSubmitRequest.model_validate(body)
    except ValidationError as e:
        raise ApiError.bad_request(
            "invalid_envelope",
            "tx envelope failed validation",
            {"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        )

    tx_id = compute_tx_id(body)
    already = bool(mp.contains(tx_id))

    meta = ex.submit_tx(body)
    if not meta.get("ok"):
        code = str(meta.get("error") or "submit_failed")
        raise ApiError(
            _SUBMIT_STATUS.get(code, 400),
            code,
            str(meta.get("reason") or "tx rejected"),
            {"details": meta.get("details")},
        )

    return {
        "ok": True,
        "tx_id": str(meta.get("tx_id") or tx_id),
        "status": "already_known" if (already or meta.get("duplicate")) else "accepted",
        "mempool_size": int(mp.size()),
    }


@router.get("/tx/{tx_id}")
def tx_status(request: Request, tx_id: str) -> Json:
    """Tx status and, once included, its receipt.

    Status values:
      - included: tx is in a persisted block; `receipt` carries ok/code/err
      - pending: tx is waiting in the mempool
    """
    t = str(tx_id or "").strip()
    if not t:
        raise ApiError.bad_request("bad_request", "missing tx_id", {})

    rec = _executor(request).get_tx_receipt(t)
    if rec is None:
        raise ApiError.not_found("tx_not_found", "unknown tx_id", {"tx_id": t})

    if rec.get("status") == "pending":
        return {"ok": True, "tx_id": t, "status": "pending"}

    return {
        "ok": True,
        "tx_id": t,
        "status": "included",
        "height": int(rec.get("height") or 0),
        "block_id": str(rec.get("block_id") or ""),
        "receipt": {k: v for k, v in rec.items() if k not in {"status", "height", "block_id"}},
    }
