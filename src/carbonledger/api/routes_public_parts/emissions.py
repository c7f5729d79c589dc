from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from carbonledger.api.errors import ApiError
from carbonledger.api.routes_public_parts.common import _executor, _require_actor
from carbonledger.api.schemas import CategoryOut, ProfileOut, TotalOut

router = APIRouter()

Json = Dict[str, Any]


@router.get("/actors/{actor}/profile", response_model=ProfileOut)
def actor_profile(request: Request, actor: str) -> Json:
    a = _require_actor(actor)
    view = _executor(request).ledger_view()
    prof = view.get_profile(a)
    if prof is None:
        raise ApiError.not_found("profile_not_found", "no profile for actor", {"actor": a})
    return {"actor": a, **prof.to_json(), "last_emission": view.last_emission_tick(a)}


@router.get("/actors/{actor}/total", response_model=TotalOut)
def actor_total(request: Request, actor: str) -> Json:
    a = _require_actor(actor)
    return {"ok": True, "actor": a, "total_emissions": _executor(request).total_emissions(a)}


@router.get("/actors/{actor}/history")
def actor_history(request: Request, actor: str) -> Json:
    """Emission history. Returns the running total only, not itemized records."""
    a = _require_actor(actor)
    res = _executor(request).emission_history(a)
    return {"ok": bool(res.get("ok")), "actor": a, "value": int(res.get("value") or 0)}


@router.get("/actors/{actor}/categories/{category}", response_model=CategoryOut)
def actor_category(request: Request, actor: str, category: int) -> Json:
    a = _require_actor(actor)
    return {
        "ok": True,
        "actor": a,
        "category": int(category),
        "units": _executor(request).emissions_by_category(a, int(category)),
        "note": "per-category breakdown not tracked",
    }
