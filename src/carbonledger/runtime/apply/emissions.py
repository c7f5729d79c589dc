# src/carbonledger/runtime/apply/emissions.py
"""
Emissions domain apply semantics.

Txs:
- PROFILE_CREATE (USER, mempool) payload: {}
- EMISSION_LOG   (USER, mempool) payload: {"units": int, "category": int}

State shape:
state["profiles"]      = { "<actor>": {"total_emissions": int, "emission_count": int} }
state["emissions"]     = { "<actor>": { "<logical_time>": {"category": int, "units": int} } }
state["last_emission"] = { "<actor>": int }

Rules:
- A profile is inserted only if absent; it is never overwritten or deleted.
- EMISSION_LOG checks run in a fixed order and stop at the first failure:
    profile exists -> units/category valid -> not a second emission this tick.
  A caller without a profile therefore sees profile_not_found even when the
  payload is also invalid.
- Nothing is written until every check has passed. The three writes (record,
  marker, profile totals) are then applied together; apply_tx_atomic discards
  all of them if the final profile update fails.
- The marker only remembers the latest accepted tick. An actor that never
  logged has an implicit marker of 0, which collides with the genesis tick.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from carbonledger.ledger.constants import (
    GENESIS_TICK,
    MAX_EMISSION_UNITS,
    MIN_EMISSION_UNITS_EXCLUSIVE,
    TX_EMISSION_LOG,
    TX_PROFILE_CREATE,
    VALID_CATEGORIES,
)
from carbonledger.ledger.types import EmissionRecord, Profile
from carbonledger.runtime.tx_admission_types import TxEnvelope

Json = Dict[str, Any]


@dataclass
class EmissionsApplyError(RuntimeError):
    code: str
    reason: str
    details: Json

    def __str__(self) -> str:
        return f"{self.code}:{self.reason}:{self.details}"


def _as_dict(x: Any) -> Json:
    return x if isinstance(x, dict) else {}


def _as_uint(x: Any) -> Optional[int]:
    """Strict unsigned int: no bools, no floats, no numeric strings."""
    if isinstance(x, bool) or not isinstance(x, int):
        return None
    return x if x >= 0 else None


def _ensure_root_dict(state: Json, key: str) -> Json:
    cur = state.get(key)
    if not isinstance(cur, dict):
        cur = {}
        state[key] = cur
    return cur


def _require_signer(env: TxEnvelope) -> str:
    signer = str(env.signer or "").strip()
    if not signer:
        raise EmissionsApplyError("invalid_tx", "missing_signer", {"tx_type": env.tx_type})
    return signer


def is_valid_emission(units: Any, category: Any) -> bool:
    u = _as_uint(units)
    c = _as_uint(category)
    if u is None or c is None:
        return False
    return MIN_EMISSION_UNITS_EXCLUSIVE < u < MAX_EMISSION_UNITS and c in VALID_CATEGORIES


def _apply_profile_create(state: Json, env: TxEnvelope) -> Json:
    actor = _require_signer(env)
    profiles = _ensure_root_dict(state, "profiles")

    if actor in profiles:
        raise EmissionsApplyError("duplicate_profile", "profile_exists", {"actor": actor})

    profiles[actor] = Profile().to_json()
    return {"applied": TX_PROFILE_CREATE, "actor": actor, "result": True}


def _apply_emission_log(state: Json, env: TxEnvelope, *, logical_time: int) -> Json:
    actor = _require_signer(env)
    payload = _as_dict(env.payload)
    units = payload.get("units")
    category = payload.get("category")

    profiles = _ensure_root_dict(state, "profiles")
    if not isinstance(profiles.get(actor), dict):
        raise EmissionsApplyError("profile_not_found", "profile_missing", {"actor": actor})

    if not is_valid_emission(units, category):
        raise EmissionsApplyError(
            "invalid_emission",
            "units_or_category_out_of_range",
            {"actor": actor, "units": units, "category": category},
        )

    markers = _ensure_root_dict(state, "last_emission")
    last = int(markers.get(actor, GENESIS_TICK))
    if last == int(logical_time):
        raise EmissionsApplyError(
            "duplicate_entry",
            "emission_already_logged_this_tick",
            {"actor": actor, "logical_time": int(logical_time)},
        )

    log = _ensure_root_dict(state, "emissions")
    per_actor = log.get(actor)
    if not isinstance(per_actor, dict):
        per_actor = {}
        log[actor] = per_actor
    record = EmissionRecord(actor=actor, logical_time=int(logical_time), category=int(category), units=int(units))
    per_actor[str(record.logical_time)] = record.to_json()

    markers[actor] = int(logical_time)

    prof = profiles.get(actor)
    if not isinstance(prof, dict):
        raise EmissionsApplyError("profile_not_found", "profile_vanished_before_update", {"actor": actor})
    before = Profile.from_json(prof)
    profiles[actor] = Profile(
        total_emissions=before.total_emissions + record.units,
        emission_count=before.emission_count + 1,
    ).to_json()

    return {
        "applied": TX_EMISSION_LOG,
        "actor": actor,
        "logical_time": int(logical_time),
        "units": int(units),
        "category": int(category),
        "result": True,
    }


EMISSIONS_TX_TYPES: Set[str] = {
    TX_PROFILE_CREATE,
    TX_EMISSION_LOG,
}


def apply_emissions(state: Json, env: TxEnvelope, *, logical_time: int) -> Optional[Json]:
    t = str(env.tx_type or "").strip().upper()
    if t not in EMISSIONS_TX_TYPES:
        return None

    if t == TX_PROFILE_CREATE:
        return _apply_profile_create(state, env)
    if t == TX_EMISSION_LOG:
        return _apply_emission_log(state, env, logical_time=logical_time)

    return None
