"""Transaction payload schemas.

Shape validation for supported tx types, invoked by tx_admission when
CARBON_ENFORCE_TX_SCHEMA is on (the default).

These are early shape checks only (types / required keys / unknown keys).
Range rules such as 0 < units < 10000 belong to the apply layer: a caller
without a profile must see profile_not_found before any range complaint, and
that ordering is only decidable against ledger state.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, StrictInt, ValidationError

from carbonledger.ledger.constants import TX_EMISSION_LOG, TX_PROFILE_CREATE

Json = Dict[str, Any]


class _StrictModel(BaseModel):
    """Strict model: reject unknown keys."""

    model_config = ConfigDict(extra="forbid")


class ProfileCreatePayload(_StrictModel):
    pass


class EmissionLogPayload(_StrictModel):
    units: StrictInt
    category: StrictInt


Schema = Type[BaseModel]

_SCHEMA_BY_TX_TYPE: Dict[str, Schema] = {
    TX_PROFILE_CREATE: ProfileCreatePayload,
    TX_EMISSION_LOG: EmissionLogPayload,
}


def _schema_for(tx_type: str) -> Optional[Schema]:
    return _SCHEMA_BY_TX_TYPE.get(str(tx_type or "").strip().upper())


def validate_payload(tx_type: str, payload: Any) -> Tuple[bool, Optional[Json]]:
    """Validate payload against the tx type's schema.

    Returns: (ok, error_details)
    """
    sch = _schema_for(tx_type)
    if sch is None:
        return False, {"tx_type": tx_type, "error": "no_schema"}

    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return False, {"tx_type": tx_type, "error": "payload_must_be_object"}

    try:
        sch.model_validate(payload)
    except ValidationError as ve:
        return False, {"tx_type": tx_type, "errors": ve.errors(include_url=False, include_context=False)}
    return True, None
