"""Pydantic request/response schemas for the public API.

These exist only for HTTP input validation and response shape stability.
Per-tx payload schemas live in carbonledger.runtime.tx_schema.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr


class TxSubmitRequest(BaseModel):
    tx_type: StrictStr = Field(..., description="PROFILE_CREATE | EMISSION_LOG")
    signer: StrictStr = Field(..., description="Actor id (hex Ed25519 public key)")
    nonce: StrictInt = Field(..., description="Per-signer sequence number, > 0")
    payload: Dict[str, Any] = Field(default_factory=dict)
    sig: StrictStr = Field(default="", description="Hex or base64 Ed25519 signature")

    model_config = ConfigDict(extra="forbid")


class ProfileOut(BaseModel):
    actor: str
    total_emissions: int
    emission_count: int
    last_emission: int


class TxSubmitOut(BaseModel):
    ok: bool = True
    tx_id: str
    status: str
    mempool_size: int


class TotalOut(BaseModel):
    ok: bool = True
    actor: str
    total_emissions: int


class CategoryOut(BaseModel):
    ok: bool = True
    actor: str
    category: int
    units: int
    note: Optional[str] = None
