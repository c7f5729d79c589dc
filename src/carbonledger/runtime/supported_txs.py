# src/carbonledger/runtime/supported_txs.py
"""Build-time supported tx types.

Admission rejects anything outside this set; the apply router independently
fails closed with tx_unimplemented for types no applier claims.
"""

from __future__ import annotations

from typing import AbstractSet

from carbonledger.ledger.constants import TX_EMISSION_LOG, TX_PROFILE_CREATE

SUPPORTED_TX_TYPES: AbstractSet[str] = frozenset({TX_PROFILE_CREATE, TX_EMISSION_LOG})


def is_supported(tx_type: str) -> bool:
    return str(tx_type or "").strip().upper() in SUPPORTED_TX_TYPES
