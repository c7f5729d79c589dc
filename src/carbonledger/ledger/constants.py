# src/carbonledger/ledger/constants.py
"""Emission ledger constants.

Numeric error codes are part of the external contract: existing callers match
on these exact values, so they are never renumbered.
"""

from __future__ import annotations

from enum import IntEnum


class EmissionCategory(IntEnum):
    TRANSPORTATION = 1
    ENERGY = 2
    DIET = 3


VALID_CATEGORIES = frozenset(int(c) for c in EmissionCategory)

# Accepted units are strictly between these bounds: 0 < units < MAX_EMISSION_UNITS
MIN_EMISSION_UNITS_EXCLUSIVE: int = 0
MAX_EMISSION_UNITS: int = 10_000

# The implicit last-emission marker of an actor that never logged anything.
GENESIS_TICK: int = 0

# Numeric error codes
ERR_UNAUTHORIZED: int = 403  # reserved for a future access-control layer
ERR_INVALID_EMISSION: int = 400
ERR_PROFILE_NOT_FOUND: int = 404
ERR_DUPLICATE_ENTRY: int = 409
ERR_DUPLICATE_PROFILE: int = 409

# ApplyError.code -> numeric code
ERROR_STATUS = {
    "unauthorized": ERR_UNAUTHORIZED,
    "invalid_emission": ERR_INVALID_EMISSION,
    "profile_not_found": ERR_PROFILE_NOT_FOUND,
    "duplicate_entry": ERR_DUPLICATE_ENTRY,
    "duplicate_profile": ERR_DUPLICATE_PROFILE,
}

# Tx types
TX_PROFILE_CREATE: str = "PROFILE_CREATE"
TX_EMISSION_LOG: str = "EMISSION_LOG"
