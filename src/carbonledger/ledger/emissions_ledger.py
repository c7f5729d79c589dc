# src/carbonledger/ledger/emissions_ledger.py
"""In-process emissions ledger.

EmissionsLedger owns the three stores (profiles, emission log, last-emission
markers) and is the only thing allowed to mutate them. Each public mutator is
one atomic transition routed through apply_tx_atomic, so a rejected call
leaves the state exactly as it was.

The caller identity and logical clock are explicit arguments: the embedding
host decides who is calling and which tick the call belongs to. A lock
serializes mutators for hosts that do not already guarantee one-at-a-time
execution.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Dict, Optional

from carbonledger.ledger.constants import TX_EMISSION_LOG, TX_PROFILE_CREATE
from carbonledger.ledger.state import LedgerView
from carbonledger.ledger.types import Profile
from carbonledger.runtime.domain_apply import apply_tx_atomic
from carbonledger.runtime.state_invariants import ensure_state
from carbonledger.runtime.tx_admission_types import TxEnvelope

Json = Dict[str, Any]


class EmissionsLedger:
    def __init__(self, state: Optional[Json] = None) -> None:
        self._state: Json = ensure_state(state if state is not None else {})
        self._lock = threading.Lock()

    # ----------------------------
    # Mutators
    # ----------------------------

    def create_profile(self, caller: str) -> bool:
        """Insert an empty profile for `caller`.

        Raises ApplyError("duplicate_profile") if one already exists.
        """
        env = TxEnvelope(tx_type=TX_PROFILE_CREATE, signer=str(caller), nonce=0, payload={})
        with self._lock:
            apply_tx_atomic(self._state, env, logical_time=0, consume_nonce_on_fail=False)
        return True

    def log_emission(self, caller: str, units: int, category: int, logical_time: int) -> bool:
        """Record one emission for `caller` at `logical_time`.

        Raises ApplyError with code profile_not_found, invalid_emission or
        duplicate_entry (checked in that order).
        """
        env = TxEnvelope(
            tx_type=TX_EMISSION_LOG,
            signer=str(caller),
            nonce=0,
            payload={"units": units, "category": category},
        )
        with self._lock:
            apply_tx_atomic(self._state, env, logical_time=logical_time, consume_nonce_on_fail=False)
        return True

    # ----------------------------
    # Queries
    # ----------------------------

    def view(self) -> LedgerView:
        with self._lock:
            return LedgerView.from_ledger(self._state)

    def total_emissions(self, actor: str) -> int:
        return self.view().total_emissions(actor)

    def emission_history(self, actor: str) -> Json:
        return self.view().emission_history(actor)

    def emissions_by_category(self, actor: str, category: int) -> int:
        return self.view().emissions_by_category(actor, category)

    def get_profile(self, actor: str) -> Optional[Profile]:
        return self.view().get_profile(actor)

    def snapshot(self) -> Json:
        with self._lock:
            return copy.deepcopy(self._state)
