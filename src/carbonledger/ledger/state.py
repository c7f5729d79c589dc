from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from carbonledger.ledger.constants import GENESIS_TICK
from carbonledger.ledger.types import EmissionRecord, Profile

Json = Dict[str, Any]


@dataclass(frozen=True, slots=True)
class LedgerView:
    """
    Immutable read-only ledger view used by queries, admission and the API.

    All query methods are pure and never raise for unknown actors.
    """

    profiles: Dict[str, Any] = field(default_factory=dict)
    emissions: Dict[str, Any] = field(default_factory=dict)
    last_emission: Dict[str, Any] = field(default_factory=dict)
    nonces: Dict[str, Any] = field(default_factory=dict)

    height: int = 0

    @classmethod
    def from_ledger(cls, state: Dict[str, Any]) -> "LedgerView":
        def _root(key: str) -> Dict[str, Any]:
            v = state.get(key)
            return copy.deepcopy(v) if isinstance(v, dict) else {}

        return cls(
            profiles=_root("profiles"),
            emissions=_root("emissions"),
            last_emission=_root("last_emission"),
            nonces=_root("nonces"),
            height=int(state.get("height", 0) or 0),
        )

    # ----------------------------
    # Profiles
    # ----------------------------

    def get_profile(self, actor: str) -> Optional[Profile]:
        rec = self.profiles.get(actor)
        if not isinstance(rec, dict):
            return None
        return Profile.from_json(rec)

    # ----------------------------
    # Queries
    # ----------------------------

    def total_emissions(self, actor: str) -> int:
        """Running total for `actor`, or 0 when no profile exists."""
        prof = self.get_profile(actor)
        return prof.total_emissions if prof is not None else 0

    def emission_history(self, actor: str) -> Json:
        """Successful result wrapping the running total.

        Known limitation: the itemized records are not returned here; use
        get_record() for a single (actor, tick) lookup.
        """
        return {"ok": True, "value": self.total_emissions(actor)}

    def emissions_by_category(self, actor: str, category: int) -> int:
        """Per-category breakdown is not implemented; always 0."""
        return 0

    # ----------------------------
    # Records / markers
    # ----------------------------

    def last_emission_tick(self, actor: str) -> int:
        try:
            return int(self.last_emission.get(actor, GENESIS_TICK))
        except (TypeError, ValueError):
            return GENESIS_TICK

    def get_record(self, actor: str, logical_time: int) -> Optional[EmissionRecord]:
        per_actor = self.emissions.get(actor)
        if not isinstance(per_actor, dict):
            return None
        rec = per_actor.get(str(int(logical_time)))
        if not isinstance(rec, dict):
            return None
        return EmissionRecord.from_json(actor, logical_time, rec)

    def record_ticks(self, actor: str) -> List[int]:
        per_actor = self.emissions.get(actor)
        if not isinstance(per_actor, dict):
            return []
        return sorted(int(k) for k in per_actor.keys())

    # ----------------------------
    # Host bookkeeping
    # ----------------------------

    def get_nonce(self, actor: str) -> int:
        try:
            return int(self.nonces.get(actor, 0))
        except (TypeError, ValueError):
            return 0
