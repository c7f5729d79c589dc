# src/carbonledger/runtime/state_invariants.py
"""State invariants / normalization helpers.

Ledger state is a nested JSON-like dict mutated deterministically by apply_*
modules. This module is the single place that:

  - validates the state is dict-like
  - ensures the core top-level containers exist (so apply modules can rely on them)
  - verifies the aggregate invariant: every profile's running total and count
    match the emission records logged for that actor
"""

from __future__ import annotations

from collections.abc import MutableMapping
from typing import Any, Dict, List

Json = Dict[str, Any]

CORE_ROOTS = ("profiles", "emissions", "last_emission", "nonces")


def ensure_state(st: Any) -> Json:
    """Ensure `st` is a dict and contains core keys.

    Returns the (possibly mutated) dict.

    Raises:
        TypeError: if st is not a MutableMapping, or a core root is not a dict
    """
    if not isinstance(st, MutableMapping):
        raise TypeError(f"state must be MutableMapping, got {type(st)}")

    for key in CORE_ROOTS:
        cur = st.get(key)
        if cur is None:
            st[key] = {}
        elif not isinstance(cur, dict):
            # Fail closed: do not attempt to coerce arbitrary types.
            raise TypeError(f"state[{key!r}] must be dict, got {type(cur)}")

    return st  # type: ignore[return-value]


def aggregate_violations(st: Json) -> List[Json]:
    """Return one entry per actor whose profile disagrees with its records.

    An emission log without a profile is also reported (profiles are never
    deleted, so records can only exist for actors that have one).
    """
    profiles = st.get("profiles") if isinstance(st.get("profiles"), dict) else {}
    emissions = st.get("emissions") if isinstance(st.get("emissions"), dict) else {}

    out: List[Json] = []
    for actor in sorted(set(profiles) | set(emissions)):
        prof = profiles.get(actor)
        recs = emissions.get(actor) if isinstance(emissions.get(actor), dict) else {}
        units = [int(r.get("units", 0)) for r in recs.values() if isinstance(r, dict)]

        if not isinstance(prof, dict):
            out.append({"actor": actor, "reason": "records_without_profile", "records": len(units)})
            continue

        total = int(prof.get("total_emissions", 0))
        count = int(prof.get("emission_count", 0))
        if total != sum(units) or count != len(units):
            out.append(
                {
                    "actor": actor,
                    "reason": "aggregate_mismatch",
                    "total_emissions": total,
                    "emission_count": count,
                    "expected_total": sum(units),
                    "expected_count": len(units),
                }
            )
    return out


__all__ = ["CORE_ROOTS", "aggregate_violations", "ensure_state"]
