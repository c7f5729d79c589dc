"""carbonledger.ledger.types

Typed views over the JSON records kept in ledger state.

State stays a plain JSON dict (it is persisted as one canonical snapshot); these
dataclasses are the decoded shape handed to readers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

Json = Dict[str, Any]


def _coerce_uint(v: Any, *, field: str) -> int:
    # bool is an int subclass; disallow it explicitly
    if isinstance(v, bool):
        raise ValueError(f"field '{field}' must be an unsigned int (got bool)")
    try:
        n = int(v)
    except (TypeError, ValueError) as e:
        raise ValueError(f"field '{field}' must be an unsigned int (got {type(v).__name__})") from e
    if n < 0:
        raise ValueError(f"field '{field}' must be an unsigned int (got {n})")
    return n


@dataclass(frozen=True, slots=True)
class Profile:
    total_emissions: int = 0
    emission_count: int = 0

    @classmethod
    def from_json(cls, j: Json) -> "Profile":
        return cls(
            total_emissions=_coerce_uint(j.get("total_emissions", 0), field="total_emissions"),
            emission_count=_coerce_uint(j.get("emission_count", 0), field="emission_count"),
        )

    def to_json(self) -> Json:
        return {"total_emissions": int(self.total_emissions), "emission_count": int(self.emission_count)}


@dataclass(frozen=True, slots=True)
class EmissionRecord:
    actor: str
    logical_time: int
    category: int
    units: int

    @classmethod
    def from_json(cls, actor: str, logical_time: Any, j: Json) -> "EmissionRecord":
        return cls(
            actor=str(actor),
            logical_time=_coerce_uint(logical_time, field="logical_time"),
            category=_coerce_uint(j.get("category"), field="category"),
            units=_coerce_uint(j.get("units"), field="units"),
        )

    def to_json(self) -> Json:
        return {"category": int(self.category), "units": int(self.units)}
