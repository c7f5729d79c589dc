from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

Json = Dict[str, Any]


@dataclass(frozen=True)
class TxVerdict:
    """Outcome of admission: `ok`, or a machine code plus reason and details."""

    ok: bool
    code: str
    reason: str
    details: Optional[Json] = None

    @classmethod
    def admit(cls) -> "TxVerdict":
        return cls(True, "ok", "admitted")

    @classmethod
    def reject(cls, code: str, reason: str, details: Optional[Json] = None) -> "TxVerdict":
        return cls(False, code, reason, details)


@dataclass(frozen=True)
class TxEnvelope:
    """A signed request to change ledger state on behalf of `signer`."""

    tx_type: str
    signer: str
    nonce: int
    payload: Json = field(default_factory=dict)
    sig: str = ""

    @classmethod
    def from_json(cls, j: Any) -> "TxEnvelope":
        """Normalize a dict (tx_type upper-cased, strings stripped).

        Raises TypeError / ValueError for shapes that cannot be read.
        """
        if isinstance(j, TxEnvelope):
            return j
        if not isinstance(j, Mapping):
            raise TypeError(f"tx envelope must be a mapping, got {type(j).__name__}")
        payload = j.get("payload") or {}
        if not isinstance(payload, Mapping):
            raise TypeError("payload must be an object")
        return cls(
            tx_type=str(j.get("tx_type") or "").strip().upper(),
            signer=str(j.get("signer") or "").strip(),
            nonce=int(j.get("nonce") or 0),
            payload=dict(payload),
            sig=str(j.get("sig") or ""),
        )

    def to_json(self) -> Json:
        return {
            "tx_type": self.tx_type,
            "signer": self.signer,
            "nonce": int(self.nonce),
            "payload": dict(self.payload),
            "sig": self.sig,
        }
