from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from carbonledger.ledger.constants import ERROR_STATUS


@dataclass
class ApplyError(Exception):
    """Canonical error type for domain apply and dispatch failures."""

    code: str
    reason: str
    details: Any | None = None

    @property
    def status(self) -> int:
        """Numeric error code; anything outside the domain taxonomy maps to 400."""
        return int(ERROR_STATUS.get(self.code, 400))

    def __str__(self) -> str:
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"
