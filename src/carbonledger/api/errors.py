from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from carbonledger.runtime.errors import ApplyError


@dataclass(eq=False, slots=True)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    def to_json(self) -> Dict[str, Any]:
        return {"ok": False, "error": {"code": self.code, "message": self.message, "details": self.details}}

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    @staticmethod
    def from_apply_error(e: ApplyError) -> "ApiError":
        """Map a ledger rejection to its numeric status (400/403/404/409)."""
        details = e.details if isinstance(e.details, dict) else {"details": e.details}
        return ApiError(e.status, e.code, e.reason, details)
