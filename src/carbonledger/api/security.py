from __future__ import annotations

import os
from typing import Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def _limit_from_env() -> int:
    raw = (os.environ.get("CARBON_MAX_REQUEST_BYTES") or "").strip()
    try:
        return int(raw) if raw else 64 * 1024
    except ValueError:
        return 64 * 1024


def _disabled_by_env() -> bool:
    return (os.environ.get("CARBON_SIZE_LIMIT_DISABLE") or "").strip().lower() in {"1", "true", "yes", "y", "on"}


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject oversized request bodies with 413 before they reach a route.

    A declared Content-Length over the limit is refused without reading the
    body; bodies of mutating requests are also measured after buffering, which
    catches chunked uploads that declare nothing.

    Env: CARBON_MAX_REQUEST_BYTES (default 64 KiB), CARBON_SIZE_LIMIT_DISABLE=1
    when an edge proxy already enforces a limit.
    """

    def __init__(
        self,
        app,
        *,
        max_bytes: Optional[int] = None,
        exempt_prefixes: Tuple[str, ...] = ("/docs", "/openapi.json", "/v1/health"),
    ):
        super().__init__(app)
        self._active = not _disabled_by_env()
        self._limit = int(max_bytes) if max_bytes is not None else _limit_from_env()
        self._exempt = exempt_prefixes

    def _reject(self) -> JSONResponse:
        body = {"ok": False, "error": {"code": "tx_too_large", "message": "Request body too large", "details": {}}}
        return JSONResponse(status_code=413, content=body)

    def _declared_too_large(self, request: Request) -> bool:
        declared = (request.headers.get("content-length") or "").strip()
        # A malformed header is left to the buffered check below.
        return declared.isdigit() and int(declared) > self._limit

    async def dispatch(self, request: Request, call_next):
        if not self._active or (request.url.path or "").startswith(self._exempt):
            return await call_next(request)

        if self._declared_too_large(request):
            return self._reject()

        if (request.method or "").upper() in _BODY_METHODS and len(await request.body()) > self._limit:
            return self._reject()

        return await call_next(request)
