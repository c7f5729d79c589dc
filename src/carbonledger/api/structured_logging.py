# src/carbonledger/api/structured_logging.py
from __future__ import annotations

import logging
import os
import sys
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from carbonledger.runtime.runtime_logging import log_event

Json = Dict[str, Any]

_LOGGED_HEADERS = ("user-agent", "content-type", "content-length", "x-forwarded-for")
_CONFIGURED_ATTR = "_carbon_jsonl_handler"


def _flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"", "0", "false", "no", "n", "off"}


def configure_structured_logging() -> None:
    """Send all log records to stdout as bare messages (each one a JSON line).

    Level comes from CARBON_LOG_LEVEL (default INFO). Repeated calls only
    adjust the level; the handler is installed once.
    """
    level = getattr(logging, (os.environ.get("CARBON_LOG_LEVEL") or "INFO").strip().upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    handler = getattr(root, _CONFIGURED_ATTR, None)
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.handlers = [handler]
        setattr(root, _CONFIGURED_ATTR, handler)
    handler.setLevel(level)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One `http_request` event per request, on logger carbonledger.http.

    Every response carries an x-request-id header: the caller's own if it
    sent one, otherwise a fresh uuid.

    Env: CARBON_LOG_REQUESTS=0 turns the middleware off entirely;
    CARBON_LOG_REQUEST_HEADERS=1 adds a few request headers to the event.
    """

    def __init__(self, app) -> None:
        super().__init__(app)
        self._enabled = _flag("CARBON_LOG_REQUESTS", True)
        self._with_headers = _flag("CARBON_LOG_REQUEST_HEADERS", False)
        self._log = logging.getLogger("carbonledger.http")

    def _headers(self, request: Request) -> Json:
        if not self._with_headers:
            return {}
        return {k: request.headers[k] for k in _LOGGED_HEADERS if request.headers.get(k)}

    async def dispatch(self, request: Request, call_next):
        if not self._enabled:
            return await call_next(request)

        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        t0 = time.monotonic()
        status = 500
        error: Optional[str] = None

        try:
            response = await call_next(request)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            raise
        else:
            status = int(response.status_code)
            response.headers.setdefault("x-request-id", request_id)
            return response
        finally:
            log_event(
                self._log,
                "http_request",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status=status,
                duration_ms=int((time.monotonic() - t0) * 1000),
                client=request.client.host if request.client else "",
                headers=self._headers(request),
                error=error,
            )
