from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from carbonledger.api.errors import ApiError
from carbonledger.api.routes_public import public_router
from carbonledger.api.security import RequestSizeLimitMiddleware
from carbonledger.api.structured_logging import RequestLogMiddleware, configure_structured_logging
from carbonledger.runtime.block_loop import BlockProducerLoop
from carbonledger.runtime.chain_config import apply_chain_config_to_env, load_chain_config
from carbonledger.runtime.errors import ApplyError
from carbonledger.runtime.executor_boot import build_executor as _build_executor
from carbonledger.runtime.runtime_logging import log_event

log = logging.getLogger("carbonledger.http")


def build_executor():
    """Indirection point so tests can attach a stub executor."""
    return _build_executor()


def _parse_cors_origins() -> List[str]:
    """Comma-separated CARBON_CORS_ORIGINS; empty means no CORS middleware.

    A wildcard is accepted outside prod only.
    """
    origins = [o.strip() for o in (os.environ.get("CARBON_CORS_ORIGINS") or "").split(",") if o.strip()]
    if "*" not in origins:
        return origins
    if (os.environ.get("CARBON_MODE") or "prod").strip().lower() == "prod":
        raise RuntimeError("wildcard CARBON_CORS_ORIGINS is refused in prod; list the allowed origins explicitly.")
    return ["*"]


def _autostart_enabled() -> bool:
    return (os.environ.get("CARBON_BLOCK_LOOP_AUTOSTART") or "").strip().lower() in {"1", "true", "yes", "y", "on"}


async def _api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_json())


async def _apply_error_handler(request: Request, exc: ApplyError) -> JSONResponse:
    return await _api_error_handler(request, ApiError.from_apply_error(exc))


def create_app(*, boot_runtime: bool = True) -> FastAPI:
    """Create the FastAPI application.

    boot_runtime:
      - True (default): load chain config, attach executor
      - False: no executor; for unit tests and import-time checks
    """
    configure_structured_logging()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        loop = None
        ex = getattr(app.state, "executor", None)
        if _autostart_enabled() and ex is not None and getattr(ex, "mempool", None) is not None:
            loop = BlockProducerLoop(executor=ex)
            if not loop.start():
                log_event(log, "block_loop_not_started")
                loop = None

        app.state.block_loop = loop
        yield
        if loop is not None:
            loop.stop()

    if boot_runtime:
        apply_chain_config_to_env(load_chain_config())

    mode = os.environ.get("CARBON_MODE", "prod").strip().lower()

    if mode == "prod":
        app = FastAPI(
            title="Carbon Ledger Node API",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            lifespan=_lifespan,
        )
    else:
        app = FastAPI(title="Carbon Ledger Node API", lifespan=_lifespan)

    app.state.executor = build_executor() if boot_runtime else None
    app.state.block_loop = None

    app.add_exception_handler(ApiError, _api_error_handler)
    app.add_exception_handler(ApplyError, _apply_error_handler)

    # --- Middleware (last added runs first) ---
    app.add_middleware(RequestSizeLimitMiddleware)

    cors_origins = _parse_cors_origins()
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials="*" not in cors_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type"],
        )

    app.add_middleware(RequestLogMiddleware)

    app.include_router(public_router)

    return app
