from __future__ import annotations

from fastapi import APIRouter

from carbonledger.api.routes_public_parts.blocks import router as blocks_router
from carbonledger.api.routes_public_parts.emissions import router as emissions_router
from carbonledger.api.routes_public_parts.health import router as health_router
from carbonledger.api.routes_public_parts.metrics import router as metrics_router
from carbonledger.api.routes_public_parts.status import router as status_router
from carbonledger.api.routes_public_parts.tx import router as tx_router

public_router = APIRouter()

public_router.include_router(health_router, prefix="/v1", tags=["health"])
public_router.include_router(status_router, prefix="/v1", tags=["status"])
public_router.include_router(tx_router, prefix="/v1", tags=["tx"])
public_router.include_router(emissions_router, prefix="/v1", tags=["emissions"])
public_router.include_router(blocks_router, prefix="/v1", tags=["blocks"])

# Ops
public_router.include_router(metrics_router, prefix="/v1", tags=["metrics"])
