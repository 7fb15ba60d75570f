"""
Route aggregator — mounts all routers under /api/v1 prefix.

Health is exported separately for main.py to mount at root.
Version: 1.0.0
"""
from fastapi import APIRouter

from migration_hub.routes.health import router as health_router
from migration_hub.routes.migration import router as migration_router

v1_router = APIRouter(prefix="/api/v1")

v1_router.include_router(migration_router)

__all__ = ["v1_router", "health_router"]
