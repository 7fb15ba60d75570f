"""
Health routes — liveness endpoint.

Version: 1.0.0
"""

from fastapi import APIRouter

from migration_hub.clients.platform_connector import registered_platforms

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "platforms": registered_platforms()}

