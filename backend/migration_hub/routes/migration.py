"""
Migration routes — connect a source platform, run and observe migrations.

Provides:
- GET  /migration/{platform}/auth      – start OAuth (redirect or JSON)
- GET  /migration/{platform}/callback  – OAuth callback, redirects to dashboard
- POST /migration/shopify/connect      – connect with a Shopify admin token
- POST /migration/start                – start or resume a migration
- GET  /migration/status               – progress for a migration or store
- POST /migration/cancel               – cancel a running/paused migration
- POST /migration/reset                – return a finished migration to connected
Version: 1.0.0
"""
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from migration_hub.container import (
    get_connection_service,
    get_merchant_store,
    get_migration_store,
    get_orchestrator,
)
from migration_hub.core.auth import get_current_user
from migration_hub.core.config import settings
from migration_hub.core.constants.migration import OAUTH_COOKIE_NAME, PLATFORMS, STATUS_RUNNING
from migration_hub.core.exceptions import (
    AuthenticationError,
    InvalidAuthState,
    InvalidTransitionError,
    MigrationAlreadyRunningError,
    MigrationHubException,
    MigrationNotFoundError,
    RetryableError,
    StoreNotFoundError,
    UnsupportedCapabilityError,
    UnsupportedPlatformError,
    ValidationError,
)
from migration_hub.core.middleware import rate_limit
from migration_hub.schemas.migration import (
    AuthUrlResponse,
    CancelMigrationRequest,
    ConnectionResponse,
    MigrationConfig,
    MigrationStateResponse,
    MigrationStatusResponse,
    ResetMigrationRequest,
    ShopifyConnectRequest,
    StartMigrationRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/migration", tags=["migration"])

COOKIE_PATH = "/api/v1/migration"


def _http_error(exc: MigrationHubException) -> HTTPException:
    """Translate a domain exception into an HTTP error with {code, message}."""
    if isinstance(exc, (MigrationNotFoundError, StoreNotFoundError)):
        return HTTPException(status.HTTP_404_NOT_FOUND, detail={"code": "NOT_FOUND", "message": str(exc)})
    if isinstance(exc, MigrationAlreadyRunningError):
        return HTTPException(status.HTTP_409_CONFLICT, detail={"code": "ALREADY_RUNNING", "message": str(exc)})
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status.HTTP_409_CONFLICT, detail={"code": "INVALID_TRANSITION", "message": str(exc)})
    if isinstance(exc, (UnsupportedPlatformError, UnsupportedCapabilityError, ValidationError, InvalidAuthState)):
        return HTTPException(status.HTTP_400_BAD_REQUEST, detail={"code": "BAD_REQUEST", "message": str(exc)})
    if isinstance(exc, AuthenticationError):
        return HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail={"code": "SOURCE_AUTH_FAILED", "message": "Source platform rejected the credentials"},
        )
    if isinstance(exc, RetryableError):
        return HTTPException(
            status.HTTP_502_BAD_GATEWAY,
            detail={"code": "UPSTREAM_ERROR", "message": "Source platform or database unavailable, try again"},
        )
    return HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail={"code": "INTERNAL", "message": str(exc)})


def _require_platform(platform: str) -> None:
    if platform not in PLATFORMS:
        raise HTTPException(
            status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": f"Unsupported platform {platform}"},
        )


async def _owned_migration(migration_id: str, user: dict, store, merchants) -> dict:
    """Load a migration and make sure the caller owns its store."""
    migration = await store.require_migration(migration_id)
    await merchants.assert_owner(migration["store_id"], user["user_id"])
    return migration


def _dashboard_redirect(**params: str) -> RedirectResponse:
    url = f"{settings.migrate_dashboard_url}?{urlencode(params)}"
    response = RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    response.delete_cookie(OAUTH_COOKIE_NAME, path=COOKIE_PATH)
    return response


# ============================================
# Connection
# ============================================
@router.get(
    "/{platform}/auth",
    dependencies=[Depends(rate_limit("auth"))],
    responses={307: {"description": "Redirect to the provider"}},
)
async def start_authorization(
    platform: str,
    store_id: str = Query(...),
    shop: Optional[str] = Query(None, description="Shopify shop domain"),
    format: Optional[str] = Query(None, description="'json' returns the URL instead of redirecting"),
    current_user: dict = Depends(get_current_user),
    merchants=Depends(get_merchant_store),
    connections=Depends(get_connection_service),
):
    """Begin the provider OAuth flow for a store."""
    _require_platform(platform)
    try:
        await merchants.assert_owner(store_id, current_user["user_id"])
        auth_url, session_token = connections.begin_authorization(platform, store_id, shop)
    except MigrationHubException as exc:
        raise _http_error(exc)

    if format == "json":
        response = JSONResponse(AuthUrlResponse(auth_url=auth_url).model_dump())
    else:
        response = RedirectResponse(auth_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    response.set_cookie(
        OAUTH_COOKIE_NAME,
        session_token,
        max_age=settings.oauth_state_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.oauth_cookie_secure,
        path=COOKIE_PATH,
    )
    return response


@router.get("/{platform}/callback", dependencies=[Depends(rate_limit("auth"))])
async def authorization_callback(
    platform: str,
    request: Request,
    connections=Depends(get_connection_service),
):
    """Provider redirect target; always answers with a dashboard redirect."""
    _require_platform(platform)
    params = dict(request.query_params)
    if params.get("error"):
        logger.info(f"OAuth denied by provider platform={platform} error={params.get('error')}")
        return _dashboard_redirect(error="access_denied")

    try:
        await connections.complete_authorization(
            platform, params, request.cookies.get(OAUTH_COOKIE_NAME)
        )
    except InvalidAuthState as exc:
        logger.info(f"OAuth callback rejected platform={platform} reason={exc.reason}")
        return _dashboard_redirect(error=exc.reason)
    except MigrationAlreadyRunningError:
        return _dashboard_redirect(error="migration_running")
    except MigrationHubException as exc:
        logger.warning(f"OAuth connection failed platform={platform}: {exc}")
        return _dashboard_redirect(error="connection_failed")
    return _dashboard_redirect(connected=platform)


@router.post(
    "/shopify/connect",
    response_model=ConnectionResponse,
    dependencies=[Depends(rate_limit("auth"))],
)
async def connect_shopify_token(
    body: ShopifyConnectRequest,
    current_user: dict = Depends(get_current_user),
    merchants=Depends(get_merchant_store),
    connections=Depends(get_connection_service),
):
    """Connect a Shopify store with an admin API access token."""
    try:
        await merchants.assert_owner(body.store_id, current_user["user_id"])
        migration = await connections.connect_with_token(body.store_id, body.shop_url, body.access_token)
    except MigrationHubException as exc:
        raise _http_error(exc)
    return ConnectionResponse(
        migration_id=migration["id"],
        platform=migration["platform"],
        source_shop_id=migration["source_shop_id"],
        source_shop_name=migration.get("source_shop_name"),
        status=migration["status"],
    )


# ============================================
# Lifecycle
# ============================================
@router.post(
    "/start",
    response_model=MigrationStateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(rate_limit("api"))],
)
async def start_migration(
    body: StartMigrationRequest,
    current_user: dict = Depends(get_current_user),
    store=Depends(get_migration_store),
    merchants=Depends(get_merchant_store),
    orchestrator=Depends(get_orchestrator),
):
    """Start (or resume) a migration; the run itself happens on a worker."""
    try:
        await _owned_migration(body.migration_id, current_user, store, merchants)
        config = MigrationConfig(**body.model_dump(exclude={"migration_id"}))
        await orchestrator.start(body.migration_id, config)
    except MigrationHubException as exc:
        raise _http_error(exc)
    return MigrationStateResponse(migration_id=body.migration_id, status=STATUS_RUNNING)


@router.get(
    "/status",
    response_model=MigrationStatusResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit("api"))],
)
async def migration_status(
    migration_id: Optional[str] = Query(None),
    store_id: Optional[str] = Query(None),
    include_errors: bool = Query(False),
    current_user: dict = Depends(get_current_user),
    store=Depends(get_migration_store),
    merchants=Depends(get_merchant_store),
    orchestrator=Depends(get_orchestrator),
):
    """Progress counters, derived phase and (optionally) the error list."""
    if not migration_id and not store_id:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "migration_id or store_id is required"},
        )
    try:
        if migration_id:
            await _owned_migration(migration_id, current_user, store, merchants)
        else:
            await merchants.assert_owner(store_id, current_user["user_id"])
        return await orchestrator.get_progress(
            migration_id=migration_id, store_id=store_id, include_errors=include_errors
        )
    except MigrationHubException as exc:
        raise _http_error(exc)


@router.post(
    "/cancel",
    response_model=MigrationStateResponse,
    dependencies=[Depends(rate_limit("api"))],
)
async def cancel_migration(
    body: CancelMigrationRequest,
    current_user: dict = Depends(get_current_user),
    store=Depends(get_migration_store),
    merchants=Depends(get_merchant_store),
    orchestrator=Depends(get_orchestrator),
):
    """Cancel a running or paused migration."""
    try:
        await _owned_migration(body.migration_id, current_user, store, merchants)
        row = await orchestrator.cancel(body.migration_id)
    except MigrationHubException as exc:
        raise _http_error(exc)
    return MigrationStateResponse(migration_id=body.migration_id, status=row["status"])


@router.post(
    "/reset",
    response_model=MigrationStateResponse,
    dependencies=[Depends(rate_limit("api"))],
)
async def reset_migration(
    body: ResetMigrationRequest,
    current_user: dict = Depends(get_current_user),
    store=Depends(get_migration_store),
    merchants=Depends(get_merchant_store),
    orchestrator=Depends(get_orchestrator),
):
    """Return a failed, completed or cancelled migration to connected for a re-import."""
    try:
        await _owned_migration(body.migration_id, current_user, store, merchants)
        row = await orchestrator.reset(body.migration_id)
    except MigrationHubException as exc:
        raise _http_error(exc)
    return MigrationStateResponse(migration_id=body.migration_id, status=row["status"])
