"""
Middleware — CORS and inbound API rate limiting.

Version: 1.0.0
"""
import logging
from dataclasses import dataclass

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError

from migration_hub.core.auth import decode_supabase_token
from migration_hub.core.config import settings
from migration_hub.utils.rate_limiter import get_rate_limit_backend

logger = logging.getLogger("middleware")


@dataclass(frozen=True)
class WindowLimit:
    limit: int
    window_seconds: int = 60


INBOUND_LIMITS = {
    "api": WindowLimit(100),
    "auth": WindowLimit(5),
    "ai": WindowLimit(10),
    "checkout": WindowLimit(20),
    "search": WindowLimit(30),
    "upload": WindowLimit(10),
    "webhook": WindowLimit(100),
}


def apply_cors(app: FastAPI) -> None:
    """Apply CORS middleware for the configured dashboard origins."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def client_key(request: Request) -> str:
    """User id from a valid bearer token, else the client IP."""
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        try:
            subject = decode_supabase_token(authorization[7:]).get("sub")
        except JWTError:
            subject = None
        if subject:
            return f"user:{subject}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def rate_limit(bucket: str):
    """
    Dependency factory enforcing a fixed-window limit per client.

    Usage:
        @router.post("/start", dependencies=[Depends(rate_limit("api"))])
    """
    window = INBOUND_LIMITS[bucket]

    async def check_rate_limit(request: Request) -> None:
        if not settings.inbound_rate_limit_enabled:
            return
        key = client_key(request)
        count, seconds_left = get_rate_limit_backend().incr_window(
            f"inbound:{bucket}:{key}", window.window_seconds
        )
        if count > window.limit:
            logger.info(f"Inbound rate limit hit bucket={bucket} client={key} count={count}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "code": "RATE_LIMITED",
                    "message": f"Too many requests, retry in {seconds_left}s",
                },
                headers={"Retry-After": str(max(1, seconds_left))},
            )

    return check_rate_limit
