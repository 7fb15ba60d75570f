"""
Authentication — Supabase JWT verification for route protection.

Dashboard requests carry the merchant's Supabase session token (HS256,
signed with the project's JWT secret). Supabase is also the data store.
Version: 1.0.0
"""
import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from migration_hub.core.config import settings

logger = logging.getLogger(__name__)
security = HTTPBearer()


def decode_supabase_token(token: str) -> dict:
    """Verify signature, expiry and audience; returns the claims."""
    if not settings.supabase_jwt_secret:
        raise JWTError("SUPABASE_JWT_SECRET is not configured")
    return jwt.decode(
        token,
        settings.supabase_jwt_secret,
        algorithms=["HS256"],
        audience=settings.supabase_jwt_audience,
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Validate the Supabase JWT and return user data.

    Token validation includes:
    - Signature verification with the project JWT secret
    - Expiry check
    - Audience validation
    """
    token = credentials.credentials

    logger.debug("Validating Supabase authentication token")
    try:
        payload = decode_supabase_token(token)
    except JWTError as e:
        logger.warning(f"Authentication failed - JWT error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "UNAUTHORIZED",
                "message": f"Invalid or expired token: {str(e)}",
            },
        )

    user_id = payload.get("sub")
    if not user_id:
        logger.warning("Authentication failed - missing user ID in token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "UNAUTHORIZED",
                "message": "Invalid token: missing user ID",
            },
        )

    logger.debug(f"Authentication successful - user_id: {user_id}")
    return {
        "user_id": user_id,
        "email": payload.get("email"),
        "role": payload.get("role"),
    }

