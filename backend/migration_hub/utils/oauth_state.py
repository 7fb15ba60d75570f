"""
OAuth state helpers — CSRF state, PKCE pairs and the sealed session token.

The authorization session (state, PKCE verifier, store id) is never kept
server-side. It is sealed with the credential vault into a short-lived token
that travels in an httpOnly cookie and is opened again on the callback.
Version: 1.0.0
"""
import base64
import hashlib
import hmac
import secrets
import time
from typing import Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from migration_hub.core.exceptions import InvalidAuthState, InvalidCredentialError
from migration_hub.schemas.migration import OAuthSession
from migration_hub.utils.credential_vault import CredentialVault


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    """Random CSRF state value."""
    return secrets.token_urlsafe(32)


def generate_pkce_pair() -> Tuple[str, str]:
    """
    Generate a PKCE (verifier, challenge) pair using S256.

    verifier  = base64url(32 random bytes)
    challenge = base64url(sha256(verifier))
    """
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


def states_match(expected: Optional[str], returned: Optional[str]) -> bool:
    """Constant-time comparison of the stored and returned state."""
    if not expected or not returned:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), returned.encode("utf-8"))


def issue_session_token(
    vault: CredentialVault,
    *,
    state: str,
    store_id: str,
    platform: str,
    ttl_seconds: int,
    pkce_verifier: Optional[str] = None,
    shop: Optional[str] = None,
    now: Optional[float] = None,
) -> str:
    """Seal an OAuth session into an opaque cookie value."""
    issued = time.time() if now is None else now
    session = OAuthSession(
        state=state,
        store_id=store_id,
        platform=platform,
        pkce_verifier=pkce_verifier,
        shop=shop,
        expires_at=issued + ttl_seconds,
    )
    return vault.encrypt(session.model_dump_json())


def read_session_token(
    vault: CredentialVault, token: Optional[str], now: Optional[float] = None
) -> OAuthSession:
    """
    Open a session token from the callback cookie.

    Raises:
        InvalidAuthState: missing_session, invalid_state or expired_session
    """
    if not token:
        raise InvalidAuthState("missing_session")
    try:
        session = OAuthSession.model_validate_json(vault.decrypt(token))
    except (InvalidCredentialError, PydanticValidationError) as exc:
        raise InvalidAuthState("invalid_state") from exc

    current = time.time() if now is None else now
    if session.expires_at < current:
        raise InvalidAuthState("expired_session")
    return session
