"""
Connector session — a platform connector bound to one migration's credentials.

Wraps every provider read with:
- a token from the per-credential rate limiter (keyed by migration id) for
  every HTTP request the connector makes, bound as its request gate
- tenacity retries on RateLimitError, backing off exponentially and never
  sooner than the provider's Retry-After; each 429 also penalizes the bucket
- one token refresh on AuthenticationError (when the platform supports it),
  persisted encrypted before the call is retried
Version: 1.0.0
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from migration_hub.clients.platform_connector import Capability, Page, PlatformConnector
from migration_hub.core.config import Settings
from migration_hub.core.exceptions import AuthenticationError, RateLimitError
from migration_hub.db.migration_store import MigrationStore
from migration_hub.utils.credential_vault import CredentialVault
from migration_hub.utils.rate_limiter import TokenBucketRateLimiter

logger = logging.getLogger("connector_session")


def parse_expiry(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        expires = value
    else:
        try:
            expires = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    return expires if expires.tzinfo else expires.replace(tzinfo=timezone.utc)


class wait_rate_limit_backoff:
    """Exponential backoff that honors the provider's Retry-After hint."""

    def __init__(self, base: float, maximum: float) -> None:
        self.base = base
        self.maximum = maximum

    def __call__(self, retry_state: RetryCallState) -> float:
        backoff = min(self.base * (2 ** (retry_state.attempt_number - 1)), self.maximum)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", 0.0) or 0.0
        return max(backoff, retry_after)


class ConnectorSession:
    """Rate-limited, self-refreshing reads for one migration job."""

    def __init__(
        self,
        connector: PlatformConnector,
        migration: Dict[str, Any],
        vault: CredentialVault,
        store: MigrationStore,
        limiter: TokenBucketRateLimiter,
        settings: Settings,
    ) -> None:
        self._connector = connector
        self._migration_id = migration["id"]
        self._shop_id = migration["source_shop_id"]
        self._vault = vault
        self._store = store
        self._limiter = limiter
        self._settings = settings
        self._refresh_token_encrypted = migration.get("refresh_token_encrypted")
        self._expires_at = parse_expiry(migration.get("token_expires_at"))
        # InvalidCredentialError propagates: stored token is unusable
        self._access_token = vault.decrypt(migration["access_token_encrypted"])
        connector.request_gate = self._acquire_token

    @property
    def connector(self) -> PlatformConnector:
        return self._connector

    def supports_entity(self, entity: str) -> bool:
        return self._connector.supports_entity(entity)

    async def count(self, entity: str) -> int:
        return await self._call(
            lambda token: self._connector.count(entity, token, self._shop_id)
        )

    async def list_page(self, entity: str, cursor: Optional[str]) -> Page:
        return await self._call(
            lambda token: self._connector.list_entities(entity, token, self._shop_id, cursor)
        )

    # -- Internals ----------------------------------------------------------

    def _can_refresh(self) -> bool:
        return bool(self._refresh_token_encrypted) and self._connector.supports(Capability.REFRESH_TOKEN)

    def _token_expired(self) -> bool:
        return self._expires_at is not None and self._expires_at <= datetime.now(timezone.utc)

    async def refresh(self) -> None:
        """Exchange the refresh token and persist the new pair encrypted."""
        refresh_token = self._vault.decrypt(self._refresh_token_encrypted)
        tokens = await self._connector.refresh_token(refresh_token)

        access_encrypted = self._vault.encrypt(tokens.access_token)
        refresh_encrypted = (
            self._vault.encrypt(tokens.refresh_token)
            if tokens.refresh_token else self._refresh_token_encrypted
        )
        expires_at = tokens.expires_at.isoformat() if tokens.expires_at else None
        await self._store.update_tokens(self._migration_id, access_encrypted, refresh_encrypted, expires_at)

        self._access_token = tokens.access_token
        self._refresh_token_encrypted = refresh_encrypted
        self._expires_at = tokens.expires_at
        logger.info(f"Refreshed {self._connector.platform} token migration={self._migration_id}")

    async def _call(self, operation):
        if self._token_expired() and self._can_refresh():
            await self.refresh()
        try:
            return await self._with_rate_limit(operation)
        except AuthenticationError:
            if not self._can_refresh():
                raise
            logger.info(f"Auth rejected, refreshing once migration={self._migration_id}")
            await self.refresh()
            return await self._with_rate_limit(operation)

    async def _with_rate_limit(self, operation):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._settings.rate_limit_max_attempts),
            retry=retry_if_exception_type(RateLimitError),
            wait=wait_rate_limit_backoff(
                self._settings.rate_limit_backoff_base, self._settings.rate_limit_backoff_max
            ),
            before_sleep=self._before_sleep,
            reraise=True,
        ):
            with attempt:
                return await operation(self._access_token)

    async def _acquire_token(self) -> None:
        """Request gate: one limiter token per provider HTTP request."""
        acquired = await self._limiter.wait_for_token(
            self._migration_id, timeout=self._settings.rate_limit_wait_timeout
        )
        if not acquired:
            raise RateLimitError(self._connector.platform, retry_after=0.0)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", 0.0) or 0.0
        self._limiter.penalize(self._migration_id, retry_after)
        logger.info(
            f"Rate limited migration={self._migration_id} attempt={retry_state.attempt_number} "
            f"retry_after={retry_after}s"
        )
