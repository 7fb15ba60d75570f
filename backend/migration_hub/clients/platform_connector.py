"""
Platform connector base — capabilities, page/token types and the registry.

A connector knows one source platform's auth flow and read API. It holds
no per-merchant state: access tokens and shop ids are passed per call, and
token persistence, rate limiting and refresh-on-401 live in the
ConnectorSession that wraps it for a migration run.

Usage:
    from migration_hub.clients.platform_connector import get_connector

    connector = get_connector("etsy")
    page = await connector.list_entities("products", access_token, shop_id, cursor=None)
Version: 1.0.0
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

import httpx

from migration_hub.core.config import Settings, settings as default_settings
from migration_hub.core.exceptions import (
    AuthenticationError,
    ConnectionTimeoutError,
    ExternalAPIError,
    InvalidAuthState,
    RateLimitError,
    UnsupportedCapabilityError,
    UnsupportedPlatformError,
)
from migration_hub.utils.oauth_state import states_match

logger = logging.getLogger("platform_connector")

DEFAULT_RETRY_AFTER = 2.0
REQUEST_TIMEOUT = 30.0


class Capability(str, Enum):
    AUTH_INIT = "auth_init"
    AUTH_EXCHANGE = "auth_exchange"
    REFRESH_TOKEN = "refresh_token"
    FETCH_SHOP_INFO = "fetch_shop_info"
    LIST_PRODUCTS = "list_products"
    LIST_COLLECTIONS = "list_collections"
    LIST_CUSTOMERS = "list_customers"
    LIST_COUPONS = "list_coupons"
    LIST_ORDERS = "list_orders"


LIST_CAPABILITY = {
    "products": Capability.LIST_PRODUCTS,
    "collections": Capability.LIST_COLLECTIONS,
    "customers": Capability.LIST_CUSTOMERS,
    "coupons": Capability.LIST_COUPONS,
    "orders": Capability.LIST_ORDERS,
}


@dataclass
class Page:
    """One page of raw source records; ``next_cursor is None`` ends pagination."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class AuthInit:
    auth_url: str
    state: str
    pkce_verifier: Optional[str] = None
    shop: Optional[str] = None


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class ShopInfo:
    shop_id: str
    shop_name: Optional[str] = None


def parse_retry_after(value: Optional[str]) -> float:
    try:
        return max(0.0, float(value)) if value is not None else DEFAULT_RETRY_AFTER
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER


class PlatformConnector:
    """Base class for source platform connectors."""

    platform: str = ""
    capabilities: FrozenSet[Capability] = frozenset()

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        # Awaited before every provider request; a ConnectorSession binds its rate limiter here
        self.request_gate: Optional[Callable[[], Awaitable[None]]] = None

    async def _throttle(self) -> None:
        if self.request_gate is not None:
            await self.request_gate()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def supports_entity(self, entity: str) -> bool:
        capability = LIST_CAPABILITY.get(entity)
        return capability is not None and self.supports(capability)

    # -- Auth ---------------------------------------------------------------

    def auth_init(self, store_id: str, shop: Optional[str] = None) -> AuthInit:
        raise UnsupportedCapabilityError(f"{self.platform} does not support auth_init")

    async def auth_exchange(
        self,
        code: str,
        expected_state: str,
        returned_state: str,
        verifier: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> TokenSet:
        raise UnsupportedCapabilityError(f"{self.platform} does not support auth_exchange")

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        raise UnsupportedCapabilityError(f"{self.platform} does not support refresh_token")

    async def fetch_shop_info(self, access_token: str, shop_id: Optional[str] = None) -> ShopInfo:
        raise UnsupportedCapabilityError(f"{self.platform} does not support fetch_shop_info")

    @staticmethod
    def check_state(expected_state: Optional[str], returned_state: Optional[str]) -> None:
        """Reject the callback before any network call when state does not match."""
        if not states_match(expected_state, returned_state):
            raise InvalidAuthState("invalid_state")

    # -- Reads --------------------------------------------------------------

    async def count(self, entity: str, access_token: str, shop_id: str) -> int:
        """Total records of an entity type at the source."""
        self._require_entity(entity)
        return await getattr(self, f"count_{entity}")(access_token, shop_id)

    async def list_entities(
        self, entity: str, access_token: str, shop_id: str, cursor: Optional[str] = None
    ) -> Page:
        """One page of raw records of an entity type."""
        self._require_entity(entity)
        return await getattr(self, f"list_{entity}")(access_token, shop_id, cursor)

    def _require_entity(self, entity: str) -> None:
        if not self.supports_entity(entity):
            raise UnsupportedCapabilityError(f"{self.platform} does not offer {entity}")

    # -- HTTP ---------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Perform one HTTP call and map failures onto the exception taxonomy.

        429 -> RateLimitError, 401/403 -> AuthenticationError,
        other >= 400 -> ExternalAPIError, transport errors -> ConnectionTimeoutError.
        """
        await self._throttle()
        logger.info("%s request method=%s url=%s", self.platform, method, url)
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
                response = await client.request(
                    method, url, headers=headers, params=params, json=json, data=data
                )
        except httpx.TransportError as exc:
            logger.warning("%s transport error url=%s detail=%r", self.platform, url, exc)
            raise ConnectionTimeoutError(f"{self.platform} request failed: {exc!r}") from exc

        status = response.status_code
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.info("%s rate limited url=%s retry_after=%s", self.platform, url, retry_after)
            raise RateLimitError(self.platform, retry_after=retry_after)
        if status in (401, 403):
            logger.info("%s auth rejected status=%s body=%s", self.platform, status, response.text)
            raise AuthenticationError(f"{self.platform} rejected credentials ({status})")
        if status >= 400:
            logger.info("%s error status=%s body=%s", self.platform, status, response.text)
            raise ExternalAPIError(self.platform, f"HTTP {status}", status_code=status, body=response.text)

        if not response.content:
            return {}
        return response.json()


# ============================================
# Registry
# ============================================
_REGISTRY: Dict[str, Callable[[Settings], PlatformConnector]] = {}


def register_connector(cls):
    """Class decorator adding a connector to the platform registry."""
    _REGISTRY[cls.platform] = cls
    return cls


def get_connector(platform: str, settings: Optional[Settings] = None) -> PlatformConnector:
    """Instantiate the connector registered for a platform tag."""
    # Connector modules register themselves on import
    from migration_hub.clients import etsy_client, shopify_client  # noqa: F401

    factory = _REGISTRY.get(platform)
    if factory is None:
        raise UnsupportedPlatformError(f"Unsupported platform {platform!r}")
    return factory(settings or default_settings)


def registered_platforms() -> List[str]:
    from migration_hub.clients import etsy_client, shopify_client  # noqa: F401

    return sorted(_REGISTRY)
