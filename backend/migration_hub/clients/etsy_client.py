"""
Etsy connector — OAuth 2.0 with PKCE, token refresh and Open API v3 reads.

Listings are paged by offset; shop sections are returned in one page with
the member listing ids of each section attached.
Version: 1.0.0
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from migration_hub.clients.platform_connector import (
    AuthInit,
    Capability,
    Page,
    PlatformConnector,
    ShopInfo,
    TokenSet,
    register_connector,
)
from migration_hub.core.config import Settings
from migration_hub.core.exceptions import (
    AuthenticationError,
    ExternalAPIError,
    InvalidAuthState,
)
from migration_hub.utils.oauth_state import generate_pkce_pair, generate_state

logger = logging.getLogger("etsy_client")

ETSY_AUTHORIZE_URL = "https://www.etsy.com/oauth/connect"
ETSY_TOKEN_URL = "https://api.etsy.com/v3/public/oauth/token"
SECTION_LISTINGS_LIMIT = 100


def encode_offset(offset: int) -> str:
    return str(offset)


def decode_offset(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        return max(0, int(cursor))
    except ValueError:
        logger.warning("etsy cursor not an offset cursor=%s, restarting at 0", cursor)
        return 0


@register_connector
class EtsyConnector(PlatformConnector):
    """Etsy Open API v3 connector (OAuth 2.0 + PKCE, listings and sections)."""

    platform = "etsy"
    capabilities = frozenset({
        Capability.AUTH_INIT,
        Capability.AUTH_EXCHANGE,
        Capability.REFRESH_TOKEN,
        Capability.FETCH_SHOP_INFO,
        Capability.LIST_PRODUCTS,
        Capability.LIST_COLLECTIONS,
    })

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._client_id = settings.etsy_client_id
        self._api_base = settings.etsy_api_base.rstrip("/")
        self._scopes = settings.etsy_scopes
        self._page_size = min(settings.migration_page_size, 100)

    # -- Auth ---------------------------------------------------------------

    def auth_init(self, store_id: str, shop: Optional[str] = None) -> AuthInit:
        state = generate_state()
        verifier, challenge = generate_pkce_pair()
        query = urlencode({
            "response_type": "code",
            "client_id": self._client_id or "",
            "redirect_uri": self._settings.oauth_redirect_uri(self.platform),
            "scope": self._scopes,
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        })
        return AuthInit(auth_url=f"{ETSY_AUTHORIZE_URL}?{query}", state=state, pkce_verifier=verifier)

    async def auth_exchange(
        self,
        code: str,
        expected_state: str,
        returned_state: str,
        verifier: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> TokenSet:
        self.check_state(expected_state, returned_state)
        if not verifier:
            raise InvalidAuthState("missing_verifier")
        if not code:
            raise InvalidAuthState("missing_params")

        data = await self._request(
            "POST",
            ETSY_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "client_id": self._client_id,
                "redirect_uri": self._settings.oauth_redirect_uri(self.platform),
                "code": code,
                "code_verifier": verifier,
            },
        )
        return self._token_set(data)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        try:
            data = await self._request(
                "POST",
                ETSY_TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self._client_id,
                    "refresh_token": refresh_token,
                },
            )
        except ExternalAPIError as exc:
            # Etsy answers 400 invalid_grant for revoked or expired refresh tokens
            if exc.status_code in (400, 401):
                raise AuthenticationError("Etsy refresh token rejected") from exc
            raise
        logger.info("etsy token refreshed")
        return self._token_set(data)

    @staticmethod
    def _token_set(data: Dict[str, Any]) -> TokenSet:
        access_token = data.get("access_token")
        if not access_token:
            raise ExternalAPIError("etsy", "token endpoint returned no access_token")
        expires_in = data.get("expires_in")
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            if expires_in is not None else None
        )
        return TokenSet(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
        )

    async def fetch_shop_info(self, access_token: str, shop_id: Optional[str] = None) -> ShopInfo:
        me = await self._call_etsy("/application/users/me", access_token)
        user_id = me.get("user_id")
        if user_id is None:
            raise ExternalAPIError(self.platform, "users/me returned no user_id")
        shop = await self._call_etsy(f"/application/users/{user_id}/shops", access_token)
        if not shop.get("shop_id"):
            raise ExternalAPIError(self.platform, "Etsy account has no shop")
        return ShopInfo(shop_id=str(shop["shop_id"]), shop_name=shop.get("shop_name"))

    # -- Reads --------------------------------------------------------------

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "x-api-key": self._client_id or "",
        }

    async def _call_etsy(
        self, path: str, access_token: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return await self._request(
            "GET", f"{self._api_base}{path}", headers=self._headers(access_token), params=params
        )

    async def count_products(self, access_token: str, shop_id: str) -> int:
        data = await self._call_etsy(
            f"/application/shops/{shop_id}/listings/active", access_token, {"limit": 1}
        )
        return int(data.get("count") or 0)

    async def list_products(self, access_token: str, shop_id: str, cursor: Optional[str] = None) -> Page:
        offset = decode_offset(cursor)
        data = await self._call_etsy(
            f"/application/shops/{shop_id}/listings/active",
            access_token,
            {"limit": self._page_size, "offset": offset, "includes": "Images"},
        )
        results = data.get("results") or []
        next_offset = offset + len(results)
        has_more = bool(results) and next_offset < int(data.get("count") or 0)
        return Page(items=results, next_cursor=encode_offset(next_offset) if has_more else None)

    async def _sections(self, access_token: str, shop_id: str) -> List[Dict[str, Any]]:
        data = await self._call_etsy(f"/application/shops/{shop_id}/sections", access_token)
        return data.get("results") or []

    async def count_collections(self, access_token: str, shop_id: str) -> int:
        return len(await self._sections(access_token, shop_id))

    async def list_collections(self, access_token: str, shop_id: str, cursor: Optional[str] = None) -> Page:
        """All shop sections in one page, each with its member ``listing_ids``."""
        sections = await self._sections(access_token, shop_id)
        for section in sections:
            section["listing_ids"] = await self._section_listing_ids(
                access_token, shop_id, section.get("shop_section_id")
            )
        return Page(items=sections, next_cursor=None)

    async def _section_listing_ids(self, access_token: str, shop_id: str, section_id: Any) -> List[int]:
        listing_ids: List[int] = []
        offset = 0
        while True:
            data = await self._call_etsy(
                f"/application/shops/{shop_id}/shop-sections/listings",
                access_token,
                {"shop_section_ids": section_id, "limit": SECTION_LISTINGS_LIMIT, "offset": offset},
            )
            results = data.get("results") or []
            listing_ids.extend(r["listing_id"] for r in results if r.get("listing_id") is not None)
            offset += len(results)
            if not results or offset >= int(data.get("count") or 0):
                return listing_ids
