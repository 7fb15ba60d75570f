"""
Connection service — OAuth handshakes and direct token connections.

The OAuth session (state, PKCE verifier, store, platform, shop) travels in
an encrypted short-lived cookie. The callback is checked against it before
anything touches the provider: a missing, expired or mismatched session
never reaches the token exchange.
Version: 1.0.0
"""
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from migration_hub.clients.platform_connector import PlatformConnector, TokenSet, get_connector
from migration_hub.clients.shopify_client import ShopifyConnector
from migration_hub.core.config import Settings
from migration_hub.core.constants.migration import SHOPIFY
from migration_hub.core.exceptions import InvalidAuthState
from migration_hub.db.migration_store import MigrationStore
from migration_hub.utils.credential_vault import CredentialVault, mask_secret
from migration_hub.utils.oauth_state import issue_session_token, read_session_token

logger = logging.getLogger("connection_service")


class ConnectionService:
    """Connects a merchant store to a source platform account."""

    def __init__(
        self,
        store: MigrationStore,
        vault: CredentialVault,
        settings: Settings,
        connector_factory=get_connector,
    ) -> None:
        self._store = store
        self._vault = vault
        self._settings = settings
        self._connector_factory = connector_factory

    def _connector(self, platform: str) -> PlatformConnector:
        return self._connector_factory(platform, self._settings)

    def begin_authorization(
        self, platform: str, store_id: str, shop: Optional[str] = None
    ) -> Tuple[str, str]:
        """
        Build the provider authorize URL.

        Returns:
            (auth_url, session_token) — the token goes into the httpOnly cookie
        """
        init = self._connector(platform).auth_init(store_id, shop)
        token = issue_session_token(
            self._vault,
            state=init.state,
            store_id=store_id,
            platform=platform,
            ttl_seconds=self._settings.oauth_state_ttl_seconds,
            pkce_verifier=init.pkce_verifier,
            shop=init.shop,
        )
        logger.info(f"OAuth started platform={platform} store={store_id}")
        return init.auth_url, token

    async def complete_authorization(
        self, platform: str, params: Mapping[str, str], session_token: Optional[str]
    ) -> Dict[str, Any]:
        """
        Validate the callback, exchange the code and persist the connection.

        Raises:
            InvalidAuthState: session missing/expired/mismatched, or bad callback
        """
        session = read_session_token(self._vault, session_token)
        if session.platform != platform:
            raise InvalidAuthState("invalid_state")

        code = params.get("code")
        returned_state = params.get("state")
        if not code or not returned_state:
            raise InvalidAuthState("missing_params")

        connector = self._connector(platform)
        connector.check_state(session.state, returned_state)

        shop = None
        if platform == SHOPIFY:
            shop = ShopifyConnector.normalize_shop_domain(params.get("shop"))
            if shop != session.shop:
                raise InvalidAuthState("shop_mismatch")
            if not connector.validate_callback_hmac(params):
                raise InvalidAuthState("invalid_hmac")

        tokens = await connector.auth_exchange(
            code,
            expected_state=session.state,
            returned_state=returned_state,
            verifier=session.pkce_verifier,
            shop=shop,
        )
        return await self._save(connector, session.store_id, tokens, shop)

    async def connect_with_token(self, store_id: str, shop_url: str, access_token: str) -> Dict[str, Any]:
        """Connect a Shopify store using an admin API access token."""
        shop = ShopifyConnector.normalize_shop_domain(shop_url)
        connector = self._connector(SHOPIFY)
        logger.info(f"Direct Shopify connect store={store_id} shop={shop} token={mask_secret(access_token)}")
        return await self._save(connector, store_id, TokenSet(access_token=access_token), shop)

    async def _save(
        self,
        connector: PlatformConnector,
        store_id: str,
        tokens: TokenSet,
        shop: Optional[str],
    ) -> Dict[str, Any]:
        info = await connector.fetch_shop_info(tokens.access_token, shop)
        migration = await self._store.save_connection(
            store_id=store_id,
            platform=connector.platform,
            source_shop_id=info.shop_id,
            source_shop_name=info.shop_name,
            access_token_encrypted=self._vault.encrypt(tokens.access_token),
            refresh_token_encrypted=self._vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
            token_expires_at=tokens.expires_at.isoformat() if tokens.expires_at else None,
        )
        logger.info(
            f"Connected platform={connector.platform} store={store_id} "
            f"shop={info.shop_id} migration={migration['id']}"
        )
        return migration
