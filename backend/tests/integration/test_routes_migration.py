"""
Integration tests for migration routes.

Tests the OAuth start/callback pair, the direct Shopify token connection,
and the start / status / cancel / reset lifecycle endpoints against an
in-memory progress store and a scripted source connector.
Version: 1.0.0
"""
import os
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

os.environ.setdefault("AUTO_START_CELERY", "false")

from fastapi.testclient import TestClient

from factories import shopify_product
from migration_hub.clients.platform_connector import TokenSet, get_connector
from migration_hub.core.config import settings
from migration_hub.core.constants.migration import OAUTH_COOKIE_NAME
from migration_hub.core.exceptions import StoreNotFoundError
from migration_hub.services.connection_service import ConnectionService
from migration_hub.utils.oauth_state import issue_session_token

OWNER_ID = "owner-1"


class FakeMerchants:
    """Store ownership lookups: store-1 belongs to OWNER_ID."""

    def __init__(self):
        self.stores = {"store-1": OWNER_ID, "store-2": "someone-else"}

    async def assert_owner(self, store_id, user_id):
        if self.stores.get(store_id) != user_id:
            raise StoreNotFoundError(f"Store {store_id} not found")
        return {"id": store_id, "owner_id": user_id}


@pytest.fixture
def etsy_connector(test_settings):
    connector = get_connector("etsy", test_settings)
    connector.auth_exchange = AsyncMock(return_value=TokenSet(access_token="etsy-access", refresh_token="etsy-refresh"))
    connector.fetch_shop_info = AsyncMock()
    connector.fetch_shop_info.return_value = MagicMock(shop_id="12345", shop_name="Etsy Shop")
    return connector


@pytest.fixture
def connections(memory_store, vault, test_settings, etsy_connector):
    def factory(platform, settings=None):
        if platform == "etsy":
            return etsy_connector
        return get_connector(platform, test_settings)

    return ConnectionService(store=memory_store, vault=vault, settings=test_settings, connector_factory=factory)


@pytest.fixture
def client(memory_store, orchestrator, connections):
    """Test client with auth, ownership and services overridden."""
    with patch.dict(os.environ, {"AUTO_START_CELERY": "false"}):
        from migration_hub.container import (
            get_connection_service,
            get_merchant_store,
            get_migration_store,
            get_orchestrator,
        )
        from migration_hub.core.auth import get_current_user
        from migration_hub.main import app

        merchants = FakeMerchants()
        app.dependency_overrides[get_current_user] = lambda: {
            "user_id": OWNER_ID, "email": "owner@example.com", "role": "authenticated",
        }
        app.dependency_overrides[get_merchant_store] = lambda: merchants
        app.dependency_overrides[get_migration_store] = lambda: memory_store
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        app.dependency_overrides[get_connection_service] = lambda: connections
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c
        app.dependency_overrides.clear()


@pytest.fixture
def unauthenticated_client():
    with patch.dict(os.environ, {"AUTO_START_CELERY": "false"}):
        from migration_hub.main import app
        app.dependency_overrides.clear()
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c


def _session_cookie(vault, state="good-state", platform="etsy", store_id="store-1", ttl=600, **extra):
    token = issue_session_token(
        vault, state=state, store_id=store_id, platform=platform, ttl_seconds=ttl,
        pkce_verifier=extra.pop("pkce_verifier", "verifier-123"), **extra,
    )
    return {"Cookie": f"{OAUTH_COOKIE_NAME}={token}"}


def _redirect_query(response) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(response.headers["location"]).query).items()}


@pytest.mark.integration
class TestAuthorizationStart:
    """Tests for GET /api/v1/migration/{platform}/auth."""

    def test_etsy_redirects_with_pkce_and_sets_cookie(self, client):
        response = client.get(
            "/api/v1/migration/etsy/auth", params={"store_id": "store-1"}, follow_redirects=False
        )
        assert response.status_code == 307
        location = urlparse(response.headers["location"])
        query = parse_qs(location.query)
        assert location.netloc == "www.etsy.com"
        assert query["code_challenge_method"] == ["S256"]
        assert query["state"][0]

        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{OAUTH_COOKIE_NAME}=")
        assert "HttpOnly" in cookie
        assert "samesite=lax" in cookie.lower()
        assert "Max-Age=600" in cookie

    def test_json_format_returns_url(self, client):
        response = client.get(
            "/api/v1/migration/shopify/auth",
            params={"store_id": "store-1", "shop": "demo-shop", "format": "json"},
        )
        assert response.status_code == 200
        assert response.json()["auth_url"].startswith("https://demo-shop.myshopify.com/admin/oauth/authorize?")
        assert OAUTH_COOKIE_NAME in response.headers["set-cookie"]

    def test_shopify_requires_shop(self, client):
        response = client.get("/api/v1/migration/shopify/auth", params={"store_id": "store-1"})
        assert response.status_code == 400

    def test_store_not_owned(self, client):
        response = client.get("/api/v1/migration/etsy/auth", params={"store_id": "store-2"})
        assert response.status_code == 404

    def test_unknown_platform(self, client):
        response = client.get("/api/v1/migration/woocommerce/auth", params={"store_id": "store-1"})
        assert response.status_code == 404

    def test_requires_auth(self, unauthenticated_client):
        response = unauthenticated_client.get("/api/v1/migration/etsy/auth", params={"store_id": "store-1"})
        assert response.status_code in (401, 403)


@pytest.mark.integration
class TestAuthorizationCallback:
    """Tests for GET /api/v1/migration/{platform}/callback."""

    def test_state_mismatch_never_exchanges(self, client, vault, etsy_connector):
        response = client.get(
            "/api/v1/migration/etsy/callback",
            params={"code": "abc", "state": "forged-state"},
            headers=_session_cookie(vault),
            follow_redirects=False,
        )
        assert response.status_code == 307
        assert _redirect_query(response) == {"error": "invalid_state"}
        etsy_connector.auth_exchange.assert_not_called()

    def test_missing_cookie_never_exchanges(self, client, etsy_connector):
        response = client.get(
            "/api/v1/migration/etsy/callback",
            params={"code": "abc", "state": "good-state"},
            follow_redirects=False,
        )
        assert _redirect_query(response) == {"error": "missing_session"}
        etsy_connector.auth_exchange.assert_not_called()

    def test_expired_cookie_never_exchanges(self, client, vault, etsy_connector):
        response = client.get(
            "/api/v1/migration/etsy/callback",
            params={"code": "abc", "state": "good-state"},
            headers=_session_cookie(vault, ttl=-1),
            follow_redirects=False,
        )
        assert _redirect_query(response) == {"error": "expired_session"}
        etsy_connector.auth_exchange.assert_not_called()

    def test_provider_denied(self, client, etsy_connector):
        response = client.get(
            "/api/v1/migration/etsy/callback",
            params={"error": "access_denied"},
            follow_redirects=False,
        )
        assert _redirect_query(response) == {"error": "access_denied"}
        etsy_connector.auth_exchange.assert_not_called()

    def test_success_creates_connected_job(self, client, vault, etsy_connector, memory_store):
        response = client.get(
            "/api/v1/migration/etsy/callback",
            params={"code": "abc", "state": "good-state"},
            headers=_session_cookie(vault),
            follow_redirects=False,
        )
        assert response.status_code == 307
        assert response.headers["location"].startswith(f"{settings.migrate_dashboard_url}?")
        assert _redirect_query(response) == {"connected": "etsy"}

        etsy_connector.auth_exchange.assert_awaited_once()
        assert etsy_connector.auth_exchange.call_args.kwargs["verifier"] == "verifier-123"

        status = client.get("/api/v1/migration/status", params={"store_id": "store-1"})
        assert status.status_code == 200
        assert status.json()["status"] == "connected"
        assert status.json()["platform"] == "etsy"

    def test_cookie_for_other_platform_rejected(self, client, vault, etsy_connector):
        response = client.get(
            "/api/v1/migration/etsy/callback",
            params={"code": "abc", "state": "good-state"},
            headers=_session_cookie(vault, platform="shopify", shop="demo.myshopify.com"),
            follow_redirects=False,
        )
        assert _redirect_query(response) == {"error": "invalid_state"}
        etsy_connector.auth_exchange.assert_not_called()


@pytest.mark.integration
class TestShopifyTokenConnect:
    """Tests for POST /api/v1/migration/shopify/connect."""

    @patch("migration_hub.clients.shopify_client.ShopifyConnector.fetch_shop_info", new_callable=AsyncMock)
    def test_connect_with_admin_token(self, mock_info, client):
        mock_info.return_value = MagicMock(shop_id="demo-shop.myshopify.com", shop_name="Demo")
        response = client.post("/api/v1/migration/shopify/connect", json={
            "store_id": "store-1", "shop_url": "https://demo-shop.myshopify.com/", "access_token": "shpat_abc",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "connected"
        assert data["source_shop_id"] == "demo-shop.myshopify.com"
        assert "shpat_abc" not in response.text

    def test_invalid_shop_domain(self, client):
        response = client.post("/api/v1/migration/shopify/connect", json={
            "store_id": "store-1", "shop_url": "not a shop!", "access_token": "shpat_abc",
        })
        assert response.status_code == 400


@pytest.mark.integration
class TestLifecycle:
    """Tests for start / status / cancel / reset."""

    @pytest.fixture
    def migration_id(self, connected_migration):
        import asyncio
        return asyncio.run(connected_migration())["id"]

    def test_start_enqueues_and_reports_running(self, client, migration_id, enqueue):
        response = client.post("/api/v1/migration/start", json={
            "migration_id": migration_id, "import_products": True, "import_collections": False,
        })
        assert response.status_code == 202
        assert response.json() == {"migration_id": migration_id, "status": "running"}
        enqueue.assert_called_once()
        assert enqueue.call_args.args[0] == migration_id

    def test_start_twice_conflicts(self, client, migration_id):
        client.post("/api/v1/migration/start", json={"migration_id": migration_id})
        response = client.post("/api/v1/migration/start", json={"migration_id": migration_id})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "ALREADY_RUNNING"

    def test_start_unknown_migration(self, client):
        response = client.post("/api/v1/migration/start", json={"migration_id": "missing"})
        assert response.status_code == 404

    def test_status_reports_counters_and_phase(self, client, migration_id, orchestrator, fake_connector, enqueue):
        import asyncio
        fake_connector.records["products"] = [shopify_product(i) for i in range(1, 4)]
        client.post("/api/v1/migration/start", json={"migration_id": migration_id, "import_collections": False})
        asyncio.run(orchestrator.run(migration_id, enqueue.call_args.args[1]))

        response = client.get("/api/v1/migration/status", params={"migration_id": migration_id})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["current_phase"] == "done"
        assert data["products"] == {"total": 3, "migrated": 3, "failed": 0}
        assert "errors" not in data
        assert "access_token_encrypted" not in data

    def test_status_requires_an_identifier(self, client):
        response = client.get("/api/v1/migration/status")
        assert response.status_code == 400

    def test_cancel_running(self, client, migration_id):
        client.post("/api/v1/migration/start", json={"migration_id": migration_id})
        response = client.post("/api/v1/migration/cancel", json={"migration_id": migration_id})
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_cancel_connected_conflicts(self, client, migration_id):
        response = client.post("/api/v1/migration/cancel", json={"migration_id": migration_id})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INVALID_TRANSITION"

    def test_reset_after_cancel(self, client, migration_id):
        client.post("/api/v1/migration/start", json={"migration_id": migration_id})
        client.post("/api/v1/migration/cancel", json={"migration_id": migration_id})
        response = client.post("/api/v1/migration/reset", json={"migration_id": migration_id})
        assert response.status_code == 200
        assert response.json()["status"] == "connected"

    def test_other_owner_cannot_see_migration(self, client, memory_store, vault):
        import asyncio
        row = asyncio.run(memory_store.save_connection(
            store_id="store-2", platform="shopify", source_shop_id="x.myshopify.com",
            source_shop_name="X", access_token_encrypted=vault.encrypt("token"),
        ))
        response = client.get("/api/v1/migration/status", params={"migration_id": row["id"]})
        assert response.status_code == 404
