"""
Pytest configuration and shared fixtures for Store Migration Hub tests.

Provides settings, an in-memory progress store and rate limiter, and an
orchestrator wired to the fakes in factories.py.
Version: 1.0.0
"""
import os

# Settings are read at import time; keep tests off Redis, Supabase and Celery.
os.environ.setdefault("AUTO_START_CELERY", "false")
os.environ.setdefault("PROGRESS_BACKEND", "memory")
os.environ.setdefault("RATE_LIMITER_BACKEND", "memory")
os.environ.setdefault("INBOUND_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CREDENTIALS_ENCRYPTION_KEY", "MDAw" * 10 + "MDA=")
os.environ.setdefault("SHOPIFY_CLIENT_ID", "test-shopify-id")
os.environ.setdefault("SHOPIFY_CLIENT_SECRET", "test-shopify-secret")
os.environ.setdefault("ETSY_CLIENT_ID", "test-etsy-keystring")

from unittest.mock import AsyncMock, MagicMock

import pytest

from factories import FakeConnector, TableCatalogStore
from migration_hub.core.config import Settings
from migration_hub.db.migration_store import InMemoryMigrationStore
from migration_hub.services.migration_orchestrator import MigrationOrchestrator
from migration_hub.utils.credential_vault import CredentialVault, generate_key
from migration_hub.utils.rate_limiter import BucketConfig, InMemoryBucketBackend, TokenBucketRateLimiter


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def test_settings():
    """Settings with fast retries and small pages."""
    return Settings(
        supabase_url="https://test.supabase.co",
        supabase_service_role_key="test-service-role-key",
        supabase_jwt_secret="test-jwt-secret",
        credentials_encryption_key=generate_key(),
        app_url="https://app.example.com",
        api_public_url="https://api.example.com/api/v1",
        shopify_client_id="test-shopify-id",
        shopify_client_secret="test-shopify-secret",
        etsy_client_id="test-etsy-keystring",
        progress_backend="memory",
        rate_limiter_backend="memory",
        migration_page_size=10,
        migration_max_run_seconds=600,
        rate_limit_max_attempts=3,
        rate_limit_backoff_base=0.0,
        rate_limit_backoff_max=0.0,
        rate_limit_wait_timeout=1.0,
        inbound_rate_limit_enabled=False,
    )


@pytest.fixture
def vault(test_settings):
    return CredentialVault(test_settings.credentials_encryption_key)


@pytest.fixture
def memory_store():
    return InMemoryMigrationStore()


@pytest.fixture
def limiter():
    """Roomy in-memory limiter so tests never wait for tokens."""
    return TokenBucketRateLimiter(InMemoryBucketBackend(), BucketConfig(capacity=10_000, refill_rate=10_000))


@pytest.fixture
def fake_connector(test_settings):
    return FakeConnector(test_settings)


@pytest.fixture
def catalog_store():
    return TableCatalogStore()


@pytest.fixture
def mock_image_store():
    """Mocked ImageStore (no downloads)."""
    store = MagicMock()
    store.rehost_images = AsyncMock(return_value=[])
    return store


@pytest.fixture
def enqueue():
    return MagicMock()


@pytest.fixture
def orchestrator(memory_store, catalog_store, mock_image_store, vault, test_settings,
                 enqueue, fake_connector, limiter):
    """Orchestrator wired to in-memory collaborators and the fake connector."""
    return MigrationOrchestrator(
        store=memory_store,
        catalog=catalog_store,
        images=mock_image_store,
        vault=vault,
        settings=test_settings,
        enqueue=enqueue,
        connector_factory=lambda platform, settings=None: fake_connector,
        limiter_factory=lambda platform: limiter,
    )


@pytest.fixture
def connected_migration(memory_store, vault):
    """A Shopify migration in ``connected`` state; returns an async factory."""

    async def _create(store_id: str = "store-1", platform: str = "shopify") -> dict:
        return await memory_store.save_connection(
            store_id=store_id,
            platform=platform,
            source_shop_id="test-store.myshopify.com",
            source_shop_name="Test Store",
            access_token_encrypted=vault.encrypt("shpat_test_token"),
        )

    return _create
