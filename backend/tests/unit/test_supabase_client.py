"""
Unit tests for SupabaseClient — initialization, shared SDK client, storage URLs.

Tests cover:
- Constructor raises RuntimeError when URL or service role key is missing
- get_client creates the SDK client once and caches it per process
- client property delegates to get_client
- public_object_url builds the storage URL for the configured bucket

Version: 1.0.0
"""
import pytest
from unittest.mock import MagicMock, patch

from migration_hub.clients.supabase_client import SupabaseClient


def _settings(url="https://test.supabase.co", key="test-key", bucket="product-images"):
    settings = MagicMock()
    settings.supabase_url = url
    settings.supabase_service_role_key = key
    settings.supabase_storage_bucket = bucket
    settings.supabase_timeout_seconds = 30.0
    return settings


@pytest.fixture(autouse=True)
def reset_singleton():
    SupabaseClient._instance = None
    yield
    SupabaseClient._instance = None


@pytest.mark.unit
class TestSupabaseClientInit:
    """Verify SupabaseClient constructor validates settings."""

    def test_init_stores_url_key_and_bucket(self):
        client = SupabaseClient(_settings())

        assert client._url == "https://test.supabase.co"
        assert client._key == "test-key"
        assert client.storage_bucket == "product-images"

    def test_init_raises_when_url_missing(self):
        with pytest.raises(RuntimeError, match="SUPABASE_URL"):
            SupabaseClient(_settings(url=""))

    def test_init_raises_when_key_missing(self):
        with pytest.raises(RuntimeError, match="SUPABASE_SERVICE_ROLE_KEY"):
            SupabaseClient(_settings(key=None))

    def test_init_names_both_missing_settings(self):
        with pytest.raises(RuntimeError, match="SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY"):
            SupabaseClient(_settings(url=None, key=None))


@pytest.mark.unit
class TestSupabaseClientSdk:
    """Verify the SDK client is created lazily and shared."""

    @patch("migration_hub.clients.supabase_client.create_client")
    def test_get_client_creates_once(self, mock_create):
        mock_create.return_value = MagicMock(name="sdk")
        client = SupabaseClient(_settings())

        first = client.get_client()
        second = client.client

        assert first is second
        mock_create.assert_called_once()
        args, kwargs = mock_create.call_args
        assert args == ("https://test.supabase.co", "test-key")
        assert "options" in kwargs

    @patch("migration_hub.clients.supabase_client.create_client")
    def test_instances_share_sdk_client(self, mock_create):
        mock_create.return_value = MagicMock(name="sdk")

        a = SupabaseClient(_settings()).client
        b = SupabaseClient(_settings()).client

        assert a is b
        assert mock_create.call_count == 1


@pytest.mark.unit
class TestPublicObjectUrl:

    def test_public_object_url(self):
        client = SupabaseClient(_settings(url="https://test.supabase.co/"))
        url = client.public_object_url("/store-1/products/p-1/0.jpg")
        assert url == (
            "https://test.supabase.co/storage/v1/object/public/product-images/store-1/products/p-1/0.jpg"
        )
