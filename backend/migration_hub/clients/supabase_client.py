"""
Supabase client — one service-role SDK client per process.

Stores write on behalf of merchants from both the API and the Celery
worker, so the client never carries a user session.
Version: 1.0.0
"""
import logging
import threading

from supabase import Client, ClientOptions, create_client

from migration_hub.core.config import Settings

logger = logging.getLogger("supabase_client")


class SupabaseClient:
    """Service-role wrapper around the supabase-py SDK client."""

    _instance: Client | None = None
    _lock = threading.Lock()

    def __init__(self, settings: Settings) -> None:
        self._url = settings.supabase_url
        self._key = settings.supabase_service_role_key
        self._bucket = settings.supabase_storage_bucket
        self._timeout = settings.supabase_timeout_seconds

        missing = [
            name for name, value in (("SUPABASE_URL", self._url), ("SUPABASE_SERVICE_ROLE_KEY", self._key))
            if not value
        ]
        if missing:
            raise RuntimeError(f"{' and '.join(missing)} must be set for Supabase access")

    def get_client(self) -> Client:
        """Get or create the shared SDK client."""
        with SupabaseClient._lock:
            if SupabaseClient._instance is None:
                options = ClientOptions(
                    postgrest_client_timeout=self._timeout,
                    storage_client_timeout=int(self._timeout),
                    auto_refresh_token=False,
                    persist_session=False,
                )
                SupabaseClient._instance = create_client(self._url, self._key, options=options)
                logger.info("supabase client initialized url=%s", self._url)
        return SupabaseClient._instance

    @property
    def client(self) -> Client:
        return self.get_client()

    @property
    def storage_bucket(self) -> str:
        return self._bucket

    def public_object_url(self, object_path: str) -> str:
        """Public URL of an object in the product image bucket."""
        return f"{self._url.rstrip('/')}/storage/v1/object/public/{self._bucket}/{object_path.lstrip('/')}"
