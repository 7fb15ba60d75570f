import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel


load_dotenv()


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    # Supabase
    supabase_url: str | None = os.getenv("SUPABASE_URL")
    supabase_service_role_key: str | None = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    supabase_jwt_secret: str | None = os.getenv("SUPABASE_JWT_SECRET")
    supabase_jwt_audience: str = os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated")
    supabase_storage_bucket: str = os.getenv("SUPABASE_STORAGE_BUCKET", "product-images")
    supabase_timeout_seconds: float = float(os.getenv("SUPABASE_TIMEOUT_SECONDS", "30"))

    # Public URLs (OAuth redirect URIs and dashboard redirects)
    app_url: str = os.getenv("APP_URL", "http://localhost:3000")
    api_public_url: str = os.getenv("API_PUBLIC_URL", "http://localhost:8000/api/v1")
    cors_origins: list[str] = _env_list("CORS_ORIGINS", "*")

    @property
    def migrate_dashboard_url(self) -> str:
        """Dashboard page the OAuth callback redirects back to."""
        return f"{self.app_url.rstrip('/')}/dashboard/migrate"

    def oauth_redirect_uri(self, platform: str) -> str:
        """Callback URL registered with the provider for a platform."""
        return f"{self.api_public_url.rstrip('/')}/migration/{platform}/callback"

    # Credentials
    credentials_encryption_key: str | None = os.getenv("CREDENTIALS_ENCRYPTION_KEY")
    oauth_state_ttl_seconds: int = int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600"))
    oauth_cookie_secure: bool = os.getenv("OAUTH_COOKIE_SECURE", "true").lower() == "true"

    # Shopify
    shopify_client_id: str | None = os.getenv("SHOPIFY_CLIENT_ID")
    shopify_client_secret: str | None = os.getenv("SHOPIFY_CLIENT_SECRET")
    shopify_scopes: str = os.getenv(
        "SHOPIFY_SCOPES", "read_products,read_orders,read_customers,read_discounts"
    )
    shopify_api_version: str = os.getenv("SHOPIFY_API_VERSION", "2024-10")

    # Etsy
    etsy_client_id: str | None = os.getenv("ETSY_CLIENT_ID")
    etsy_scopes: str = os.getenv("ETSY_SCOPES", "listings_r shops_r")
    etsy_api_base: str = os.getenv("ETSY_API_BASE", "https://openapi.etsy.com/v3")

    # Redis
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    celery_migration_concurrency: int = int(os.getenv("CELERY_MIGRATION_CONCURRENCY", "2"))

    # Backends: "supabase" | "memory" and "redis" | "memory"
    progress_backend: str = os.getenv("PROGRESS_BACKEND", "supabase")
    rate_limiter_backend: str = os.getenv("RATE_LIMITER_BACKEND", "redis")

    # Migration pipeline tuning
    migration_page_size: int = int(os.getenv("MIGRATION_PAGE_SIZE", "50"))
    migration_max_run_seconds: int = int(os.getenv("MIGRATION_MAX_RUN_SECONDS", "600"))
    migration_stale_minutes: int = int(os.getenv("MIGRATION_STALE_MINUTES", "30"))
    migration_image_batch_size: int = int(os.getenv("MIGRATION_IMAGE_BATCH_SIZE", "5"))
    migration_error_display_limit: int = int(os.getenv("MIGRATION_ERROR_DISPLAY_LIMIT", "100"))
    rate_limit_max_attempts: int = int(os.getenv("RATE_LIMIT_MAX_ATTEMPTS", "10"))
    rate_limit_backoff_base: float = float(os.getenv("RATE_LIMIT_BACKOFF_BASE", "1.0"))
    rate_limit_backoff_max: float = float(os.getenv("RATE_LIMIT_BACKOFF_MAX", "30.0"))
    rate_limit_wait_timeout: float = float(os.getenv("RATE_LIMIT_WAIT_TIMEOUT", "120"))

    # Outbound request quotas (tokens refilled per second, burst capacity)
    shopify_rate_limit_capacity: int = int(os.getenv("SHOPIFY_RATE_LIMIT_CAPACITY", "40"))
    shopify_rate_limit_refill: float = float(os.getenv("SHOPIFY_RATE_LIMIT_REFILL", "2"))
    etsy_rate_limit_capacity: int = int(os.getenv("ETSY_RATE_LIMIT_CAPACITY", "10"))
    etsy_rate_limit_refill: float = float(os.getenv("ETSY_RATE_LIMIT_REFILL", "10"))

    # Inbound API rate limiting
    inbound_rate_limit_enabled: bool = os.getenv("INBOUND_RATE_LIMIT_ENABLED", "true").lower() == "true"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = Settings()
