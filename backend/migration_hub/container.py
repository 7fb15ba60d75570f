"""
Lazy DI container — singleton access to clients, stores, and services.

Works in both FastAPI (async) and Celery (sync) contexts.
Import individual getters to avoid circular imports.
Version: 1.0.0
"""

from functools import lru_cache

from migration_hub.core.config import settings
from migration_hub.clients.supabase_client import SupabaseClient
from migration_hub.db.catalog_store import CatalogStore
from migration_hub.db.image_store import ImageStore
from migration_hub.db.merchant_store import MerchantStore
from migration_hub.db.migration_store import (
    InMemoryMigrationStore,
    MigrationStore,
    SupabaseMigrationStore,
)
from migration_hub.services.connection_service import ConnectionService
from migration_hub.services.migration_orchestrator import MigrationOrchestrator
from migration_hub.utils.credential_vault import get_vault


# -- Clients ---------------------------------------------------------------

@lru_cache(maxsize=1)
def get_supabase_client():
    return SupabaseClient(settings)


# -- DB Stores -------------------------------------------------------------

@lru_cache(maxsize=1)
def get_migration_store() -> MigrationStore:
    if settings.progress_backend == "memory":
        return InMemoryMigrationStore()
    return SupabaseMigrationStore(get_supabase_client())


@lru_cache(maxsize=1)
def get_catalog_store():
    return CatalogStore(get_supabase_client())


@lru_cache(maxsize=1)
def get_image_store():
    return ImageStore(get_supabase_client())


@lru_cache(maxsize=1)
def get_merchant_store():
    return MerchantStore(get_supabase_client())


# -- Services --------------------------------------------------------------

def _enqueue_run(migration_id: str, run_id: str) -> None:
    from migration_hub.celery_app.tasks.migration import enqueue_run

    enqueue_run(migration_id, run_id)


@lru_cache(maxsize=1)
def get_orchestrator():
    return MigrationOrchestrator(
        store=get_migration_store(),
        catalog=get_catalog_store(),
        images=get_image_store(),
        vault=get_vault(),
        settings=settings,
        enqueue=_enqueue_run,
    )


@lru_cache(maxsize=1)
def get_connection_service():
    return ConnectionService(
        store=get_migration_store(),
        vault=get_vault(),
        settings=settings,
    )
