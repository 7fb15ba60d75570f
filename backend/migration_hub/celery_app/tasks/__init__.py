"""
Celery tasks package.
Exports all tasks for convenient imports.
"""
from migration_hub.celery_app.tasks.migration import cleanup_stale_migrations, run_migration

__all__ = [
    "run_migration",
    "cleanup_stale_migrations",
]
