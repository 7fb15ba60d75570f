"""
Migration tasks.

Tasks:
- run_migration: Execute one run of a claimed migration job
- cleanup_stale_migrations: Mark jobs whose worker died as failed
"""
import logging

from migration_hub.celery_app.celery_config import celery_app
from migration_hub.celery_app.tasks.base import BaseTask, get_orchestrator, run_async

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="tasks.migration.run_migration"
)
def run_migration(self, migration_id: str, run_id: str):
    """
    Run the phase pipeline for a migration job.

    The job was already claimed (status running, run_id set) by the
    orchestrator's start; a task whose run_id no longer owns the job exits
    without touching it.

    Args:
        migration_id: Migration job identifier
        run_id: Run that owns the job

    Returns:
        dict: Job status when the run ended
    """
    logger.info(f"Running migration {migration_id} run={run_id}")
    status = run_async(get_orchestrator().run(migration_id, run_id))
    return {"migration_id": migration_id, "run_id": run_id, "status": status}


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="tasks.migration.cleanup_stale_migrations"
)
def cleanup_stale_migrations(self, stale_minutes: int | None = None):
    """
    Mark running jobs with no progress for too long as failed.

    Failed jobs keep their progress and can be resumed by the merchant.

    Returns:
        dict: Cleanup results
    """
    cleaned = run_async(get_orchestrator().fail_stale_runs(stale_minutes))
    if cleaned:
        logger.warning(f"Marked {cleaned} stale migrations as failed")
    return {"migrations_cleaned": cleaned}


def enqueue_run(migration_id: str, run_id: str) -> None:
    """Hand a claimed job to the migration queue."""
    run_migration.apply_async(args=[migration_id, run_id], queue="migration")
