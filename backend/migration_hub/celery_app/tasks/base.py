"""
Base task class with common functionality.

Provides:
- Automatic dependency injection
- Standardized error handling
- Logging configuration
- Retry logic
"""
import asyncio
import logging
from celery import Task

from migration_hub.core.exceptions import ConnectionTimeoutError, DatabaseTransientError

logger = logging.getLogger(__name__)


class BaseTask(Task):
    """Base task with common functionality for all workers."""

    # Don't create abstract tasks
    abstract = True

    # Retry only infrastructure blips; job-level failures are recorded on the job
    autoretry_for = (DatabaseTransientError, ConnectionTimeoutError)
    retry_backoff = True
    retry_backoff_max = 300  # 5 minutes max backoff
    retry_jitter = True
    max_retries = 3

    # Track task state
    track_started = True

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Called when task fails after all retries exhausted."""
        logger.error(f"Task {self.name}[{task_id}] failed: {exc}")

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        """Called when task is being retried."""
        logger.warning(f"Task {self.name}[{task_id}] retrying (attempt {self.request.retries}): {exc}")

    def on_success(self, retval, task_id, args, kwargs):
        """Called when task succeeds."""
        logger.info(f"Task {self.name}[{task_id}] succeeded")


# ============================================
# Async Helper
# ============================================
def run_async(coro):
    """
    Run async function in sync context.

    Use this to call async methods from Celery tasks.
    Each call creates a new event loop to avoid conflicts.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ============================================
# Dependency helpers (lazy loading)
# ============================================
_dependencies = None


def get_dependencies():
    """
    Lazy load dependencies.

    Called after fork so each worker gets own instances.
    This prevents connection sharing issues between workers.
    """
    global _dependencies
    if _dependencies is None:
        from migration_hub import container
        from migration_hub.core.config import settings

        _dependencies = {
            "settings": settings,
            "orchestrator": container.get_orchestrator(),
        }
    return _dependencies


def get_orchestrator():
    """Get migration orchestrator instance."""
    return get_dependencies()["orchestrator"]


def reset_dependencies() -> None:
    """Drop cached instances (for testing)."""
    global _dependencies
    _dependencies = None
