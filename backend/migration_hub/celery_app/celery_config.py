"""
Celery application configuration.
Configures Redis broker, task queues and the stale-run cleanup schedule.

Note: On Windows, Celery's prefork pool doesn't work properly.
Use --pool=solo or --pool=threads on Windows.

=============================================================================
RUNNING WORKERS
=============================================================================

    Terminal 1 - Migration runs:
        celery -A migration_hub.celery_app worker -Q migration -l info -n migrate@%h

    Terminal 2 - Default (cleanup):
        celery -A migration_hub.celery_app worker -Q default -l info -n default@%h

    Terminal 3 - Celery Beat (scheduler):
        celery -A migration_hub.celery_app beat -l info

=============================================================================
ENVIRONMENT VARIABLES
=============================================================================
    CELERY_BROKER_URL / CELERY_RESULT_BACKEND: default to REDIS_URL
    CELERY_MIGRATION_CONCURRENCY: worker processes for the migration queue
    MIGRATION_STALE_MINUTES: running jobs silent this long are marked failed
"""
import logging
import platform

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from migration_hub.core.config import settings

logger = logging.getLogger(__name__)

# Detect Windows platform for pool configuration
IS_WINDOWS = platform.system() == "Windows"

celery_app = Celery(
    "migration_hub",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "migration_hub.celery_app.tasks.migration",
    ]
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.celery_migration_concurrency,

    task_queues=(
        Queue("migration"),
        Queue("default"),
    ),
    task_routes={
        "tasks.migration.run_migration": {"queue": "migration"},
        "tasks.migration.cleanup_stale_migrations": {"queue": "default"},
    },

    beat_schedule={
        "cleanup-stale-migrations": {
            "task": "tasks.migration.cleanup_stale_migrations",
            "schedule": crontab(minute=0),
            "options": {"queue": "default"},
        },
    },

    # Result expiration
    result_expires=3600,  # 1 hour

    # Worker pool configuration for Windows compatibility
    worker_pool="solo" if IS_WINDOWS else "prefork",

    # Runs are bounded by MIGRATION_MAX_RUN_SECONDS; redeliver only well after that
    broker_transport_options={"visibility_timeout": max(3600, settings.migration_max_run_seconds * 2)},

    # Format: [QUEUE] task_name | message
    worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
    worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s] [%(task_name)s] %(message)s",
)
