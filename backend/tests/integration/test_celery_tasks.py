"""
Integration tests for Celery task registration, configuration and execution.

Verifies the migration tasks are registered with the expected names, queue
routing and beat schedule are configured, and that the task bodies drive
the orchestrator.
Version: 1.0.0
"""
import os
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

os.environ.setdefault("AUTO_START_CELERY", "false")


EXPECTED_TASK_NAMES = [
    "tasks.migration.run_migration",
    "tasks.migration.cleanup_stale_migrations",
]


@pytest.fixture(scope="module")
def celery_tasks():
    """Load the Celery app, force-import task modules, and return registered tasks."""
    from migration_hub.celery_app.celery_config import celery_app
    # Celery's `include` only auto-imports when a worker boots; tests must do it explicitly.
    celery_app.loader.import_default_modules()
    return celery_app.tasks


@pytest.fixture(scope="module")
def celery_conf():
    from migration_hub.celery_app.celery_config import celery_app
    return celery_app.conf


@pytest.mark.integration
class TestCeleryTaskRegistration:

    def test_all_expected_tasks_registered(self, celery_tasks):
        for task_name in EXPECTED_TASK_NAMES:
            assert task_name in celery_tasks, (
                f"Task '{task_name}' not found in registered tasks. "
                f"Available custom tasks: {[t for t in celery_tasks if not t.startswith('celery.')]}"
            )

    def test_total_custom_task_count(self, celery_tasks):
        custom_tasks = [name for name in celery_tasks if name.startswith("tasks.")]
        assert len(custom_tasks) == len(EXPECTED_TASK_NAMES)


@pytest.mark.integration
class TestCeleryConfiguration:

    def test_queue_routing(self, celery_conf):
        routes = celery_conf.task_routes
        assert routes["tasks.migration.run_migration"]["queue"] == "migration"
        assert routes["tasks.migration.cleanup_stale_migrations"]["queue"] == "default"

    def test_queues_declared(self, celery_conf):
        names = {queue.name for queue in celery_conf.task_queues}
        assert names == {"migration", "default"}

    def test_json_serialization_and_late_ack(self, celery_conf):
        assert celery_conf.task_serializer == "json"
        assert celery_conf.accept_content == ["json"]
        assert celery_conf.task_acks_late is True
        assert celery_conf.worker_prefetch_multiplier == 1

    def test_stale_cleanup_scheduled(self, celery_conf):
        entry = celery_conf.beat_schedule["cleanup-stale-migrations"]
        assert entry["task"] == "tasks.migration.cleanup_stale_migrations"


@pytest.mark.integration
class TestMigrationTasks:

    def test_run_migration_drives_orchestrator(self):
        from migration_hub.celery_app.tasks import migration as tasks

        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(return_value="completed")
        with patch.object(tasks, "get_orchestrator", return_value=orchestrator):
            result = tasks.run_migration.apply(args=["mig-1", "run-1"]).get()

        orchestrator.run.assert_awaited_once_with("mig-1", "run-1")
        assert result == {"migration_id": "mig-1", "run_id": "run-1", "status": "completed"}

    def test_cleanup_reports_count(self):
        from migration_hub.celery_app.tasks import migration as tasks

        orchestrator = MagicMock()
        orchestrator.fail_stale_runs = AsyncMock(return_value=2)
        with patch.object(tasks, "get_orchestrator", return_value=orchestrator):
            result = tasks.cleanup_stale_migrations.apply(args=[45]).get()

        orchestrator.fail_stale_runs.assert_awaited_once_with(45)
        assert result == {"migrations_cleaned": 2}

    def test_enqueue_run_targets_migration_queue(self):
        from migration_hub.celery_app.tasks import migration as tasks

        with patch.object(tasks.run_migration, "apply_async") as mock_apply:
            tasks.enqueue_run("mig-1", "run-1")
        mock_apply.assert_called_once_with(args=["mig-1", "run-1"], queue="migration")
