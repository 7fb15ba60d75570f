"""
Unit tests for the migration progress store.

Tests cover:
- State machine transitions and run claiming
- record_item outcomes (recorded, duplicate, over_total, not_owner)
- Reconnect semantics, checkpoints, ledger and stale listing
- Supabase backend query and RPC wiring

Version: 1.0.0
"""
import pytest
from unittest.mock import MagicMock

from migration_hub.core.constants.migration import (
    DUPLICATE,
    NOT_OWNER,
    OVER_TOTAL,
    RECORDED,
)
from migration_hub.core.exceptions import (
    InvalidTransitionError,
    MigrationAlreadyRunningError,
    MigrationNotFoundError,
)
from migration_hub.db.migration_store import (
    COUNTER_COLUMNS,
    InMemoryMigrationStore,
    SupabaseMigrationStore,
    error_entry,
)


async def _running(store, run_id="run-1", **totals):
    row = await store.save_connection("store-1", "shopify", "shop", "Shop", "enc-token")
    await store.transition(row["id"], "running", extra={"run_id": run_id})
    for entity, total in totals.items():
        await store.set_total(row["id"], entity, total)
    return row["id"]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestTransitions:

    @pytest.mark.asyncio
    async def test_new_connection_is_connected(self):
        store = InMemoryMigrationStore()
        row = await store.save_connection("store-1", "shopify", "shop", "Shop", "enc-token")
        assert row["status"] == "connected"
        assert all(row[c] == 0 for c in COUNTER_COLUMNS)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", [
        ["running", "completed"],
        ["running", "paused", "running", "failed", "running", "cancelled"],
        ["running", "failed", "connected"],
        ["running", "paused", "cancelled", "connected"],
    ])
    async def test_legal_paths(self, path):
        store = InMemoryMigrationStore()
        row = await store.save_connection("store-1", "shopify", "shop", "Shop", "enc-token")
        for target in path:
            row = await store.transition(row["id"], target)
        assert row["status"] == path[-1]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path,illegal", [
        ([], "completed"),
        ([], "paused"),
        (["running", "completed"], "running"),
        (["running", "completed"], "cancelled"),
        (["running", "cancelled"], "paused"),
        ([], "connected"),
    ])
    async def test_illegal_transitions(self, path, illegal):
        store = InMemoryMigrationStore()
        row = await store.save_connection("store-1", "shopify", "shop", "Shop", "enc-token")
        for target in path:
            await store.transition(row["id"], target)
        with pytest.raises(InvalidTransitionError):
            await store.transition(row["id"], illegal)

    @pytest.mark.asyncio
    async def test_second_claim_rejected(self):
        store = InMemoryMigrationStore()
        mid = await _running(store)
        with pytest.raises(MigrationAlreadyRunningError):
            await store.transition(mid, "running", extra={"run_id": "run-2"})

    @pytest.mark.asyncio
    async def test_run_id_guard(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, run_id="run-1")
        with pytest.raises(InvalidTransitionError):
            await store.transition(mid, "completed", expected_run_id="run-stale")
        row = await store.transition(mid, "completed", expected_run_id="run-1")
        assert row["completed_at"] is not None

    @pytest.mark.asyncio
    async def test_allowed_from_narrows(self):
        store = InMemoryMigrationStore()
        mid = await _running(store)
        await store.transition(mid, "paused")
        with pytest.raises(InvalidTransitionError):
            await store.transition(mid, "running", allowed_from=["connected"])

    @pytest.mark.asyncio
    async def test_unknown_migration(self):
        with pytest.raises(MigrationNotFoundError):
            await InMemoryMigrationStore().transition("missing", "running")


# ---------------------------------------------------------------------------
# record_item
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestRecordItem:

    @pytest.mark.asyncio
    async def test_recorded_increments_counter(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, products=2)
        assert await store.record_item(mid, "run-1", "products", "1", "migrated", internal_id="p-1") == RECORDED
        row = await store.get_migration(mid)
        assert row["migrated_products"] == 1
        assert await store.get_ledger(mid, "products") == {"1": {"outcome": "migrated", "internal_id": "p-1"}}

    @pytest.mark.asyncio
    async def test_failed_item_appends_error(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, products=1)
        error = error_entry("products", "Invalid price 'abc'", "item", source_id="1", source_title="Mug")
        assert await store.record_item(mid, "run-1", "products", "1", "failed", error=error) == RECORDED
        row = await store.get_migration(mid)
        assert row["failed_products"] == 1
        assert row["errors"][0]["message"] == "Invalid price 'abc'"
        assert row["errors"][0]["category"] == "item"

    @pytest.mark.asyncio
    async def test_duplicate_not_counted_twice(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, products=5)
        await store.record_item(mid, "run-1", "products", "1", "migrated")
        assert await store.record_item(mid, "run-1", "products", "1", "failed") == DUPLICATE
        row = await store.get_migration(mid)
        assert (row["migrated_products"], row["failed_products"]) == (1, 0)

    @pytest.mark.asyncio
    async def test_over_total_rejected(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, products=1)
        await store.record_item(mid, "run-1", "products", "1", "migrated")
        assert await store.record_item(mid, "run-1", "products", "2", "migrated") == OVER_TOTAL
        row = await store.get_migration(mid)
        assert row["migrated_products"] + row["failed_products"] <= row["total_products"]

    @pytest.mark.asyncio
    async def test_stale_run_not_owner(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, products=5)
        assert await store.record_item(mid, "run-old", "products", "1", "migrated") == NOT_OWNER

    @pytest.mark.asyncio
    async def test_cancelled_job_not_owner(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, products=5)
        await store.transition(mid, "cancelled")
        assert await store.record_item(mid, "run-1", "products", "1", "migrated") == NOT_OWNER

    @pytest.mark.asyncio
    async def test_unknown_entity_and_outcome(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, products=5)
        with pytest.raises(ValueError):
            await store.record_item(mid, "run-1", "widgets", "1", "migrated")
        with pytest.raises(ValueError):
            await store.record_item(mid, "run-1", "products", "1", "skipped")

    @pytest.mark.asyncio
    async def test_reconcile_total_shrinks(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, products=10)
        for sid in ("1", "2", "3"):
            await store.record_item(mid, "run-1", "products", sid, "migrated")
        assert await store.reconcile_total(mid, "products") == 3
        assert (await store.get_migration(mid))["total_products"] == 3


# ---------------------------------------------------------------------------
# Connections, counters, checkpoints
# ---------------------------------------------------------------------------

@pytest.mark.unit
class TestConnection:

    @pytest.mark.asyncio
    async def test_reconnect_keeps_paused_progress(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, products=5)
        await store.record_item(mid, "run-1", "products", "1", "migrated")
        await store.transition(mid, "paused")
        row = await store.save_connection("store-1", "shopify", "shop", "Shop", "enc-new")
        assert row["id"] == mid
        assert row["status"] == "paused"
        assert row["migrated_products"] == 1
        assert row["access_token_encrypted"] == "enc-new"

    @pytest.mark.asyncio
    async def test_reconnect_after_completion_resets_status(self):
        store = InMemoryMigrationStore()
        mid = await _running(store)
        await store.transition(mid, "completed")
        row = await store.save_connection("store-1", "shopify", "shop", "Shop", "enc-new")
        assert row["status"] == "connected"

    @pytest.mark.asyncio
    async def test_reconnect_while_running_rejected(self):
        store = InMemoryMigrationStore()
        await _running(store)
        with pytest.raises(MigrationAlreadyRunningError):
            await store.save_connection("store-1", "shopify", "shop", "Shop", "enc-new")

    @pytest.mark.asyncio
    async def test_get_for_store_by_platform(self):
        store = InMemoryMigrationStore()
        await store.save_connection("store-1", "shopify", "shop", "Shop", "enc")
        await store.save_connection("store-1", "etsy", "555", "Etsy", "enc")
        assert (await store.get_for_store("store-1", "etsy"))["platform"] == "etsy"
        assert await store.get_for_store("store-2") is None


@pytest.mark.unit
class TestBookkeeping:

    @pytest.mark.asyncio
    async def test_increment_counters(self):
        store = InMemoryMigrationStore()
        mid = await _running(store)
        await store.increment_counters(mid, {"total_images": 3, "migrated_images": 2})
        row = await store.get_migration(mid)
        assert (row["total_images"], row["migrated_images"]) == (3, 2)

    @pytest.mark.asyncio
    async def test_unknown_counter_rejected(self):
        store = InMemoryMigrationStore()
        mid = await _running(store)
        with pytest.raises(ValueError):
            await store.increment_counters(mid, {"status": 1})

    @pytest.mark.asyncio
    async def test_checkpoint_merges(self):
        store = InMemoryMigrationStore()
        mid = await _running(store)
        await store.save_checkpoint(mid, "products", started=True)
        checkpoint = await store.save_checkpoint(mid, "products", cursor="abc")
        assert checkpoint["products"] == {"started": True, "cursor": "abc"}

    @pytest.mark.asyncio
    async def test_clear_ledger(self):
        store = InMemoryMigrationStore()
        mid = await _running(store, products=1)
        await store.record_item(mid, "run-1", "products", "1", "migrated")
        await store.clear_ledger(mid)
        assert await store.get_ledger(mid, "products") == {}

    @pytest.mark.asyncio
    async def test_list_stale_running(self):
        store = InMemoryMigrationStore()
        mid = await _running(store)
        assert [r["id"] for r in await store.list_stale_running("9999-01-01T00:00:00+00:00")] == [mid]
        assert await store.list_stale_running("2000-01-01T00:00:00+00:00") == []


# ---------------------------------------------------------------------------
# Supabase backend
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_supabase():
    supabase_client = MagicMock()
    mock_table = MagicMock()
    for method in ("select", "insert", "update", "delete", "eq", "in_", "order", "limit", "range", "lt"):
        getattr(mock_table, method).return_value = mock_table
    mock_table.execute.return_value = MagicMock(data=[])
    supabase_client.client.table.return_value = mock_table
    supabase_client.client.rpc.return_value.execute.return_value = MagicMock(data="recorded")
    return supabase_client, mock_table


@pytest.mark.unit
class TestSupabaseMigrationStore:

    @pytest.mark.asyncio
    async def test_record_item_calls_rpc(self, mock_supabase):
        supabase_client, _ = mock_supabase
        store = SupabaseMigrationStore(supabase_client)
        result = await store.record_item("m1", "run-1", "products", "42", "migrated", internal_id="p-1")
        assert result == RECORDED
        name, params = supabase_client.client.rpc.call_args.args
        assert name == "record_migration_item"
        assert params == {
            "p_migration_id": "m1",
            "p_run_id": "run-1",
            "p_entity_type": "products",
            "p_source_id": "42",
            "p_outcome": "migrated",
            "p_internal_id": "p-1",
            "p_error": None,
        }

    @pytest.mark.asyncio
    async def test_transition_is_conditional_update(self, mock_supabase):
        supabase_client, table = mock_supabase
        table.execute.return_value = MagicMock(data=[{"id": "m1", "status": "paused"}])
        store = SupabaseMigrationStore(supabase_client)
        row = await store.transition("m1", "paused", expected_run_id="run-1")
        assert row["status"] == "paused"
        table.eq.assert_any_call("id", "m1")
        table.eq.assert_any_call("run_id", "run-1")
        table.in_.assert_called_once_with("status", ["running"])

    @pytest.mark.asyncio
    async def test_lost_claim_reports_running(self, mock_supabase):
        supabase_client, table = mock_supabase
        table.execute.side_effect = [
            MagicMock(data=[]),
            MagicMock(data=[{"id": "m1", "status": "running"}]),
        ]
        store = SupabaseMigrationStore(supabase_client)
        with pytest.raises(MigrationAlreadyRunningError):
            await store.transition("m1", "running")

    @pytest.mark.asyncio
    async def test_increment_counters_skips_zero(self, mock_supabase):
        supabase_client, _ = mock_supabase
        store = SupabaseMigrationStore(supabase_client)
        await store.increment_counters("m1", {"migrated_images": 0})
        supabase_client.client.rpc.assert_not_called()
        await store.increment_counters("m1", {"migrated_images": 2, "failed_images": 0})
        supabase_client.client.rpc.assert_called_once_with(
            "increment_migration_counters", {"p_migration_id": "m1", "p_deltas": {"migrated_images": 2}}
        )

    @pytest.mark.asyncio
    async def test_get_ledger_pages(self, mock_supabase):
        supabase_client, table = mock_supabase
        table.execute.return_value = MagicMock(data=[
            {"source_id": "1", "outcome": "migrated", "internal_id": "p-1"},
            {"source_id": "2", "outcome": "failed", "internal_id": None},
        ])
        store = SupabaseMigrationStore(supabase_client)
        ledger = await store.get_ledger("m1", "products")
        assert ledger["2"] == {"outcome": "failed", "internal_id": None}
        table.range.assert_called_once_with(0, 999)
