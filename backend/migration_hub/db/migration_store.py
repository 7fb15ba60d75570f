"""
Migration progress store — job records, counters, item ledger, checkpoints.

Two backends share one contract:
- SupabaseMigrationStore: store_migrations / migration_items tables, with
  the per-item record step done by the record_migration_item SQL function
  so counter, ledger row and error entry change together
- InMemoryMigrationStore: lock-protected dicts (tests, local dev)

Status changes go through ``transition``: a conditional update that only
succeeds when the current status is a legal predecessor of the target.
That conditional update is also how a run claims a job, so two concurrent
starts can never both win.
Version: 1.0.0
"""
import copy
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from migration_hub.clients.supabase_client import SupabaseClient
from migration_hub.core.constants.migration import (
    ALLOWED_TRANSITIONS,
    COUNTED_ENTITIES,
    DUPLICATE,
    NOT_OWNER,
    OUTCOME_FAILED,
    OUTCOME_MIGRATED,
    OVER_TOTAL,
    PHASES,
    RECORDED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONNECTED,
    STATUS_PAUSED,
    STATUS_FAILED,
    STATUS_RUNNING,
)
from migration_hub.core.exceptions import (
    InvalidTransitionError,
    MigrationAlreadyRunningError,
    MigrationNotFoundError,
)
from migration_hub.db.base_store import BaseStore

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "store_migrations"
ITEMS_TABLE = "migration_items"
LEDGER_PAGE_SIZE = 1000

COUNTER_COLUMNS = [
    f"{prefix}_{entity}"
    for entity in COUNTED_ENTITIES
    for prefix in ("total", "migrated", "failed")
]

# Statuses a reconnect leaves untouched so the run can resume with new tokens
RESUMABLE_ON_RECONNECT = (STATUS_PAUSED, STATUS_FAILED)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def zero_counters() -> Dict[str, int]:
    return {column: 0 for column in COUNTER_COLUMNS}


def error_entry(
    entity_type: str,
    message: str,
    category: str,
    source_id: Optional[str] = None,
    source_title: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "entity_type": entity_type,
        "source_id": source_id,
        "source_title": source_title,
        "category": category,
        "message": message,
        "timestamp": utc_now(),
    }


def _check_entity(entity: str, allowed: Iterable[str] = PHASES) -> None:
    if entity not in allowed:
        raise ValueError(f"Unknown entity type {entity!r}")


class MigrationStore:
    """
    Progress store contract.

    Invariant kept by every backend: for each entity type,
    migrated + failed <= total, and a source id is counted at most once
    per run (the item ledger).
    """

    # -- Backend primitives -------------------------------------------------

    async def get_migration(self, migration_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def _conditional_update(
        self,
        migration_id: str,
        allowed_from: Iterable[str],
        payload: Dict[str, Any],
        expected_run_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Apply payload only if status is in allowed_from; returns the new row or None."""
        raise NotImplementedError

    # -- Shared logic -------------------------------------------------------

    async def require_migration(self, migration_id: str) -> Dict[str, Any]:
        migration = await self.get_migration(migration_id)
        if not migration:
            raise MigrationNotFoundError(f"Migration {migration_id} not found")
        return migration

    async def transition(
        self,
        migration_id: str,
        target: str,
        extra: Optional[Dict[str, Any]] = None,
        expected_run_id: Optional[str] = None,
        allowed_from: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """
        Move a job to ``target`` if the state machine allows it.

        ``allowed_from`` narrows the legal predecessors further (e.g. only
        ``connected`` for a fresh run).

        Raises:
            MigrationNotFoundError: no such job
            MigrationAlreadyRunningError: target is running and another run owns it
            InvalidTransitionError: current status is not a legal predecessor
        """
        legal = ALLOWED_TRANSITIONS[target]
        allowed_from = legal if allowed_from is None else legal & frozenset(allowed_from)
        payload: Dict[str, Any] = {"status": target, "updated_at": utc_now()}
        if target in (STATUS_COMPLETED, STATUS_CANCELLED):
            payload["completed_at"] = utc_now()
        if extra:
            payload.update(extra)

        row = await self._conditional_update(migration_id, allowed_from, payload, expected_run_id)
        if row is not None:
            logger.info(f"Migration {migration_id} -> {target}")
            return row

        current = await self.require_migration(migration_id)
        if target == STATUS_RUNNING and current["status"] == STATUS_RUNNING:
            raise MigrationAlreadyRunningError(migration_id)
        raise InvalidTransitionError(migration_id, current["status"], target)

    # -- Operations implemented per backend ---------------------------------

    async def get_for_store(self, store_id: str, platform: Optional[str] = None) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def save_connection(
        self,
        store_id: str,
        platform: str,
        source_shop_id: str,
        source_shop_name: Optional[str],
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str] = None,
        token_expires_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    async def update_tokens(
        self,
        migration_id: str,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        token_expires_at: Optional[str],
    ) -> None:
        raise NotImplementedError

    async def set_total(self, migration_id: str, entity: str, total: int) -> None:
        raise NotImplementedError

    async def reconcile_total(self, migration_id: str, entity: str) -> int:
        """Lower total to migrated + failed (source shrank mid-phase); returns the new total."""
        raise NotImplementedError

    async def record_item(
        self,
        migration_id: str,
        run_id: str,
        entity: str,
        source_id: str,
        outcome: str,
        internal_id: Optional[str] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Count one processed item: ledger row + counter + optional error, together.

        Returns RECORDED, DUPLICATE (already in the ledger), OVER_TOTAL
        (would break migrated + failed <= total) or NOT_OWNER (job no longer
        running under this run id).
        """
        raise NotImplementedError

    async def increment_counters(self, migration_id: str, deltas: Dict[str, int]) -> None:
        raise NotImplementedError

    async def append_errors(self, migration_id: str, errors: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    async def save_checkpoint(self, migration_id: str, phase: str, **fields: Any) -> Dict[str, Any]:
        """Merge fields (cursor, started, done) into the phase checkpoint."""
        raise NotImplementedError

    async def get_ledger(self, migration_id: str, entity: str) -> Dict[str, Dict[str, Any]]:
        """source_id -> {outcome, internal_id} for items already processed."""
        raise NotImplementedError

    async def clear_ledger(self, migration_id: str) -> None:
        raise NotImplementedError

    async def list_stale_running(self, updated_before: str) -> List[Dict[str, Any]]:
        raise NotImplementedError


# ============================================
# Supabase backend
# ============================================
class SupabaseMigrationStore(BaseStore, MigrationStore):
    """Progress store backed by Supabase (Postgres)."""

    def __init__(self, supabase_client: SupabaseClient | None = None) -> None:
        super().__init__(supabase_client)

    async def get_migration(self, migration_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._select(MIGRATIONS_TABLE, filters={"id": migration_id})
        return rows[0] if rows else None

    async def get_for_store(self, store_id: str, platform: Optional[str] = None) -> Optional[Dict[str, Any]]:
        filters = {"store_id": store_id}
        if platform:
            filters["platform"] = platform
        rows = await self._select(
            MIGRATIONS_TABLE, filters=filters, order_by="updated_at", desc=True, limit=1
        )
        return rows[0] if rows else None

    async def _conditional_update(
        self,
        migration_id: str,
        allowed_from: Iterable[str],
        payload: Dict[str, Any],
        expected_run_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        filters = {"id": migration_id}
        if expected_run_id is not None:
            filters["run_id"] = expected_run_id
        rows = await self._update(
            MIGRATIONS_TABLE, filters, payload, in_filters={"status": list(allowed_from)}
        )
        return rows[0] if rows else None

    async def save_connection(
        self,
        store_id: str,
        platform: str,
        source_shop_id: str,
        source_shop_name: Optional[str],
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str] = None,
        token_expires_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        credentials = {
            "source_shop_id": source_shop_id,
            "source_shop_name": source_shop_name,
            "access_token_encrypted": access_token_encrypted,
            "refresh_token_encrypted": refresh_token_encrypted,
            "token_expires_at": token_expires_at,
            "updated_at": utc_now(),
        }
        existing = await self.get_for_store(store_id, platform)
        if existing is None:
            row = {
                "id": str(uuid.uuid4()),
                "store_id": store_id,
                "platform": platform,
                "status": STATUS_CONNECTED,
                "errors": [],
                "checkpoint": {},
                **zero_counters(),
                **credentials,
            }
            created = await self._insert_one(MIGRATIONS_TABLE, row)
            logger.info(f"Created migration {created['id']} store={store_id} platform={platform}")
            return created

        if existing["status"] == STATUS_RUNNING:
            raise MigrationAlreadyRunningError(existing["id"])
        if existing["status"] not in RESUMABLE_ON_RECONNECT:
            credentials["status"] = STATUS_CONNECTED
        rows = await self._update(MIGRATIONS_TABLE, {"id": existing["id"]}, credentials)
        logger.info(f"Reconnected migration {existing['id']} store={store_id} platform={platform}")
        return rows[0] if rows else {**existing, **credentials}

    async def update_tokens(
        self,
        migration_id: str,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        token_expires_at: Optional[str],
    ) -> None:
        await self._update(MIGRATIONS_TABLE, {"id": migration_id}, {
            "access_token_encrypted": access_token_encrypted,
            "refresh_token_encrypted": refresh_token_encrypted,
            "token_expires_at": token_expires_at,
            "updated_at": utc_now(),
        })

    async def set_total(self, migration_id: str, entity: str, total: int) -> None:
        _check_entity(entity, COUNTED_ENTITIES)
        await self._update(
            MIGRATIONS_TABLE, {"id": migration_id}, {f"total_{entity}": max(0, total), "updated_at": utc_now()}
        )

    async def reconcile_total(self, migration_id: str, entity: str) -> int:
        _check_entity(entity)
        migration = await self.require_migration(migration_id)
        accounted = (migration.get(f"migrated_{entity}") or 0) + (migration.get(f"failed_{entity}") or 0)
        await self.set_total(migration_id, entity, accounted)
        return accounted

    async def record_item(
        self,
        migration_id: str,
        run_id: str,
        entity: str,
        source_id: str,
        outcome: str,
        internal_id: Optional[str] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> str:
        _check_entity(entity)
        return await self._rpc("record_migration_item", {
            "p_migration_id": migration_id,
            "p_run_id": run_id,
            "p_entity_type": entity,
            "p_source_id": source_id,
            "p_outcome": outcome,
            "p_internal_id": internal_id,
            "p_error": error,
        })

    async def increment_counters(self, migration_id: str, deltas: Dict[str, int]) -> None:
        deltas = {k: v for k, v in deltas.items() if v}
        if not deltas:
            return
        unknown = set(deltas) - set(COUNTER_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown counter columns {sorted(unknown)}")
        await self._rpc("increment_migration_counters", {
            "p_migration_id": migration_id, "p_deltas": deltas,
        })

    async def append_errors(self, migration_id: str, errors: List[Dict[str, Any]]) -> None:
        if not errors:
            return
        await self._rpc("append_migration_errors", {
            "p_migration_id": migration_id, "p_errors": errors,
        })

    async def save_checkpoint(self, migration_id: str, phase: str, **fields: Any) -> Dict[str, Any]:
        # Only the owning run writes checkpoints, so read-then-update is safe
        _check_entity(phase)
        migration = await self.require_migration(migration_id)
        checkpoint = dict(migration.get("checkpoint") or {})
        checkpoint[phase] = {**(checkpoint.get(phase) or {}), **fields}
        await self._update(
            MIGRATIONS_TABLE, {"id": migration_id}, {"checkpoint": checkpoint, "updated_at": utc_now()}
        )
        return checkpoint

    async def get_ledger(self, migration_id: str, entity: str) -> Dict[str, Dict[str, Any]]:
        ledger: Dict[str, Dict[str, Any]] = {}
        start = 0
        while True:
            query = (
                self._client.table(ITEMS_TABLE)
                .select("source_id, outcome, internal_id")
                .eq("migration_id", migration_id)
                .eq("entity_type", entity)
                .order("source_id")
                .range(start, start + LEDGER_PAGE_SIZE - 1)
            )
            rows = self._execute(ITEMS_TABLE, query).data or []
            for row in rows:
                ledger[row["source_id"]] = {"outcome": row["outcome"], "internal_id": row.get("internal_id")}
            if len(rows) < LEDGER_PAGE_SIZE:
                return ledger
            start += LEDGER_PAGE_SIZE

    async def clear_ledger(self, migration_id: str) -> None:
        await self._delete(ITEMS_TABLE, filters={"migration_id": migration_id})

    async def list_stale_running(self, updated_before: str) -> List[Dict[str, Any]]:
        query = (
            self._client.table(MIGRATIONS_TABLE)
            .select("*")
            .eq("status", STATUS_RUNNING)
            .lt("updated_at", updated_before)
        )
        return self._execute(MIGRATIONS_TABLE, query).data or []


# ============================================
# In-memory backend
# ============================================
class InMemoryMigrationStore(MigrationStore):
    """Progress store held in process memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._migrations: Dict[str, Dict[str, Any]] = {}
        # (migration_id, entity, source_id) -> {outcome, internal_id, error}
        self._items: Dict[tuple, Dict[str, Any]] = {}

    def _row(self, migration_id: str) -> Dict[str, Any]:
        row = self._migrations.get(migration_id)
        if row is None:
            raise MigrationNotFoundError(f"Migration {migration_id} not found")
        return row

    async def get_migration(self, migration_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._migrations.get(migration_id)
            return copy.deepcopy(row) if row else None

    async def get_for_store(self, store_id: str, platform: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = [
                r for r in self._migrations.values()
                if r["store_id"] == store_id and (platform is None or r["platform"] == platform)
            ]
            if not rows:
                return None
            return copy.deepcopy(max(rows, key=lambda r: r["updated_at"]))

    async def _conditional_update(
        self,
        migration_id: str,
        allowed_from: Iterable[str],
        payload: Dict[str, Any],
        expected_run_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._migrations.get(migration_id)
            if row is None or row["status"] not in set(allowed_from):
                return None
            if expected_run_id is not None and row.get("run_id") != expected_run_id:
                return None
            row.update(copy.deepcopy(payload))
            return copy.deepcopy(row)

    async def save_connection(
        self,
        store_id: str,
        platform: str,
        source_shop_id: str,
        source_shop_name: Optional[str],
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str] = None,
        token_expires_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = utc_now()
        credentials = {
            "source_shop_id": source_shop_id,
            "source_shop_name": source_shop_name,
            "access_token_encrypted": access_token_encrypted,
            "refresh_token_encrypted": refresh_token_encrypted,
            "token_expires_at": token_expires_at,
            "updated_at": now,
        }
        with self._lock:
            existing = next(
                (r for r in self._migrations.values()
                 if r["store_id"] == store_id and r["platform"] == platform),
                None,
            )
            if existing is None:
                row = {
                    "id": str(uuid.uuid4()),
                    "store_id": store_id,
                    "platform": platform,
                    "status": STATUS_CONNECTED,
                    "run_id": None,
                    "config": None,
                    "errors": [],
                    "checkpoint": {},
                    "started_at": None,
                    "completed_at": None,
                    "created_at": now,
                    **zero_counters(),
                    **credentials,
                }
                self._migrations[row["id"]] = row
                return copy.deepcopy(row)

            if existing["status"] == STATUS_RUNNING:
                raise MigrationAlreadyRunningError(existing["id"])
            if existing["status"] not in RESUMABLE_ON_RECONNECT:
                credentials["status"] = STATUS_CONNECTED
            existing.update(credentials)
            return copy.deepcopy(existing)

    async def update_tokens(
        self,
        migration_id: str,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        token_expires_at: Optional[str],
    ) -> None:
        with self._lock:
            self._row(migration_id).update({
                "access_token_encrypted": access_token_encrypted,
                "refresh_token_encrypted": refresh_token_encrypted,
                "token_expires_at": token_expires_at,
                "updated_at": utc_now(),
            })

    async def set_total(self, migration_id: str, entity: str, total: int) -> None:
        _check_entity(entity, COUNTED_ENTITIES)
        with self._lock:
            row = self._row(migration_id)
            row[f"total_{entity}"] = max(0, total)
            row["updated_at"] = utc_now()

    async def reconcile_total(self, migration_id: str, entity: str) -> int:
        _check_entity(entity)
        with self._lock:
            row = self._row(migration_id)
            accounted = row[f"migrated_{entity}"] + row[f"failed_{entity}"]
            row[f"total_{entity}"] = accounted
            row["updated_at"] = utc_now()
            return accounted

    async def record_item(
        self,
        migration_id: str,
        run_id: str,
        entity: str,
        source_id: str,
        outcome: str,
        internal_id: Optional[str] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> str:
        _check_entity(entity)
        if outcome not in (OUTCOME_MIGRATED, OUTCOME_FAILED):
            raise ValueError(f"Unknown outcome {outcome!r}")
        with self._lock:
            row = self._row(migration_id)
            if row["status"] != STATUS_RUNNING or row.get("run_id") != run_id:
                return NOT_OWNER
            if row[f"migrated_{entity}"] + row[f"failed_{entity}"] >= row[f"total_{entity}"]:
                return OVER_TOTAL
            key = (migration_id, entity, source_id)
            if key in self._items:
                return DUPLICATE
            self._items[key] = {"outcome": outcome, "internal_id": internal_id, "error": error}
            row[f"{outcome}_{entity}"] += 1
            if error:
                row["errors"].append(copy.deepcopy(error))
            row["updated_at"] = utc_now()
            return RECORDED

    async def increment_counters(self, migration_id: str, deltas: Dict[str, int]) -> None:
        unknown = set(deltas) - set(COUNTER_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown counter columns {sorted(unknown)}")
        with self._lock:
            row = self._row(migration_id)
            for column, delta in deltas.items():
                row[column] += delta
            row["updated_at"] = utc_now()

    async def append_errors(self, migration_id: str, errors: List[Dict[str, Any]]) -> None:
        if not errors:
            return
        with self._lock:
            row = self._row(migration_id)
            row["errors"].extend(copy.deepcopy(errors))
            row["updated_at"] = utc_now()

    async def save_checkpoint(self, migration_id: str, phase: str, **fields: Any) -> Dict[str, Any]:
        _check_entity(phase)
        with self._lock:
            row = self._row(migration_id)
            checkpoint = row.setdefault("checkpoint", {})
            checkpoint[phase] = {**(checkpoint.get(phase) or {}), **fields}
            row["updated_at"] = utc_now()
            return copy.deepcopy(checkpoint)

    async def get_ledger(self, migration_id: str, entity: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                source_id: {"outcome": item["outcome"], "internal_id": item["internal_id"]}
                for (m_id, ent, source_id), item in self._items.items()
                if m_id == migration_id and ent == entity
            }

    async def clear_ledger(self, migration_id: str) -> None:
        with self._lock:
            for key in [k for k in self._items if k[0] == migration_id]:
                del self._items[key]

    async def list_stale_running(self, updated_before: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(r) for r in self._migrations.values()
                if r["status"] == STATUS_RUNNING and r["updated_at"] < updated_before
            ]
