"""
Migration orchestrator — state machine and the phase pipeline.

start / resume / cancel / reset move a job through the state machine via
the progress store's conditional updates. ``run`` is executed by the
Celery worker: phases products -> collections -> customers -> coupons ->
orders, each paginated from its checkpoint with one page of read-ahead.

Failure policy:
- one source record failing (transform, rejected row) -> failed counter
  + error entry, the phase continues
- rate limit retries exhausted -> job paused
- credentials rejected after a refresh attempt -> job failed, reconnect
- transport / database / provider errors -> job failed, progress kept
Version: 1.0.0
"""
import asyncio
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from migration_hub.clients.platform_connector import get_connector
from migration_hub.core.config import Settings
from migration_hub.core.constants.migration import (
    CATEGORY_AUTH,
    CATEGORY_FATAL,
    CATEGORY_ITEM,
    CATEGORY_RATE_LIMIT,
    CATEGORY_WARNING,
    COLLECTIONS,
    COUPONS,
    CUSTOMERS,
    IMAGES,
    NOT_OWNER,
    ORDERS,
    OUTCOME_FAILED,
    OUTCOME_MIGRATED,
    OVER_TOTAL,
    PHASES,
    PRODUCTS,
    RECONNECT_REQUIRED_MESSAGE,
    RECORDED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONNECTED,
    STATUS_FAILED,
    STATUS_PAUSED,
    STATUS_RUNNING,
)
from migration_hub.core.exceptions import (
    AuthenticationError,
    ConnectionTimeoutError,
    InvalidTransitionError,
    MigrationNotFoundError,
    NonRetryableError,
    RateLimitError,
    RetryableError,
)
from migration_hub.db.catalog_store import CatalogStore
from migration_hub.db.image_store import ImageStore
from migration_hub.db.migration_store import MigrationStore, error_entry, utc_now, zero_counters
from migration_hub.schemas.catalog import TransformResult
from migration_hub.schemas.migration import (
    MigrationConfig,
    MigrationError,
    MigrationStatusResponse,
    progress_from_row,
)
from migration_hub.services.connector_session import ConnectorSession
from migration_hub.utils import etsy_normalize, shopify_normalize
from migration_hub.utils.credential_vault import CredentialVault
from migration_hub.utils.rate_limiter import get_platform_rate_limiter

logger = logging.getLogger("migration_orchestrator")

NORMALIZERS = {
    "shopify": shopify_normalize,
    "etsy": etsy_normalize,
}

# _run_phase outcomes
PHASE_DONE = "done"
PHASE_STOPPED = "stopped"
PHASE_DEADLINE = "deadline"
SKIPPED = "skipped"

JOB_ERROR_CATEGORIES = (CATEGORY_AUTH, CATEGORY_RATE_LIMIT, CATEGORY_FATAL)


def compute_current_phase(row: Dict[str, Any]) -> str:
    """Phase shown to the merchant, derived from counters only."""
    if row.get("status") == STATUS_COMPLETED:
        return "done"
    for phase in (PRODUCTS, COLLECTIONS, CUSTOMERS, COUPONS):
        total = row.get(f"total_{phase}") or 0
        accounted = (row.get(f"migrated_{phase}") or 0) + (row.get(f"failed_{phase}") or 0)
        if total == 0 or accounted < total:
            return phase
    return ORDERS


def build_progress(
    row: Dict[str, Any], include_errors: bool = False, error_limit: int = 100
) -> MigrationStatusResponse:
    errors = row.get("errors") or []
    reported = [e for e in errors if e.get("category") != CATEGORY_WARNING]
    job_errors = [e for e in errors if e.get("category") in JOB_ERROR_CATEGORIES]
    return MigrationStatusResponse(
        migration_id=row["id"],
        store_id=row["store_id"],
        platform=row["platform"],
        status=row["status"],
        current_phase=compute_current_phase(row),
        source_shop_name=row.get("source_shop_name"),
        products=progress_from_row(row, PRODUCTS),
        collections=progress_from_row(row, COLLECTIONS),
        customers=progress_from_row(row, CUSTOMERS),
        coupons=progress_from_row(row, COUPONS),
        orders=progress_from_row(row, ORDERS),
        images=progress_from_row(row, IMAGES),
        error_count=len(reported),
        last_error_category=job_errors[-1]["category"] if job_errors else None,
        errors=[MigrationError(**e) for e in errors[-error_limit:]] if include_errors else None,
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        updated_at=row.get("updated_at"),
    )


def anonymous_source_id(raw: Dict[str, Any]) -> str:
    """Stable ledger key for a record that carries no usable id."""
    digest = hashlib.sha1(json.dumps(raw, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"unidentified-{digest[:16]}"


@dataclass
class RunContext:
    migration_id: str
    run_id: str
    store_id: str
    platform: str
    config: MigrationConfig
    session: ConnectorSession
    deadline: float
    product_ids: Dict[str, str] = field(default_factory=dict)
    customer_ids: Dict[str, str] = field(default_factory=dict)


class MigrationOrchestrator:
    """Drives migration jobs through their lifecycle."""

    def __init__(
        self,
        store: MigrationStore,
        catalog: CatalogStore,
        images: ImageStore,
        vault: CredentialVault,
        settings: Settings,
        enqueue: Optional[Callable[[str, str], Any]] = None,
        connector_factory: Callable = get_connector,
        limiter_factory: Callable = get_platform_rate_limiter,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._images = images
        self._vault = vault
        self._settings = settings
        self._enqueue = enqueue
        self._connector_factory = connector_factory
        self._limiter_factory = limiter_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def start(self, migration_id: str, config: MigrationConfig) -> Dict[str, Any]:
        """
        Claim the job for a new run and enqueue it.

        From ``connected`` the run starts fresh (counters, errors, checkpoint
        and ledger cleared); from ``paused`` / ``failed`` it resumes.
        """
        migration = await self._store.require_migration(migration_id)
        self._connector_factory(migration["platform"], self._settings)

        run_id = str(uuid.uuid4())
        extra: Dict[str, Any] = {
            "run_id": run_id,
            "config": config.model_dump(),
            "completed_at": None,
        }
        fresh = migration["status"] == STATUS_CONNECTED
        if fresh:
            extra.update(zero_counters())
            extra.update({"errors": [], "checkpoint": {}, "started_at": utc_now()})
            allowed_from = [STATUS_CONNECTED]
        else:
            allowed_from = [STATUS_PAUSED, STATUS_FAILED]

        row = await self._store.transition(
            migration_id, STATUS_RUNNING, extra=extra, allowed_from=allowed_from
        )
        if fresh:
            await self._store.clear_ledger(migration_id)

        logger.info(f"Migration {migration_id} started run={run_id} fresh={fresh}")
        if self._enqueue is not None:
            try:
                self._enqueue(migration_id, run_id)
            except Exception as exc:
                logger.error(f"Migration {migration_id} enqueue failed run={run_id}: {exc!r}")
                await self._abort(migration_id, run_id, STATUS_FAILED, CATEGORY_FATAL,
                                  f"Could not queue the migration worker: {exc}")
                raise ConnectionTimeoutError(f"Task queue unavailable: {exc}") from exc
        return row

    async def resume(self, migration_id: str) -> Dict[str, Any]:
        """Restart a paused or failed job with its stored config."""
        migration = await self._store.require_migration(migration_id)
        config = MigrationConfig(**(migration.get("config") or {}))
        return await self.start(migration_id, config)

    async def cancel(self, migration_id: str) -> Dict[str, Any]:
        """Running loops notice at the next item and stop."""
        return await self._store.transition(migration_id, STATUS_CANCELLED)

    async def reset(self, migration_id: str) -> Dict[str, Any]:
        """Return a finished job to ``connected`` so it can be re-imported."""
        return await self._store.transition(migration_id, STATUS_CONNECTED, extra={"run_id": None})

    async def get_progress(
        self,
        migration_id: Optional[str] = None,
        store_id: Optional[str] = None,
        include_errors: bool = False,
    ) -> MigrationStatusResponse:
        if migration_id:
            row = await self._store.require_migration(migration_id)
        elif store_id:
            row = await self._store.get_for_store(store_id)
            if not row:
                raise MigrationNotFoundError(f"No migration for store {store_id}")
        else:
            raise MigrationNotFoundError("migration_id or store_id is required")
        return build_progress(row, include_errors, self._settings.migration_error_display_limit)

    async def fail_stale_runs(self, stale_minutes: Optional[int] = None) -> int:
        """Mark running jobs with no progress for too long as failed (resumable)."""
        minutes = stale_minutes or self._settings.migration_stale_minutes
        cutoff = (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()
        failed = 0
        for row in await self._store.list_stale_running(cutoff):
            try:
                await self._store.transition(row["id"], STATUS_FAILED, expected_run_id=row.get("run_id"))
            except InvalidTransitionError:
                continue
            await self._store.append_errors(row["id"], [error_entry(
                compute_current_phase(row),
                f"Worker stopped reporting progress for {minutes} minutes",
                CATEGORY_FATAL,
            )])
            logger.warning(f"Stale migration {row['id']} marked failed")
            failed += 1
        return failed

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run(self, migration_id: str, run_id: str) -> str:
        """
        Execute (or continue) a run. Returns the job status when the run ends.

        The deadline pauses the job at the last checkpoint; the caller is
        expected to resume it.
        """
        migration = await self._store.require_migration(migration_id)
        if migration["status"] != STATUS_RUNNING or migration.get("run_id") != run_id:
            logger.info(f"Migration {migration_id} not owned by run={run_id}, skipping")
            return migration["status"]

        try:
            ctx = RunContext(
                migration_id=migration_id,
                run_id=run_id,
                store_id=migration["store_id"],
                platform=migration["platform"],
                config=MigrationConfig(**(migration.get("config") or {})),
                session=self._open_session(migration),
                deadline=self._clock() + self._settings.migration_max_run_seconds,
            )
            for phase in PHASES:
                if not ctx.config.is_enabled(phase):
                    continue
                if not ctx.session.supports_entity(phase):
                    logger.info(f"{ctx.platform} does not offer {phase}, skipping phase")
                    continue
                outcome = await self._run_phase(ctx, phase)
                if outcome == PHASE_STOPPED:
                    return await self._current_status(migration_id)
                if outcome == PHASE_DEADLINE:
                    status = await self._finish(ctx, STATUS_PAUSED)
                    if status == STATUS_PAUSED:
                        return await self._continue_later(migration_id)
                    return status

            return await self._finish(ctx, STATUS_COMPLETED)

        except RateLimitError as exc:
            return await self._abort(migration_id, run_id, STATUS_PAUSED, CATEGORY_RATE_LIMIT,
                                     f"Rate limit retries exhausted: {exc}")
        except AuthenticationError as exc:
            logger.warning(f"Migration {migration_id} credentials rejected: {exc}")
            return await self._abort(migration_id, run_id, STATUS_FAILED, CATEGORY_AUTH,
                                     RECONNECT_REQUIRED_MESSAGE)
        except RetryableError as exc:
            return await self._abort(migration_id, run_id, STATUS_FAILED, CATEGORY_FATAL, str(exc))
        except Exception as exc:
            logger.exception(f"Migration {migration_id} crashed")
            await self._abort(migration_id, run_id, STATUS_FAILED, CATEGORY_FATAL,
                              f"Unexpected error: {exc}")
            raise

    def _open_session(self, migration: Dict[str, Any]) -> ConnectorSession:
        return ConnectorSession(
            connector=self._connector_factory(migration["platform"], self._settings),
            migration=migration,
            vault=self._vault,
            store=self._store,
            limiter=self._limiter_factory(migration["platform"]),
            settings=self._settings,
        )

    async def _current_status(self, migration_id: str) -> str:
        row = await self._store.get_migration(migration_id)
        return row["status"] if row else STATUS_CANCELLED

    async def _finish(self, ctx: RunContext, target: str) -> str:
        try:
            await self._store.transition(ctx.migration_id, target, expected_run_id=ctx.run_id)
        except InvalidTransitionError:
            return await self._current_status(ctx.migration_id)
        logger.info(f"Migration {ctx.migration_id} run={ctx.run_id} ended {target}")
        return target

    async def _continue_later(self, migration_id: str) -> str:
        """Re-claim a deadline-paused job and enqueue the next run."""
        try:
            row = await self.resume(migration_id)
        except InvalidTransitionError:
            return await self._current_status(migration_id)
        return row["status"]

    async def _abort(self, migration_id: str, run_id: str, target: str, category: str, message: str) -> str:
        """Stop the job with a job-level error entry, unless another actor already moved it."""
        migration = await self._store.get_migration(migration_id) or {}
        try:
            await self._store.transition(migration_id, target, expected_run_id=run_id)
        except InvalidTransitionError:
            return migration.get("status") or STATUS_CANCELLED
        await self._store.append_errors(migration_id, [
            error_entry(compute_current_phase(migration), message, category)
        ])
        logger.warning(f"Migration {migration_id} -> {target} category={category} detail={message}")
        return target

    async def _run_phase(self, ctx: RunContext, phase: str) -> str:
        migration = await self._store.require_migration(ctx.migration_id)
        checkpoint = (migration.get("checkpoint") or {}).get(phase) or {}
        if checkpoint.get("done"):
            return PHASE_DONE

        if not checkpoint.get("started"):
            total = await ctx.session.count(phase)
            await self._store.set_total(ctx.migration_id, phase, total)
            await self._store.save_checkpoint(ctx.migration_id, phase, started=True, cursor=None, done=False)
            cursor = None
            if phase == PRODUCTS:
                await self._catalog.remove_demo_products(ctx.store_id)
            logger.info(f"Migration {ctx.migration_id} phase {phase} started total={total}")
        else:
            cursor = checkpoint.get("cursor")
            logger.info(f"Migration {ctx.migration_id} phase {phase} resumed cursor={cursor}")

        await self._load_references(ctx, phase)
        ledger = await self._store.get_ledger(ctx.migration_id, phase)
        over_total_warned = False

        next_page = asyncio.create_task(ctx.session.list_page(phase, cursor))
        try:
            while True:
                page = await next_page
                next_page = None
                if page.next_cursor is not None:
                    next_page = asyncio.create_task(ctx.session.list_page(phase, page.next_cursor))

                for raw in page.items:
                    row = await self._store.get_migration(ctx.migration_id)
                    if not row or row["status"] != STATUS_RUNNING or row.get("run_id") != ctx.run_id:
                        logger.info(f"Migration {ctx.migration_id} run={ctx.run_id} stopping at {phase}")
                        return PHASE_STOPPED

                    result = await self._process_item(ctx, phase, raw, ledger, row)
                    if result == NOT_OWNER:
                        return PHASE_STOPPED
                    if result == OVER_TOTAL and not over_total_warned:
                        over_total_warned = True
                        await self._store.append_errors(ctx.migration_id, [error_entry(
                            phase,
                            "Source gained records after the import started; extra records were not imported",
                            CATEGORY_WARNING,
                        )])

                await self._store.save_checkpoint(ctx.migration_id, phase, cursor=page.next_cursor)
                if page.next_cursor is None:
                    break
                if self._clock() > ctx.deadline:
                    logger.info(f"Migration {ctx.migration_id} hit run deadline in {phase}")
                    return PHASE_DEADLINE
        finally:
            if next_page is not None:
                if next_page.done() and not next_page.cancelled():
                    next_page.exception()
                else:
                    next_page.cancel()

        await self._close_phase(ctx, phase)
        return PHASE_DONE

    async def _close_phase(self, ctx: RunContext, phase: str) -> None:
        row = await self._store.require_migration(ctx.migration_id)
        accounted = (row.get(f"migrated_{phase}") or 0) + (row.get(f"failed_{phase}") or 0)
        total = row.get(f"total_{phase}") or 0
        if accounted < total:
            await self._store.reconcile_total(ctx.migration_id, phase)
            await self._store.append_errors(ctx.migration_id, [error_entry(
                phase,
                f"Source had {total - accounted} fewer records than counted at start; total adjusted",
                CATEGORY_WARNING,
            )])
        await self._store.save_checkpoint(ctx.migration_id, phase, done=True)
        logger.info(f"Migration {ctx.migration_id} phase {phase} done")

    async def _load_references(self, ctx: RunContext, phase: str) -> None:
        """Products / customers imported by this job, for linking later phases."""
        if phase in (COLLECTIONS, ORDERS):
            ctx.product_ids = _migrated_ids(await self._store.get_ledger(ctx.migration_id, PRODUCTS))
        if phase == ORDERS:
            ctx.customer_ids = _migrated_ids(await self._store.get_ledger(ctx.migration_id, CUSTOMERS))

    async def _process_item(
        self,
        ctx: RunContext,
        phase: str,
        raw: Dict[str, Any],
        ledger: Dict[str, Dict[str, Any]],
        row: Dict[str, Any],
    ) -> str:
        normalizer = NORMALIZERS[ctx.platform]
        reference = normalizer.source_reference(raw)
        source_id = reference["source_id"] or anonymous_source_id(raw)
        if source_id in ledger:
            return SKIPPED

        accounted = (row.get(f"migrated_{phase}") or 0) + (row.get(f"failed_{phase}") or 0)
        if accounted >= (row.get(f"total_{phase}") or 0):
            return OVER_TOTAL

        try:
            result = normalizer.TRANSFORMERS[phase](raw)
        except Exception as exc:
            logger.exception(f"Transform of {phase} {source_id} raised")
            result = TransformResult.failure(f"Malformed source record: {exc}")
        warnings = list(result.warnings)
        internal_id = None
        error_message = result.error
        if result.ok:
            try:
                internal_id = await self._persist(ctx, phase, result.entity, warnings)
            except RetryableError:
                raise
            except NonRetryableError as exc:
                error_message = str(exc)
            except Exception as exc:
                logger.exception(f"Unexpected error importing {phase} {source_id}")
                error_message = f"Unexpected error: {exc}"

        outcome = OUTCOME_MIGRATED if error_message is None else OUTCOME_FAILED
        error = None
        if error_message is not None:
            error = error_entry(phase, error_message, CATEGORY_ITEM, source_id, reference["source_title"])
        recorded = await self._store.record_item(
            ctx.migration_id, ctx.run_id, phase, source_id, outcome, internal_id, error
        )
        if recorded == RECORDED:
            ledger[source_id] = {"outcome": outcome, "internal_id": internal_id}
            if warnings:
                await self._store.append_errors(ctx.migration_id, [
                    error_entry(phase, w, CATEGORY_WARNING, source_id, reference["source_title"])
                    for w in warnings
                ])
        return recorded

    async def _persist(self, ctx: RunContext, phase: str, entity: Any, warnings: List[str]) -> str:
        if phase == PRODUCTS:
            product_id = await self._catalog.upsert_product(
                ctx.store_id, ctx.platform, entity, ctx.config.product_status
            )
            if entity.images:
                await self._import_images(ctx, product_id, entity)
            return product_id

        if phase == COLLECTIONS:
            members = [ctx.product_ids[s] for s in entity.product_source_ids if s in ctx.product_ids]
            dropped = len(entity.product_source_ids) - len(members)
            if dropped:
                warnings.append(f"{dropped} member products were not imported by this migration and were skipped")
            return await self._catalog.upsert_collection(ctx.store_id, ctx.platform, entity, members)

        if phase == CUSTOMERS:
            customer_id = await self._catalog.upsert_customer(ctx.store_id, ctx.platform, entity)
            ctx.customer_ids[entity.source_id] = customer_id
            return customer_id

        if phase == COUPONS:
            return await self._catalog.upsert_coupon(ctx.store_id, ctx.platform, entity)

        customer_id = ctx.customer_ids.get(entity.customer_source_id) if entity.customer_source_id else None
        if customer_id is None and entity.customer_email:
            customer_id = await self._catalog.find_customer_by_email(ctx.store_id, entity.customer_email)
        return await self._catalog.upsert_order(
            ctx.store_id, ctx.platform, entity, customer_id, ctx.product_ids
        )

    async def _import_images(self, ctx: RunContext, product_id: str, product: Any) -> None:
        results = await self._images.rehost_images(
            ctx.store_id, product_id, product.images, self._settings.migration_image_batch_size
        )
        succeeded = sum(1 for r in results if r.success)
        await self._store.increment_counters(ctx.migration_id, {
            "total_images": len(results),
            "migrated_images": succeeded,
            "failed_images": len(results) - succeeded,
        })
        failures = [
            error_entry(IMAGES, r.error or "Image import failed", CATEGORY_ITEM, product.source_id, r.source_url)
            for r in results if not r.success
        ]
        await self._store.append_errors(ctx.migration_id, failures)


def _migrated_ids(ledger: Dict[str, Dict[str, Any]]) -> Dict[str, str]:
    return {
        source_id: item["internal_id"]
        for source_id, item in ledger.items()
        if item.get("outcome") == OUTCOME_MIGRATED and item.get("internal_id")
    }
