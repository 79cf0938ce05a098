"""Sync Orchestrator - one run of the provider hierarchy for one connection.

WHAT:
    Drives a sync run end to end:

        resolve token -> list/reconcile ad accounts -> per account:
            campaigns -> ad groups per campaign -> ads per ad group
            -> insights per level -> aggregate

    and records the outcome on a SyncHistory row
    (pending -> running -> success | partial_failure | failed).

WHY:
    - One failing step (a 500 on one account's campaigns) must not lose the
      rest of the run. Failures are recorded per step and the run moves on.
    - Exactly one run per connection at a time. The lock is a
      compare-and-set on `connections.sync_status`. Every progress commit
      bumps `sync_started_at` as a heartbeat; a lock whose heartbeat is older
      than the stale threshold can be taken over.
    - A run is claimed pending -> running by compare-and-set, so a duplicate
      worker job for the same run does nothing.
    - Counts are committed as each step completes so the dashboard can
      watch a run progress.

RULES:
    - execute_run never raises. Unexpected errors become a `failed` run and
      are reported to Sentry.
    - AuthError in a step -> one forced token refresh and a single retry. If
      the refresh is rejected the connection is expired and no further
      accounts are processed.
    - RateLimitError / TransientError are retried inside the step with
      bounded backoff (see provider_client.call_with_retries).

REFERENCES:
    - adsync/services/sync_scheduler.py (triggers)
    - adsync/workers/arq_worker.py (process_sync_run)
    - adsync/services/entity_reconciler.py, insight_aggregator.py
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from adsync.database import SessionLocal
from adsync.deps import Settings, get_settings
from adsync.models import (
    AdAccount,
    Connection,
    ConnectionStatusEnum,
    EntityTypeEnum,
    SyncHistory,
    SyncStatusEnum,
    SyncTypeEnum,
    SYNC_ERROR,
    SYNC_IDLE,
    SYNC_RUNNING,
)
from adsync.schemas import DateRange, RawInsight
from adsync.services.entity_reconciler import EntityReconciler
from adsync.services.insight_aggregator import InsightAggregator
from adsync.services.provider_client import (
    AdsProviderClient,
    FetchResult,
    RetryPolicy,
    build_provider_client,
    call_with_retries,
)
from adsync.services.provider_errors import (
    CATEGORY_AUTH,
    CATEGORY_SYSTEM,
    AuthError,
    ProviderError,
    categorize_error,
)
from adsync.services.token_service import TokenLifecycleManager
from adsync.telemetry import capture_exception
from adsync.utils.clock import today_in_timezone, utcnow

logger = logging.getLogger(__name__)

# Parallel sync configuration
MAX_PARALLEL_SYNCS = 5  # Max concurrent connection syncs

NEXT_SYNC_INTERVAL = timedelta(hours=1)
INSIGHT_WINDOW = "day"

# Caps keep the run row readable when a provider returns thousands of bad records
MAX_RECORD_ERRORS = 200
MAX_QUALITY_WARNINGS = 50

INSIGHT_LEVELS = (EntityTypeEnum.campaign, EntityTypeEnum.ad_group, EntityTypeEnum.ad)


# =============================================================================
# DATA CLASSES
# =============================================================================

class SyncRunResult:
    """Terminal summary of one run."""

    def __init__(self, run_id: UUID, status: SyncStatusEnum):
        self.run_id = run_id
        self.status = status
        self.campaigns_synced = 0
        self.ad_groups_synced = 0
        self.ads_synced = 0
        self.insights_synced = 0
        self.errors: List[Dict[str, Any]] = []

    @classmethod
    def from_run(cls, run: SyncHistory) -> "SyncRunResult":
        result = cls(run.id, run.status)
        result.campaigns_synced = run.campaigns_synced or 0
        result.ad_groups_synced = run.ad_groups_synced or 0
        result.ads_synced = run.ads_synced or 0
        result.insights_synced = run.insights_synced or 0
        result.errors = list(run.errors or [])
        return result

    @property
    def success(self) -> bool:
        return self.status == SyncStatusEnum.success

    def __repr__(self):
        return (
            f"SyncRunResult(status={self.status.value}, campaigns={self.campaigns_synced}, "
            f"ad_groups={self.ad_groups_synced}, ads={self.ads_synced}, "
            f"insights={self.insights_synced}, errors={len(self.errors)})"
        )


class _RunContext:
    """Mutable bookkeeping for a run in progress."""

    def __init__(self, run: SyncHistory, connection: Optional[Connection]):
        self.run_id = run.id
        self.sync_type = run.sync_type
        self.connection_id = run.connection_id
        self.provider = run.provider
        self.account_id = run.account_id
        self.connection = connection
        self.steps_ok = 0
        self.steps_failed = 0
        self.errors: List[Dict[str, Any]] = []
        self.record_errors: List[Dict[str, Any]] = []
        self.warnings: List[str] = []
        self.accounts: List[Dict[str, Any]] = []
        self.rejected = 0
        self.changes = 0
        self.date_range: Optional[DateRange] = None
        self.fatal_message: Optional[str] = None
        self.fatal_category: Optional[str] = None
        self.stop = False

    def fail(self, message: str, category: str) -> None:
        self.fatal_message = message
        self.fatal_category = category

    def terminal_status(self) -> SyncStatusEnum:
        if self.fatal_message:
            return SyncStatusEnum.failed
        if self.steps_failed and self.steps_ok:
            return SyncStatusEnum.partial_failure
        if self.steps_failed:
            return SyncStatusEnum.failed
        return SyncStatusEnum.success

    def error_message(self) -> Optional[str]:
        if self.fatal_message:
            return self.fatal_message
        if self.errors:
            return f"{len(self.errors)} step(s) failed; first: {self.errors[0]['message']}"
        return None

    def error_category(self) -> Optional[str]:
        if self.fatal_category:
            return self.fatal_category
        if self.errors:
            return self.errors[0]["category"]
        return None


# =============================================================================
# RUN LOCK
# =============================================================================

def acquire_run_lock(
    db: Session,
    connection_id: UUID,
    run_id: UUID,
    *,
    now: Optional[datetime] = None,
    stale_after: Optional[timedelta] = None,
) -> bool:
    """Compare-and-set `sync_status` to `syncing`. True if this caller won.

    A lock held longer than `stale_after` counts as abandoned. Does not commit.
    """
    now = now or utcnow()
    stale_after = stale_after or timedelta(minutes=get_settings().SYNC_STALE_LOCK_MINUTES)
    stmt = (
        update(Connection)
        .where(Connection.id == connection_id)
        .where(Connection.status == ConnectionStatusEnum.active)
        .where(
            or_(
                Connection.sync_status != SYNC_RUNNING,
                Connection.sync_started_at.is_(None),
                Connection.sync_started_at < now - stale_after,
            )
        )
        .values(sync_status=SYNC_RUNNING, current_run_id=run_id, sync_started_at=now)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def claim_run(db: Session, run_id: UUID) -> bool:
    """Compare-and-set a run from `pending` to `running`. True if this caller won. Commits."""
    stmt = (
        update(SyncHistory)
        .where(SyncHistory.id == run_id, SyncHistory.status == SyncStatusEnum.pending)
        .values(status=SyncStatusEnum.running)
        .execution_options(synchronize_session=False)
    )
    claimed = db.execute(stmt).rowcount == 1
    db.commit()
    return claimed


def refresh_run_lock(db: Session, connection_id: UUID, run_id: UUID, *, now: Optional[datetime] = None) -> bool:
    """Bump `sync_started_at` while `run_id` holds the lock. Does not commit."""
    stmt = (
        update(Connection)
        .where(Connection.id == connection_id, Connection.current_run_id == run_id)
        .values(sync_started_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def release_run_lock(db: Session, connection_id: UUID, run_id: UUID, *, failed: bool = False) -> bool:
    """Release the lock if `run_id` still holds it. Commits."""
    stmt = (
        update(Connection)
        .where(Connection.id == connection_id, Connection.current_run_id == run_id)
        .values(sync_status=SYNC_ERROR if failed else SYNC_IDLE, current_run_id=None, sync_started_at=None)
        .execution_options(synchronize_session=False)
    )
    released = db.execute(stmt).rowcount == 1
    db.commit()
    return released


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class SyncOrchestrator:
    """Runs syncs for connections on one database session.

    Usage:
        ```python
        orchestrator = SyncOrchestrator(db)
        run = orchestrator.begin_run(connection.id, SyncTypeEnum.incremental)
        if run is not None:
            result = orchestrator.execute_run(run.id)
        ```
    """

    def __init__(
        self,
        db: Session,
        *,
        token_manager: Optional[TokenLifecycleManager] = None,
        client_factory: Callable[..., AdsProviderClient] = build_provider_client,
        retry_policy: Optional[RetryPolicy] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.token_manager = token_manager or TokenLifecycleManager()
        self.client_factory = client_factory
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._client: Optional[AdsProviderClient] = None

    # --- Public API -----------------------------------------------------
    def begin_run(self, connection_id: UUID, sync_type: SyncTypeEnum) -> Optional[SyncHistory]:
        """Take the connection's run lock and create a pending run.

        Returns None when the connection is missing, not active, or already
        has a run in flight.
        """
        connection = self.db.get(Connection, connection_id)
        if connection is None or connection.status != ConnectionStatusEnum.active:
            logger.info("[SYNC] Connection %s not syncable (missing or inactive)", connection_id)
            return None

        now = utcnow()
        run_id = uuid.uuid4()
        stale_after = timedelta(minutes=self.settings.SYNC_STALE_LOCK_MINUTES)
        if not acquire_run_lock(self.db, connection_id, run_id, now=now, stale_after=stale_after):
            self.db.rollback()
            logger.info(
                "[SYNC] Connection %s already syncing (run %s); trigger ignored",
                connection_id, connection.current_run_id,
            )
            return None

        run = SyncHistory(
            id=run_id,
            account_id=connection.account_id,
            connection_id=connection.id,
            provider=connection.provider,
            sync_type=sync_type,
            status=SyncStatusEnum.pending,
            started_at=now,
            errors=[],
            metadata_={},
        )
        self.db.add(run)
        self.db.commit()
        logger.info("[SYNC] Created %s run %s for connection %s", sync_type.value, run_id, connection_id)
        return run

    def run(self, connection_id: UUID, sync_type: SyncTypeEnum, *, force_overwrite: bool = False) -> Optional[SyncRunResult]:
        run = self.begin_run(connection_id, sync_type)
        if run is None:
            return None
        return self.execute_run(run.id, force_overwrite=force_overwrite)

    def execute_run(self, run_id: UUID, *, force_overwrite: bool = False) -> Optional[SyncRunResult]:
        """Perform a pending run. Never raises.

        The run is claimed with a compare-and-set on `status` (pending ->
        running). A run that is already running or terminal is returned as-is,
        so a duplicate or retried worker job does not sync twice.
        """
        run = self.db.get(SyncHistory, run_id)
        if run is None:
            logger.error("[SYNC] Run %s not found", run_id)
            return None
        if not claim_run(self.db, run_id):
            self.db.refresh(run)
            logger.info("[SYNC] Run %s already claimed (%s); not executing", run_id, run.status.value)
            return SyncRunResult.from_run(run)
        self.db.refresh(run)

        connection = self.db.get(Connection, run.connection_id) if run.connection_id else None
        ctx = _RunContext(run, connection)
        started = time.monotonic()
        logger.info("[SYNC] Run %s started (%s, %s)", run_id, run.provider.value, run.sync_type.value)

        try:
            if connection is None:
                ctx.fail("Connection no longer exists", CATEGORY_SYSTEM)
            else:
                self._execute(run, ctx, force_overwrite=force_overwrite)
        except Exception as e:  # noqa: BLE001 - runs never escape the orchestrator
            self.db.rollback()
            logger.exception("[SYNC] Run %s failed unexpectedly: %s", run_id, e)
            capture_exception(e, extra={
                "operation": "sync_run",
                "run_id": str(run_id),
                "connection_id": str(ctx.connection_id),
                "provider": ctx.provider.value,
            })
            ctx.fail(f"Unexpected error: {e}", categorize_error(e))
        finally:
            result = self._finalize(ctx, force_overwrite, started)
        return result

    # --- Run body -------------------------------------------------------
    def _execute(self, run: SyncHistory, ctx: _RunContext, *, force_overwrite: bool) -> None:
        connection = ctx.connection

        try:
            credentials = self.token_manager.ensure_valid_token(self.db, connection.id)
        except AuthError as e:
            ctx.fail(f"Token could not be resolved: {e}", CATEGORY_AUTH)
            return
        self._client = self.client_factory(connection.provider, credentials)

        days = self.settings.INCREMENTAL_SYNC_DAYS if ctx.sync_type == SyncTypeEnum.incremental else self.settings.FULL_SYNC_DAYS
        ctx.date_range = DateRange.last_n_days(days, utcnow().date())

        remote_accounts = self._step(ctx, "ad_accounts", None, "list_ad_accounts")
        if remote_accounts is None:
            return

        reconciler = EntityReconciler(self.db, ctx.account_id, ctx.provider, sync_run_id=ctx.run_id)
        accounts = reconciler.reconcile_ad_accounts(connection, remote_accounts.items)
        self._absorb_reconcile(ctx, accounts, "ad_accounts", None)
        for missing in accounts.missing_selected:
            ctx.warnings.append(f"Selected ad account {missing} is not accessible with this connection")
        self._commit_progress(run, ctx)

        for external_id, local_id in accounts.local_ids.items():
            if ctx.stop:
                logger.warning("[SYNC] Run %s stopping: connection credentials rejected", ctx.run_id)
                break
            ad_account = self.db.get(AdAccount, local_id)
            self._sync_account(run, ctx, reconciler, ad_account, force_overwrite=force_overwrite)

    def _sync_account(
        self,
        run: SyncHistory,
        ctx: _RunContext,
        reconciler: EntityReconciler,
        ad_account: AdAccount,
        *,
        force_overwrite: bool,
    ) -> None:
        """Hierarchy then insights for one ad account. Step failures are recorded, not raised."""
        outcome = {
            "external_id": ad_account.external_id,
            "name": ad_account.name,
            "status": "ok",
            "campaigns": 0,
            "ad_groups": 0,
            "ads": 0,
            "insights": 0,
        }
        ctx.accounts.append(outcome)
        errors_before = len(ctx.errors)
        account_ext = ad_account.external_id

        # --- Campaigns (a failure here skips the whole account) ---
        campaigns = self._step(ctx, "campaigns", ad_account, "list_campaigns", account_ext)
        if campaigns is None:
            outcome["status"] = "failed"
            return
        campaign_result = reconciler.reconcile(EntityTypeEnum.campaign, ad_account.id, campaigns.items)
        self._absorb_reconcile(ctx, campaign_result, "campaigns", ad_account)
        run.campaigns_synced = (run.campaigns_synced or 0) + campaign_result.total
        outcome["campaigns"] = campaign_result.total
        self._commit_progress(run, ctx)

        # --- Ad groups ---
        ad_group_ids: Dict[str, UUID] = {}
        for campaign_ext, campaign_id in campaign_result.local_ids.items():
            groups = self._step(ctx, "ad_groups", ad_account, "list_ad_groups", account_ext, campaign_ext)
            if groups is None:
                continue
            group_result = reconciler.reconcile(EntityTypeEnum.ad_group, campaign_id, groups.items)
            self._absorb_reconcile(ctx, group_result, "ad_groups", ad_account)
            ad_group_ids.update(group_result.local_ids)
            run.ad_groups_synced = (run.ad_groups_synced or 0) + group_result.total
            outcome["ad_groups"] += group_result.total
        self._commit_progress(run, ctx)

        # --- Ads ---
        ad_ids: Dict[str, UUID] = {}
        for group_ext, group_id in ad_group_ids.items():
            ads = self._step(ctx, "ads", ad_account, "list_ads", account_ext, group_ext)
            if ads is None:
                continue
            ad_result = reconciler.reconcile(EntityTypeEnum.ad, group_id, ads.items)
            self._absorb_reconcile(ctx, ad_result, "ads", ad_account)
            ad_ids.update(ad_result.local_ids)
            run.ads_synced = (run.ads_synced or 0) + ad_result.total
            outcome["ads"] += ad_result.total
        self._commit_progress(run, ctx)

        # --- Insights per level ---
        today = today_in_timezone(ad_account.timezone)
        days = self.settings.INCREMENTAL_SYNC_DAYS if ctx.sync_type == SyncTypeEnum.incremental else self.settings.FULL_SYNC_DAYS
        date_range = DateRange.last_n_days(days, today)
        aggregator = InsightAggregator(self.db)
        local_maps = {
            EntityTypeEnum.campaign: campaign_result.local_ids,
            EntityTypeEnum.ad_group: ad_group_ids,
            EntityTypeEnum.ad: ad_ids,
        }
        for level in INSIGHT_LEVELS:
            local_map = local_maps[level]
            if not local_map:
                continue
            fetched = self._step(
                ctx, f"insights_{level.value}", ad_account, "fetch_insights",
                account_ext, level, list(local_map.keys()), date_range,
            )
            if fetched is None:
                continue
            written = self._write_insights(ctx, aggregator, ad_account, level, local_map, fetched.items,
                                           today=today, force_overwrite=force_overwrite)
            run.insights_synced = (run.insights_synced or 0) + written
            outcome["insights"] += written
            self._commit_progress(run, ctx)

        if len(ctx.errors) > errors_before:
            outcome["status"] = "partial"

        ad_account.last_synced_at = utcnow()
        self._commit_progress(run, ctx)
        logger.info(
            "[SYNC] Account %s done: %d campaigns, %d ad groups, %d ads, %d insight rows",
            account_ext, outcome["campaigns"], outcome["ad_groups"], outcome["ads"], outcome["insights"],
        )

    def _write_insights(
        self,
        ctx: _RunContext,
        aggregator: InsightAggregator,
        ad_account: AdAccount,
        level: EntityTypeEnum,
        local_map: Dict[str, UUID],
        rows: Sequence[RawInsight],
        *,
        today,
        force_overwrite: bool,
    ) -> int:
        by_entity: Dict[str, Dict[Any, RawInsight]] = {}
        for raw in rows:
            by_entity.setdefault(raw.entity_external_id, {})[raw.date_start] = raw

        written = 0
        for external_id, by_date in by_entity.items():
            entity_id = local_map.get(external_id)
            if entity_id is None:
                logger.debug("[SYNC] Insight rows for unknown %s %s ignored", level.value, external_id)
                continue
            result = aggregator.upsert_insights(
                ctx.account_id,
                ctx.provider,
                level,
                entity_id,
                INSIGHT_WINDOW,
                by_date,
                force_overwrite=force_overwrite,
                today=today,
                external_id=external_id,
                currency=ad_account.currency,
            )
            written += result.written
            room = MAX_QUALITY_WARNINGS - len(ctx.warnings)
            if room > 0:
                ctx.warnings.extend(result.warnings[:room])
        return written

    # --- Steps and provider calls --------------------------------------
    def _step(self, ctx: _RunContext, step: str, ad_account: Optional[AdAccount], method: str, *args) -> Optional[FetchResult]:
        """Run one provider call as a step. None means the step failed (already recorded)."""
        if ctx.stop:
            return None
        try:
            fetched = self._call(ctx, method, *args)
        except ProviderError as e:
            self._record_step_error(ctx, step, ad_account, e)
            return None

        if ad_account is not None:
            # Only per-account steps decide partial vs failed; listing accounts alone is not progress
            ctx.steps_ok += 1
        for error in fetched.errors:
            if len(ctx.record_errors) >= MAX_RECORD_ERRORS:
                break
            ctx.record_errors.append({
                **error,
                "step": step,
                "ad_account": ad_account.external_id if ad_account is not None else None,
            })
        return fetched

    def _call(self, ctx: _RunContext, method: str, *args) -> Any:
        """Provider call with retries; on AuthError one forced refresh and one retry."""

        def invoke():
            return getattr(self._client, method)(*args)

        try:
            return call_with_retries(invoke, policy=self.retry_policy, operation=method)
        except AuthError as first_error:
            logger.warning("[SYNC] %s rejected credentials (%s); forcing token refresh", method, first_error)
            try:
                credentials = self.token_manager.ensure_valid_token(self.db, ctx.connection_id, force=True)
            except AuthError:
                ctx.stop = True
                ctx.fatal_category = CATEGORY_AUTH
                raise
            self._client = self.client_factory(ctx.provider, credentials)
            return call_with_retries(invoke, policy=self.retry_policy, operation=method)

    def _record_step_error(self, ctx: _RunContext, step: str, ad_account: Optional[AdAccount], error: ProviderError) -> None:
        ctx.steps_failed += 1
        entry = {
            "step": step,
            "ad_account": ad_account.external_id if ad_account is not None else None,
            "category": categorize_error(error),
            "type": type(error).__name__,
            "message": str(error)[:500],
            "status_code": error.status_code,
            "at": utcnow().isoformat(),
        }
        ctx.errors.append(entry)
        logger.warning(
            "[SYNC] Run %s step %s failed for %s: %s",
            ctx.run_id, step, entry["ad_account"] or "connection", error,
        )

    def _absorb_reconcile(self, ctx: _RunContext, result, step: str, ad_account: Optional[AdAccount]) -> None:
        ctx.rejected += result.rejected
        ctx.changes += result.changes
        for error in result.errors:
            if len(ctx.record_errors) >= MAX_RECORD_ERRORS:
                break
            ctx.record_errors.append({
                **error,
                "step": step,
                "ad_account": ad_account.external_id if ad_account is not None else None,
                "reason": "rejected",
            })

    def _commit_progress(self, run: SyncHistory, ctx: _RunContext) -> None:
        # JSON columns only persist on reassignment
        run.errors = list(ctx.errors)
        if ctx.connection_id is not None:
            refresh_run_lock(self.db, ctx.connection_id, ctx.run_id)
        self.db.commit()

    # --- Finalize -------------------------------------------------------
    def _finalize(self, ctx: _RunContext, force_overwrite: bool, started: float) -> Optional[SyncRunResult]:
        status = ctx.terminal_status()
        result: Optional[SyncRunResult] = None
        try:
            now = utcnow()
            run = self.db.get(SyncHistory, ctx.run_id)
            run.status = status
            run.completed_at = now
            run.duration_ms = int((time.monotonic() - started) * 1000)
            run.errors = list(ctx.errors)
            run.error_message = ctx.error_message()
            run.error_category = ctx.error_category()
            run.metadata_ = {
                "date_range": (
                    {"start": ctx.date_range.start.isoformat(), "end": ctx.date_range.end.isoformat()}
                    if ctx.date_range else None
                ),
                "accounts": ctx.accounts,
                "record_errors": ctx.record_errors,
                "rejected": ctx.rejected,
                "changes_detected": ctx.changes,
                "data_quality_warnings": ctx.warnings,
                "force_overwrite": force_overwrite,
            }

            if ctx.connection_id is not None:
                connection = self.db.get(Connection, ctx.connection_id)
                if connection is not None:
                    connection.last_sync_at = now
                    connection.next_sync_at = now + NEXT_SYNC_INTERVAL
                    connection.last_sync_error = run.error_message
            self.db.commit()
            result = SyncRunResult.from_run(run)
            logger.info("[SYNC] Run %s finished: %r (%dms)", ctx.run_id, result, run.duration_ms)
        except Exception as e:  # noqa: BLE001
            self.db.rollback()
            logger.exception("[SYNC] Failed to finalize run %s: %s", ctx.run_id, e)
            capture_exception(e, extra={"operation": "finalize_sync_run", "run_id": str(ctx.run_id)})
        finally:
            if ctx.connection_id is not None:
                try:
                    release_run_lock(self.db, ctx.connection_id, ctx.run_id, failed=status != SyncStatusEnum.success)
                except Exception as e:  # noqa: BLE001
                    self.db.rollback()
                    logger.error("[SYNC] Failed to release lock for connection %s: %s", ctx.connection_id, e)
        return result


# =============================================================================
# PARALLEL FAN-OUT
# =============================================================================

def sync_runs_parallel(
    run_ids: Sequence[UUID],
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    max_workers: Optional[int] = None,
    orchestrator_kwargs: Optional[Dict[str, Any]] = None,
) -> Dict[str, Optional[SyncRunResult]]:
    """Execute pending runs in parallel using ThreadPoolExecutor.

    WHAT:
        Runs multiple connections' syncs concurrently. Each thread gets its
        own database session; each connection's hierarchy stays sequential.

    WHY:
        - Provider calls are I/O-bound and benefit from parallelism
        - Each run gets an isolated session to prevent conflicts
    """
    results: Dict[str, Optional[SyncRunResult]] = {}
    if not run_ids:
        return results
    workers = max_workers or get_settings().SYNC_MAX_PARALLEL or MAX_PARALLEL_SYNCS

    def execute_single_run(run_id: UUID) -> Optional[SyncRunResult]:
        """Execute a single run with its own session."""
        local_db = session_factory()
        try:
            return SyncOrchestrator(local_db, **(orchestrator_kwargs or {})).execute_run(run_id)
        finally:
            local_db.close()

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(execute_single_run, run_id): str(run_id) for run_id in run_ids}

        for future in as_completed(futures):
            run_id = futures[future]
            try:
                results[run_id] = future.result()
            except Exception as e:
                logger.error("[SYNC] Parallel run %s failed: %s", run_id, e)
                capture_exception(e, extra={"operation": "parallel_sync_run", "run_id": run_id})
                results[run_id] = None

    logger.info(
        "[SYNC] Parallel sync complete: %d runs, %d success, %d not successful",
        len(results),
        sum(1 for r in results.values() if r is not None and r.success),
        sum(1 for r in results.values() if r is None or not r.success),
    )
    return results
