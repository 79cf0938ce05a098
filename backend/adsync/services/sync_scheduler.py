"""Sync scheduler service.

WHAT:
    Decides which connections are due, creates their runs, and hands the
    runs to a dispatcher. Also owns stale-lock recovery and change-history
    retention.

WHY:
    - Hourly incremental sync keeps entities and today's insights fresh.
    - Triggers return the run id immediately; the work continues in the arq
      worker (or a local thread pool when no queue is available).
    - A worker that died mid-run must not block its connection forever.

SYNC SCHEDULE (all times UTC):
    - :05 every hour: Incremental sync for due connections
    - 04:00 daily: Purge change history beyond the retention window

REFERENCES:
    - adsync/services/sync_orchestrator.py (runs)
    - adsync/workers/arq_worker.py (cron jobs)
    - adsync/routers/sync.py (manual + cron HTTP triggers)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from adsync.database import get_sync_session
from adsync.deps import get_settings
from adsync.models import (
    Connection,
    ConnectionStatusEnum,
    ProviderEnum,
    SyncHistory,
    SyncStatusEnum,
    SyncTypeEnum,
    SYNC_ERROR,
    SYNC_RUNNING,
)
from adsync.services.change_detector import purge_change_history
from adsync.services.provider_errors import CATEGORY_SYSTEM
from adsync.services.sync_orchestrator import SyncOrchestrator, SyncRunResult, sync_runs_parallel
from adsync.telemetry import capture_exception
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

Dispatcher = Callable[[List[UUID]], None]

TRIGGER_QUEUED = "queued"
TRIGGER_ALREADY_RUNNING = "already_running"
TRIGGER_NOT_FOUND = "not_found"
TRIGGER_INACTIVE = "inactive"


@dataclass
class ScheduledSyncOutcome:
    run_ids: List[UUID] = field(default_factory=list)
    skipped: int = 0
    stale_locks_reset: int = 0


@dataclass
class ManualSyncOutcome:
    status: str
    run_id: Optional[UUID] = None


# =============================================================================
# DISPATCHERS
# =============================================================================

def dispatch_inline(run_ids: List[UUID]) -> None:
    """Execute runs now on the bounded thread pool (blocks until done)."""
    sync_runs_parallel(run_ids)


def dispatch_in_background(run_ids: List[UUID]) -> None:
    """Execute runs on a background thread; returns immediately.

    Used when the job queue is unreachable so a trigger still makes progress.
    """
    if not run_ids:
        return
    thread = threading.Thread(target=sync_runs_parallel, args=(list(run_ids),), name="adsync-sync", daemon=True)
    thread.start()


# =============================================================================
# SELECTION AND RECOVERY
# =============================================================================

def select_due_connections(
    db: Session,
    now: Optional[datetime] = None,
    min_interval: Optional[timedelta] = None,
) -> List[Connection]:
    """Active connections never synced, or last synced before `now - min_interval`.

    The interval (default 50 min) is shorter than the hourly cadence so
    scheduler jitter never skips a slot.
    """
    now = now or utcnow()
    min_interval = min_interval or timedelta(minutes=get_settings().SYNC_MIN_INTERVAL_MINUTES)
    return (
        db.query(Connection)
        .filter(
            Connection.status == ConnectionStatusEnum.active,
            or_(Connection.last_sync_at.is_(None), Connection.last_sync_at < now - min_interval),
        )
        .order_by(Connection.last_sync_at.asc().nullsfirst())
        .all()
    )


def reset_stale_locks(db: Session, now: Optional[datetime] = None, stale_after: Optional[timedelta] = None) -> int:
    """Release run locks whose heartbeat is older than the stale threshold.

    WHAT:
        - Connections stuck in `syncing` -> `error`, lock cleared.
        - The runs that held those locks -> `failed`, plus unfinished runs past
          the threshold that hold no lock at all.

    Returns:
        Number of connections whose lock was reset.
    """
    now = now or utcnow()
    stale_after = stale_after or timedelta(minutes=get_settings().SYNC_STALE_LOCK_MINUTES)
    cutoff = now - stale_after

    stale = (
        db.query(Connection)
        .filter(Connection.sync_status == SYNC_RUNNING, Connection.sync_started_at < cutoff)
        .all()
    )
    stale_run_ids = [c.current_run_id for c in stale if c.current_run_id is not None]
    for connection in stale:
        logger.warning(
            "[SCHEDULER] Resetting stale sync lock for connection %s (run %s, last heartbeat %s)",
            connection.id, connection.current_run_id, connection.sync_started_at,
        )
        connection.sync_status = SYNC_ERROR
        connection.current_run_id = None
        connection.sync_started_at = None
        connection.last_sync_error = "Sync abandoned: lock exceeded stale threshold"
    db.flush()

    # Runs still holding a live lock are never failed here, however old they are
    held_run_ids = select(Connection.current_run_id).where(Connection.current_run_id.is_not(None))
    unfinished = [SyncStatusEnum.pending, SyncStatusEnum.running]
    dangling = db.execute(
        update(SyncHistory)
        .where(
            SyncHistory.completed_at.is_(None),
            SyncHistory.status.in_(unfinished),
            or_(
                SyncHistory.id.in_(stale_run_ids),
                and_(SyncHistory.started_at < cutoff, SyncHistory.id.not_in(held_run_ids)),
            ),
        )
        .values(
            status=SyncStatusEnum.failed,
            completed_at=now,
            error_message="Run abandoned: worker did not finish before the stale threshold",
            error_category=CATEGORY_SYSTEM,
        )
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    db.commit()

    if stale or dangling:
        logger.info("[SCHEDULER] Reset %d stale locks, failed %d dangling runs", len(stale), dangling)
    return len(stale)


# =============================================================================
# TRIGGERS
# =============================================================================

def run_scheduled_sync(
    db: Session,
    *,
    dispatch: Optional[Dispatcher] = None,
    now: Optional[datetime] = None,
) -> ScheduledSyncOutcome:
    """Start an incremental run for every due connection.

    WHAT:
        Resets stale locks, creates one pending run per due connection and
        passes the new run ids to `dispatch`. Without a dispatcher the runs
        are only created; the caller enqueues them (arq cron path).

    WHEN:
        Hourly at :05 (arq cron) or via POST /cron/sync-hourly.
    """
    now = now or utcnow()
    outcome = ScheduledSyncOutcome()
    outcome.stale_locks_reset = reset_stale_locks(db, now=now)

    orchestrator = SyncOrchestrator(db)
    for connection in select_due_connections(db, now=now):
        run = orchestrator.begin_run(connection.id, SyncTypeEnum.incremental)
        if run is None:
            outcome.skipped += 1
            continue
        outcome.run_ids.append(run.id)

    logger.info(
        "[SCHEDULER] Scheduled sync: %d runs created, %d skipped, %d stale locks reset",
        len(outcome.run_ids), outcome.skipped, outcome.stale_locks_reset,
    )

    if dispatch is not None and outcome.run_ids:
        dispatch(list(outcome.run_ids))
    return outcome


def run_manual_sync(
    db: Session,
    account_id: UUID,
    provider: ProviderEnum,
    *,
    dispatch: Optional[Dispatcher] = None,
    sync_type: SyncTypeEnum = SyncTypeEnum.manual,
) -> ManualSyncOutcome:
    """User-triggered sync. Bypasses the interval, not the run lock.

    Returns:
        queued (new run id), already_running (in-flight run id),
        not_found or inactive.
    """
    connection = (
        db.query(Connection)
        .filter(Connection.account_id == account_id, Connection.provider == provider)
        .one_or_none()
    )
    if connection is None:
        logger.info("[SCHEDULER] Manual sync: no %s connection for account %s", provider.value, account_id)
        return ManualSyncOutcome(status=TRIGGER_NOT_FOUND)
    if connection.status != ConnectionStatusEnum.active:
        logger.info("[SCHEDULER] Manual sync: connection %s is %s", connection.id, connection.status.value)
        return ManualSyncOutcome(status=TRIGGER_INACTIVE)

    run = SyncOrchestrator(db).begin_run(connection.id, sync_type)
    if run is None:
        db.refresh(connection)
        logger.info(
            "[SCHEDULER] Manual sync for connection %s ignored: run %s in flight",
            connection.id, connection.current_run_id,
        )
        return ManualSyncOutcome(status=TRIGGER_ALREADY_RUNNING, run_id=connection.current_run_id)

    if dispatch is not None:
        dispatch([run.id])
    return ManualSyncOutcome(status=TRIGGER_QUEUED, run_id=run.id)


# =============================================================================
# JOB FUNCTIONS (Called by arq worker)
# =============================================================================

def execute_sync_run(run_id: Union[str, UUID]) -> Optional[SyncRunResult]:
    """Execute one pending run with its own session (arq job body)."""
    run_uuid = run_id if isinstance(run_id, UUID) else UUID(str(run_id))
    with get_sync_session() as db:
        return SyncOrchestrator(db).execute_run(run_uuid)


def create_scheduled_runs() -> ScheduledSyncOutcome:
    """Create the hourly runs with a fresh session; the caller enqueues them."""
    with get_sync_session() as db:
        return run_scheduled_sync(db)


def purge_expired_change_history(now: Optional[datetime] = None) -> int:
    """Delete change rows older than CHANGE_HISTORY_RETENTION_DAYS."""
    now = now or utcnow()
    cutoff = now - timedelta(days=get_settings().CHANGE_HISTORY_RETENTION_DAYS)
    with get_sync_session() as db:
        try:
            return purge_change_history(db, older_than=cutoff)
        except Exception as e:
            logger.error("[SCHEDULER] Change history retention failed: %s", e)
            capture_exception(e, extra={"operation": "change_retention", "cutoff": cutoff.isoformat()})
            raise
