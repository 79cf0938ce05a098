"""Sync and change-history endpoints.

WHAT:
    Thin HTTP wrappers over the scheduler and the read views:
    manual and cron triggers, run status, and change history.

WHY:
    - Routers handle request parsing only.
    - Business logic reused by both HTTP calls and the arq worker.
    - Triggers return the run id immediately; the run executes in the worker.

REFERENCES:
    - adsync/services/sync_scheduler.py
    - adsync/services/sync_history_service.py
    - adsync/workers/arq_enqueue.py
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from adsync.database import get_db
from adsync.deps import verify_cron_secret
from adsync.models import EntityTypeEnum, ProviderEnum
from adsync.schemas import (
    ChangeHistoryOut,
    ChangeImpactOut,
    ScheduledSyncResponse,
    SyncRunOut,
    SyncTriggerResponse,
)
from adsync.services import sync_history_service
from adsync.services.sync_scheduler import (
    TRIGGER_NOT_FOUND,
    TRIGGER_QUEUED,
    dispatch_in_background,
    run_manual_sync,
    run_scheduled_sync,
)
from adsync.workers.arq_enqueue import enqueue_sync_run

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Sync"])


async def _enqueue_or_run_locally(run_ids: List[UUID]) -> Optional[str]:
    """Hand runs to the arq worker; fall back to a local thread if Redis is down.

    Returns the arq job id of the last enqueued run (None on fallback).
    """
    job_id = None
    pending: List[UUID] = []
    for run_id in run_ids:
        try:
            job = await enqueue_sync_run(run_id)
            job_id = job["job_id"]
        except Exception as e:
            logger.warning("[SYNC] Queue unavailable for run %s, running in-process: %s", run_id, e)
            pending.append(run_id)
    if pending:
        dispatch_in_background(pending)
    return job_id


# =============================================================================
# TRIGGERS
# =============================================================================

@router.post("/sync/{provider}/manual", response_model=SyncTriggerResponse)
async def trigger_manual_sync(
    provider: ProviderEnum,
    account_id: UUID = Query(..., description="Tenant id"),
    db: Session = Depends(get_db),
) -> SyncTriggerResponse:
    """Start a sync for the tenant's connection to `provider` now."""
    logger.info("[SYNC] HTTP manual sync requested: account=%s provider=%s", account_id, provider.value)
    outcome = await asyncio.to_thread(run_manual_sync, db, account_id, provider)
    if outcome.status == TRIGGER_QUEUED:
        job_id = await _enqueue_or_run_locally([outcome.run_id])
        return SyncTriggerResponse(run_id=outcome.run_id, status=outcome.status, job_id=job_id)
    if outcome.status == TRIGGER_NOT_FOUND:
        raise HTTPException(status_code=404, detail="Connection not found")
    return SyncTriggerResponse(run_id=outcome.run_id, status=outcome.status)


@router.post(
    "/cron/sync-hourly",
    response_model=ScheduledSyncResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def trigger_hourly_sync(db: Session = Depends(get_db)) -> ScheduledSyncResponse:
    """External cron entry point for the hourly incremental sync."""
    outcome = await asyncio.to_thread(run_scheduled_sync, db)
    if outcome.run_ids:
        await _enqueue_or_run_locally(outcome.run_ids)
    return ScheduledSyncResponse(
        run_ids=outcome.run_ids,
        skipped=outcome.skipped,
        stale_locks_reset=outcome.stale_locks_reset,
    )


# =============================================================================
# RUN STATUS
# =============================================================================

@router.get("/sync/runs/{run_id}", response_model=SyncRunOut)
def get_run(
    run_id: UUID,
    account_id: UUID = Query(...),
    db: Session = Depends(get_db),
) -> SyncRunOut:
    run = sync_history_service.get_sync_status(db, run_id, account_id=account_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return SyncRunOut.model_validate(run)


@router.get("/sync/last", response_model=Optional[SyncRunOut])
def get_last_run(
    account_id: UUID = Query(...),
    provider: Optional[ProviderEnum] = Query(None),
    db: Session = Depends(get_db),
) -> Optional[SyncRunOut]:
    run = sync_history_service.get_last_sync(db, account_id, provider)
    return SyncRunOut.model_validate(run) if run else None


# =============================================================================
# CHANGE HISTORY
# =============================================================================

@router.get("/changes", response_model=List[ChangeHistoryOut])
def list_recent_changes(
    account_id: UUID = Query(...),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> List[ChangeHistoryOut]:
    rows = sync_history_service.get_recent_changes(db, account_id, limit=limit)
    return [ChangeHistoryOut.model_validate(r) for r in rows]


# Registered before the entity route so "impact" is never read as an entity id
@router.get("/changes/{change_id}/impact", response_model=ChangeImpactOut)
def get_change_impact(
    change_id: UUID,
    account_id: UUID = Query(...),
    window_days: int = Query(7, ge=1, le=90),
    db: Session = Depends(get_db),
) -> ChangeImpactOut:
    """Average daily performance before vs after a change."""
    impact = sync_history_service.get_change_impact(db, account_id, change_id, window_days=window_days)
    if impact is None:
        raise HTTPException(status_code=404, detail="Change not found")
    return ChangeImpactOut(
        change=ChangeHistoryOut.model_validate(impact["change"]),
        window_days=impact["window_days"],
        before=impact["before"],
        after=impact["after"],
    )


@router.get("/changes/{entity_type}/{entity_id}", response_model=List[ChangeHistoryOut])
def list_entity_changes(
    entity_type: EntityTypeEnum,
    entity_id: UUID,
    account_id: UUID = Query(...),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> List[ChangeHistoryOut]:
    rows = sync_history_service.get_entity_changes(db, account_id, entity_type, entity_id, limit=limit)
    return [ChangeHistoryOut.model_validate(r) for r in rows]
