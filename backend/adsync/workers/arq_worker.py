"""ARQ async worker - background sync job processor.

WHAT:
    Async worker that executes sync runs and owns the cron schedule
    (hourly incremental sync, daily change-history retention).
    Delegates all sync logic to the services layer.

WHY:
    - ARQ provides async job processing with built-in cron scheduling
    - Provider SDKs and SQLAlchemy sessions are blocking, so every job body
      runs in a thread via asyncio.to_thread
    - Clean separation: worker handles queueing, services handle logic

ARCHITECTURE:
    cron scheduled_hourly_sync -> sync_scheduler.create_scheduled_runs()
                               -> enqueue process_sync_run per run id
    process_sync_run           -> sync_scheduler.execute_sync_run(run_id)
                               -> SyncOrchestrator.execute_run

USAGE:
    # Start worker
    arq adsync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m adsync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - adsync/services/sync_scheduler.py
    - adsync/services/sync_orchestrator.py
"""

from __future__ import annotations

import asyncio
import logging
import platform
from typing import Any, Dict

from arq import cron

from adsync.services.sync_scheduler import (
    create_scheduled_runs,
    execute_sync_run,
    purge_expired_change_history,
)
from adsync.telemetry import capture_exception, init_observability, shutdown_observability
from adsync.utils.clock import utcnow
from adsync.workers.arq_enqueue import QUEUE_NAME, enqueue_sync_run, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# JOBS
# =============================================================================

async def process_sync_run(ctx: Dict, run_id: str) -> Dict[str, Any]:
    """Execute one pending sync run.

    The orchestrator never raises and claims the run before executing it, so a
    duplicate or retried job for the same run is a cheap no-op.
    """
    logger.info("[ARQ] Starting sync run %s", run_id)
    try:
        result = await asyncio.to_thread(execute_sync_run, run_id)
    except Exception as e:
        logger.exception("[ARQ] Sync run %s crashed: %s", run_id, e)
        capture_exception(e, extra={"operation": "process_sync_run", "run_id": run_id})
        return {"run_id": run_id, "status": "error", "error": str(e)}

    if result is None:
        logger.warning("[ARQ] Sync run %s not found", run_id)
        return {"run_id": run_id, "status": "not_found"}

    logger.info("[ARQ] Sync run %s finished: %r", run_id, result)
    return {
        "run_id": run_id,
        "status": result.status.value,
        "campaigns": result.campaigns_synced,
        "ad_groups": result.ad_groups_synced,
        "ads": result.ads_synced,
        "insights": result.insights_synced,
        "errors": len(result.errors),
    }


async def scheduled_hourly_sync(ctx: Dict) -> Dict[str, Any]:
    """Create incremental runs for due connections and enqueue them.

    WHEN:
        Every hour at :05 UTC.
    """
    logger.info("[ARQ] Hourly sync starting")
    try:
        outcome = await asyncio.to_thread(create_scheduled_runs)
    except Exception as e:
        logger.exception("[ARQ] Hourly sync scheduling failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_hourly_sync"})
        return {"success": False, "error": str(e)}

    enqueued = 0
    for run_id in outcome.run_ids:
        try:
            await enqueue_sync_run(run_id, pool=ctx.get("redis"))
            enqueued += 1
        except Exception as e:
            # Run stays pending; the stale-lock reset fails it and frees the connection
            logger.error("[ARQ] Failed to enqueue run %s: %s", run_id, e)
            capture_exception(e, extra={"operation": "enqueue_sync_run", "run_id": str(run_id)})

    logger.info(
        "[ARQ] Hourly sync: %d runs enqueued, %d skipped, %d stale locks reset",
        enqueued, outcome.skipped, outcome.stale_locks_reset,
    )
    return {
        "success": True,
        "enqueued": enqueued,
        "skipped": outcome.skipped,
        "stale_locks_reset": outcome.stale_locks_reset,
    }


async def scheduled_change_retention(ctx: Dict) -> Dict[str, Any]:
    """Purge change history older than the retention window.

    WHEN:
        Daily at 04:00 UTC.
    """
    try:
        deleted = await asyncio.to_thread(purge_expired_change_history)
    except Exception as e:
        logger.exception("[ARQ] Change retention failed: %s", e)
        return {"success": False, "error": str(e)}
    return {"success": True, "deleted": deleted}


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize observability and log config."""
    status = init_observability()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info("=" * 60)
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", QUEUE_NAME)
    logger.info("[ARQ] Max concurrent jobs: %d", WorkerSettings.max_jobs)
    logger.info("[ARQ] Job timeout: %ds", WorkerSettings.job_timeout)
    logger.info("[ARQ] Sentry: %s", "enabled" if status.get("sentry") else "disabled")
    logger.info("=" * 60)

    ctx['startup_time'] = utcnow()
    ctx['jobs_processed'] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - flush telemetry and log stats."""
    jobs = ctx.get('jobs_processed', 0)
    uptime = utcnow() - ctx.get('startup_time', utcnow())

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info("[ARQ] Jobs processed: %d", jobs)
    logger.info("[ARQ] Uptime: %s", uptime)
    logger.info("=" * 60)
    shutdown_observability()


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx['jobs_processed'] = ctx.get('jobs_processed', 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    Production-ready settings:
    - max_jobs=10: Process up to 10 runs concurrently
    - job_timeout=600: 10 minutes per run (handles large accounts)
    - retry_jobs=True: Retry on transient failures
    - max_tries=3: Don't retry forever
    """

    functions = [
        process_sync_run,
        scheduled_hourly_sync,
        scheduled_change_retention,
    ]

    cron_jobs = [
        cron(scheduled_hourly_sync, minute=5, run_at_startup=False),
        cron(scheduled_change_retention, hour=4, minute=0),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    # Performance settings
    max_jobs = 10
    job_timeout = 600
    keep_result = 3600
    retry_jobs = True
    max_tries = 3
    health_check_interval = 30

    queue_name = QUEUE_NAME
