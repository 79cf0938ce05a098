"""
Telemetry Module
================

Observability for the sync engine.

Components:
- sentry.py: Error tracking for API requests, arq jobs and sync runs

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- ENVIRONMENT: Environment name (production, staging, development)

Usage:
    from adsync.telemetry import init_observability, capture_exception

    init_observability()

    try:
        orchestrator.execute_run(run_id)
    except Exception as e:
        capture_exception(e, extra={"run_id": str(run_id)})

Related modules:
- adsync/main.py: Initializes observability on startup
- adsync/workers/arq_worker.py: Initializes observability on worker startup
- adsync/services/sync_orchestrator.py: Reports unexpected run failures
"""

from adsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
    flush,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization: {"sentry": True/False}
    """
    return {
        "sentry": init_sentry(),
    }


def shutdown_observability() -> None:
    """Flush pending events on application or worker shutdown."""
    flush()


__all__ = [
    "init_observability",
    "shutdown_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
    "flush",
]
