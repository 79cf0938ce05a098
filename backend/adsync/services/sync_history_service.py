"""Read views over sync runs and change history.

WHAT:
    Query helpers consumed by the HTTP layer: recent changes for a tenant,
    changes for one entity, the last run, a run's status, and the
    before/after performance around a change.

WHY:
    Every query is scoped by `account_id` so a tenant never sees another
    tenant's rows, even with a guessed id.

REFERENCES:
    - adsync/routers/sync.py
    - adsync/models.py (SyncHistory, ChangeHistory, Insight)
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import (
    ChangeHistory,
    EntityTypeEnum,
    Insight,
    ProviderEnum,
    SyncHistory,
)

logger = logging.getLogger(__name__)

AVERAGED_METRICS = ("impressions", "clicks", "spend", "conversions")


def get_recent_changes(db: Session, account_id: UUID, limit: int = 100) -> List[ChangeHistory]:
    """Newest changes across all entities of a tenant."""
    return (
        db.query(ChangeHistory)
        .filter(ChangeHistory.account_id == account_id)
        .order_by(ChangeHistory.detected_at.desc())
        .limit(limit)
        .all()
    )


def get_entity_changes(
    db: Session,
    account_id: UUID,
    entity_type: EntityTypeEnum,
    entity_id: UUID,
    limit: int = 50,
) -> List[ChangeHistory]:
    """Change timeline of one entity, newest first."""
    return (
        db.query(ChangeHistory)
        .filter(
            ChangeHistory.account_id == account_id,
            ChangeHistory.entity_type == entity_type,
            ChangeHistory.entity_id == entity_id,
        )
        .order_by(ChangeHistory.detected_at.desc())
        .limit(limit)
        .all()
    )


def get_last_sync(db: Session, account_id: UUID, provider: Optional[ProviderEnum] = None) -> Optional[SyncHistory]:
    """Most recently started run for the tenant (optionally one provider)."""
    query = db.query(SyncHistory).filter(SyncHistory.account_id == account_id)
    if provider is not None:
        query = query.filter(SyncHistory.provider == provider)
    return query.order_by(SyncHistory.started_at.desc()).first()


def get_sync_status(db: Session, run_id: UUID, account_id: Optional[UUID] = None) -> Optional[SyncHistory]:
    """A run by id; with `account_id`, only if it belongs to that tenant."""
    run = db.get(SyncHistory, run_id)
    if run is None:
        return None
    if account_id is not None and run.account_id != account_id:
        return None
    return run


def _averages(rows: List[Insight]) -> Dict[str, Optional[float]]:
    days = len(rows)
    out: Dict[str, Optional[float]] = {"days": days}
    if not days:
        for name in AVERAGED_METRICS + ("ctr", "cpc", "cpm"):
            out[name] = None
        return out

    totals = {name: sum((getattr(r, name) or 0) for r in rows) for name in AVERAGED_METRICS}
    for name in AVERAGED_METRICS:
        out[name] = totals[name] / days
    # Ratios from totals, not averaged per-day ratios
    out["ctr"] = totals["clicks"] / totals["impressions"] * 100.0 if totals["impressions"] else None
    out["cpc"] = totals["spend"] / totals["clicks"] if totals["clicks"] else None
    out["cpm"] = totals["spend"] / totals["impressions"] * 1000.0 if totals["impressions"] else None
    return out


def _daily_rows(db: Session, change: ChangeHistory, start: date, end: date) -> List[Insight]:
    return (
        db.query(Insight)
        .filter(
            Insight.account_id == change.account_id,
            Insight.entity_type == change.entity_type,
            Insight.entity_id == change.entity_id,
            Insight.window == "day",
            Insight.date >= start,
            Insight.date <= end,
        )
        .all()
    )


def get_change_impact(db: Session, account_id: UUID, change_id: UUID, window_days: int = 7) -> Optional[Dict]:
    """Average daily metrics for the entity before vs after a change.

    WHAT:
        before = the `window_days` days ending the day before the change.
        after  = the `window_days` days starting the day after the change.
        The change day itself is excluded: it mixes both configurations.

    Returns:
        {"change", "window_days", "before", "after"} or None when the change
        does not exist for this tenant.
    """
    change = db.get(ChangeHistory, change_id)
    if change is None or change.account_id != account_id:
        return None

    change_day = change.detected_at.date()
    before_rows = _daily_rows(db, change, change_day - timedelta(days=window_days), change_day - timedelta(days=1))
    after_rows = _daily_rows(db, change, change_day + timedelta(days=1), change_day + timedelta(days=window_days))

    logger.debug(
        "[CHANGE_DETECTOR] Impact for change %s: %d days before, %d days after",
        change_id, len(before_rows), len(after_rows),
    )
    return {
        "change": change,
        "window_days": window_days,
        "before": _averages(before_rows),
        "after": _averages(after_rows),
    }
