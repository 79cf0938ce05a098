"""Change detection for synced entities.

WHAT:
    Compares the previous and current snapshot of a campaign, ad group or ad
    on a fixed set of tracked fields and produces one `ChangeEvent` per field
    whose value actually changed. `record_changes` persists those events.

WHY:
    Users need an audit trail of configuration edits (budget raised, ad set
    paused, creative swapped) without the noise of performance numbers that
    move on every sync.

RULES:
    - A field changed iff stable_serialize(old) != stable_serialize(new).
    - None and "field absent" are the same value.
    - Metric keys under `metadata.insights` never count, even when an
      enclosing path such as `metadata` is tracked.
    - Old and new values are stored verbatim.

REFERENCES:
    - adsync/services/entity_reconciler.py (caller)
    - adsync/models.py (ChangeHistory)
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.orm import Session

from adsync.models import (
    ChangeHistory,
    ChangeSourceEnum,
    ChangeTypeEnum,
    EntityTypeEnum,
    ProviderEnum,
)
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

_MISSING = object()

METRIC_FIELDS = frozenset({"impressions", "clicks", "spend", "ctr", "cpc", "cpm"})
INSIGHTS_PATH = ("metadata", "insights")

TRACKED_FIELDS: Dict[EntityTypeEnum, List[str]] = {
    EntityTypeEnum.ad_account: [
        "name",
        "status",
        "currency",
        "timezone",
    ],
    EntityTypeEnum.campaign: [
        "name",
        "status",
        "objective",
        "daily_budget",
        "lifetime_budget",
        "metadata.bid_strategy",
    ],
    EntityTypeEnum.ad_group: [
        "name",
        "status",
        "daily_budget",
        "lifetime_budget",
        "metadata.optimization_goal",
        "metadata.targeting.age_min",
        "metadata.targeting.age_max",
        "metadata.targeting.genders",
        "metadata.targeting.geo_locations",
        "metadata.targeting.flexible_spec",
        "metadata.targeting.custom_audiences",
        "metadata.targeting.publisher_platforms",
    ],
    EntityTypeEnum.ad: [
        "name",
        "status",
        "creative.title",
        "creative.body",
        "creative.image_url",
        "creative.video_id",
        "creative.call_to_action",
        "creative.link_url",
    ],
}


@dataclass(frozen=True)
class ChangeEvent:
    """One detected field change, not yet persisted."""

    account_id: UUID
    provider: ProviderEnum
    entity_type: EntityTypeEnum
    entity_id: UUID
    external_id: Optional[str]
    field_name: str
    change_type: ChangeTypeEnum
    old_value: Any
    new_value: Any


def stable_serialize(value: Any) -> str:
    """Canonical JSON so dict key order and enum wrappers don't create phantom changes."""
    if value is _MISSING:
        value = None
    return json.dumps(value, sort_keys=True, default=_json_default)


def _json_default(value: Any) -> Any:
    enum_value = getattr(value, "value", None)
    if enum_value is not None:
        return enum_value
    return str(value)


def _strip_insight_metrics(value: Any, path: Sequence[str]) -> Any:
    """Drop metric keys under metadata.insights from a value read at `path`."""
    path = tuple(path)
    if not isinstance(value, Mapping):
        return value
    if path == INSIGHTS_PATH[: len(path)]:
        # `path` encloses metadata.insights
        remaining = INSIGHTS_PATH[len(path):]
        value = copy.deepcopy(dict(value))
        node = value
        for key in remaining:
            node = node.get(key) if isinstance(node, dict) else None
            if node is None:
                return value
        if isinstance(node, dict):
            for metric in METRIC_FIELDS:
                node.pop(metric, None)
    return value


def resolve_path(snapshot: Optional[Mapping[str, Any]], dotted: str) -> Any:
    """Read a dotted path from a snapshot; absent keys give None."""
    parts = dotted.split(".")
    if tuple(parts[:2]) == INSIGHTS_PATH and len(parts) >= 3 and parts[2] in METRIC_FIELDS:
        return None
    node: Any = snapshot or {}
    for part in parts:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return _strip_insight_metrics(node, parts)


def classify_change(field_name: str) -> ChangeTypeEnum:
    """Map a tracked field to its change type."""
    if field_name == "status":
        return ChangeTypeEnum.status_change
    if field_name in ("daily_budget", "lifetime_budget"):
        return ChangeTypeEnum.budget_change
    if field_name.startswith("metadata.targeting"):
        return ChangeTypeEnum.targeting_updated
    if field_name.startswith("creative"):
        return ChangeTypeEnum.creative_updated
    return ChangeTypeEnum.updated


def detect_changes(
    entity_type: EntityTypeEnum,
    entity_id: UUID,
    account_id: UUID,
    provider: ProviderEnum,
    external_id: Optional[str],
    old_snapshot: Optional[Mapping[str, Any]],
    new_snapshot: Optional[Mapping[str, Any]],
    tracked_fields: Optional[Iterable[str]] = None,
) -> List[ChangeEvent]:
    """Compare two snapshots field by field. Pure; never touches the DB."""
    fields = list(tracked_fields) if tracked_fields is not None else TRACKED_FIELDS.get(entity_type, [])
    events: List[ChangeEvent] = []
    for field_name in fields:
        old_value = resolve_path(old_snapshot, field_name)
        new_value = resolve_path(new_snapshot, field_name)
        if stable_serialize(old_value) == stable_serialize(new_value):
            continue
        events.append(ChangeEvent(
            account_id=account_id,
            provider=provider,
            entity_type=entity_type,
            entity_id=entity_id,
            external_id=external_id,
            field_name=field_name,
            change_type=classify_change(field_name),
            old_value=old_value,
            new_value=new_value,
        ))
    return events


def _jsonable(value: Any) -> Any:
    """Enum wrappers -> raw values so JSON columns store what users saw."""
    return json.loads(stable_serialize(value))


def record_changes(
    db: Session,
    events: Sequence[ChangeEvent],
    *,
    sync_run_id: Optional[UUID] = None,
    detected_at: Optional[datetime] = None,
    change_source: ChangeSourceEnum = ChangeSourceEnum.platform_sync,
) -> List[ChangeHistory]:
    """Persist change events. The only writer of ChangeHistory; does not commit."""
    when = detected_at or utcnow()
    rows = []
    for event in events:
        row = ChangeHistory(
            account_id=event.account_id,
            provider=event.provider,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            external_id=event.external_id,
            change_type=event.change_type,
            field_name=event.field_name,
            old_value=_jsonable(event.old_value),
            new_value=_jsonable(event.new_value),
            change_source=change_source,
            sync_run_id=sync_run_id,
            detected_at=when,
        )
        db.add(row)
        rows.append(row)
    if rows:
        logger.info(
            "[CHANGE_DETECTOR] Recorded %d change(s) for %s %s",
            len(rows), events[0].entity_type.value, events[0].external_id,
        )
    return rows


def purge_change_history(db: Session, older_than: datetime) -> int:
    """Delete change rows detected before `older_than`. Commits."""
    result = db.execute(
        delete(ChangeHistory)
        .where(ChangeHistory.detected_at < older_than)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    deleted = result.rowcount or 0
    logger.info("[CHANGE_DETECTOR] Purged %d change rows older than %s", deleted, older_than)
    return deleted
