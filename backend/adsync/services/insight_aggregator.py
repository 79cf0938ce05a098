"""Insight aggregation and persistence.

WHAT:
    Normalizes provider daily metrics (including Meta's `actions` arrays)
    into Insight rows, re-derives ratio metrics locally, and upserts one row
    per (entity_type, entity_id, date, window).

WHY:
    - Past days are closed books: once stored they are not rewritten unless
      a caller explicitly forces it. Today's row is still accumulating and is
      always overwritten.
    - Providers report ratios in their own units; recomputing ctr/cpc/cpm
      from raw counts exposes unit bugs (a >10x gap is logged, never
      blocking).

REFERENCES:
    - adsync/services/sync_orchestrator.py (caller)
    - adsync/models.py (Insight)
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import EntityTypeEnum, Insight, ProviderEnum
from adsync.schemas import InsightAction, RawInsight
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Provider action_type -> Insight column
ACTION_FIELD_MAP: Dict[str, str] = {
    "like": "likes",
    "post_reaction": "likes",
    "comment": "comments",
    "post": "shares",
    "share": "shares",
    "onsite_conversion.post_save": "saves",
    "save": "saves",
    "video_view": "video_views",
    "link_click": "link_clicks",
}
ENGAGEMENT_FIELDS = ("likes", "comments", "shares", "saves", "video_views", "link_clicks")

# Meta reports one purchase under several overlapping types; the first present wins
PURCHASE_ACTION_TYPES: Tuple[str, ...] = (
    "purchase",
    "omni_purchase",
    "offsite_conversion.fb_pixel_purchase",
    "onsite_web_purchase",
    "onsite_conversion.purchase",
)

RATIO_DISCREPANCY_FACTOR = 10.0


class InsightUpsertResult:
    """Rows written/skipped plus data-quality warnings for one entity."""

    def __init__(self):
        self.written = 0
        self.skipped = 0
        self.warnings: List[str] = []

    def merge(self, other: "InsightUpsertResult") -> None:
        self.written += other.written
        self.skipped += other.skipped
        self.warnings.extend(other.warnings)

    def __repr__(self):
        return f"InsightUpsertResult(written={self.written}, skipped={self.skipped}, warnings={len(self.warnings)})"


def _purchase_total(entries: Sequence[InsightAction]) -> Optional[float]:
    by_type: Dict[str, float] = {}
    for entry in entries:
        by_type[entry.action_type] = by_type.get(entry.action_type, 0.0) + entry.value
    for action_type in PURCHASE_ACTION_TYPES:
        if action_type in by_type:
            return by_type[action_type]
    return None


def normalize_actions(
    actions: Sequence[InsightAction],
    action_values: Sequence[InsightAction] = (),
) -> Dict[str, Any]:
    """Fold action arrays into engagement columns, conversions and revenue.

    Unrecognized action types are passed through in `raw_actions`.
    """
    out: Dict[str, Any] = {}
    raw: Dict[str, float] = {}
    for entry in actions:
        column = ACTION_FIELD_MAP.get(entry.action_type)
        if column is not None:
            out[column] = out.get(column, 0) + int(entry.value)
        elif entry.action_type not in PURCHASE_ACTION_TYPES:
            raw[entry.action_type] = raw.get(entry.action_type, 0.0) + entry.value

    conversions = _purchase_total(actions)
    if conversions is not None:
        out["conversions"] = conversions
    revenue = _purchase_total(action_values)
    if revenue is not None:
        out["revenue"] = revenue
    out["raw_actions"] = raw or None
    return out


def derive_ratios(
    impressions: Optional[int],
    clicks: Optional[int],
    spend: Optional[float],
) -> Dict[str, Optional[float]]:
    """ctr (%), cpc and cpm from raw counts; None where the denominator is missing or zero."""
    ctr = cpc = cpm = None
    if impressions and clicks is not None:
        ctr = clicks / impressions * 100.0
    if clicks and spend is not None:
        cpc = spend / clicks
    if impressions and spend is not None:
        cpm = spend / impressions * 1000.0
    return {"ctr": ctr, "cpc": cpc, "cpm": cpm}


def ratio_discrepancies(derived: Mapping[str, Optional[float]], reported: Mapping[str, Optional[float]]) -> List[str]:
    """Names of ratios where provider and local values differ by more than 10x."""
    flagged = []
    for name, local in derived.items():
        remote = reported.get(name)
        if not local or not remote or local <= 0 or remote <= 0:
            continue
        if max(local, remote) / min(local, remote) > RATIO_DISCREPANCY_FACTOR:
            flagged.append(name)
    return flagged


class InsightAggregator:
    """Writes normalized daily insights for one entity at a time."""

    def __init__(self, db: Session):
        self.db = db

    def upsert_insights(
        self,
        account_id: UUID,
        provider: ProviderEnum,
        entity_type: EntityTypeEnum,
        entity_id: UUID,
        window: str,
        raw_insights_by_date: Mapping[date, RawInsight],
        *,
        force_overwrite: bool = False,
        today: Optional[date] = None,
        external_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> InsightUpsertResult:
        """Insert or update one row per day.

        WHAT:
            - No row yet -> insert.
            - Row for a past date -> left untouched unless `force_overwrite`.
            - Row for today (or later) -> overwritten.

        Does not commit; the orchestrator commits per step.
        """
        today = today or utcnow().date()
        result = InsightUpsertResult()

        dates = sorted(raw_insights_by_date)
        existing_rows = {}
        if dates:
            existing_rows = {
                row.date: row
                for row in self.db.query(Insight).filter(
                    Insight.entity_type == entity_type,
                    Insight.entity_id == entity_id,
                    Insight.window == window,
                    Insight.date.in_(dates),
                )
            }

        for day in dates:
            raw = raw_insights_by_date[day]
            row = existing_rows.get(day)
            if row is not None and day < today and not force_overwrite:
                result.skipped += 1
                continue

            values, warnings = self._normalize(raw, entity_type, external_id or raw.entity_external_id, day)
            result.warnings.extend(warnings)

            if row is None:
                row = Insight(
                    account_id=account_id,
                    provider=provider,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    date=day,
                    window=window,
                )
                self.db.add(row)
            row.external_id = external_id or raw.entity_external_id
            row.currency = raw.currency or currency
            for column, value in values.items():
                setattr(row, column, value)
            result.written += 1

        if result.written or result.skipped:
            logger.debug("[INSIGHTS] %s %s: %r", entity_type.value, entity_id, result)
        return result

    def _normalize(self, raw: RawInsight, entity_type: EntityTypeEnum, external_id: str, day: date) -> Tuple[Dict[str, Any], List[str]]:
        actions = normalize_actions(raw.actions, raw.action_values)
        derived = derive_ratios(raw.impressions, raw.clicks, raw.spend)
        reported = {"ctr": raw.ctr, "cpc": raw.cpc, "cpm": raw.cpm}

        warnings = []
        for name in ratio_discrepancies(derived, reported):
            message = (
                f"{entity_type.value} {external_id} {day.isoformat()}: {name} provider={reported[name]:.4f} "
                f"derived={derived[name]:.4f}"
            )
            logger.warning("[INSIGHTS] Data quality: ratio mismatch >%dx: %s", int(RATIO_DISCREPANCY_FACTOR), message)
            warnings.append(message)

        link_clicks = actions.get("link_clicks")
        if link_clicks is None:
            link_clicks = raw.extras.get("inline_link_clicks")

        values: Dict[str, Any] = {
            "impressions": raw.impressions,
            "clicks": raw.clicks,
            "spend": raw.spend,
            "reach": raw.reach,
            "frequency": raw.frequency,
            "conversions": raw.conversions if raw.conversions is not None else actions.get("conversions"),
            "revenue": raw.revenue if raw.revenue is not None else actions.get("revenue"),
            "ctr": derived["ctr"] if derived["ctr"] is not None else raw.ctr,
            "cpc": derived["cpc"] if derived["cpc"] is not None else raw.cpc,
            "cpm": derived["cpm"] if derived["cpm"] is not None else raw.cpm,
            "raw_actions": actions.get("raw_actions"),
            "metadata_": {
                **{k: v for k, v in raw.extras.items() if v is not None},
                "provider_ratios": reported,
            },
        }
        for column in ENGAGEMENT_FIELDS:
            values[column] = actions.get(column)
        values["link_clicks"] = link_clicks
        return values, warnings
