"""Pydantic schemas.

Two groups live here:

- Provider boundary models (`Remote*`, `RawInsight`, `Credentials`,
  `DateRange`): every provider payload is validated into one of these before
  it reaches the reconciler or the aggregator.
- API response models consumed by `adsync.routers.sync`.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import (
    ChangeSourceEnum,
    ChangeTypeEnum,
    EntityStatusEnum,
    EntityTypeEnum,
    ProviderEnum,
    SyncStatusEnum,
    SyncTypeEnum,
)


# =============================================================================
# CREDENTIALS
# =============================================================================

class Credentials(BaseModel):
    """Canonical credential value handed out by the token service.

    WHAT: Plaintext access token, optional refresh token and expiry.
    WHY: Every provider client consumes exactly this shape; nothing else
        reads the encrypted columns.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def expires_within(self, window: timedelta, now: datetime) -> bool:
        """True when the token expires before `now + window` (never for non-expiring tokens)."""
        if self.expires_at is None:
            return False
        return self.expires_at <= now + window

    def __repr__(self) -> str:
        # Never leak token material into logs
        return f"Credentials(expires_at={self.expires_at!r}, has_refresh={self.refresh_token is not None})"


# =============================================================================
# DATE RANGE
# =============================================================================

class DateRange(BaseModel):
    """Date range for insight fetching.

    WHAT: Start and end dates (both inclusive)
    WHY: Recorded on the run so callers can see what period was synced
    """

    start: date = Field(description="Start date (inclusive)")
    end: date = Field(description="End date (inclusive)")

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self

    @classmethod
    def last_n_days(cls, days: int, today: date) -> "DateRange":
        """Window of `days` calendar days ending today (inclusive)."""
        return cls(start=today - timedelta(days=max(days, 1) - 1), end=today)

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)


# =============================================================================
# PROVIDER BOUNDARY MODELS
# =============================================================================

class RemoteAdAccount(BaseModel):
    """Ad account as reported by a provider."""

    external_id: str
    name: Optional[str] = None
    status: EntityStatusEnum = EntityStatusEnum.unknown
    currency: Optional[str] = None
    timezone: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        if value is None or str(value).strip() == "":
            raise ValueError("external_id is required")
        return str(value)


class RemoteEntity(BaseModel):
    """Fields shared by campaigns, ad groups and ads.

    `parent_external_id` is the provider's own parent reference; the
    reconciler checks it against the local parent row.
    """

    external_id: str
    parent_external_id: Optional[str] = None
    name: Optional[str] = None
    status: EntityStatusEnum = EntityStatusEnum.unknown
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        if value is None or str(value).strip() == "":
            raise ValueError("external_id is required")
        return str(value)

    @field_validator("parent_external_id", mode="before")
    @classmethod
    def _coerce_parent_id(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)


class RemoteCampaign(RemoteEntity):
    objective: Optional[str] = None
    daily_budget: Optional[float] = None
    lifetime_budget: Optional[float] = None


class RemoteAdGroup(RemoteEntity):
    daily_budget: Optional[float] = None
    lifetime_budget: Optional[float] = None


class RemoteAd(RemoteEntity):
    creative: Dict[str, Any] = Field(default_factory=dict)


class InsightAction(BaseModel):
    """One entry of a provider `actions` / `action_values` array."""

    action_type: str
    value: float = 0.0


class RawInsight(BaseModel):
    """One day of provider-reported metrics for one entity.

    Ratios are the provider's own values; the aggregator re-derives them.
    """

    entity_external_id: str
    date_start: date
    impressions: Optional[int] = None
    clicks: Optional[int] = None
    spend: Optional[float] = None
    reach: Optional[int] = None
    frequency: Optional[float] = None
    conversions: Optional[float] = None
    revenue: Optional[float] = None
    ctr: Optional[float] = None
    cpc: Optional[float] = None
    cpm: Optional[float] = None
    actions: List[InsightAction] = Field(default_factory=list)
    action_values: List[InsightAction] = Field(default_factory=list)
    currency: Optional[str] = None
    extras: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("entity_external_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        if value is None or str(value).strip() == "":
            raise ValueError("entity_external_id is required")
        return str(value)


# =============================================================================
# API RESPONSES
# =============================================================================

class SyncRunOut(BaseModel):
    """Run record as exposed to the dashboard."""

    id: UUID
    account_id: UUID
    connection_id: Optional[UUID] = None
    provider: ProviderEnum
    sync_type: SyncTypeEnum
    status: SyncStatusEnum
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    campaigns_synced: int = 0
    ad_groups_synced: int = 0
    ads_synced: int = 0
    insights_synced: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    error_message: Optional[str] = None
    error_category: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="metadata_")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class ChangeHistoryOut(BaseModel):
    id: UUID
    account_id: UUID
    provider: ProviderEnum
    entity_type: EntityTypeEnum
    entity_id: UUID
    external_id: Optional[str] = None
    change_type: ChangeTypeEnum
    field_name: str
    old_value: Any = None
    new_value: Any = None
    change_source: ChangeSourceEnum
    sync_run_id: Optional[UUID] = None
    detected_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SyncTriggerResponse(BaseModel):
    """Response when a sync is triggered.

    WHAT: The run id is available immediately; the work continues in the worker.
    """

    run_id: Optional[UUID] = Field(description="SyncHistory id for the triggered (or in-flight) run")
    status: str = Field(description="queued | already_running | not_found | inactive")
    job_id: Optional[str] = Field(default=None, description="arq job identifier")


class ScheduledSyncResponse(BaseModel):
    run_ids: List[UUID] = Field(default_factory=list)
    skipped: int = 0
    stale_locks_reset: int = 0


class MetricAverages(BaseModel):
    days: int = 0
    impressions: Optional[float] = None
    clicks: Optional[float] = None
    spend: Optional[float] = None
    conversions: Optional[float] = None
    ctr: Optional[float] = None
    cpc: Optional[float] = None
    cpm: Optional[float] = None


class ChangeImpactOut(BaseModel):
    """Before/after performance around a configuration change."""

    change: ChangeHistoryOut
    window_days: int
    before: MetricAverages
    after: MetricAverages


class HealthResponse(BaseModel):
    status: str = Field(description="Service status", examples=["ok"])
