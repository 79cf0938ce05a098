"""SQLAlchemy ORM models and enums.

This module defines the sync engine's schema using UUID primary keys and
explicit relationships. Synced entities are keyed by their natural key
(account_id, provider, external_id); `account_id` is the local tenant id and
is threaded explicitly through every service call.
"""

import uuid
import enum

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Date,
    Enum,
    Integer,
    BigInteger,
    Float,
    ForeignKey,
    JSON,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base

from .utils.clock import utcnow


# Single Base used by the entire application
Base = declarative_base()


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    meta = "meta"
    google = "google"


class ConnectionStatusEnum(str, enum.Enum):
    active = "active"
    expired = "expired"
    disconnected = "disconnected"


class TokenStateEnum(str, enum.Enum):
    valid = "valid"
    nearing_expiry = "nearing_expiry"
    refreshing = "refreshing"
    expired = "expired"


class EntityStatusEnum(str, enum.Enum):
    active = "active"
    paused = "paused"
    archived = "archived"
    unknown = "unknown"


class EntityTypeEnum(str, enum.Enum):
    ad_account = "ad_account"
    campaign = "campaign"
    ad_group = "ad_group"
    ad = "ad"


class SyncTypeEnum(str, enum.Enum):
    full = "full"
    incremental = "incremental"
    manual = "manual"


class SyncStatusEnum(str, enum.Enum):
    pending = "pending"
    running = "running"
    success = "success"
    partial_failure = "partial_failure"
    failed = "failed"


class ChangeTypeEnum(str, enum.Enum):
    updated = "updated"
    status_change = "status_change"
    budget_change = "budget_change"
    targeting_updated = "targeting_updated"
    creative_updated = "creative_updated"


class ChangeSourceEnum(str, enum.Enum):
    platform_sync = "platform_sync"
    admin_edit = "admin_edit"
    auto_optimization = "auto_optimization"


# Run-lock values stored in Connection.sync_status
SYNC_IDLE = "idle"
SYNC_RUNNING = "syncing"
SYNC_ERROR = "error"


# Models --------------------------------------------------------

class Connection(Base):
    """Link between a local tenant and one ad platform.

    One row per (account_id, provider). Credentials are stored encrypted and
    are only read through `adsync.services.token_service`.
    """
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("account_id", "provider", name="uq_connection_account_provider"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    name = Column(String, nullable=True)
    status = Column(
        Enum(ConnectionStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=ConnectionStatusEnum.active,
    )
    connected_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Credential material (Fernet ciphertext)
    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    token_state = Column(
        Enum(TokenStateEnum, values_callable=_enum_values),
        nullable=False,
        default=TokenStateEnum.valid,
    )
    token_refresh_started_at = Column(DateTime, nullable=True)
    token_refreshed_at = Column(DateTime, nullable=True)

    # External ad account ids chosen by the user; empty means all accessible
    selected_account_ids = Column(JSON, nullable=False, default=list)

    # Sync bookkeeping; sync_status doubles as the per-connection run lock
    sync_status = Column(String, nullable=False, default=SYNC_IDLE)  # idle, syncing, error
    current_run_id = Column(UUID(as_uuid=True), nullable=True)
    sync_started_at = Column(DateTime, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    next_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)

    ad_accounts = relationship(
        "AdAccount",
        back_populates="connection",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __str__(self):
        return f"{self.name or self.account_id} ({self.provider.value})"


class AdAccount(Base):
    """Provider-side advertising account scoped to a local tenant."""
    __tablename__ = "ad_accounts"
    __table_args__ = (
        UniqueConstraint("account_id", "provider", "external_id", name="uq_ad_account_natural_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    external_id = Column(String, nullable=False)
    connection_id = Column(
        UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String, nullable=True)
    status = Column(
        Enum(EntityStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=EntityStatusEnum.unknown,
    )
    # Used to normalize money and to decide what "today" is for insights
    currency = Column(String, nullable=True)
    timezone = Column(String, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime, nullable=True)

    connection = relationship("Connection", back_populates="ad_accounts")
    campaigns = relationship(
        "Campaign", back_populates="ad_account", cascade="all, delete-orphan", passive_deletes=True
    )

    def __str__(self):
        return f"{self.name} ({self.provider.value}:{self.external_id})"


class Campaign(Base):
    __tablename__ = "campaigns"
    __table_args__ = (
        UniqueConstraint("account_id", "provider", "external_id", name="uq_campaign_natural_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    external_id = Column(String, nullable=False)
    ad_account_id = Column(
        UUID(as_uuid=True), ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String, nullable=True)
    status = Column(
        Enum(EntityStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=EntityStatusEnum.unknown,
    )
    objective = Column(String, nullable=True)
    daily_budget = Column(Float, nullable=True)
    lifetime_budget = Column(Float, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime, nullable=True)

    ad_account = relationship("AdAccount", back_populates="campaigns")
    ad_groups = relationship(
        "AdGroup", back_populates="campaign", cascade="all, delete-orphan", passive_deletes=True
    )

    def __str__(self):
        return f"{self.name} ({self.provider.value}:{self.external_id})"


class AdGroup(Base):
    """Second hierarchy level (Meta ad set, Google ad group)."""
    __tablename__ = "ad_groups"
    __table_args__ = (
        UniqueConstraint("account_id", "provider", "external_id", name="uq_ad_group_natural_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    external_id = Column(String, nullable=False)
    campaign_id = Column(
        UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String, nullable=True)
    status = Column(
        Enum(EntityStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=EntityStatusEnum.unknown,
    )
    daily_budget = Column(Float, nullable=True)
    lifetime_budget = Column(Float, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime, nullable=True)

    campaign = relationship("Campaign", back_populates="ad_groups")
    ads = relationship("Ad", back_populates="ad_group", cascade="all, delete-orphan", passive_deletes=True)

    def __str__(self):
        return f"{self.name} ({self.provider.value}:{self.external_id})"


class Ad(Base):
    __tablename__ = "ads"
    __table_args__ = (
        UniqueConstraint("account_id", "provider", "external_id", name="uq_ad_natural_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    external_id = Column(String, nullable=False)
    ad_group_id = Column(
        UUID(as_uuid=True), ForeignKey("ad_groups.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String, nullable=True)
    status = Column(
        Enum(EntityStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=EntityStatusEnum.unknown,
    )
    creative = Column(JSON, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime, nullable=True)

    ad_group = relationship("AdGroup", back_populates="ads")

    def __str__(self):
        return f"{self.name} ({self.provider.value}:{self.external_id})"


class Insight(Base):
    """Daily performance snapshot for one entity.

    Rows for past dates are immutable; only the account's current day is
    rewritten on every run (attribution lag).
    """
    __tablename__ = "insights"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "date", "window", name="uq_insight_entity_date_window"),
        Index("ix_insights_account_date", "account_id", "date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), nullable=False)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    entity_type = Column(Enum(EntityTypeEnum, values_callable=_enum_values), nullable=False)
    entity_id = Column(UUID(as_uuid=True), nullable=False)
    external_id = Column(String, nullable=True)
    date = Column(Date, nullable=False)
    window = Column(String, nullable=False, default="day")
    currency = Column(String, nullable=True)

    # Raw counts
    impressions = Column(BigInteger, nullable=True)
    clicks = Column(BigInteger, nullable=True)
    spend = Column(Float, nullable=True)
    reach = Column(BigInteger, nullable=True)
    frequency = Column(Float, nullable=True)
    conversions = Column(Float, nullable=True)
    revenue = Column(Float, nullable=True)

    # Derived ratios (recomputed locally)
    ctr = Column(Float, nullable=True)
    cpc = Column(Float, nullable=True)
    cpm = Column(Float, nullable=True)

    # Flattened action counts
    likes = Column(Integer, nullable=True)
    comments = Column(Integer, nullable=True)
    shares = Column(Integer, nullable=True)
    saves = Column(Integer, nullable=True)
    video_views = Column(Integer, nullable=True)
    link_clicks = Column(Integer, nullable=True)
    raw_actions = Column(JSON, nullable=True)  # unrecognized action types, passthrough

    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __str__(self):
        return f"{self.entity_type.value}:{self.entity_id} {self.date} ({self.window})"


class ChangeHistory(Base):
    """Append-only audit log of configuration changes detected during sync."""
    __tablename__ = "change_history"
    __table_args__ = (
        Index("ix_change_history_account_detected", "account_id", "detected_at"),
        Index("ix_change_history_entity", "account_id", "entity_type", "entity_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), nullable=False)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    entity_type = Column(Enum(EntityTypeEnum, values_callable=_enum_values), nullable=False)
    entity_id = Column(UUID(as_uuid=True), nullable=False)
    external_id = Column(String, nullable=True)
    change_type = Column(Enum(ChangeTypeEnum, values_callable=_enum_values), nullable=False)
    field_name = Column(String, nullable=False)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    change_source = Column(
        Enum(ChangeSourceEnum, values_callable=_enum_values),
        nullable=False,
        default=ChangeSourceEnum.platform_sync,
    )
    sync_run_id = Column(UUID(as_uuid=True), ForeignKey("sync_history.id", ondelete="SET NULL"), nullable=True)
    detected_at = Column(DateTime, nullable=False, default=utcnow)

    def __str__(self):
        return f"{self.entity_type.value}:{self.field_name} {self.change_type.value}"


class SyncHistory(Base):
    """One row per orchestrated run. Terminal once completed_at is set."""
    __tablename__ = "sync_history"
    __table_args__ = (
        Index("ix_sync_history_account_started", "account_id", "started_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), nullable=False)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="SET NULL"), nullable=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    sync_type = Column(Enum(SyncTypeEnum, values_callable=_enum_values), nullable=False)
    status = Column(
        Enum(SyncStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=SyncStatusEnum.pending,
    )
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    campaigns_synced = Column(Integer, nullable=False, default=0)
    ad_groups_synced = Column(Integer, nullable=False, default=0)
    ads_synced = Column(Integer, nullable=False, default=0)
    insights_synced = Column(Integer, nullable=False, default=0)

    errors = Column(JSON, nullable=False, default=list)
    error_message = Column(Text, nullable=True)
    error_category = Column(String, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.completed_at is not None

    def __str__(self):
        return f"{self.provider.value} {self.sync_type.value} run ({self.status.value})"
