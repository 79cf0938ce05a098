"""Pytest configuration for adsync integration tests

WHAT: Provides shared fixtures for service, orchestrator and HTTP tests
WHY: Ensures consistent test setup, database isolation, and a scriptable fake provider
REFERENCES:
    - adsync/main.py: FastAPI application
    - adsync/database.py: Database configuration
    - adsync/services/provider_client.py: Provider contract faked here
"""

import os
import uuid
from collections import defaultdict
from datetime import date, timedelta
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment
# Must be URL-safe base64-encoded 32-byte string (adsync.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("META_APP_ID", "test-app-id")
os.environ.setdefault("META_APP_SECRET", "test-app-secret")
os.environ.setdefault("GOOGLE_DEVELOPER_TOKEN", "test-dev-token")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")

from adsync.deps import Settings  # noqa: E402
from adsync.models import Base, ProviderEnum  # noqa: E402
from adsync.schemas import (  # noqa: E402
    Credentials,
    RawInsight,
    RemoteAd,
    RemoteAdAccount,
    RemoteAdGroup,
    RemoteCampaign,
)
from adsync.services.provider_client import (  # noqa: E402
    AdsProviderClient,
    FetchResult,
    RetryPolicy,
)
from adsync.utils.clock import utcnow  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared by every session and thread of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Settings / Policy Fixtures
# ============================================================================

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        SYNC_MAX_PARALLEL=2,
        INCREMENTAL_SYNC_DAYS=2,
        FULL_SYNC_DAYS=7,
        PROVIDER_MAX_ATTEMPTS=4,
        PROVIDER_BACKOFF_SECONDS=0.01,
        PROVIDER_MAX_BACKOFF_SECONDS=1.0,
    )


@pytest.fixture
def sleeps():
    """Captures retry sleeps instead of waiting."""
    return []


@pytest.fixture
def retry_policy(sleeps) -> RetryPolicy:
    return RetryPolicy(max_attempts=4, base_delay=0.01, max_delay=1.0, sleep=sleeps.append)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def account_id():
    return uuid.uuid4()


@pytest.fixture
def make_connection(test_db_session):
    """Factory for linked connections with stored (encrypted) credentials."""
    from adsync.services.connection_service import link_connection

    def _make(account, provider=ProviderEnum.meta, *, expires_in=timedelta(days=60), refresh_token="refresh-1",
              selected=None):
        credentials = Credentials(
            access_token=f"access-{provider.value}",
            refresh_token=refresh_token,
            expires_at=utcnow() + expires_in if expires_in is not None else None,
        )
        return link_connection(
            test_db_session,
            account,
            provider,
            credentials,
            name=f"Test {provider.value}",
            selected_account_ids=selected,
        )

    return _make


# ============================================================================
# Fake Provider
# ============================================================================

class FakeProviderClient(AdsProviderClient):
    """Scriptable in-memory provider.

    WHAT:
        Serves accounts/campaigns/ad groups/ads/insights from plain dicts.
        `fail(method, key, *errors)` queues exceptions raised by the next
        calls to `method` for `key` (account or parent external id; None for
        list_ad_accounts); after the queue drains calls succeed.
    """

    provider = ProviderEnum.meta

    def __init__(self):
        self.accounts = []
        self.campaigns = defaultdict(list)   # account ext id -> [RemoteCampaign]
        self.ad_groups = defaultdict(list)   # campaign ext id -> [RemoteAdGroup]
        self.ads = defaultdict(list)         # ad group ext id -> [RemoteAd]
        self.insights = defaultdict(list)    # entity ext id -> [RawInsight]
        self.record_errors = defaultdict(list)
        self.failures = defaultdict(list)
        self.calls = []
        self.credentials_seen = []

    # --- scripting ---
    def fail(self, method, key, *errors):
        self.failures[(method, key)].extend(errors)

    def _maybe_fail(self, method, key):
        self.calls.append((method, key))
        queue = self.failures.get((method, key))
        if queue:
            raise queue.pop(0)

    def add_account(self, external_id, name=None, timezone="UTC", currency="USD"):
        self.accounts.append(RemoteAdAccount(
            external_id=external_id, name=name or external_id, status="active",
            currency=currency, timezone=timezone,
        ))

    def add_campaign(self, account_ext, external_id, status="active", daily_budget=50.0, **kwargs):
        self.campaigns[account_ext].append(RemoteCampaign(
            external_id=external_id, parent_external_id=account_ext, name=kwargs.pop("name", f"Campaign {external_id}"),
            status=status, daily_budget=daily_budget, **kwargs,
        ))

    def add_ad_group(self, campaign_ext, external_id, status="active", **kwargs):
        self.ad_groups[campaign_ext].append(RemoteAdGroup(
            external_id=external_id, parent_external_id=campaign_ext, name=f"Ad group {external_id}",
            status=status, **kwargs,
        ))

    def add_ad(self, ad_group_ext, external_id, status="active", creative=None):
        self.ads[ad_group_ext].append(RemoteAd(
            external_id=external_id, parent_external_id=ad_group_ext, name=f"Ad {external_id}",
            status=status, creative=creative or {"title": "Hello"},
        ))

    def add_insight(self, entity_ext, day: date, impressions=1000, clicks=10, spend=5.0, **kwargs):
        self.insights[entity_ext].append(RawInsight(
            entity_external_id=entity_ext, date_start=day,
            impressions=impressions, clicks=clicks, spend=spend, **kwargs,
        ))

    # --- contract ---
    def list_ad_accounts(self):
        self._maybe_fail("list_ad_accounts", None)
        return FetchResult(list(self.accounts))

    def list_campaigns(self, account_external_id):
        self._maybe_fail("list_campaigns", account_external_id)
        return FetchResult(list(self.campaigns[account_external_id]),
                           list(self.record_errors[("list_campaigns", account_external_id)]))

    def list_ad_groups(self, account_external_id, campaign_external_id):
        self._maybe_fail("list_ad_groups", campaign_external_id)
        return FetchResult(list(self.ad_groups[campaign_external_id]))

    def list_ads(self, account_external_id, ad_group_external_id):
        self._maybe_fail("list_ads", ad_group_external_id)
        return FetchResult(list(self.ads[ad_group_external_id]))

    def fetch_insights(self, account_external_id, entity_type, entity_external_ids, date_range):
        self._maybe_fail("fetch_insights", (account_external_id, entity_type.value))
        rows = []
        for ext in entity_external_ids:
            rows.extend(r for r in self.insights[ext] if date_range.start <= r.date_start <= date_range.end)
        return FetchResult(rows)

    def validate_connection(self):
        return True

    def refresh_credentials(self, credentials):
        return credentials


@pytest.fixture
def fake_provider():
    return FakeProviderClient()


@pytest.fixture
def client_factory(fake_provider):
    """client_factory for SyncOrchestrator that always hands out `fake_provider`."""

    def _factory(provider, credentials):
        fake_provider.credentials_seen.append(credentials)
        return fake_provider

    return _factory


@pytest.fixture
def token_manager():
    """TokenLifecycleManager whose refresher never touches the network."""
    from adsync.services.token_service import TokenLifecycleManager

    refreshed = []

    def _refresher(provider, credentials):
        refreshed.append(provider)
        return Credentials(
            access_token=f"{credentials.access_token}-r{len(refreshed)}",
            refresh_token=credentials.refresh_token,
            expires_at=utcnow() + timedelta(days=60),
        )

    manager = TokenLifecycleManager(refresher=_refresher, threshold=timedelta(days=7))
    manager.refreshed = refreshed
    return manager


@pytest.fixture
def orchestrator(test_db_session, token_manager, client_factory, retry_policy, test_settings):
    from adsync.services.sync_orchestrator import SyncOrchestrator

    return SyncOrchestrator(
        test_db_session,
        token_manager=token_manager,
        client_factory=client_factory,
        retry_policy=retry_policy,
        settings=test_settings,
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(session_factory):
    """FastAPI test application bound to the test database."""
    from adsync.database import get_db
    from adsync.main import create_app

    test_app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


@pytest.fixture
def today():
    return utcnow().date()
