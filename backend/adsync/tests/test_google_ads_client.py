"""Unit tests for Google Ads client service.

WHAT:
    Validate GAQL listing, row parsing (micros, resource names), error
    translation and the OAuth refresh exchange without real SDK/network.

WHY:
    Ensure separation and single responsibility with testable behavior.

REFERENCES:
    adsync/services/google_ads_client.py
"""

import types
from datetime import date, timedelta

import httpx
import pytest
from google.auth.exceptions import RefreshError

from adsync.models import EntityStatusEnum, EntityTypeEnum
from adsync.schemas import Credentials, DateRange
from adsync.services.google_ads_client import (
    GAdsClient,
    GoogleAdsRateLimiter,
    parse_ad,
    parse_campaign,
    parse_metrics_row,
    refresh_google_token,
    translate_google_error,
)
from adsync.services.provider_errors import AuthError, FatalError, RateLimitError, TransientError
from adsync.utils.clock import utcnow

ns = types.SimpleNamespace


class _FakeService:
    """GoogleAdsService/CustomerService double.

    `handler(customer_id, query)` returns rows or raises.
    """

    def __init__(self, handler=None, customers=()):
        self._handler = handler or (lambda customer_id, query: [])
        self._customers = list(customers)
        self.queries = []

    def search(self, customer_id, query):
        self.queries.append((customer_id, query))
        return iter(self._handler(customer_id, query))

    def list_accessible_customers(self):
        return ns(resource_names=self._customers)


class _FakeClient:
    def __init__(self, service):
        self._service = service

    def get_service(self, name):  # noqa: ARG002
        return self._service


def _client(service):
    return GAdsClient(client=_FakeClient(service), rate_limiter=GoogleAdsRateLimiter(capacity=1000, refill_per_sec=1000))


def _campaign_row(cid="123", status="ENABLED", amount=25_000_000, period="DAILY"):
    return ns(
        campaign=ns(id=cid, name="Search", status=status, serving_status="SERVING",
                    advertising_channel_type="SEARCH", bidding_strategy_type="MAXIMIZE_CONVERSIONS"),
        campaign_budget=ns(amount_micros=amount, total_amount_micros=None, period=period),
    )


class TestParsers:
    """Test SDK row -> provider model parsing."""

    def test_campaign_budget_micros(self):
        campaign = parse_campaign(_campaign_row(), "1111111111")

        assert campaign.external_id == "123"
        assert campaign.parent_external_id == "1111111111"
        assert campaign.status == EntityStatusEnum.active
        assert campaign.daily_budget == 25.0
        assert campaign.objective == "SEARCH"
        assert campaign.metadata["bid_strategy"] == "MAXIMIZE_CONVERSIONS"

    def test_removed_campaign_is_archived(self):
        assert parse_campaign(_campaign_row(status="REMOVED"), "1").status == EntityStatusEnum.archived

    def test_ad_with_responsive_search_assets(self):
        row = ns(ad_group_ad=ns(
            status="PAUSED",
            ad_group="customers/1/adGroups/77",
            ad=ns(id=9, name="", type_="RESPONSIVE_SEARCH_AD", final_urls=["https://shop"],
                  tracking_url_template="", responsive_search_ad=ns(
                      headlines=[ns(text="Headline 1"), ns(text="Headline 2")],
                      descriptions=[ns(text="Description")],
                  )),
        ))

        ad = parse_ad(row)

        assert ad.external_id == "9"
        assert ad.parent_external_id == "77"
        assert ad.status == EntityStatusEnum.paused
        assert ad.name is None
        assert ad.creative["title"] == "Headline 1"
        assert ad.creative["body"] == "Description"
        assert ad.creative["link_url"] == "https://shop"

    def test_metrics_row_converts_cost_micros(self):
        row = ns(
            campaign=ns(id=123),
            segments=ns(date="2025-06-14"),
            metrics=ns(impressions=1000, clicks=25, cost_micros=12_500_000,
                       conversions_by_conversion_date=2.0, conversions_value_by_conversion_date=80.0),
        )

        insight = parse_metrics_row(row, EntityTypeEnum.campaign, currency="EUR")

        assert insight.entity_external_id == "123"
        assert insight.date_start == date(2025, 6, 14)
        assert insight.spend == 12.5
        assert insight.conversions == 2.0
        assert insight.revenue == 80.0
        assert insight.currency == "EUR"


class TestErrorTranslation:
    """Test SDK failure -> provider error taxonomy."""

    def test_refresh_error_is_auth_error(self):
        assert isinstance(translate_google_error(RefreshError("invalid_grant"), "listing"), AuthError)

    def test_unauthenticated_grpc_status_is_auth_error(self):
        class _RpcError(Exception):
            def code(self):
                return ns(name="UNAUTHENTICATED")

        wrapped = Exception("call failed")
        wrapped.error = _RpcError()

        assert isinstance(translate_google_error(wrapped, "listing"), AuthError)

    def test_quota_error_carries_retry_hint(self):
        error = translate_google_error(Exception("RESOURCE_EXHAUSTED: Retry in 45 seconds"), "listing")

        assert isinstance(error, RateLimitError)
        assert error.retry_after == 45

    def test_unavailable_is_transient(self):
        assert isinstance(translate_google_error(Exception("503 UNAVAILABLE"), "listing"), TransientError)

    def test_bad_query_is_fatal(self):
        assert isinstance(translate_google_error(Exception("Unrecognized field in GAQL"), "listing"), FatalError)

    def test_provider_errors_pass_through(self):
        original = TransientError("already translated")

        assert translate_google_error(original, "listing") is original


class TestGAdsClient:
    """Test listings through a fake SDK client."""

    def test_list_ad_accounts_skips_managers_and_reports_denied(self):
        def handler(customer_id, query):
            if customer_id == "3333333333":
                raise Exception("PERMISSION_DENIED: customer not enabled")
            manager = customer_id == "2222222222"
            return [ns(customer=ns(id=int(customer_id), descriptive_name=f"Cust {customer_id}", status="ENABLED",
                                   currency_code="USD", time_zone="America/New_York", manager=manager))]

        service = _FakeService(handler, customers=[
            "customers/1111111111", "customers/2222222222", "customers/3333333333",
        ])

        result = _client(service).list_ad_accounts()

        assert [a.external_id for a in result.items] == ["1111111111"]
        assert result.items[0].timezone == "America/New_York"
        assert len(result.errors) == 1
        assert result.errors[0]["external_id"] == "3333333333"

    def test_list_campaigns_parses_rows(self):
        service = _FakeService(lambda cid, q: [_campaign_row("1"), _campaign_row("2", amount=None)])

        result = _client(service).list_campaigns("111-111-1111")

        assert [c.external_id for c in result.items] == ["1", "2"]
        assert result.items[1].daily_budget is None
        assert service.queries[0][0] == "1111111111"

    def test_list_ad_groups_filters_by_campaign(self):
        row = ns(ad_group=ns(id=5, name="Group", status="ENABLED", campaign="customers/1/campaigns/42",
                             type_="SEARCH_STANDARD", cpc_bid_micros=1_500_000, target_cpa_micros=None))
        service = _FakeService(lambda cid, q: [row])

        result = _client(service).list_ad_groups("1111111111", "42")

        assert result.items[0].parent_external_id == "42"
        assert result.items[0].metadata["cpc_bid"] == 1.5
        assert "customers/1111111111/campaigns/42" in service.queries[0][1]

    def test_search_errors_are_translated(self):
        def handler(cid, q):
            raise Exception("RESOURCE_EXHAUSTED")

        with pytest.raises(RateLimitError):
            _client(_FakeService(handler)).list_campaigns("1111111111")

    def test_fetch_insights_uses_level_and_date_range(self):
        def handler(cid, q):
            if "FROM customer" in q:
                return [ns(customer=ns(currency_code="GBP"))]
            return [ns(
                ad_group=ns(id=5), segments=ns(date="2025-06-01"),
                metrics=ns(impressions=10, clicks=1, cost_micros=2_000_000,
                           conversions_by_conversion_date=0.0, conversions_value_by_conversion_date=0.0),
            )]

        service = _FakeService(handler)
        window = DateRange(start=date(2025, 6, 1), end=date(2025, 6, 2))

        result = _client(service).fetch_insights("1111111111", EntityTypeEnum.ad_group, ["5", "not-an-id"], window)

        assert [r.entity_external_id for r in result.items] == ["5"]
        assert result.items[0].currency == "GBP"
        metrics_query = service.queries[-1][1]
        assert "FROM ad_group " in metrics_query
        assert "BETWEEN '2025-06-01' AND '2025-06-02'" in metrics_query
        assert "ad_group.id IN (5)" in metrics_query

    def test_fetch_insights_rejects_account_level(self):
        window = DateRange(start=date(2025, 6, 1), end=date(2025, 6, 1))

        with pytest.raises(FatalError):
            _client(_FakeService()).fetch_insights("1", EntityTypeEnum.ad_account, ["1"], window)

    def test_from_credentials_requires_refresh_token(self):
        with pytest.raises(AuthError):
            GAdsClient.from_credentials(Credentials(access_token="tok"))


class TestRefreshGoogleToken:
    """Test the refresh_token grant against a mocked transport."""

    @staticmethod
    def _http(handler):
        return httpx.Client(transport=httpx.MockTransport(handler))

    def test_refresh_returns_new_access_token(self):
        def handler(request):
            assert b"grant_type=refresh_token" in request.content
            return httpx.Response(200, json={"access_token": "ya29.new", "expires_in": 3599})

        credentials = refresh_google_token(
            Credentials(access_token="old", refresh_token="1//refresh"), http_client=self._http(handler)
        )

        assert credentials.access_token == "ya29.new"
        assert credentials.refresh_token == "1//refresh"
        assert credentials.expires_at <= utcnow() + timedelta(seconds=3600)

    def test_rotated_refresh_token_is_kept(self):
        def handler(request):
            return httpx.Response(200, json={"access_token": "ya29.new", "refresh_token": "1//rotated"})

        credentials = refresh_google_token(
            Credentials(access_token="old", refresh_token="1//refresh"), http_client=self._http(handler)
        )

        assert credentials.refresh_token == "1//rotated"

    def test_invalid_grant_is_auth_error(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been revoked."})

        with pytest.raises(AuthError):
            refresh_google_token(Credentials(access_token="old", refresh_token="r"), http_client=self._http(handler))

    def test_throttled_is_rate_limit(self):
        def handler(request):
            return httpx.Response(429, json={})

        with pytest.raises(RateLimitError):
            refresh_google_token(Credentials(access_token="old", refresh_token="r"), http_client=self._http(handler))

    def test_missing_refresh_token_is_auth_error(self):
        with pytest.raises(AuthError):
            refresh_google_token(Credentials(access_token="old"))
