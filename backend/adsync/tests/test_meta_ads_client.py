"""Unit tests for MetaAdsClient service.

WHAT:
    Tests Meta Ads API client functionality with mocked Facebook SDK responses.
    Verifies rate limiting, payload parsing, error translation, insight
    batching and the long-lived token exchange.

WHY:
    Ensures MetaAdsClient works correctly without making real API calls.
    Fast, deterministic tests that don't require Meta credentials.

REFERENCES:
    - adsync/services/meta_ads_client.py (module under test)
    - facebook_business SDK (mocked)
"""

from datetime import date, timedelta
from unittest.mock import MagicMock, patch

import httpx
import pytest
import requests
from facebook_business.exceptions import FacebookRequestError

from adsync.deps import Settings
from adsync.models import EntityStatusEnum, EntityTypeEnum
from adsync.schemas import Credentials, DateRange
from adsync.services import meta_ads_client as module
from adsync.services.meta_ads_client import (
    MetaAdsClient,
    detect_channel,
    exchange_meta_token,
    map_account_status,
    parse_ad,
    parse_ad_account,
    parse_ad_group,
    parse_campaign,
    parse_insight,
    rate_limit,
    translate_facebook_error,
)
from adsync.services.provider_errors import AuthError, FatalError, RateLimitError, TransientError
from adsync.utils.clock import utcnow


@pytest.fixture(autouse=True)
def _reset_rate_limit_windows():
    """The sliding window is process-wide; isolate every test."""
    module._rate_limit_call_times.clear()
    yield
    module._rate_limit_call_times.clear()


def _fb_error(http_status=400, code=None, message="error", headers=None, transient=False):
    error = {"message": message}
    if code is not None:
        error["code"] = code
    if transient:
        error["is_transient"] = True
    return FacebookRequestError(
        message=message,
        request_context={},
        http_status=http_status,
        http_headers=headers or {},
        body={"error": error},
    )


class TestRateLimiting:
    """Test rate limiting decorator functionality."""

    def test_rate_limit_allows_under_limit(self):
        """WHAT: Rate limiter should allow calls under the limit.
        WHY: Ensures normal operation doesn't block valid calls.
        """
        call_count = 0

        @rate_limit(calls_per_hour=5)
        def dummy_func():
            nonlocal call_count
            call_count += 1
            return "success"

        for _ in range(5):
            assert dummy_func() == "success"

        assert call_count == 5

    def test_rate_limit_preserves_function_metadata(self):
        @rate_limit(calls_per_hour=10)
        def dummy_func():
            """Test function docstring."""

        assert dummy_func.__name__ == "dummy_func"
        assert "Test function docstring" in dummy_func.__doc__

    @patch("adsync.services.meta_ads_client.sleep")
    @patch("adsync.services.meta_ads_client.time")
    def test_rate_limit_shares_budget_for_same_client_token(self, mock_time, mock_sleep):
        """WHAT: Different decorated methods should share one budget per client token.
        WHY: Meta rate limits apply across API endpoints for the same token.
        """
        mock_time.return_value = 0.0

        class FakeClient:
            access_token = "token-1"

        @rate_limit(calls_per_hour=2)
        def f1(client):
            return "f1"

        @rate_limit(calls_per_hour=2)
        def f2(client):
            return "f2"

        client = FakeClient()
        assert f1(client) == "f1"
        assert f2(client) == "f2"
        assert f1(client) == "f1"  # 3rd call should trigger limiter sleep path

        mock_sleep.assert_called_once()

    @patch("adsync.services.meta_ads_client.sleep")
    @patch("adsync.services.meta_ads_client.time")
    def test_rate_limit_budgets_are_per_token(self, mock_time, mock_sleep):
        mock_time.return_value = 0.0

        class FakeClient:
            def __init__(self, token):
                self.access_token = token

        @rate_limit(calls_per_hour=1)
        def call(client):
            return client.access_token

        assert call(FakeClient("a")) == "a"
        assert call(FakeClient("b")) == "b"
        mock_sleep.assert_not_called()


class TestParsers:
    """Test SDK payload -> provider model parsing."""

    def test_ad_account(self):
        account = parse_ad_account({
            "id": "act_123", "name": "Main", "account_status": 1, "currency": "EUR",
            "timezone_name": "Europe/Amsterdam",
        })

        assert account.external_id == "act_123"
        assert account.status == EntityStatusEnum.active
        assert account.currency == "EUR"
        assert account.timezone == "Europe/Amsterdam"

    def test_ad_account_id_without_prefix_is_normalized(self):
        assert parse_ad_account({"id": "123"}).external_id == "act_123"

    @pytest.mark.parametrize("value,expected", [
        (1, EntityStatusEnum.active),
        ("2", EntityStatusEnum.paused),
        (101, EntityStatusEnum.archived),
        (999, EntityStatusEnum.unknown),
        (None, EntityStatusEnum.unknown),
    ])
    def test_map_account_status(self, value, expected):
        assert map_account_status(value) == expected

    def test_campaign_budgets_are_converted_from_minor_units(self):
        campaign = parse_campaign({
            "id": "c1", "account_id": "123", "name": "Summer", "status": "PAUSED",
            "objective": "OUTCOME_SALES", "daily_budget": "5000", "bid_strategy": "LOWEST_COST_WITHOUT_CAP",
        })

        assert campaign.parent_external_id == "act_123"
        assert campaign.status == EntityStatusEnum.paused
        assert campaign.daily_budget == 50.0
        assert campaign.lifetime_budget is None
        assert campaign.metadata["bid_strategy"] == "LOWEST_COST_WITHOUT_CAP"

    def test_ad_group_keeps_targeting_and_channel(self):
        group = parse_ad_group({
            "id": "g1", "campaign_id": "c1", "name": "Broad", "status": "ACTIVE",
            "lifetime_budget": "100000",
            "targeting": {"age_min": 18, "publisher_platforms": ["instagram"]},
            "optimization_goal": "OFFSITE_CONVERSIONS",
        })

        assert group.parent_external_id == "c1"
        assert group.lifetime_budget == 1000.0
        assert group.metadata["targeting"]["age_min"] == 18
        assert group.metadata["channel"] == "instagram"

    @pytest.mark.parametrize("platforms,channel", [
        (None, "facebook"),
        ([], "facebook"),
        (["instagram"], "instagram"),
        (["facebook", "instagram"], "facebook"),
        (["audience_network", "messenger"], "audience_network"),
    ])
    def test_detect_channel(self, platforms, channel):
        targeting = {"publisher_platforms": platforms} if platforms is not None else None
        assert detect_channel(targeting) == channel

    def test_ad_creative_is_flattened_from_story_spec(self):
        ad = parse_ad({
            "id": "a1", "adset_id": "g1", "name": "Ad", "status": "ACTIVE",
            "creative": {
                "id": "cr1",
                "object_story_spec": {"link_data": {
                    "name": "Headline", "message": "Body copy", "picture": "https://img",
                    "link": "https://shop", "call_to_action": {"type": "SHOP_NOW"},
                }},
            },
        })

        assert ad.parent_external_id == "g1"
        assert ad.creative["title"] == "Headline"
        assert ad.creative["body"] == "Body copy"
        assert ad.creative["image_url"] == "https://img"
        assert ad.creative["call_to_action"] == "SHOP_NOW"
        assert ad.creative["link_url"] == "https://shop"

    def test_insight_row(self):
        insight = parse_insight({
            "campaign_id": "c1", "date_start": "2025-06-14", "date_stop": "2025-06-14",
            "impressions": "1200", "clicks": "30", "spend": "12.34", "ctr": "2.5",
            "actions": [{"action_type": "purchase", "value": "2"}],
            "action_values": [{"action_type": "purchase", "value": "99.5"}],
            "account_currency": "USD", "inline_link_clicks": "21",
        }, "campaign")

        assert insight.entity_external_id == "c1"
        assert insight.date_start == date(2025, 6, 14)
        assert insight.impressions == 1200
        assert insight.spend == pytest.approx(12.34)
        assert insight.actions[0].value == 2.0
        assert insight.action_values[0].value == 99.5
        assert insight.extras["inline_link_clicks"] == 21


class TestErrorTranslation:
    """Test FacebookRequestError -> provider error taxonomy."""

    def test_expired_token_is_auth_error(self):
        error = translate_facebook_error(_fb_error(400, code=190, message="Session has expired"), "listing")

        assert isinstance(error, AuthError)
        assert error.code == "190"

    def test_http_401_is_auth_error(self):
        assert isinstance(translate_facebook_error(_fb_error(401), "listing"), AuthError)

    def test_throttling_code_is_rate_limit_with_retry_after(self):
        error = translate_facebook_error(_fb_error(400, code=17, headers={"Retry-After": "30"}), "listing")

        assert isinstance(error, RateLimitError)
        assert error.retry_after == 30.0

    def test_business_use_case_throttle_is_rate_limit(self):
        assert isinstance(translate_facebook_error(_fb_error(400, code=80004), "listing"), RateLimitError)

    def test_server_error_is_transient(self):
        assert isinstance(translate_facebook_error(_fb_error(503, code=2), "listing"), TransientError)

    def test_flagged_transient_error_is_transient(self):
        assert isinstance(translate_facebook_error(_fb_error(400, code=1, transient=True), "listing"), TransientError)

    def test_bad_request_is_fatal(self):
        error = translate_facebook_error(_fb_error(400, code=100, message="Unsupported get request"), "listing")

        assert isinstance(error, FatalError)
        assert error.status_code == 400


class TestMetaAdsClientCalls:
    """Test SDK calls through the client with the SDK objects mocked."""

    @pytest.fixture
    def client(self):
        return MetaAdsClient(access_token="test_token", app_id="app", app_secret="secret")

    def test_from_credentials(self):
        client = MetaAdsClient.from_credentials(Credentials(access_token="tok"))

        assert client.access_token == "tok"

    @patch("adsync.services.meta_ads_client.AdAccount")
    def test_list_campaigns_collects_malformed_records(self, mock_account, client):
        mock_account.return_value.get_campaigns.return_value = iter([
            {"id": "c1", "account_id": "123", "name": "Good", "status": "ACTIVE"},
            {"account_id": "123", "name": "No id"},
        ])

        result = client.list_campaigns("123")

        mock_account.assert_called_once_with("act_123", api=client._api)
        assert [c.external_id for c in result.items] == ["c1"]
        assert len(result.errors) == 1
        assert result.errors[0]["context"] == "fetching campaigns for act_123"

    @patch("adsync.services.meta_ads_client.AdAccount")
    def test_list_campaigns_translates_sdk_errors(self, mock_account, client):
        mock_account.return_value.get_campaigns.side_effect = _fb_error(400, code=190)

        with pytest.raises(AuthError):
            client.list_campaigns("act_123")

    @patch("adsync.services.meta_ads_client.AdAccount")
    def test_network_failure_is_transient(self, mock_account, client):
        mock_account.return_value.get_campaigns.side_effect = requests.ConnectionError("reset")

        with pytest.raises(TransientError):
            client.list_campaigns("act_123")

    @patch("adsync.services.meta_ads_client.Campaign")
    def test_list_ad_groups(self, mock_campaign, client):
        mock_campaign.return_value.get_ad_sets.return_value = [
            {"id": "g1", "campaign_id": "c1", "name": "Set", "status": "ACTIVE"},
        ]

        result = client.list_ad_groups("act_123", "c1")

        assert [g.external_id for g in result] == ["g1"]
        mock_campaign.assert_called_once_with("c1", api=client._api)

    @patch("adsync.services.meta_ads_client.AdSet")
    def test_list_ads(self, mock_adset, client):
        mock_adset.return_value.get_ads.return_value = [
            {"id": "a1", "adset_id": "g1", "name": "Ad", "status": "ACTIVE", "creative": {"title": "T"}},
        ]

        result = client.list_ads("act_123", "g1")

        assert result.items[0].creative["title"] == "T"

    @patch("adsync.services.meta_ads_client.AdAccount")
    def test_fetch_insights_batches_ids_and_filters_by_level(self, mock_account, client):
        mock_account.return_value.get_insights.return_value = []
        ids = [str(i) for i in range(120)]
        window = DateRange(start=date(2025, 6, 1), end=date(2025, 6, 2))

        client.fetch_insights("act_123", EntityTypeEnum.ad_group, ids, window)

        calls = mock_account.return_value.get_insights.call_args_list
        assert len(calls) == 3
        params = calls[0].kwargs["params"]
        assert params["level"] == "adset"
        assert params["time_increment"] == 1
        assert params["time_range"] == {"since": "2025-06-01", "until": "2025-06-02"}
        assert params["filtering"][0]["field"] == "adset.id"
        assert len(params["filtering"][0]["value"]) == 50
        assert len(calls[2].kwargs["params"]["filtering"][0]["value"]) == 20

    @patch("adsync.services.meta_ads_client.AdAccount")
    def test_fetch_insights_parses_rows(self, mock_account, client):
        mock_account.return_value.get_insights.return_value = [
            {"ad_id": "a1", "date_start": "2025-06-01", "impressions": "10", "spend": "1.5"},
            {"date_start": "2025-06-01"},
        ]
        window = DateRange(start=date(2025, 6, 1), end=date(2025, 6, 1))

        result = client.fetch_insights("act_123", EntityTypeEnum.ad, ["a1"], window)

        assert [r.entity_external_id for r in result.items] == ["a1"]
        assert len(result.errors) == 1

    def test_fetch_insights_without_ids_makes_no_call(self, client):
        window = DateRange(start=date(2025, 6, 1), end=date(2025, 6, 1))

        with patch("adsync.services.meta_ads_client.AdAccount") as mock_account:
            result = client.fetch_insights("act_123", EntityTypeEnum.campaign, [], window)

        assert result.items == []
        mock_account.assert_not_called()

    def test_fetch_insights_rejects_account_level(self, client):
        window = DateRange(start=date(2025, 6, 1), end=date(2025, 6, 1))

        with pytest.raises(FatalError):
            client.fetch_insights("act_123", EntityTypeEnum.ad_account, ["1"], window)

    @patch("adsync.services.meta_ads_client.User")
    def test_validate_connection_false_on_auth_error(self, mock_user, client):
        mock_user.return_value.api_get.side_effect = _fb_error(400, code=190)

        assert client.validate_connection() is False

    @patch("adsync.services.meta_ads_client.User")
    def test_validate_connection_true(self, mock_user, client):
        mock_user.return_value.api_get.return_value = MagicMock()

        assert client.validate_connection() is True


class TestTokenExchange:
    """Test the fb_exchange_token flow against a mocked transport."""

    @staticmethod
    def _http(handler):
        return httpx.Client(transport=httpx.MockTransport(handler))

    def test_successful_exchange_returns_new_expiry(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"access_token": "long-lived", "expires_in": 5183944})

        credentials = exchange_meta_token(Credentials(access_token="short"), http_client=self._http(handler))

        assert credentials.access_token == "long-lived"
        assert seen["params"]["grant_type"] == "fb_exchange_token"
        assert seen["params"]["fb_exchange_token"] == "short"
        assert credentials.expires_at > utcnow() + timedelta(days=59)

    def test_missing_expires_in_defaults_to_sixty_days(self):
        def handler(request):
            return httpx.Response(200, json={"access_token": "long-lived"})

        credentials = exchange_meta_token(Credentials(access_token="short"), http_client=self._http(handler))

        assert credentials.expires_at > utcnow() + timedelta(days=59)

    def test_rejected_token_is_auth_error(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"code": 190, "message": "Invalid OAuth access token"}})

        with pytest.raises(AuthError):
            exchange_meta_token(Credentials(access_token="bad"), http_client=self._http(handler))

    def test_server_error_is_transient(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(TransientError):
            exchange_meta_token(Credentials(access_token="tok"), http_client=self._http(handler))

    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientError):
            exchange_meta_token(Credentials(access_token="tok"), http_client=self._http(handler))

    def test_missing_app_credentials_is_fatal(self, monkeypatch):
        monkeypatch.setattr(module, "get_settings", lambda: Settings(META_APP_ID=None, META_APP_SECRET=None))

        with pytest.raises(FatalError):
            exchange_meta_token(Credentials(access_token="tok"), http_client=self._http(lambda r: httpx.Response(200)))
