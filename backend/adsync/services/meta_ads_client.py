"""Meta Ads API Client Service.

WHAT:
    Wrapper for the Facebook Business SDK providing rate-limited access to the
    Meta Marketing API: ad accounts, campaigns, ad sets (ad groups), ads and
    daily insights, plus the long-lived token exchange.

WHY:
    - Centralized Meta API interaction (single source of truth)
    - Rate limiting enforcement shared per access token
    - Pagination handled by the SDK cursor
    - FacebookRequestError translated into the provider error taxonomy so the
      orchestrator can refresh, back off or give up per step

DEPENDENCIES:
    - facebook_business SDK (Graph API calls)
    - httpx (OAuth fb_exchange_token request)
    - adsync/deps.py (META_APP_ID, META_APP_SECRET, META_GRAPH_API_VERSION)

RATE LIMITS:
    - 200 API calls per hour per token (client-side sliding window)
    - Throttling codes 4, 17, 32, 613 and 80000-80014 map to RateLimitError

REFERENCES:
    - adsync/services/provider_client.py (contract)
    - https://developers.facebook.com/docs/marketing-api
    - https://developers.facebook.com/docs/graph-api/overview/rate-limiting
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import timedelta
from functools import wraps
from time import time, sleep
from typing import Any, Dict, List, Optional, Sequence

import httpx
import requests
from facebook_business.api import FacebookAdsApi
from facebook_business.session import FacebookSession
from facebook_business.adobjects.adaccount import AdAccount
from facebook_business.adobjects.adset import AdSet
from facebook_business.adobjects.adsinsights import AdsInsights
from facebook_business.adobjects.campaign import Campaign
from facebook_business.adobjects.user import User
from facebook_business.exceptions import FacebookRequestError

from adsync.deps import get_settings
from adsync.models import EntityStatusEnum, EntityTypeEnum, ProviderEnum
from adsync.schemas import (
    Credentials,
    DateRange,
    InsightAction,
    RawInsight,
    RemoteAd,
    RemoteAdAccount,
    RemoteAdGroup,
    RemoteCampaign,
)
from adsync.services.provider_client import (
    AdsProviderClient,
    FetchResult,
    chunked,
    meta_account_id,
    normalize_status,
    parse_records,
)
from adsync.services.provider_errors import (
    AuthError,
    FatalError,
    RateLimitError,
    TransientError,
)
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

PROVIDER = ProviderEnum.meta.value

# Long-lived user tokens last ~60 days when Meta omits expires_in
DEFAULT_TOKEN_TTL_SECONDS = 5_184_000

META_AUTH_ERROR_CODES = {102, 190}
META_RATE_LIMIT_CODES = {4, 17, 32, 613} | set(range(80000, 80015))

# Insight level names used by the Graph API
INSIGHT_LEVELS = {
    EntityTypeEnum.campaign: "campaign",
    EntityTypeEnum.ad_group: "adset",
    EntityTypeEnum.ad: "ad",
}
INSIGHT_ID_BATCH_SIZE = 50

# Meta numeric account_status values
ACCOUNT_STATUS_MAP = {
    1: EntityStatusEnum.active,      # ACTIVE
    2: EntityStatusEnum.paused,      # DISABLED
    3: EntityStatusEnum.paused,      # UNSETTLED
    7: EntityStatusEnum.paused,      # PENDING_RISK_REVIEW
    8: EntityStatusEnum.paused,      # PENDING_SETTLEMENT
    9: EntityStatusEnum.active,      # IN_GRACE_PERIOD
    100: EntityStatusEnum.archived,  # PENDING_CLOSURE
    101: EntityStatusEnum.archived,  # CLOSED
    201: EntityStatusEnum.active,    # ANY_ACTIVE
    202: EntityStatusEnum.archived,  # ANY_CLOSED
}


# =============================================================================
# RATE LIMITING
# =============================================================================

# Call timestamps per access token, shared by every decorated method
_rate_limit_call_times: Dict[str, deque] = {}
_rate_limit_lock = threading.Lock()


def rate_limit(calls_per_hour: int):
    """Decorator to enforce rate limiting using a sliding window.

    WHAT:
        Tracks call timestamps per client token and sleeps when the next call
        would exceed `calls_per_hour`.

    WHY:
        Meta limits apply across endpoints for the same token, so every
        decorated method draws from one budget keyed by `self.access_token`.
        Clients in different worker threads share the window.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            key = getattr(args[0], "access_token", None) if args else None
            key = key or "__default__"

            with _rate_limit_lock:
                call_times = _rate_limit_call_times.setdefault(key, deque())
                now = time()
                while call_times and call_times[0] < now - 3600:
                    call_times.popleft()
                sleep_time = 0.0
                if len(call_times) >= calls_per_hour:
                    sleep_time = 3600 - (now - call_times[0]) + 1

            if sleep_time > 0:
                logger.warning(
                    "[META_CLIENT] Rate limit reached (%d calls/hour). Sleeping for %.1fs",
                    calls_per_hour, sleep_time,
                )
                sleep(sleep_time)

            with _rate_limit_lock:
                _rate_limit_call_times[key].append(time())
            return func(*args, **kwargs)
        return wrapper
    return decorator


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================

def _to_dict(obj: Any) -> Dict[str, Any]:
    """SDK objects -> plain JSON-compatible dicts (nested objects included)."""
    if isinstance(obj, dict):
        return obj
    export = getattr(obj, "export_all_data", None)
    if callable(export):
        return export()
    return dict(obj)


def _minor_units(value: Any) -> Optional[float]:
    """Meta reports budgets in the currency's minor unit (cents)."""
    if value in (None, ""):
        return None
    return float(value) / 100.0


def _to_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(float(value))


def _to_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    return float(value)


def map_account_status(value: Any) -> EntityStatusEnum:
    """Map Meta's numeric `account_status` onto the shared vocabulary."""
    try:
        return ACCOUNT_STATUS_MAP.get(int(value), EntityStatusEnum.unknown)
    except (TypeError, ValueError):
        return EntityStatusEnum.unknown


def detect_channel(targeting: Optional[Dict[str, Any]]) -> str:
    """Derive the delivery channel of an ad set from its publisher platforms.

    Automatic placements (no explicit platforms) count as facebook.
    """
    platforms = [str(p).lower() for p in (targeting or {}).get("publisher_platforms") or []]
    if len(platforms) == 1:
        return platforms[0]
    if not platforms or "facebook" in platforms:
        return "facebook"
    return platforms[0]


def parse_ad_account(raw: Any) -> RemoteAdAccount:
    data = _to_dict(raw)
    return RemoteAdAccount(
        external_id=meta_account_id(data["id"]),
        name=data.get("name"),
        status=map_account_status(data.get("account_status")),
        currency=data.get("currency"),
        timezone=data.get("timezone_name"),
        metadata={"raw": data},
    )


def parse_campaign(raw: Any) -> RemoteCampaign:
    data = _to_dict(raw)
    return RemoteCampaign(
        external_id=data["id"],
        parent_external_id=meta_account_id(data["account_id"]) if data.get("account_id") else None,
        name=data.get("name"),
        status=normalize_status(data.get("status")),
        objective=data.get("objective"),
        daily_budget=_minor_units(data.get("daily_budget")),
        lifetime_budget=_minor_units(data.get("lifetime_budget")),
        metadata={
            "raw": data,
            "bid_strategy": data.get("bid_strategy"),
            "effective_status": data.get("effective_status"),
        },
    )


def parse_ad_group(raw: Any) -> RemoteAdGroup:
    data = _to_dict(raw)
    targeting = data.get("targeting") or {}
    return RemoteAdGroup(
        external_id=data["id"],
        parent_external_id=data.get("campaign_id"),
        name=data.get("name"),
        status=normalize_status(data.get("status")),
        daily_budget=_minor_units(data.get("daily_budget")),
        lifetime_budget=_minor_units(data.get("lifetime_budget")),
        metadata={
            "raw": data,
            "targeting": targeting,
            "optimization_goal": data.get("optimization_goal"),
            "billing_event": data.get("billing_event"),
            "channel": detect_channel(targeting),
        },
    )


def parse_creative(creative: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Flatten the creative fields that are change-tracked."""
    creative = creative or {}
    story = creative.get("object_story_spec") or {}
    link_data = story.get("link_data") or {}
    video_data = story.get("video_data") or {}
    return {
        "id": creative.get("id"),
        "title": creative.get("title") or link_data.get("name") or video_data.get("title"),
        "body": creative.get("body") or link_data.get("message") or video_data.get("message"),
        "image_url": creative.get("image_url") or link_data.get("picture") or video_data.get("image_url"),
        "thumbnail_url": creative.get("thumbnail_url"),
        "video_id": creative.get("video_id") or video_data.get("video_id"),
        "call_to_action": creative.get("call_to_action_type")
        or (link_data.get("call_to_action") or {}).get("type"),
        "link_url": link_data.get("link"),
    }


def parse_ad(raw: Any) -> RemoteAd:
    data = _to_dict(raw)
    return RemoteAd(
        external_id=data["id"],
        parent_external_id=data.get("adset_id"),
        name=data.get("name"),
        status=normalize_status(data.get("status")),
        creative=parse_creative(data.get("creative")),
        metadata={"raw": data, "effective_status": data.get("effective_status")},
    )


def _parse_action_list(values: Any) -> List[InsightAction]:
    return [
        InsightAction(action_type=item["action_type"], value=float(item.get("value") or 0))
        for item in values or []
    ]


def parse_insight(raw: Any, level: str) -> RawInsight:
    data = _to_dict(raw)
    return RawInsight(
        entity_external_id=data[f"{level}_id"],
        date_start=data["date_start"],
        impressions=_to_int(data.get("impressions")),
        clicks=_to_int(data.get("clicks")),
        spend=_to_float(data.get("spend")),
        reach=_to_int(data.get("reach")),
        frequency=_to_float(data.get("frequency")),
        ctr=_to_float(data.get("ctr")),
        cpc=_to_float(data.get("cpc")),
        cpm=_to_float(data.get("cpm")),
        actions=_parse_action_list(data.get("actions")),
        action_values=_parse_action_list(data.get("action_values")),
        currency=data.get("account_currency"),
        extras={
            "date_stop": data.get("date_stop"),
            "inline_link_clicks": _to_int(data.get("inline_link_clicks")),
            "inline_post_engagement": _to_int(data.get("inline_post_engagement")),
            "purchase_roas": data.get("purchase_roas"),
        },
    )


# =============================================================================
# ERROR TRANSLATION
# =============================================================================

def _retry_after_seconds(headers: Any) -> Optional[float]:
    if not headers:
        return None
    for key in ("Retry-After", "retry-after"):
        value = headers.get(key) if hasattr(headers, "get") else None
        if value:
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
    return None


def translate_facebook_error(error: FacebookRequestError, context: str):
    """Translate a FacebookRequestError into the provider error taxonomy.

    Returns the exception to raise:
        AuthError:      HTTP 401 or codes 102/190
        RateLimitError: HTTP 429 or Meta throttling codes
        TransientError: HTTP 5xx or errors Meta flags as transient
        FatalError:     everything else (400, 403, 404)
    """
    http_status = error.http_status()
    error_code = error.api_error_code()
    error_message = error.api_error_message() or str(error)

    logger.error(
        "[META_CLIENT] API error while %s: HTTP %s, Code %s, Message: %s",
        context, http_status, error_code, error_message,
    )

    kwargs = {"provider": PROVIDER, "status_code": http_status, "code": str(error_code) if error_code else None}
    if http_status == 401 or error_code in META_AUTH_ERROR_CODES:
        return AuthError(f"Authentication failed while {context}. Token may be expired or invalid.", **kwargs)
    if http_status == 429 or error_code in META_RATE_LIMIT_CODES:
        return RateLimitError(
            f"Rate limit exceeded while {context}: {error_message}",
            retry_after=_retry_after_seconds(error.http_headers()),
            **kwargs,
        )
    if (http_status or 0) >= 500 or error.api_transient_error():
        return TransientError(f"Meta API unavailable while {context}: HTTP {http_status}, {error_message}", **kwargs)
    return FatalError(f"Meta API rejected request while {context}: HTTP {http_status}, {error_message}", **kwargs)


# =============================================================================
# CLIENT
# =============================================================================

class MetaAdsClient(AdsProviderClient):
    """Client for the Meta Marketing API.

    WHAT:
        Implements the provider contract for Meta. Each instance owns its own
        FacebookAdsApi (no process-wide default), so concurrent syncs for
        different connections never share a token.

    Usage:
        ```python
        client = MetaAdsClient(access_token="TOKEN")
        result = client.list_campaigns("act_123456789")
        for campaign in result.items:
            ...
        ```
    """

    provider = ProviderEnum.meta

    def __init__(
        self,
        access_token: str,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.access_token = access_token
        self.api_version = api_version or settings.META_GRAPH_API_VERSION

        session = FacebookSession(
            app_id=app_id or settings.META_APP_ID,
            app_secret=app_secret or settings.META_APP_SECRET,
            access_token=access_token,
            timeout=timeout or settings.PROVIDER_REQUEST_TIMEOUT_SECONDS,
        )
        self._api = FacebookAdsApi(session, api_version=self.api_version)

        logger.debug("[META_CLIENT] Initialized (api_version=%s)", self.api_version)

    @classmethod
    def from_credentials(cls, credentials: Credentials) -> "MetaAdsClient":
        return cls(access_token=credentials.access_token)

    def _call(self, context: str, fn, *args, **kwargs):
        """Run an SDK call (including cursor iteration) with error translation."""
        try:
            return fn(*args, **kwargs)
        except FacebookRequestError as e:
            raise translate_facebook_error(e, context) from e
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientError(f"Network error while {context}: {e}", provider=PROVIDER) from e

    # --- Entities -------------------------------------------------------
    @rate_limit(calls_per_hour=200)
    def list_ad_accounts(self) -> FetchResult[RemoteAdAccount]:
        """Fetch all ad accounts the token can access."""
        context = "listing ad accounts"

        def fetch():
            cursor = User(fbid="me", api=self._api).get_ad_accounts(fields=[
                AdAccount.Field.id,
                AdAccount.Field.account_id,
                AdAccount.Field.name,
                AdAccount.Field.account_status,
                AdAccount.Field.currency,
                AdAccount.Field.timezone_name,
            ])
            return list(cursor)

        raw = self._call(context, fetch)
        result = parse_records(raw, parse_ad_account, context=context)
        logger.info("[META_CLIENT] Fetched %d ad accounts (%d malformed)", len(result), len(result.errors))
        return result

    @rate_limit(calls_per_hour=200)
    def list_campaigns(self, account_external_id: str) -> FetchResult[RemoteCampaign]:
        """Fetch all campaigns for an ad account.

        Budgets are converted from minor units; the raw payload is kept in
        metadata for diagnostics.
        """
        account_id = meta_account_id(account_external_id)
        context = f"fetching campaigns for {account_id}"

        def fetch():
            cursor = AdAccount(account_id, api=self._api).get_campaigns(fields=[
                Campaign.Field.id,
                Campaign.Field.account_id,
                Campaign.Field.name,
                Campaign.Field.status,
                Campaign.Field.effective_status,
                Campaign.Field.objective,
                Campaign.Field.daily_budget,
                Campaign.Field.lifetime_budget,
                Campaign.Field.bid_strategy,
            ])
            return list(cursor)

        raw = self._call(context, fetch)
        result = parse_records(raw, parse_campaign, context=context)
        logger.info("[META_CLIENT] Fetched %d campaigns for %s", len(result), account_id)
        return result

    @rate_limit(calls_per_hour=200)
    def list_ad_groups(self, account_external_id: str, campaign_external_id: str) -> FetchResult[RemoteAdGroup]:
        """Fetch all ad sets for a campaign, including targeting."""
        context = f"fetching adsets for campaign {campaign_external_id}"

        def fetch():
            cursor = Campaign(campaign_external_id, api=self._api).get_ad_sets(fields=[
                AdSet.Field.id,
                AdSet.Field.name,
                AdSet.Field.status,
                AdSet.Field.effective_status,
                AdSet.Field.campaign_id,
                AdSet.Field.daily_budget,
                AdSet.Field.lifetime_budget,
                AdSet.Field.optimization_goal,
                AdSet.Field.billing_event,
                AdSet.Field.targeting,
            ])
            return list(cursor)

        raw = self._call(context, fetch)
        result = parse_records(raw, parse_ad_group, context=context)
        logger.info("[META_CLIENT] Fetched %d adsets for campaign %s", len(result), campaign_external_id)
        return result

    @rate_limit(calls_per_hour=200)
    def list_ads(self, account_external_id: str, ad_group_external_id: str) -> FetchResult[RemoteAd]:
        """Fetch all ads for an ad set with the creative fields we track."""
        context = f"fetching ads for adset {ad_group_external_id}"

        def fetch():
            cursor = AdSet(ad_group_external_id, api=self._api).get_ads(fields=[
                "id",
                "name",
                "status",
                "effective_status",
                "adset_id",
                "creative{id,title,body,image_url,thumbnail_url,video_id,call_to_action_type,object_story_spec}",
            ])
            return list(cursor)

        raw = self._call(context, fetch)
        result = parse_records(raw, parse_ad, context=context)
        logger.info("[META_CLIENT] Fetched %d ads for adset %s", len(result), ad_group_external_id)
        return result

    # --- Insights -------------------------------------------------------
    @rate_limit(calls_per_hour=200)
    def fetch_insights(
        self,
        account_external_id: str,
        entity_type: EntityTypeEnum,
        entity_external_ids: Sequence[str],
        date_range: DateRange,
    ) -> FetchResult[RawInsight]:
        """Fetch daily insights for a set of entities at one level.

        WHAT:
            One account-level insights query per batch of ids, filtered on
            `<level>.id IN (...)`, broken down per day (time_increment=1).

        WHY:
            Querying at the account with a filter costs one call per batch
            instead of one call per entity.
        """
        level = INSIGHT_LEVELS.get(entity_type)
        if level is None:
            raise FatalError(f"Insights are not available for {entity_type}", provider=PROVIDER)

        account_id = meta_account_id(account_external_id)
        result: FetchResult[RawInsight] = FetchResult()
        ids = [str(i) for i in entity_external_ids]
        if not ids:
            return result

        fields = [
            AdsInsights.Field.date_start,
            AdsInsights.Field.date_stop,
            f"{level}_id",
            AdsInsights.Field.impressions,
            AdsInsights.Field.clicks,
            AdsInsights.Field.spend,
            AdsInsights.Field.reach,
            AdsInsights.Field.frequency,
            AdsInsights.Field.ctr,
            AdsInsights.Field.cpc,
            AdsInsights.Field.cpm,
            AdsInsights.Field.actions,
            AdsInsights.Field.action_values,
            AdsInsights.Field.account_currency,
            AdsInsights.Field.inline_link_clicks,
            AdsInsights.Field.inline_post_engagement,
            AdsInsights.Field.purchase_roas,
        ]

        for batch in chunked(ids, INSIGHT_ID_BATCH_SIZE):
            context = f"fetching {level} insights for {account_id}"
            params = {
                "level": level,
                "time_increment": 1,
                "time_range": {
                    "since": date_range.start.isoformat(),
                    "until": date_range.end.isoformat(),
                },
                "filtering": [{"field": f"{level}.id", "operator": "IN", "value": batch}],
            }

            def fetch():
                cursor = AdAccount(account_id, api=self._api).get_insights(fields=fields, params=params)
                return list(cursor)

            raw = self._call(context, fetch)
            result.extend(parse_records(raw, lambda r: parse_insight(r, level), context=context))

        logger.info(
            "[META_CLIENT] Fetched %d %s insight rows for %s (%s to %s)",
            len(result), level, account_id, date_range.start, date_range.end,
        )
        return result

    # --- Credentials ----------------------------------------------------
    def validate_connection(self) -> bool:
        """Cheap `/me` call. False on auth failure; other errors propagate."""
        try:
            self._call("validating token", lambda: User(fbid="me", api=self._api).api_get(fields=["id"]))
            return True
        except AuthError:
            return False

    def refresh_credentials(self, credentials: Credentials) -> Credentials:
        return exchange_meta_token(credentials, api_version=self.api_version)


def exchange_meta_token(
    credentials: Credentials,
    *,
    api_version: Optional[str] = None,
    http_client: Optional[httpx.Client] = None,
) -> Credentials:
    """Exchange the current token for a fresh long-lived token.

    WHAT:
        GET /oauth/access_token with grant_type=fb_exchange_token.

    WHY:
        Meta user tokens have no refresh token; a still-valid long-lived
        token can be exchanged for a new one with a fresh ~60 day expiry.

    Raises:
        AuthError: token rejected (OAuthException / code 190)
        RateLimitError, TransientError, FatalError: per HTTP outcome
    """
    settings = get_settings()
    if not settings.META_APP_ID or not settings.META_APP_SECRET:
        raise FatalError("META_APP_ID / META_APP_SECRET not configured", provider=PROVIDER)

    url = f"https://graph.facebook.com/{api_version or settings.META_GRAPH_API_VERSION}/oauth/access_token"
    params = {
        "grant_type": "fb_exchange_token",
        "client_id": settings.META_APP_ID,
        "client_secret": settings.META_APP_SECRET,
        "fb_exchange_token": credentials.access_token,
    }

    client = http_client or httpx.Client(timeout=settings.PROVIDER_REQUEST_TIMEOUT_SECONDS)
    try:
        response = client.get(url, params=params)
    except httpx.TimeoutException as e:
        raise TransientError(f"Meta token exchange timed out: {e}", provider=PROVIDER) from e
    except httpx.TransportError as e:
        raise TransientError(f"Meta token exchange failed: {e}", provider=PROVIDER) from e
    finally:
        if http_client is None:
            client.close()

    payload: Dict[str, Any] = {}
    try:
        payload = response.json()
    except ValueError:
        payload = {}

    if response.status_code >= 400:
        error = payload.get("error") or {}
        code = error.get("code")
        message = error.get("message") or response.text[:200]
        if response.status_code == 401 or code in META_AUTH_ERROR_CODES:
            raise AuthError(f"Meta rejected token exchange: {message}", provider=PROVIDER,
                            status_code=response.status_code, code=str(code) if code else None)
        if response.status_code == 429 or code in META_RATE_LIMIT_CODES:
            raise RateLimitError(f"Meta throttled token exchange: {message}", provider=PROVIDER,
                                 status_code=response.status_code)
        if response.status_code >= 500:
            raise TransientError(f"Meta token exchange failed: HTTP {response.status_code}", provider=PROVIDER,
                                 status_code=response.status_code)
        raise FatalError(f"Meta token exchange rejected: {message}", provider=PROVIDER,
                         status_code=response.status_code)

    access_token = payload.get("access_token")
    if not access_token:
        raise FatalError("Meta token exchange returned no access_token", provider=PROVIDER)

    expires_in = int(payload.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
    logger.info("[META_CLIENT] Exchanged for long-lived token (expires in %ss)", expires_in)
    return Credentials(
        access_token=access_token,
        refresh_token=credentials.refresh_token,
        expires_at=utcnow() + timedelta(seconds=expires_in),
    )
