"""Google Ads client service abstraction.

WHAT:
    Encapsulates Google Ads API usage behind the provider client contract.
    Provides GAQL search, entity listing, daily metrics, rate limiting, and
    translation of SDK failures into the provider error taxonomy. Mirrors
    Meta's service structure while honoring Google Ads specifics (GAQL,
    micros, resource names, account timezone/currency).

WHY:
    - Separation of concerns: keep provider SDK logic out of the pipeline.
    - Single responsibility: this module only talks to Google Ads.
    - Testability: the SDK client is injected so tests can mock it.

REFERENCES:
    adsync/services/provider_client.py (contract, retry policy)
    adsync/services/meta_ads_client.py (service patterns)
    https://developers.google.com/google-ads/api/docs/query/overview
"""

from __future__ import annotations

import logging
import re
import time
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
from google.ads.googleads.client import GoogleAdsClient as _SdkClient
from google.ads.googleads.errors import GoogleAdsException
from google.auth.exceptions import RefreshError

from adsync.deps import get_settings
from adsync.models import EntityTypeEnum, ProviderEnum
from adsync.schemas import (
    Credentials,
    DateRange,
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
    google_customer_id,
    normalize_status,
    parse_records,
)
from adsync.services.provider_errors import (
    AuthError,
    FatalError,
    ProviderError,
    RateLimitError,
    TransientError,
)
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

PROVIDER = ProviderEnum.google.value
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_TOKEN_TTL_SECONDS = 3599
INSIGHT_ID_BATCH_SIZE = 200
MICROS = 1_000_000.0

# GAQL resource and id column per entity level
INSIGHT_QUERY_PARTS = {
    EntityTypeEnum.campaign: ("campaign", "campaign.id"),
    EntityTypeEnum.ad_group: ("ad_group", "ad_group.id"),
    EntityTypeEnum.ad: ("ad_group_ad", "ad_group_ad.ad.id"),
}


def _extract_retry_seconds(error_str: str) -> Optional[int]:
    """Extract retry delay from Google Ads API error message.

    WHAT:
        Parses error messages like "Retry in 723 seconds" to extract the delay.

    WHY:
        Google Ads API embeds retry hints in error messages for quota exhaustion.
        We must respect these to avoid hammering the API.

    Returns:
        Number of seconds to wait, or None if not found.
    """
    match = re.search(r'[Rr]etry in (\d+) seconds', error_str)
    if match:
        return int(match.group(1))
    return None


class GoogleAdsRateLimiter:
    """Simple token bucket rate limiter.

    WHAT:
        Guard outgoing requests to honor QPS/quota. Defaults are conservative.
    WHY:
        Avoid RESOURCE_EXHAUSTED errors and smooth out bursts.
    """

    def __init__(self, capacity: int = 15, refill_per_sec: float = 5.0) -> None:
        self.capacity = capacity
        self.tokens = capacity
        self.refill_per_sec = refill_per_sec
        self.last = time.monotonic()

    def acquire(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last
        self.last = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_sec)
        if self.tokens < 1:
            # Sleep until we have at least 1 token
            missing = 1 - self.tokens
            time.sleep(max(0.0, missing / self.refill_per_sec))
            self.tokens = 0
        self.tokens = max(0.0, self.tokens - 1)


def _grpc_status_name(error: Exception) -> Optional[str]:
    """Status code name of a GoogleAdsException's underlying gRPC error."""
    rpc_error = getattr(error, "error", None)
    code_fn = getattr(rpc_error, "code", None)
    if not callable(code_fn):
        return None
    try:
        code = code_fn()
    except Exception:  # noqa: BLE001 - best-effort inspection
        return None
    return getattr(code, "name", None) or str(code)


def _failure_codes(error: GoogleAdsException) -> str:
    failure = getattr(error, "failure", None)
    parts = []
    for item in getattr(failure, "errors", None) or []:
        parts.append(f"{item.error_code} {getattr(item, 'message', '')}".strip())
    return " ".join(parts)


def translate_google_error(error: Exception, context: str) -> ProviderError:
    """Translate an SDK failure into the provider error taxonomy.

    WHAT:
        AuthError:      invalid_grant, AUTHENTICATION_ERROR, UNAUTHENTICATED
        RateLimitError: RESOURCE_EXHAUSTED / 429 / quota, with "Retry in N seconds" hint
        TransientError: UNAVAILABLE, INTERNAL, DEADLINE_EXCEEDED, RST_STREAM
        FatalError:     everything else (bad GAQL, permission denied)

    WHY:
        Retrying is the orchestrator's job; the client only classifies.
    """
    if isinstance(error, ProviderError):
        return error

    error_str = str(error)
    if isinstance(error, GoogleAdsException):
        # Failure details (authentication_error, quota_error, ...) live on the proto
        error_str = f"{error_str} {_failure_codes(error)}"
    lower = error_str.lower()
    status_name = _grpc_status_name(error) or ""
    request_id = getattr(error, "request_id", None)

    logger.error(
        "[GOOGLE_ADS] API error while %s (status=%s, request_id=%s): %s",
        context, status_name or "n/a", request_id, error_str[:300],
    )

    if (
        isinstance(error, RefreshError)
        or "invalid_grant" in lower
        or "AUTHENTICATION_ERROR" in error_str
        or "authentication_error" in lower
        or status_name == "UNAUTHENTICATED"
    ):
        return AuthError(f"Google Ads authentication failed while {context}", provider=PROVIDER, code=status_name or None)

    if (
        status_name == "RESOURCE_EXHAUSTED"
        or "RESOURCE_EXHAUSTED" in error_str
        or "429" in error_str
        or "too many requests" in lower
        or "quota" in lower
    ):
        return RateLimitError(
            f"Google Ads quota exhausted while {context}",
            retry_after=_extract_retry_seconds(error_str),
            provider=PROVIDER,
            status_code=429,
            code=status_name or None,
        )

    if status_name in ("UNAVAILABLE", "INTERNAL", "DEADLINE_EXCEEDED") or any(
        k in error_str for k in ("UNAVAILABLE", "RST_STREAM", "deadline exceeded", "Deadline Exceeded")
    ):
        return TransientError(f"Google Ads unavailable while {context}: {error_str[:200]}", provider=PROVIDER,
                              code=status_name or None)

    return FatalError(f"Google Ads rejected request while {context}: {error_str[:200]}", provider=PROVIDER,
                      code=status_name or None)


# =============================================================================
# ROW PARSERS
# =============================================================================

def _enum_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(getattr(value, "name", None) or value)


def _resource_tail(resource_name: Any) -> Optional[str]:
    """customers/123/campaigns/456 -> 456"""
    if not resource_name:
        return None
    return str(resource_name).split("/")[-1]


def _micros(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    return float(value) / MICROS


def parse_customer(row: Any) -> RemoteAdAccount:
    cust = row.customer
    return RemoteAdAccount(
        external_id=google_customer_id(cust.id),
        name=getattr(cust, "descriptive_name", None) or None,
        status=normalize_status(getattr(cust, "status", None)),
        currency=getattr(cust, "currency_code", None) or None,
        timezone=getattr(cust, "time_zone", None) or None,
        metadata={"manager": bool(getattr(cust, "manager", False))},
    )


def parse_campaign(row: Any, customer_id: str) -> RemoteCampaign:
    c = row.campaign
    budget = getattr(row, "campaign_budget", None)
    period = _enum_name(getattr(budget, "period", None)) if budget is not None else None
    amount = _micros(getattr(budget, "amount_micros", None)) if budget is not None else None
    total = _micros(getattr(budget, "total_amount_micros", None)) if budget is not None else None
    is_daily = period is None or period.endswith("DAILY")
    return RemoteCampaign(
        external_id=c.id,
        parent_external_id=customer_id,
        name=getattr(c, "name", None),
        status=normalize_status(getattr(c, "status", None)),
        objective=_enum_name(getattr(c, "advertising_channel_type", None)),
        daily_budget=amount if is_daily and amount else None,
        lifetime_budget=total or None,
        metadata={
            "bid_strategy": _enum_name(getattr(c, "bidding_strategy_type", None)),
            "serving_status": _enum_name(getattr(c, "serving_status", None)),
            "budget_period": period,
        },
    )


def parse_ad_group(row: Any) -> RemoteAdGroup:
    g = row.ad_group
    return RemoteAdGroup(
        external_id=g.id,
        parent_external_id=_resource_tail(getattr(g, "campaign", None)),
        name=getattr(g, "name", None),
        status=normalize_status(getattr(g, "status", None)),
        metadata={
            "type": _enum_name(getattr(g, "type_", None)),
            "cpc_bid": _micros(getattr(g, "cpc_bid_micros", None)),
            "target_cpa": _micros(getattr(g, "target_cpa_micros", None)),
        },
    )


def _first_text(assets: Iterable[Any]) -> Optional[str]:
    for asset in assets or []:
        text = getattr(asset, "text", None)
        if text:
            return text
    return None


def parse_ad(row: Any) -> RemoteAd:
    aga = row.ad_group_ad
    ad = aga.ad
    rsa = getattr(ad, "responsive_search_ad", None)
    final_urls = list(getattr(ad, "final_urls", None) or [])
    creative = {
        "type": _enum_name(getattr(ad, "type_", None)),
        "title": _first_text(getattr(rsa, "headlines", None)) if rsa is not None else None,
        "body": _first_text(getattr(rsa, "descriptions", None)) if rsa is not None else None,
        "image_url": None,
        "video_id": None,
        "call_to_action": None,
        "link_url": final_urls[0] if final_urls else None,
    }
    return RemoteAd(
        external_id=ad.id,
        parent_external_id=_resource_tail(getattr(aga, "ad_group", None)),
        name=getattr(ad, "name", None) or None,
        status=normalize_status(getattr(aga, "status", None)),
        creative=creative,
        metadata={
            "final_urls": final_urls,
            "tracking_url_template": getattr(ad, "tracking_url_template", None) or None,
        },
    )


def parse_metrics_row(row: Any, entity_type: EntityTypeEnum, currency: Optional[str] = None) -> RawInsight:
    m = row.metrics
    if entity_type == EntityTypeEnum.campaign:
        resource_id = row.campaign.id
    elif entity_type == EntityTypeEnum.ad_group:
        resource_id = row.ad_group.id
    else:
        resource_id = row.ad_group_ad.ad.id
    return RawInsight(
        entity_external_id=resource_id,
        date_start=str(row.segments.date),
        impressions=int(m.impressions or 0),
        clicks=int(m.clicks or 0),
        spend=(m.cost_micros or 0) / MICROS,
        conversions=float(getattr(m, "conversions_by_conversion_date", 0.0) or 0.0),
        revenue=float(getattr(m, "conversions_value_by_conversion_date", 0.0) or 0.0),
        currency=currency,
    )


# =============================================================================
# CLIENT
# =============================================================================

class GAdsClient(AdsProviderClient):
    """Testable wrapper around Google Ads Python SDK.

    WHAT:
        - Builds an SDK client from a connection's refresh token.
        - Provides GAQL search and the provider contract listings.
    WHY:
        - Keep the pipeline free from SDK-specific details.
    """

    provider = ProviderEnum.google

    def __init__(self, client: Any, rate_limiter: Optional[GoogleAdsRateLimiter] = None) -> None:
        self._client = client
        self._ga_service = None
        self._rate = rate_limiter or GoogleAdsRateLimiter()
        self._currency_by_customer: Dict[str, Optional[str]] = {}

    # --- Client factory -------------------------------------------------
    @classmethod
    def from_credentials(cls, credentials: Credentials) -> "GAdsClient":
        if not credentials.refresh_token:
            raise AuthError("Google connection has no refresh token", provider=PROVIDER)
        return cls(cls._build_client_from_tokens(credentials.refresh_token))

    @staticmethod
    def _build_client_from_tokens(refresh_token: str, login_customer_id: Optional[str] = None) -> Any:
        """Build GoogleAdsClient from OAuth tokens (for connections).

        WHAT:
            Creates SDK client using the refresh token stored on the connection.
        WHY:
            Supports OAuth connections where tokens are stored in database.
        """
        settings = get_settings()
        if not settings.GOOGLE_DEVELOPER_TOKEN or not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
            raise FatalError(
                "Missing required Google Ads settings: GOOGLE_DEVELOPER_TOKEN, GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET",
                provider=PROVIDER,
            )

        # Only use a valid 10-digit login customer id; otherwise omit to avoid client error
        login_customer_id = login_customer_id or settings.GOOGLE_LOGIN_CUSTOMER_ID
        if login_customer_id:
            login_customer_id = google_customer_id(login_customer_id)
            if len(login_customer_id) != 10:
                login_customer_id = None

        config = {
            "developer_token": settings.GOOGLE_DEVELOPER_TOKEN,
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "refresh_token": refresh_token,
            # google-ads >= 21 requires explicit use_proto_plus
            "use_proto_plus": True,
        }
        if login_customer_id:
            config["login_customer_id"] = login_customer_id
        return _SdkClient.load_from_dict(config)

    # --- Low-level GAQL -------------------------------------------------
    def _service(self):
        if self._ga_service is None:
            self._ga_service = self._client.get_service("GoogleAdsService")
        return self._ga_service

    def search(self, customer_id: str, query: str, context: str = "running GAQL search") -> List[Any]:
        """GAQL search with rate limit and error translation.

        Results are materialized so paging errors surface here rather than
        in the caller's loop.
        """
        self._rate.acquire()
        try:
            return list(self._service().search(customer_id=google_customer_id(customer_id), query=query))
        except Exception as e:  # noqa: BLE001 - GoogleAdsException, RefreshError and grpc errors share no base
            raise translate_google_error(e, context) from e

    # --- Entities -------------------------------------------------------
    def list_ad_accounts(self) -> FetchResult[RemoteAdAccount]:
        """Accessible customers, excluding manager accounts (no direct campaigns)."""
        self._rate.acquire()
        try:
            service = self._client.get_service("CustomerService")
            resource_names = list(service.list_accessible_customers().resource_names)
        except Exception as e:  # noqa: BLE001
            raise translate_google_error(e, "listing accessible customers") from e

        result: FetchResult[RemoteAdAccount] = FetchResult()
        query = (
            "SELECT customer.id, customer.descriptive_name, customer.currency_code, "
            "customer.time_zone, customer.status, customer.manager FROM customer LIMIT 1"
        )
        for resource_name in resource_names:
            customer_id = google_customer_id(resource_name)
            context = f"fetching customer {customer_id}"
            try:
                rows = self.search(customer_id, query, context=context)
            except FatalError as e:
                # Permission problems on one customer must not hide the others
                result.errors.append({"external_id": customer_id, "context": context, "error": str(e)[:500]})
                continue
            parsed = parse_records(rows, parse_customer, context=context)
            result.errors.extend(parsed.errors)
            result.items.extend(a for a in parsed.items if not a.metadata.get("manager"))

        logger.info("[GOOGLE_ADS] Fetched %d customer accounts", len(result))
        return result

    def list_campaigns(self, account_external_id: str) -> FetchResult[RemoteCampaign]:
        """Campaigns with budget (micros converted) and channel type as objective."""
        customer_id = google_customer_id(account_external_id)
        q = (
            "SELECT campaign.id, campaign.name, campaign.status, campaign.serving_status, "
            "campaign.advertising_channel_type, campaign.bidding_strategy_type, "
            "campaign_budget.amount_micros, campaign_budget.total_amount_micros, campaign_budget.period "
            "FROM campaign ORDER BY campaign.id"
        )
        context = f"fetching campaigns for {customer_id}"
        rows = self.search(customer_id, q, context=context)
        result = parse_records(rows, lambda r: parse_campaign(r, customer_id), context=context)
        logger.info("[GOOGLE_ADS] Fetched %d campaigns for %s", len(result), customer_id)
        return result

    def list_ad_groups(self, account_external_id: str, campaign_external_id: str) -> FetchResult[RemoteAdGroup]:
        customer_id = google_customer_id(account_external_id)
        q = (
            "SELECT ad_group.id, ad_group.name, ad_group.status, ad_group.campaign, ad_group.type, "
            "ad_group.cpc_bid_micros, ad_group.target_cpa_micros "
            "FROM ad_group WHERE ad_group.campaign = 'customers/{cid}/campaigns/{cmp}' "
            "ORDER BY ad_group.id"
        ).format(cid=customer_id, cmp=campaign_external_id)
        context = f"fetching ad groups for campaign {campaign_external_id}"
        rows = self.search(customer_id, q, context=context)
        return parse_records(rows, parse_ad_group, context=context)

    def list_ads(self, account_external_id: str, ad_group_external_id: str) -> FetchResult[RemoteAd]:
        customer_id = google_customer_id(account_external_id)
        q = (
            "SELECT ad_group_ad.ad.id, ad_group_ad.ad.name, ad_group_ad.status, ad_group_ad.ad_group, "
            "ad_group_ad.ad.type, ad_group_ad.ad.final_urls, ad_group_ad.ad.tracking_url_template, "
            "ad_group_ad.ad.responsive_search_ad.headlines, ad_group_ad.ad.responsive_search_ad.descriptions "
            "FROM ad_group_ad WHERE ad_group_ad.ad_group = 'customers/{cid}/adGroups/{ag}' "
            "ORDER BY ad_group_ad.ad.id"
        ).format(cid=customer_id, ag=ad_group_external_id)
        context = f"fetching ads for ad group {ad_group_external_id}"
        rows = self.search(customer_id, q, context=context)
        return parse_records(rows, parse_ad, context=context)

    # --- Metrics --------------------------------------------------------
    def get_customer_currency(self, customer_id: str) -> Optional[str]:
        """Customer currency code (cached per client)."""
        customer_id = google_customer_id(customer_id)
        if customer_id not in self._currency_by_customer:
            rows = self.search(customer_id, "SELECT customer.currency_code FROM customer LIMIT 1",
                               context=f"fetching currency for {customer_id}")
            currency = getattr(rows[0].customer, "currency_code", None) if rows else None
            self._currency_by_customer[customer_id] = currency or None
        return self._currency_by_customer[customer_id]

    def fetch_insights(
        self,
        account_external_id: str,
        entity_type: EntityTypeEnum,
        entity_external_ids: Sequence[str],
        date_range: DateRange,
    ) -> FetchResult[RawInsight]:
        """Fetch daily metrics for a set of entities at one level.

        NOTE: Segmented by date only so zero-activity days still return rows.
        """
        parts = INSIGHT_QUERY_PARTS.get(entity_type)
        if parts is None:
            raise FatalError(f"Insights are not available for {entity_type}", provider=PROVIDER)
        resource, id_column = parts
        customer_id = google_customer_id(account_external_id)

        result: FetchResult[RawInsight] = FetchResult()
        ids = [str(i) for i in entity_external_ids if str(i).isdigit()]
        if not ids:
            return result

        currency = self.get_customer_currency(customer_id)
        for batch in chunked(ids, INSIGHT_ID_BATCH_SIZE):
            q = (
                f"SELECT {id_column}, segments.date, "
                "metrics.impressions, metrics.clicks, metrics.cost_micros, "
                "metrics.conversions_by_conversion_date, metrics.conversions_value_by_conversion_date "
                f"FROM {resource} "
                f"WHERE segments.date BETWEEN '{date_range.start.isoformat()}' AND '{date_range.end.isoformat()}' "
                f"AND {id_column} IN ({', '.join(batch)})"
            )
            context = f"fetching {entity_type.value} metrics for {customer_id}"
            rows = self.search(customer_id, q, context=context)
            result.extend(parse_records(rows, lambda r: parse_metrics_row(r, entity_type, currency), context=context))

        logger.info(
            "[GOOGLE_ADS] Fetched %d %s metric rows for %s (%s to %s)",
            len(result), entity_type.value, customer_id, date_range.start, date_range.end,
        )
        return result

    # --- Credentials ----------------------------------------------------
    def validate_connection(self) -> bool:
        try:
            self._rate.acquire()
            self._client.get_service("CustomerService").list_accessible_customers()
            return True
        except Exception as e:  # noqa: BLE001
            translated = translate_google_error(e, "validating connection")
            if isinstance(translated, AuthError):
                return False
            raise translated from e

    def refresh_credentials(self, credentials: Credentials) -> Credentials:
        return refresh_google_token(credentials)


def refresh_google_token(credentials: Credentials, *, http_client: Optional[httpx.Client] = None) -> Credentials:
    """Exchange the refresh token for a new access token.

    WHAT:
        POST oauth2.googleapis.com/token with grant_type=refresh_token.

    WHY:
        Google access tokens last one hour; the refresh token is long-lived
        and is kept unless Google rotates it.

    Raises:
        AuthError: refresh token missing, revoked or expired (invalid_grant)
        RateLimitError, TransientError, FatalError: per HTTP outcome
    """
    if not credentials.refresh_token:
        raise AuthError("Google connection has no refresh token", provider=PROVIDER)

    settings = get_settings()
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        raise FatalError("GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET not configured", provider=PROVIDER)

    data = {
        "grant_type": "refresh_token",
        "refresh_token": credentials.refresh_token,
        "client_id": settings.GOOGLE_CLIENT_ID,
        "client_secret": settings.GOOGLE_CLIENT_SECRET,
    }

    client = http_client or httpx.Client(timeout=settings.PROVIDER_REQUEST_TIMEOUT_SECONDS)
    try:
        response = client.post(GOOGLE_TOKEN_URL, data=data)
    except httpx.TimeoutException as e:
        raise TransientError(f"Google token refresh timed out: {e}", provider=PROVIDER) from e
    except httpx.TransportError as e:
        raise TransientError(f"Google token refresh failed: {e}", provider=PROVIDER) from e
    finally:
        if http_client is None:
            client.close()

    try:
        payload = response.json()
    except ValueError:
        payload = {}

    if response.status_code >= 400:
        error = payload.get("error") if isinstance(payload.get("error"), str) else None
        description = payload.get("error_description") or response.text[:200]
        if error in ("invalid_grant", "unauthorized_client") or response.status_code == 401:
            raise AuthError(f"Google rejected refresh token: {description}", provider=PROVIDER,
                            status_code=response.status_code, code=error)
        if response.status_code == 429:
            raise RateLimitError("Google token endpoint throttled", provider=PROVIDER, status_code=429)
        if response.status_code >= 500:
            raise TransientError(f"Google token refresh failed: HTTP {response.status_code}", provider=PROVIDER,
                                 status_code=response.status_code)
        raise FatalError(f"Google token refresh rejected: {description}", provider=PROVIDER,
                         status_code=response.status_code, code=error)

    access_token = payload.get("access_token")
    if not access_token:
        raise FatalError("Google token refresh returned no access_token", provider=PROVIDER)

    expires_in = int(payload.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
    logger.info("[GOOGLE_ADS] Access token refreshed (expires in %ss)", expires_in)
    return Credentials(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or credentials.refresh_token,
        expires_at=utcnow() + timedelta(seconds=expires_in),
    )
