"""Provider client abstraction.

WHAT:
    The capability set every ad platform client implements, the result type
    they return, status normalization, and the retry policy applied to
    provider calls.

WHY:
    - The orchestrator talks to Meta and Google through one interface.
    - One malformed record must never abort a page of results, so listing
      calls return a `FetchResult` (items plus per-record errors).
    - Rate limits and transient failures are retried in one place with the
      same backoff rules for every provider.

REFERENCES:
    - adsync/services/meta_ads_client.py
    - adsync/services/google_ads_client.py
    - adsync/services/provider_errors.py (taxonomy)
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Iterable, Iterator, List, Optional, Sequence, TypeVar

from pydantic import ValidationError

from adsync.models import EntityStatusEnum, EntityTypeEnum, ProviderEnum
from adsync.schemas import (
    Credentials,
    DateRange,
    RawInsight,
    RemoteAd,
    RemoteAdAccount,
    RemoteAdGroup,
    RemoteCampaign,
)
from adsync.services.provider_errors import RateLimitError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# RESULTS
# =============================================================================

class FetchResult(Generic[T]):
    """Items parsed from one provider call plus the records that failed to parse."""

    def __init__(self, items: Optional[List[T]] = None, errors: Optional[List[Dict[str, Any]]] = None):
        self.items: List[T] = list(items or [])
        self.errors: List[Dict[str, Any]] = list(errors or [])

    @property
    def ok(self) -> bool:
        return len(self.errors) == 0

    def extend(self, other: "FetchResult[T]") -> None:
        self.items.extend(other.items)
        self.errors.extend(other.errors)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __repr__(self):
        return f"FetchResult(items={len(self.items)}, errors={len(self.errors)})"


def parse_records(
    records: Iterable[Any],
    parser: Callable[[Any], T],
    *,
    context: str,
) -> FetchResult[T]:
    """Run `parser` over raw records, collecting failures instead of raising.

    Each failure is recorded with the record's id when one can be read.
    """
    result: FetchResult[T] = FetchResult()
    for raw in records:
        try:
            result.items.append(parser(raw))
        except (ValidationError, KeyError, TypeError, ValueError, AttributeError) as e:
            record_id = _record_id(raw)
            logger.warning("[PROVIDER] Skipping malformed record %s while %s: %s", record_id, context, e)
            result.errors.append({
                "external_id": record_id,
                "context": context,
                "error": str(e)[:500],
            })
    return result


def _record_id(raw: Any) -> Optional[str]:
    if isinstance(raw, dict):
        value = raw.get("id") or raw.get("account_id")
    else:
        value = getattr(raw, "id", None)
    return None if value is None else str(value)


# =============================================================================
# ACCOUNT ID NORMALIZATION
# =============================================================================

def meta_account_id(value: Any) -> str:
    """Meta ad account id in its `act_<digits>` form ("123" -> "act_123")."""
    text = str(value).strip()
    return text if text.startswith("act_") else f"act_{text}"


def google_customer_id(value: Any) -> str:
    """Digits-only customer id ("123-456-7890" / "customers/1234567890")."""
    return "".join(ch for ch in str(value).split("/")[-1] if ch.isdigit())


def normalize_account_id(provider: ProviderEnum, value: Any) -> str:
    """Ad account id in the form the provider client reports it."""
    if provider == ProviderEnum.google:
        return google_customer_id(value)
    return meta_account_id(value)


# =============================================================================
# STATUS NORMALIZATION
# =============================================================================

_STATUS_MAP = {
    # Meta (configured + effective statuses)
    "ACTIVE": EntityStatusEnum.active,
    "PAUSED": EntityStatusEnum.paused,
    "CAMPAIGN_PAUSED": EntityStatusEnum.paused,
    "ADSET_PAUSED": EntityStatusEnum.paused,
    "ARCHIVED": EntityStatusEnum.archived,
    "DELETED": EntityStatusEnum.archived,
    # Google
    "ENABLED": EntityStatusEnum.active,
    "REMOVED": EntityStatusEnum.archived,
    # Account-level
    "DISABLED": EntityStatusEnum.paused,
    "SUSPENDED": EntityStatusEnum.paused,
    "CLOSED": EntityStatusEnum.archived,
    "CANCELED": EntityStatusEnum.archived,
}


def normalize_status(raw: Any) -> EntityStatusEnum:
    """Map a provider status (string or SDK enum) onto the shared vocabulary.

    Unrecognized values (including Google's UNSPECIFIED/UNKNOWN) map to
    `unknown` rather than raising.
    """
    if raw is None:
        return EntityStatusEnum.unknown
    if isinstance(raw, EntityStatusEnum):
        return raw
    name = getattr(raw, "name", None) or str(raw)
    # "CampaignStatus.ENABLED" -> "ENABLED"
    key = name.rsplit(".", 1)[-1].strip().upper()
    return _STATUS_MAP.get(key, EntityStatusEnum.unknown)


# =============================================================================
# RETRY POLICY
# =============================================================================

@dataclass
class RetryPolicy:
    """Bounded exponential backoff for RateLimitError and TransientError.

    Delay for attempt n is `base_delay * 2**(n-1) * (1 + jitter)`, capped at
    `max_delay`. A provider retry-after hint is honoured as a floor; a hint
    longer than `max_delay` is not waited on and the error propagates.
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 60.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
            base_delay=settings.PROVIDER_BACKOFF_SECONDS,
            max_delay=settings.PROVIDER_MAX_BACKOFF_SECONDS,
        )

    def delay_for(self, attempt: int, error: Exception) -> Optional[float]:
        """Seconds to wait before the next attempt, or None to stop retrying."""
        backoff = self.base_delay * (2 ** (attempt - 1)) * (1 + random.random())
        backoff = min(backoff, self.max_delay)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            if retry_after > self.max_delay:
                return None
            return max(float(retry_after), backoff)
        return backoff


def call_with_retries(
    func: Callable[..., T],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    operation: str = "provider call",
    **kwargs: Any,
) -> T:
    """Invoke a provider call, retrying rate limits and transient failures.

    AuthError and FatalError propagate immediately; the caller decides
    whether a token refresh is warranted.
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except (RateLimitError, TransientError) as e:
            if attempt >= policy.max_attempts:
                logger.warning(
                    "[PROVIDER] %s failed after %d attempts: %s", operation, attempt, e
                )
                raise
            delay = policy.delay_for(attempt, e)
            if delay is None:
                logger.warning(
                    "[PROVIDER] %s: provider asks to wait %ss, not retrying in-run",
                    operation, getattr(e, "retry_after", None),
                )
                raise
            logger.info(
                "[PROVIDER] %s: %s (attempt %d/%d), retrying in %.1fs",
                operation, type(e).__name__, attempt, policy.max_attempts, delay,
            )
            policy.sleep(delay)
            attempt += 1


# =============================================================================
# CLIENT CONTRACT
# =============================================================================

class AdsProviderClient(ABC):
    """Uniform interface over an ad platform's API.

    Listing and insight calls return `FetchResult`s of validated models and
    raise only the provider error taxonomy.
    """

    provider: ProviderEnum

    @abstractmethod
    def list_ad_accounts(self) -> FetchResult[RemoteAdAccount]:
        ...

    @abstractmethod
    def list_campaigns(self, account_external_id: str) -> FetchResult[RemoteCampaign]:
        ...

    @abstractmethod
    def list_ad_groups(self, account_external_id: str, campaign_external_id: str) -> FetchResult[RemoteAdGroup]:
        ...

    @abstractmethod
    def list_ads(self, account_external_id: str, ad_group_external_id: str) -> FetchResult[RemoteAd]:
        ...

    @abstractmethod
    def fetch_insights(
        self,
        account_external_id: str,
        entity_type: EntityTypeEnum,
        entity_external_ids: Sequence[str],
        date_range: DateRange,
    ) -> FetchResult[RawInsight]:
        ...

    @abstractmethod
    def validate_connection(self) -> bool:
        ...

    @abstractmethod
    def refresh_credentials(self, credentials: Credentials) -> Credentials:
        ...


def build_provider_client(provider: ProviderEnum, credentials: Credentials) -> AdsProviderClient:
    """Create the client for a provider from canonical credentials."""
    if provider == ProviderEnum.meta:
        from adsync.services.meta_ads_client import MetaAdsClient
        return MetaAdsClient.from_credentials(credentials)
    if provider == ProviderEnum.google:
        from adsync.services.google_ads_client import GAdsClient
        return GAdsClient.from_credentials(credentials)
    raise ValueError(f"Unsupported provider: {provider}")


def refresh_provider_credentials(provider: ProviderEnum, credentials: Credentials) -> Credentials:
    """Run the provider's token refresh exchange without building a full client."""
    if provider == ProviderEnum.meta:
        from adsync.services.meta_ads_client import exchange_meta_token
        return exchange_meta_token(credentials)
    if provider == ProviderEnum.google:
        from adsync.services.google_ads_client import refresh_google_token
        return refresh_google_token(credentials)
    raise ValueError(f"Unsupported provider: {provider}")


def chunked(values: Sequence[str], size: int) -> Iterator[List[str]]:
    """Split ids into provider-sized batches."""
    for i in range(0, len(values), size):
        yield list(values[i:i + size])
