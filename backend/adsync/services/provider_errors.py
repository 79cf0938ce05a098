"""
Provider Error Taxonomy
=======================

Exception types shared by every provider client and by the sync pipeline.

WHY THIS FILE EXISTS
--------------------
Meta and Google fail in different shapes (FacebookRequestError codes,
GoogleAdsException failures, OAuth JSON errors). Clients translate them into
this small taxonomy so the orchestrator can decide, per failure, whether to
refresh the token, back off, retry, or give up on a step.

    AuthError          -> one forced token refresh, then a single retry
    RateLimitError     -> exponential backoff, bounded attempts
    TransientError     -> backoff, bounded attempts
    FatalError         -> not retried, surfaced in the run's error list
    ReconciliationConflict -> record rejected, never retried, never fatal

RELATED FILES
-------------
- adsync/services/meta_ads_client.py: Raises provider errors for Meta
- adsync/services/google_ads_client.py: Raises provider errors for Google
- adsync/services/provider_client.py: Retry policy
- adsync/services/sync_orchestrator.py: Catches and records these errors
"""

from typing import Optional


class ProviderError(Exception):
    """
    Base exception for provider API failures.

    PARAMETERS:
        message: Human-readable error description
        provider: The ad platform (meta, google) if known
        status_code: HTTP status when the failure came from an HTTP response
        code: Provider-specific error code
    """

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.code = code

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "provider": self.provider,
            "status_code": self.status_code,
            "code": self.code,
        }


class AuthError(ProviderError):
    """Credential invalid, revoked or expired (HTTP 401, Meta code 190, invalid_grant)."""


class RateLimitError(ProviderError):
    """
    Provider throttled the request.

    `retry_after` carries the provider's own hint in seconds when one was
    given; the retry policy waits at least that long.
    """

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TransientError(ProviderError):
    """Timeouts, connection resets and 5xx responses."""


class FatalError(ProviderError):
    """Malformed request or permanently missing resource. Never retried."""


class ReconciliationConflict(Exception):
    """
    A remote entity cannot be attached to the given local parent.

    Raised for cross-tenant, cross-provider or wrong-parent linkage. The
    reconciler counts and logs it; the rest of the batch proceeds.
    """

    def __init__(self, message: str, *, external_id: Optional[str] = None):
        super().__init__(message)
        self.external_id = external_id


# Run-level error categories (SyncHistory.error_category)
CATEGORY_AUTH = "auth_error"
CATEGORY_RATE_LIMIT = "rate_limited"
CATEGORY_TRANSIENT = "transient_error"
CATEGORY_FATAL = "fatal_error"
CATEGORY_CONFLICT = "reconciliation_conflict"
CATEGORY_SYSTEM = "system_error"


def categorize_error(exc: BaseException) -> str:
    """Map an exception onto the run record's error category."""
    if isinstance(exc, AuthError):
        return CATEGORY_AUTH
    if isinstance(exc, RateLimitError):
        return CATEGORY_RATE_LIMIT
    if isinstance(exc, TransientError):
        return CATEGORY_TRANSIENT
    if isinstance(exc, FatalError):
        return CATEGORY_FATAL
    if isinstance(exc, ReconciliationConflict):
        return CATEGORY_CONFLICT
    return CATEGORY_SYSTEM
