"""
Provider Client Contract Tests (Unit)
=====================================

WHAT: Unit tests for record parsing, status normalization, error categories
      and the retry policy shared by all provider clients.
WHY: Every provider call goes through these helpers; a retry loop that never
     stops or a malformed record that aborts a page affects every tenant.

REFERENCES:
- backend/adsync/services/provider_client.py
- backend/adsync/services/provider_errors.py
"""

import os

os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")

import pytest

from adsync.models import EntityStatusEnum
from adsync.schemas import RemoteCampaign
from adsync.services.provider_client import (
    RetryPolicy,
    call_with_retries,
    chunked,
    normalize_status,
    parse_records,
)
from adsync.services.provider_errors import (
    AuthError,
    FatalError,
    RateLimitError,
    ReconciliationConflict,
    TransientError,
    categorize_error,
)


class _Flaky:
    """Callable that raises the queued errors, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def _policy(sleeps, **kwargs):
    values = {"max_attempts": 4, "base_delay": 1.0, "max_delay": 30.0, "sleep": sleeps.append}
    values.update(kwargs)
    return RetryPolicy(**values)


# --- parse_records ---------------------------------------------------------

def _parse_campaign(raw):
    return RemoteCampaign(external_id=raw["id"], name=raw.get("name"), status=normalize_status(raw.get("status")))


def test_parse_records_keeps_good_records_and_reports_bad_ones() -> None:
    records = [{"id": "1", "name": "A"}, {"name": "no id"}, {"id": "", "name": "blank"}, {"id": "4", "name": "D"}]

    result = parse_records(records, _parse_campaign, context="fetching campaigns")

    assert [c.external_id for c in result.items] == ["1", "4"]
    assert len(result.errors) == 2
    assert result.errors[0]["context"] == "fetching campaigns"
    assert result.errors[0]["external_id"] is None
    assert not result.ok


def test_parse_records_empty_input() -> None:
    result = parse_records([], _parse_campaign, context="fetching campaigns")

    assert result.items == []
    assert result.ok


# --- normalize_status ------------------------------------------------------

@pytest.mark.parametrize("raw,expected", [
    ("ACTIVE", EntityStatusEnum.active),
    ("ENABLED", EntityStatusEnum.active),
    ("PAUSED", EntityStatusEnum.paused),
    ("ADSET_PAUSED", EntityStatusEnum.paused),
    ("ARCHIVED", EntityStatusEnum.archived),
    ("DELETED", EntityStatusEnum.archived),
    ("REMOVED", EntityStatusEnum.archived),
    ("CampaignStatus.ENABLED", EntityStatusEnum.active),
    ("UNSPECIFIED", EntityStatusEnum.unknown),
    ("something-new", EntityStatusEnum.unknown),
    (None, EntityStatusEnum.unknown),
])
def test_normalize_status(raw, expected) -> None:
    assert normalize_status(raw) == expected


def test_normalize_status_reads_sdk_enum_names() -> None:
    class _SdkEnum:
        name = "PAUSED"

    assert normalize_status(_SdkEnum()) == EntityStatusEnum.paused


# --- retries ---------------------------------------------------------------

def test_rate_limit_is_retried_until_success() -> None:
    sleeps = []
    func = _Flaky(RateLimitError("slow down"), RateLimitError("slow down"))

    assert call_with_retries(func, policy=_policy(sleeps)) == "ok"
    assert func.calls == 3
    assert len(sleeps) == 2


def test_backoff_grows_and_is_capped() -> None:
    sleeps = []
    func = _Flaky(*[TransientError("502") for _ in range(3)])

    call_with_retries(func, policy=_policy(sleeps, max_delay=3.0))

    assert 1.0 <= sleeps[0] <= 2.0
    assert 2.0 <= sleeps[1] <= 3.0
    assert sleeps[2] == 3.0


def test_attempts_are_bounded() -> None:
    sleeps = []
    func = _Flaky(*[TransientError("timeout") for _ in range(10)])

    with pytest.raises(TransientError):
        call_with_retries(func, policy=_policy(sleeps))
    assert func.calls == 4
    assert len(sleeps) == 3


def test_retry_after_hint_is_a_floor() -> None:
    sleeps = []
    func = _Flaky(RateLimitError("throttled", retry_after=20))

    call_with_retries(func, policy=_policy(sleeps))

    assert sleeps == [20.0]


def test_retry_after_beyond_cap_is_not_waited_on() -> None:
    sleeps = []
    func = _Flaky(RateLimitError("throttled", retry_after=3600))

    with pytest.raises(RateLimitError):
        call_with_retries(func, policy=_policy(sleeps))
    assert sleeps == []
    assert func.calls == 1


@pytest.mark.parametrize("error", [AuthError("expired"), FatalError("bad request")])
def test_auth_and_fatal_errors_are_not_retried(error) -> None:
    sleeps = []
    func = _Flaky(error)

    with pytest.raises(type(error)):
        call_with_retries(func, policy=_policy(sleeps))
    assert func.calls == 1
    assert sleeps == []


def test_policy_from_settings() -> None:
    class _Settings:
        PROVIDER_MAX_ATTEMPTS = 6
        PROVIDER_BACKOFF_SECONDS = 0.5
        PROVIDER_MAX_BACKOFF_SECONDS = 10.0

    policy = RetryPolicy.from_settings(_Settings())

    assert (policy.max_attempts, policy.base_delay, policy.max_delay) == (6, 0.5, 10.0)


# --- errors ----------------------------------------------------------------

@pytest.mark.parametrize("error,category", [
    (AuthError("x"), "auth_error"),
    (RateLimitError("x"), "rate_limited"),
    (TransientError("x"), "transient_error"),
    (FatalError("x"), "fatal_error"),
    (ReconciliationConflict("x"), "reconciliation_conflict"),
    (RuntimeError("x"), "system_error"),
])
def test_categorize_error(error, category) -> None:
    assert categorize_error(error) == category


def test_provider_error_to_dict() -> None:
    error = RateLimitError("throttled", provider="meta", status_code=429, code="17", retry_after=60)

    assert error.to_dict() == {
        "type": "RateLimitError",
        "message": "throttled",
        "provider": "meta",
        "status_code": 429,
        "code": "17",
    }
    assert error.retry_after == 60


def test_chunked() -> None:
    assert list(chunked(["a", "b", "c", "d", "e"], 2)) == [["a", "b"], ["c", "d"], ["e"]]
    assert list(chunked([], 3)) == []
