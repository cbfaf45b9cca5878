import asyncio
import random

import pytest

from scralytics.config import Settings
from scralytics.core.errors import AccountAuthError, BlockedError, RateLimitError, ScrapeError, TransientError
from scralytics.core.retry import RetryAction, RetryPolicy, classify_failure
from scralytics.types import FailureKind, ScrapeFailure


def _policy(**overrides) -> RetryPolicy:
    values = {"app_env": "test", "retry_jitter_ratio": 0.0, **overrides}
    return RetryPolicy(Settings(**values), rng=random.Random(7))


@pytest.mark.parametrize(
    ("failure", "expected"),
    [
        (ScrapeFailure(http_status=429), FailureKind.RATE_LIMIT),
        (ScrapeFailure(message="Rate limit exceeded, slow down"), FailureKind.RATE_LIMIT),
        (ScrapeFailure(message="Too Many Requests"), FailureKind.RATE_LIMIT),
        (ScrapeFailure(http_status=401), FailureKind.AUTHENTICATION),
        (ScrapeFailure(message="redirected to login page"), FailureKind.AUTHENTICATION),
        (ScrapeFailure(message="li_at cookie expired"), FailureKind.INVALID_COOKIES),
        (ScrapeFailure(http_status=403), FailureKind.BLOCKED),
        (ScrapeFailure(message="account blocked by target"), FailureKind.BLOCKED),
        (ScrapeFailure(http_status=503), FailureKind.TRANSIENT),
        (ScrapeFailure(message="navigation timeout after 30s"), FailureKind.TRANSIENT),
        (ScrapeFailure(http_status=404), FailureKind.VALIDATION),
        (ScrapeFailure(message="selector missing"), FailureKind.UNKNOWN),
    ],
)
def test_classify_scrape_failures(failure: ScrapeFailure, expected: FailureKind) -> None:
    assert classify_failure(failure) is expected


def test_rate_limit_wins_over_login_wording() -> None:
    failure = ScrapeFailure(message="429: please login again later")
    assert classify_failure(failure) is FailureKind.RATE_LIMIT


def test_classify_exceptions() -> None:
    assert classify_failure(RateLimitError("slow down")) is FailureKind.RATE_LIMIT
    assert classify_failure(AccountAuthError("expired")) is FailureKind.AUTHENTICATION
    assert classify_failure(BlockedError("nope")) is FailureKind.BLOCKED
    assert classify_failure(TransientError("flaky")) is FailureKind.TRANSIENT
    assert classify_failure(ScrapeError("boom", http_status=429)) is FailureKind.RATE_LIMIT
    assert classify_failure(asyncio.TimeoutError()) is FailureKind.TRANSIENT
    assert classify_failure(ConnectionResetError("reset")) is FailureKind.TRANSIENT
    assert classify_failure(RuntimeError("something odd")) is FailureKind.UNKNOWN


def test_backoff_doubles_and_caps() -> None:
    policy = _policy()
    delays = [policy.backoff_delay(attempt) for attempt in range(1, 7)]
    assert delays == [5.0, 10.0, 20.0, 30.0, 30.0, 30.0]
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))


def test_backoff_jitter_adds_at_most_ten_percent() -> None:
    policy = _policy(retry_jitter_ratio=0.1)
    for attempt in range(1, 6):
        plain = policy.backoff_delay(attempt)
        jittered = policy.backoff_delay(attempt, jitter=True)
        assert plain <= jittered <= plain * 1.1


def test_decide_abandons_at_ceiling() -> None:
    policy = _policy(max_retries=3)
    for kind in FailureKind:
        assert policy.decide(3, kind, has_alternate=True).action is RetryAction.ABANDON


def test_decide_account_failures_rotate_when_possible() -> None:
    policy = _policy()
    for kind in (FailureKind.RATE_LIMIT, FailureKind.AUTHENTICATION, FailureKind.BLOCKED):
        assert policy.decide(1, kind, has_alternate=True).action is RetryAction.RETRY_NEW_ACCOUNT
        decision = policy.decide(1, kind, has_alternate=False)
        assert decision.action is RetryAction.RETRY_BACKOFF
        assert decision.delay_sec == 60.0


def test_decide_transient_backs_off() -> None:
    policy = _policy()
    first = policy.decide(1, FailureKind.TRANSIENT, has_alternate=True)
    second = policy.decide(2, FailureKind.TRANSIENT, has_alternate=True)
    assert first.action is RetryAction.RETRY_BACKOFF
    assert (first.delay_sec, second.delay_sec) == (5.0, 10.0)


def test_decide_validation_is_never_retried() -> None:
    decision = _policy().decide(1, FailureKind.VALIDATION, has_alternate=True)
    assert decision.action is RetryAction.ABANDON
    assert not decision.retries


def test_zero_base_delay_retries_immediately() -> None:
    decision = _policy(retry_base_delay_sec=0).decide(1, FailureKind.UNKNOWN, has_alternate=False)
    assert decision.action is RetryAction.RETRY_SAME


@pytest.mark.parametrize(
    ("successful", "failed", "expected"),
    [(0, 0, 2.0), (10, 0, 2.0), (9, 1, 2.0), (8, 2, 3.0), (6, 4, 4.0), (4, 6, 6.0)],
)
def test_inter_request_delay_tracks_failure_rate(successful: int, failed: int, expected: float) -> None:
    assert _policy().inter_request_delay(successful, failed) == expected
