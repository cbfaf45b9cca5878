from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from enum import Enum

from scralytics.config import Settings, get_settings
from scralytics.core.errors import ScrapeError
from scralytics.types import FailureKind, ScrapeFailure

_RATE_LIMIT_MARKERS = ("rate limit", "429", "too many requests")
_AUTH_MARKERS = ("401", "authentication", "login", "unauthorized")
_COOKIE_MARKERS = ("cookie", "li_at", "session expired")
_BLOCKED_MARKERS = ("403", "blocked", "restricted", "locked")
_TRANSIENT_MARKERS = ("timeout", "timed out", "network", "connection", "econnreset", "temporarily")


class RetryAction(str, Enum):
    RETRY_SAME = "retry_same"
    RETRY_BACKOFF = "retry_backoff"
    RETRY_NEW_ACCOUNT = "retry_new_account"
    ABANDON = "abandon"


@dataclass(slots=True)
class RetryDecision:
    action: RetryAction
    delay_sec: float = 0.0

    @property
    def retries(self) -> bool:
        return self.action is not RetryAction.ABANDON


def _classify_status(status: int | None) -> FailureKind | None:
    if status is None:
        return None
    if status == 429:
        return FailureKind.RATE_LIMIT
    if status == 401:
        return FailureKind.AUTHENTICATION
    if status == 403:
        return FailureKind.BLOCKED
    if status in {400, 404, 410, 422}:
        return FailureKind.VALIDATION
    if status == 408 or status >= 500:
        return FailureKind.TRANSIENT
    return None


def _classify_message(message: str) -> FailureKind:
    text = message.lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return FailureKind.RATE_LIMIT
    if any(marker in text for marker in _AUTH_MARKERS):
        return FailureKind.AUTHENTICATION
    if any(marker in text for marker in _COOKIE_MARKERS):
        return FailureKind.INVALID_COOKIES
    if any(marker in text for marker in _BLOCKED_MARKERS):
        return FailureKind.BLOCKED
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return FailureKind.TRANSIENT
    return FailureKind.UNKNOWN


def classify_failure(failure: ScrapeFailure | BaseException) -> FailureKind:
    """Map a scraper failure or raised exception onto the failure taxonomy.

    Typed errors win, then the HTTP status, then keywords in the message. Message
    markers are tried rate limit first, then auth, cookies, block, transient.
    """
    if isinstance(failure, ScrapeError):
        if failure.failure_kind is not FailureKind.UNKNOWN:
            return failure.failure_kind
        by_status = _classify_status(failure.http_status)
        return by_status or _classify_message(str(failure))

    if isinstance(failure, ScrapeFailure):
        by_status = _classify_status(failure.http_status)
        return by_status or _classify_message(failure.message)

    if isinstance(failure, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return FailureKind.TRANSIENT
    return _classify_message(str(failure))


class RetryPolicy:
    def __init__(self, settings: Settings | None = None, *, rng: random.Random | None = None):
        self.settings = settings or get_settings()
        self.rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.settings.max_retries

    def backoff_delay(self, attempt: int, *, jitter: bool = False) -> float:
        """Delay before retrying after ``attempt`` failed attempts.

        Doubles from the base delay up to the cap, then adds up to
        ``retry_jitter_ratio`` of itself when ``jitter`` is set.
        """
        attempt = max(1, attempt)
        base = self.settings.retry_base_delay_sec
        delay = min(base * (2 ** (attempt - 1)), self.settings.retry_max_delay_sec)
        if jitter and delay > 0 and self.settings.retry_jitter_ratio > 0:
            delay += delay * self.settings.retry_jitter_ratio * self.rng.random()
        return max(0.0, delay)

    def decide(self, attempt: int, kind: FailureKind, *, has_alternate: bool) -> RetryDecision:
        if attempt >= self.max_attempts:
            return RetryDecision(RetryAction.ABANDON)
        if kind is FailureKind.VALIDATION:
            return RetryDecision(RetryAction.ABANDON)

        if kind.account_attributable:
            if has_alternate:
                return RetryDecision(RetryAction.RETRY_NEW_ACCOUNT)
            return RetryDecision(RetryAction.RETRY_BACKOFF, self.settings.account_retry_delay_sec)

        delay = self.backoff_delay(attempt, jitter=True)
        if delay <= 0:
            return RetryDecision(RetryAction.RETRY_SAME)
        return RetryDecision(RetryAction.RETRY_BACKOFF, delay)

    def inter_request_delay(self, successful: int, failed: int) -> float:
        """Pause between URLs, stretched as a job's failure rate climbs."""
        base = self.settings.url_processing_delay_sec
        processed = successful + failed
        if processed == 0:
            return base
        failure_rate = failed / processed
        if failure_rate > 0.5:
            return base * 3
        if failure_rate > 0.3:
            return base * 2
        if failure_rate > 0.1:
            return base * 1.5
        return base
