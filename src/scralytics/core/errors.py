from __future__ import annotations

from datetime import datetime

from scralytics.types import FailureKind


class ScrapeError(Exception):
    """A failed scrape, tagged with the cause the engine reacts to."""

    failure_kind = FailureKind.UNKNOWN

    def __init__(self, message: str = "", *, http_status: int | None = None):
        super().__init__(message)
        self.http_status = http_status


class TransientError(ScrapeError):
    failure_kind = FailureKind.TRANSIENT


class AccountAuthError(ScrapeError):
    failure_kind = FailureKind.AUTHENTICATION


class RateLimitError(ScrapeError):
    failure_kind = FailureKind.RATE_LIMIT


class BlockedError(ScrapeError):
    failure_kind = FailureKind.BLOCKED


class TargetValidationError(ScrapeError):
    failure_kind = FailureKind.VALIDATION


class NoEligibleAccounts(Exception):
    def __init__(self, user_id: int, earliest_eligible_at: datetime | None = None):
        if earliest_eligible_at is None:
            message = f"no eligible accounts for user {user_id}"
        else:
            message = (
                f"no eligible accounts for user {user_id}; "
                f"next available at {earliest_eligible_at.isoformat()}"
            )
        super().__init__(message)
        self.user_id = user_id
        self.earliest_eligible_at = earliest_eligible_at


class JobNotFoundError(ValueError):
    def __init__(self, job_id: int):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class AccountNotFoundError(ValueError):
    def __init__(self, account_id: int):
        super().__init__(f"account {account_id} not found")
        self.account_id = account_id


class MissingJobError(ValueError):
    def __init__(self, job_id: int):
        super().__init__(f"cannot save result: job {job_id} does not exist and no fallback was given")
        self.job_id = job_id
