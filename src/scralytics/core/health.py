from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from scralytics.config import Settings, get_settings
from scralytics.core.clock import SystemClock, as_utc, next_utc_midnight
from scralytics.db.models import Account
from scralytics.db.repositories import Repository
from scralytics.db.session import SessionLocal
from scralytics.types import FailureKind, RotationStats

logger = logging.getLogger(__name__)

# Share of an account's daily limit a job kind may consume.
JOB_KIND_LIMIT_FACTORS = {"profile": 1.0, "company": 0.8, "search": 0.6}

UNUSABLE_STATUSES = frozenset({"blocked", "invalid"})


def effective_daily_limit(account: Account, job_kind: str = "profile") -> int:
    factor = JOB_KIND_LIMIT_FACTORS.get(job_kind, 1.0)
    return max(1, int(account.daily_request_limit * factor))


def requests_used(account: Account, now: datetime) -> int:
    """Requests counted against today's window, zero once the reset boundary passed."""
    reset_at = as_utc(account.requests_reset_at)
    if reset_at is not None and now >= reset_at:
        return 0
    return account.requests_today


def account_is_eligible(account: Account, now: datetime, job_kind: str = "profile") -> bool:
    if not account.is_active:
        return False
    if account.validation_status in UNUSABLE_STATUSES:
        return False
    cooldown_until = as_utc(account.cooldown_until)
    if cooldown_until is not None and cooldown_until > now:
        return False
    blocked_until = as_utc(account.blocked_until)
    if blocked_until is not None and blocked_until > now:
        return False
    return requests_used(account, now) < effective_daily_limit(account, job_kind)


def eligible_again_at(account: Account, now: datetime, job_kind: str = "profile") -> datetime | None:
    """When an ineligible account becomes usable again without operator action.

    Inactive and invalid accounts never recover on their own and give ``None``;
    so does a blocked account with no block window.
    """
    if not account.is_active or account.validation_status == "invalid":
        return None

    cooldown_until = as_utc(account.cooldown_until)
    blocked_until = as_utc(account.blocked_until)
    if account.validation_status == "blocked" and (blocked_until is None or blocked_until <= now):
        return None

    waits = [moment for moment in (cooldown_until, blocked_until) if moment is not None and moment > now]
    candidate = max(waits) if waits else None

    if requests_used(account, now) >= effective_daily_limit(account, job_kind):
        reset_at = as_utc(account.requests_reset_at) or next_utc_midnight(now)
        candidate = max(candidate, reset_at) if candidate else reset_at
    return candidate


class AccountHealthStore:
    """Usage counters and health transitions for the account pool.

    Every write goes straight to storage. Writes for the same account are
    serialized through a per-account lock and counters are bumped with SQL
    expressions, so two jobs sharing an account never lose an update.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        settings: Settings | None = None,
        clock: SystemClock | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self._locks: dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _now(self, now: datetime | None = None) -> datetime:
        return as_utc(now) if now is not None else self.clock.now()

    def _refresh_windows(self, account: Account, now: datetime) -> bool:
        """Roll the daily window and expire finished blocks in place; returns True when changed."""
        changed = False
        reset_at = as_utc(account.requests_reset_at)
        if reset_at is None:
            account.requests_reset_at = next_utc_midnight(now)
            changed = True
        elif now >= reset_at:
            account.requests_today = 0
            account.requests_reset_at = next_utc_midnight(now)
            changed = True

        blocked_until = as_utc(account.blocked_until)
        if account.validation_status == "blocked" and blocked_until is not None and blocked_until <= now:
            logger.info("Block expired account_id=%s", account.id)
            account.validation_status = "active"
            account.blocked_until = None
            account.consecutive_failures = 0
            changed = True
        return changed

    async def record_success(self, account_id: int) -> Account:
        async with self._locks[account_id]:
            now = self._now()
            with self.session_factory() as db:
                repo = Repository(db)
                account = repo.require_account(account_id)
                if self._refresh_windows(account, now):
                    db.commit()
                db.execute(
                    update(Account)
                    .where(Account.id == account_id)
                    .values(
                        consecutive_failures=0,
                        last_error="",
                        requests_today=Account.requests_today + 1,
                        last_used_at=now,
                        updated_at=now,
                    )
                )
                db.commit()
                db.refresh(account)
                return account

    async def record_failure(self, account_id: int, kind: FailureKind, message: str = "") -> Account:
        async with self._locks[account_id]:
            now = self._now()
            with self.session_factory() as db:
                repo = Repository(db)
                account = repo.require_account(account_id)
                if self._refresh_windows(account, now):
                    db.commit()
                db.execute(
                    update(Account)
                    .where(Account.id == account_id)
                    .values(consecutive_failures=Account.consecutive_failures + 1)
                )
                db.commit()
                db.refresh(account)

                failures = account.consecutive_failures
                account.last_error = message or kind.value
                account.last_used_at = now

                if kind is FailureKind.RATE_LIMIT:
                    minutes = min(
                        self.settings.rate_limit_cooldown_min * failures,
                        self.settings.rate_limit_cooldown_max_min,
                    )
                    if failures >= self.settings.account_max_consecutive_failures:
                        minutes = max(minutes, self.settings.soft_cooldown_min)
                    account.cooldown_until = now + timedelta(minutes=minutes)
                    logger.warning(
                        "Rate limited account_id=%s cooldown_min=%s failures=%s", account_id, minutes, failures
                    )
                elif kind in {FailureKind.AUTHENTICATION, FailureKind.INVALID_COOKIES}:
                    account.validation_status = "invalid"
                    logger.warning("Account invalidated account_id=%s reason=%s", account_id, kind.value)
                elif kind is FailureKind.BLOCKED:
                    account.validation_status = "blocked"
                    account.blocked_until = now + timedelta(hours=self.settings.blocked_duration_hours)
                    logger.warning(
                        "Account blocked account_id=%s until=%s", account_id, account.blocked_until.isoformat()
                    )
                elif failures >= self.settings.account_max_consecutive_failures:
                    account.cooldown_until = now + timedelta(minutes=self.settings.soft_cooldown_min)
                    logger.warning(
                        "Soft cooldown account_id=%s failures=%s minutes=%s",
                        account_id,
                        failures,
                        self.settings.soft_cooldown_min,
                    )

                db.commit()
                db.refresh(account)
                return account

    async def mark_used(self, account_id: int) -> None:
        async with self._locks[account_id]:
            now = self._now()
            with self.session_factory() as db:
                db.execute(update(Account).where(Account.id == account_id).values(last_used_at=now))
                db.commit()

    def is_eligible(self, account_id: int, now: datetime | None = None, job_kind: str = "profile") -> bool:
        with self.session_factory() as db:
            account = Repository(db).get_account(account_id)
            if account is None:
                return False
            return account_is_eligible(account, self._now(now), job_kind)

    def _load_pool(
        self, db: Session, user_id: int, now: datetime, account_ids: Iterable[int] | None = None
    ) -> list[Account]:
        accounts = Repository(db).list_accounts(user_id)
        changed = False
        for account in accounts:
            changed = self._refresh_windows(account, now) or changed
        if changed:
            db.commit()
        if account_ids:
            wanted = set(account_ids)
            accounts = [account for account in accounts if account.id in wanted]
        return accounts

    def selectable_accounts(
        self,
        user_id: int,
        job_kind: str = "profile",
        now: datetime | None = None,
        account_ids: Iterable[int] | None = None,
    ) -> list[Account]:
        """Eligible accounts of ``user_id`` in id order.

        ``account_ids`` narrows the pool to a manual selection; when none of those
        are eligible the whole pool is used instead.
        """
        now = self._now(now)
        account_ids = list(account_ids or [])
        with self.session_factory() as db:
            pool = self._load_pool(db, user_id, now)
            eligible = [account for account in pool if account_is_eligible(account, now, job_kind)]
            if account_ids:
                selected = [account for account in eligible if account.id in set(account_ids)]
                if selected:
                    return selected
                if eligible:
                    logger.info(
                        "Manual selection exhausted user_id=%s selected=%s; using full pool", user_id, account_ids
                    )
            return eligible

    def earliest_eligible_at(
        self, user_id: int, job_kind: str = "profile", now: datetime | None = None
    ) -> datetime | None:
        now = self._now(now)
        with self.session_factory() as db:
            moments = [
                moment
                for account in self._load_pool(db, user_id, now)
                if (moment := eligible_again_at(account, now, job_kind)) is not None
            ]
        return min(moments) if moments else None

    def reset_daily_counters(self, user_id: int | None = None) -> int:
        now = self.clock.now()
        with self.session_factory() as db:
            statement = update(Account).values(requests_today=0, requests_reset_at=next_utc_midnight(now))
            if user_id is not None:
                statement = statement.where(Account.user_id == user_id)
            result = db.execute(statement)
            db.commit()
            logger.info("Daily counters reset user_id=%s accounts=%s", user_id, result.rowcount)
            return result.rowcount or 0

    def reactivate(self, account_id: int) -> Account:
        with self.session_factory() as db:
            account = Repository(db).update_account(
                account_id,
                is_active=True,
                validation_status="active",
                cooldown_until=None,
                blocked_until=None,
                consecutive_failures=0,
                last_error="",
            )
            logger.info("Account reactivated account_id=%s", account_id)
            return account

    def rotation_stats(self, user_id: int, now: datetime | None = None) -> RotationStats:
        now = self._now(now)
        with self.session_factory() as db:
            pool = self._load_pool(db, user_id, now)
        stats = RotationStats(user_id=user_id, total_accounts=len(pool))
        moments: list[datetime] = []
        for account in pool:
            stats.requests_today += requests_used(account, now)
            if account.validation_status == "invalid" or not account.is_active:
                stats.invalid_accounts += 1
                continue
            if account.validation_status == "blocked":
                stats.blocked_accounts += 1
            else:
                stats.active_accounts += 1
                cooldown_until = as_utc(account.cooldown_until)
                if cooldown_until is not None and cooldown_until > now:
                    stats.cooldown_accounts += 1
            if account_is_eligible(account, now):
                stats.eligible_accounts += 1
            elif (moment := eligible_again_at(account, now)) is not None:
                moments.append(moment)
        stats.next_eligible_at = min(moments) if moments else None
        return stats
