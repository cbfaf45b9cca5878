from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from scralytics.core.clock import as_utc
from scralytics.core.errors import NoEligibleAccounts
from scralytics.core.health import AccountHealthStore, requests_used
from scralytics.db.models import Account

logger = logging.getLogger(__name__)

_NEVER_USED = datetime.min.replace(tzinfo=UTC)


class AccountRotator:
    """Picks the next account for a job from the health store's eligible pool."""

    def __init__(self, health: AccountHealthStore, *, default_policy: str | None = None):
        self.health = health
        self.default_policy = default_policy or health.settings.default_rotation_policy
        self._cursors: dict[int, int] = {}
        self._select_lock = asyncio.Lock()
        self._session_locks: dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def next(
        self,
        user_id: int,
        job_kind: str = "profile",
        *,
        policy: str | None = None,
        account_ids: Iterable[int] | None = None,
        exclude: Iterable[int] | None = None,
    ) -> Account:
        policy = policy or self.default_policy
        if policy not in {"round_robin", "load_balance", "manual"}:
            raise ValueError(f"unknown rotation policy '{policy}'")
        manual_ids = list(account_ids or []) if policy == "manual" else []
        excluded = set(exclude or [])

        # selection and mark-in-use are one step
        async with self._select_lock:
            now = self.health.clock.now()
            pool = self.health.selectable_accounts(user_id, job_kind, now, manual_ids)
            candidates = [account for account in pool if account.id not in excluded] or pool
            if not candidates:
                raise NoEligibleAccounts(user_id, self.health.earliest_eligible_at(user_id, job_kind, now))

            if policy == "round_robin":
                account = self._round_robin(user_id, candidates)
            else:
                account = self._least_loaded(candidates, now)

            await self.health.mark_used(account.id)
            account.last_used_at = now
            logger.debug("Selected account_id=%s user_id=%s policy=%s", account.id, user_id, policy)
            return account

    def _round_robin(self, user_id: int, candidates: list[Account]) -> Account:
        last_id = self._cursors.get(user_id)
        account = candidates[0]
        if last_id is not None:
            later = [candidate for candidate in candidates if candidate.id > last_id]
            if later:
                account = later[0]
        self._cursors[user_id] = account.id
        return account

    @staticmethod
    def _least_loaded(candidates: list[Account], now: datetime) -> Account:
        return min(
            candidates,
            key=lambda account: (
                requests_used(account, now),
                as_utc(account.last_used_at) or _NEVER_USED,
                account.id,
            ),
        )

    def has_alternate(
        self,
        user_id: int,
        job_kind: str,
        *,
        exclude: Iterable[int],
        account_ids: Iterable[int] | None = None,
    ) -> bool:
        excluded = set(exclude)
        pool = self.health.selectable_accounts(user_id, job_kind, account_ids=list(account_ids or []))
        return any(account.id not in excluded for account in pool)

    @asynccontextmanager
    async def session_lease(self, account_id: int) -> AsyncIterator[None]:
        """Hold the account's single browser session for one scrape."""
        async with self._session_locks[account_id]:
            yield
