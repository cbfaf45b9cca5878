from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from pydantic import ValidationError
from sqlalchemy.orm import Session

from scralytics.config import Settings
from scralytics.core.errors import NoEligibleAccounts, ScrapeError, TargetValidationError
from scralytics.core.events import EventBus
from scralytics.core.results import ResultSink
from scralytics.core.retry import RetryAction, RetryDecision, RetryPolicy, classify_failure
from scralytics.core.rotation import AccountRotator
from scralytics.core.scraper import CredentialStore, Scraper, SearchExpander, validate_target_url
from scralytics.db.models import Account, Job, JobUrl
from scralytics.db.repositories import Repository
from scralytics.db.session import SessionLocal
from scralytics.types import (
    FailureKind,
    JobFallback,
    JobProgressEvent,
    ScrapeFailure,
    ScrapeSuccess,
    build_record,
)

logger = logging.getLogger(__name__)

ROTATION_POLICIES = {"round_robin", "load_balance", "manual"}


@dataclass(slots=True)
class JobControl:
    """Pause and cancel flags for one running job, read at URL boundaries and during waits."""

    paused: bool = False
    cancelled: bool = False
    reason: str = ""

    def pause(self, reason: str = "") -> None:
        self.paused = True
        self.reason = reason

    def resume(self) -> None:
        self.paused = False
        self.reason = ""

    def cancel(self) -> None:
        self.cancelled = True


class JobCancelled(Exception):
    pass


class JobPaused(Exception):
    def __init__(self, reason: str = ""):
        super().__init__(reason)
        self.reason = reason


class SearchExpansionError(Exception):
    pass


@dataclass(slots=True)
class _Attempt:
    success: ScrapeSuccess | None = None
    kind: FailureKind | None = None
    message: str = ""


class UrlDispatcher:
    """Drives the URLs of one job through rotation, scraping and retries, strictly in order."""

    def __init__(
        self,
        rotator: AccountRotator,
        scraper: Scraper,
        *,
        policy: RetryPolicy | None = None,
        credentials: CredentialStore | None = None,
        settings: Settings | None = None,
        event_bus: EventBus | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        search_expander: SearchExpander | None = None,
    ):
        self.rotator = rotator
        self.health = rotator.health
        self.clock = rotator.health.clock
        self.scraper = scraper
        self.settings = settings or rotator.health.settings
        self.policy = policy or RetryPolicy(self.settings)
        self.credentials = credentials or CredentialStore()
        self.event_bus = event_bus
        self.session_factory = session_factory
        self.search_expander = search_expander

    @contextmanager
    def _repository(self) -> Iterator[Repository]:
        with self.session_factory() as db:
            yield Repository(db)

    async def process_job(self, job_id: int, control: JobControl | None = None) -> str:
        """Run every pending URL of the job and return the status it ends in.

        A pause ends the run with ``paused`` stored; resuming queues the job
        again and it picks up at its first pending URL.
        """
        control = control or JobControl()
        with self._repository() as repo:
            reopened = repo.reset_interrupted_urls(job_id)
            job = repo.update_job_status(job_id, "running", error_message="", started=True)
            self._open_manual_assignments(repo, job)
        if reopened:
            logger.info("Reopened interrupted urls job_id=%s count=%s", job_id, reopened)
        logger.info("Job started job_id=%s kind=%s", job_id, job.kind)
        await self._publish(job_id, "started")

        try:
            if job.kind == "search":
                await self._expand_search(job, control)

            with self._repository() as repo:
                pending = repo.list_job_urls(job_id, status="pending")

            consecutive_failures = 0
            for index, job_url in enumerate(pending):
                await self._checkpoint(job_id, control)
                succeeded = await self._process_url(job, job_url, control)
                consecutive_failures = 0 if succeeded else consecutive_failures + 1

                if consecutive_failures >= self.settings.job_max_consecutive_failures:
                    reason = f"Paused due to {consecutive_failures} consecutive failures"
                    logger.warning("%s job_id=%s", reason, job_id)
                    control.pause(reason)
                    consecutive_failures = 0

                if index < len(pending) - 1:
                    with self._repository() as repo:
                        current = repo.require_job(job_id)
                        delay = self.policy.inter_request_delay(current.successful_urls, current.failed_urls)
                    await self.clock.sleep(delay)
        except JobCancelled:
            return await self._finish_cancelled(job_id)
        except JobPaused as exc:
            return await self._finish_paused(job_id, exc.reason)
        except SearchExpansionError as exc:
            return await self._finish_failed(job_id, str(exc))

        return await self._finish(job_id)

    def _open_manual_assignments(self, repo: Repository, job: Job) -> None:
        if job.account_selection_mode != "manual":
            return
        for account_id in job.selected_account_ids_json or []:
            if repo.get_account(account_id) is not None:
                repo.upsert_assignment(job.id, account_id)

    def _rotation_args(self, job: Job) -> tuple[str | None, list[int]]:
        mode = job.account_selection_mode if job.account_selection_mode in ROTATION_POLICIES else None
        account_ids = list(job.selected_account_ids_json or []) if mode == "manual" else []
        return mode, account_ids

    async def _expand_search(self, job: Job, control: JobControl) -> None:
        with self._repository() as repo:
            if repo.list_job_urls(job.id):
                return
        config = job.config_json or {}
        query = str(config.get("search_query") or "").strip()
        if not query:
            raise ValueError(f"search job {job.id} has no search query")
        if self.search_expander is None:
            raise ValueError("search jobs need a search expander")
        max_results = int(config.get("max_results") or 100)

        account: Account | None = None
        tried: set[int] = set()
        attempt = 0
        while True:
            if account is None or not self.health.is_eligible(account.id, job_kind=job.kind):
                account = await self._acquire_account(job, control, exclude=tried)
            attempt += 1
            try:
                credentials = self.credentials.get_credentials(account)
                async with self.rotator.session_lease(account.id):
                    urls = await self.search_expander.expand(query, credentials, max_results)
            except Exception as exc:  # expander failures go through the same retry path as scrapes
                kind = classify_failure(exc)
                message = str(exc) or exc.__class__.__name__
            else:
                await self.health.record_success(account.id)
                break

            decision = await self._after_failure(job, account, attempt, kind, message, tried)
            if decision.action is RetryAction.ABANDON:
                raise SearchExpansionError(f"search expansion failed: {message}")
            if decision.action is RetryAction.RETRY_NEW_ACCOUNT:
                account = None
                continue
            await self.clock.sleep(decision.delay_sec)
            if control.cancelled:
                raise JobCancelled()

        with self._repository() as repo:
            repo.add_job_urls(job.id, list(dict.fromkeys(url for url in urls if url)))
        logger.info("Search expanded job_id=%s query=%r urls=%s", job.id, query, len(urls))

    async def _checkpoint(self, job_id: int, control: JobControl) -> None:
        if control.cancelled:
            raise JobCancelled()
        if control.paused:
            raise JobPaused(control.reason)

    async def _acquire_account(
        self, job: Job, control: JobControl, exclude: set[int] | None = None
    ) -> Account:
        policy, account_ids = self._rotation_args(job)
        waits = 0
        while True:
            await self._checkpoint(job.id, control)
            try:
                return await self.rotator.next(
                    job.user_id, job.kind, policy=policy, account_ids=account_ids, exclude=exclude
                )
            except NoEligibleAccounts as exc:
                if exc.earliest_eligible_at is None or waits >= self.settings.max_eligibility_waits:
                    raise JobPaused(f"Paused: no eligible accounts for user {job.user_id}")

                remaining = (exc.earliest_eligible_at - self.clock.now()).total_seconds()
                delay = min(
                    max(remaining, self.settings.pause_poll_interval_sec),
                    self.settings.eligibility_wait_cap_sec,
                )
                waits += 1
                logger.info(
                    "Waiting for an eligible account job_id=%s delay_sec=%.1f wait=%s", job.id, delay, waits
                )
                await self.clock.sleep(delay)

    async def _attempt(self, url: str, account: Account, scrape_kind: str) -> _Attempt:
        try:
            credentials = self.credentials.get_credentials(account)
            async with self.rotator.session_lease(account.id):
                outcome = await self.scraper.scrape(url, credentials, scrape_kind)
        except ScrapeError as exc:
            return _Attempt(kind=classify_failure(exc), message=str(exc) or exc.failure_kind.value)
        except Exception as exc:  # scraper crashes count as failed attempts
            logger.warning("Scraper raised url=%s account_id=%s error=%s", url, account.id, exc)
            return _Attempt(kind=classify_failure(exc), message=str(exc) or exc.__class__.__name__)

        if isinstance(outcome, ScrapeFailure):
            message = outcome.message or f"HTTP {outcome.http_status}"
            return _Attempt(kind=classify_failure(outcome), message=message)
        return _Attempt(success=outcome)

    async def _process_url(self, job: Job, job_url: JobUrl, control: JobControl) -> bool:
        """Attempt one URL until it completes or the retry policy gives up; True on success."""
        scrape_kind = "company" if job.kind == "company" else "profile"
        try:
            url = validate_target_url(job_url.url)
        except TargetValidationError as exc:
            with self._repository() as repo:
                repo.mark_url_processing(job_url.id)
            return await self._fail_url(job, job_url, None, str(exc))

        account: Account | None = None
        tried: set[int] = set()
        while True:
            if account is None or not self.health.is_eligible(account.id, job_kind=job.kind):
                account = await self._acquire_account(job, control, exclude=tried)

            with self._repository() as repo:
                attempt = repo.mark_url_processing(job_url.id)
                repo.record_assignment_use(job.id, account.id)

            result = await self._attempt(url, account, scrape_kind)
            if result.success is not None:
                return await self._complete_url(job, job_url, account, result.success, scrape_kind)

            kind = result.kind or FailureKind.UNKNOWN
            decision = await self._after_failure(job, account, attempt, kind, result.message, tried, job_url)
            if decision.action is RetryAction.ABANDON:
                return await self._fail_url(job, job_url, account, result.message)
            if decision.action is RetryAction.RETRY_NEW_ACCOUNT:
                account = None
                continue

            await self.clock.sleep(decision.delay_sec)
            if control.cancelled:
                raise JobCancelled()

    async def _after_failure(
        self,
        job: Job,
        account: Account,
        attempt: int,
        kind: FailureKind,
        message: str,
        tried: set[int],
        job_url: JobUrl | None = None,
    ) -> RetryDecision:
        """Charge the failure to the account and ask the retry policy what comes next."""
        # a dead or malformed target says nothing about the account
        if kind is not FailureKind.VALIDATION:
            await self.health.record_failure(account.id, kind, message)
        tried.add(account.id)
        policy_name, account_ids = self._rotation_args(job)
        has_alternate = self.rotator.has_alternate(
            job.user_id, job.kind, exclude=tried, account_ids=account_ids if policy_name == "manual" else None
        )
        decision = self.policy.decide(attempt, kind, has_alternate=has_alternate)
        logger.info(
            "Attempt failed job_id=%s url_id=%s attempt=%s kind=%s action=%s",
            job.id,
            job_url.id if job_url is not None else "-",
            attempt,
            kind.value,
            decision.action.value,
        )
        return decision

    async def _complete_url(
        self, job: Job, job_url: JobUrl, account: Account, success: ScrapeSuccess, scrape_kind: str
    ) -> bool:
        try:
            record = build_record(scrape_kind, job_url.url, success.data)
            with self.session_factory() as db:
                result_id = ResultSink(db, settings=self.settings).save(
                    record,
                    job.id,
                    JobFallback(user_id=job.user_id, name=job.name, kind=job.kind),
                    job_url_id=job_url.id,
                )
        except (ValidationError, ValueError) as exc:
            logger.warning("Result rejected job_id=%s url_id=%s error=%s", job.id, job_url.id, exc)
            return await self._fail_url(job, job_url, account, f"invalid result: {exc}")

        await self.health.record_success(account.id)
        with self._repository() as repo:
            repo.mark_url_completed(job_url.id, result_kind=record.kind, result_id=result_id)
            repo.record_url_outcome(job.id, success=True)
            repo.record_assignment_outcome(job.id, account.id, success=True)
        await self._publish(job.id)
        return True

    async def _fail_url(self, job: Job, job_url: JobUrl, account: Account | None, message: str) -> bool:
        with self._repository() as repo:
            repo.mark_url_failed(job_url.id, message)
            repo.record_url_outcome(job.id, success=False)
            if account is not None:
                repo.record_assignment_outcome(job.id, account.id, success=False)
        logger.warning("Url failed job_id=%s url_id=%s error=%s", job.id, job_url.id, message)
        await self._publish(job.id)
        return False

    async def _finish(self, job_id: int) -> str:
        with self._repository() as repo:
            job = repo.require_job(job_id)
            if job.failed_urls == 0:
                status, error_message = "completed", ""
            elif job.successful_urls > 0:
                status, error_message = "completed_with_errors", f"{job.failed_urls} of {job.total_urls} urls failed"
            else:
                status, error_message = "failed", f"all {job.failed_urls} urls failed"
            repo.update_job_status(job_id, status, error_message=error_message, completed=True)
            repo.close_assignments(job_id, "completed")
        logger.info("Job finished job_id=%s status=%s", job_id, status)
        await self._publish(job_id, status)
        return status

    async def _finish_cancelled(self, job_id: int) -> str:
        with self._repository() as repo:
            repo.reset_interrupted_urls(job_id)
            repo.update_job_status(job_id, "cancelled", error_message="Cancelled by user", completed=True)
            repo.close_assignments(job_id, "cancelled")
        logger.info("Job cancelled job_id=%s", job_id)
        await self._publish(job_id, "cancelled")
        return "cancelled"

    async def _finish_paused(self, job_id: int, reason: str) -> str:
        reason = reason or "Paused"
        with self._repository() as repo:
            repo.reset_interrupted_urls(job_id)
            repo.update_job_status(job_id, "paused", error_message=reason, paused=True)
        logger.info("Job paused job_id=%s reason=%s", job_id, reason)
        await self._publish(job_id, reason)
        return "paused"

    async def _finish_failed(self, job_id: int, message: str) -> str:
        with self._repository() as repo:
            repo.update_job_status(job_id, "failed", error_message=message, completed=True)
            repo.close_assignments(job_id, "failed")
        logger.warning("Job failed job_id=%s error=%s", job_id, message)
        await self._publish(job_id, "failed")
        return "failed"

    async def _publish(self, job_id: int, message: str = "") -> None:
        if self.event_bus is None:
            return
        try:
            with self._repository() as repo:
                job = repo.require_job(job_id)
                event = JobProgressEvent(
                    job_id=job.id,
                    status=job.status,
                    total=job.total_urls,
                    processed=job.processed_urls,
                    successful=job.successful_urls,
                    failed=job.failed_urls,
                    message=message,
                )
            await self.event_bus.publish(job_id, event.model_dump())
        except Exception:  # progress delivery never fails the job
            logger.warning("Progress event dropped job_id=%s", job_id, exc_info=True)
