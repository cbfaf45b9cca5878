from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress
from datetime import timedelta

from sqlalchemy.orm import Session

from scralytics.config import Settings
from scralytics.core.dispatcher import JobControl, UrlDispatcher
from scralytics.db.repositories import Repository
from scralytics.db.session import SessionLocal
from scralytics.types import TERMINAL_JOB_STATUSES, QueueStatus

logger = logging.getLogger(__name__)


class JobScheduler:
    """Bounded-concurrency job queue in front of the dispatcher.

    Queue and in-flight bookkeeping live in memory only; jobs and URLs in
    storage are the durable record, and ``poll_storage`` rebuilds the queue
    from them after a restart. A job that pauses gives up its slot and
    comes back through ``resume``.
    """

    def __init__(
        self,
        dispatcher: UrlDispatcher,
        *,
        settings: Settings | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.dispatcher = dispatcher
        self.settings = settings or dispatcher.settings
        self.clock = dispatcher.clock
        self.session_factory = session_factory
        self._queue: deque[int] = deque()
        self._running: dict[int, asyncio.Task[None]] = {}
        self._controls: dict[int, JobControl] = {}
        self._poll_task: asyncio.Task[None] | None = None

    @contextmanager
    def _repository(self) -> Iterator[Repository]:
        with self.session_factory() as db:
            yield Repository(db)

    @property
    def max_concurrent(self) -> int:
        return self.settings.max_concurrent_jobs

    def is_queued(self, job_id: int) -> bool:
        return job_id in self._queue

    def is_running(self, job_id: int) -> bool:
        return job_id in self._running

    async def enqueue(self, job_id: int) -> bool:
        """Queue a job once; returns False when it is already queued or running."""
        if job_id in self._queue or job_id in self._running:
            return False
        with self._repository() as repo:
            job = repo.require_job(job_id)
            if job.status in TERMINAL_JOB_STATUSES:
                raise ValueError(f"job {job_id} is {job.status} and cannot be queued")

        self._queue.append(job_id)
        logger.info("Job queued job_id=%s queue_length=%s", job_id, len(self._queue))
        self._admit()
        return True

    def _admit(self) -> None:
        while self._queue and len(self._running) < self.max_concurrent:
            job_id = self._queue.popleft()
            control = JobControl()
            self._controls[job_id] = control
            self._running[job_id] = asyncio.create_task(self._run(job_id, control), name=f"scralytics-job-{job_id}")
            logger.info("Job admitted job_id=%s in_flight=%s", job_id, len(self._running))

    async def _run(self, job_id: int, control: JobControl) -> None:
        try:
            await self.dispatcher.process_job(job_id, control)
        except asyncio.CancelledError:
            with self._repository() as repo:
                repo.reset_interrupted_urls(job_id)
                if control.paused:
                    # a requested pause survives shutdown; only resume brings the job back
                    logger.warning("Job interrupted job_id=%s; keeping it paused", job_id)
                    repo.update_job_status(job_id, "paused", error_message=control.reason or "Paused", paused=True)
                else:
                    logger.warning("Job interrupted job_id=%s; returning it to pending", job_id)
                    repo.update_job_status(job_id, "pending")
            raise
        except Exception as exc:
            logger.exception("Job crashed job_id=%s", job_id)
            with self._repository() as repo:
                repo.update_job_status(
                    job_id, "failed", error_message=str(exc) or exc.__class__.__name__, completed=True
                )
                repo.close_assignments(job_id, "failed")
        finally:
            self._running.pop(job_id, None)
            self._controls.pop(job_id, None)
            self._admit()

    async def pause(self, job_id: int) -> str:
        control = self._controls.get(job_id)
        if control is not None:
            control.pause("Paused by user")
            return "pausing"

        with self._repository() as repo:
            job = repo.require_job(job_id)
            if job_id in self._queue:
                self._queue.remove(job_id)
            elif job.status != "pending":
                raise ValueError(f"job {job_id} is {job.status} and cannot be paused")
            repo.update_job_status(job_id, "paused", error_message="Paused by user", paused=True)
        logger.info("Queued job paused job_id=%s", job_id)
        return "paused"

    async def resume(self, job_id: int) -> str:
        control = self._controls.get(job_id)
        if control is not None:
            control.resume()
            return "running"

        with self._repository() as repo:
            job = repo.require_job(job_id)
            if job.status != "paused":
                raise ValueError(f"job {job_id} is {job.status} and cannot be resumed")
            repo.update_job_status(job_id, "pending", error_message="", resumed=True)
        await self.enqueue(job_id)
        return "queued"

    async def cancel(self, job_id: int) -> str:
        control = self._controls.get(job_id)
        if control is not None:
            control.cancel()
            return "cancelling"

        with self._repository() as repo:
            job = repo.require_job(job_id)
            if job.status in TERMINAL_JOB_STATUSES:
                raise ValueError(f"job {job_id} is already {job.status}")
            if job_id in self._queue:
                self._queue.remove(job_id)
            repo.update_job_status(job_id, "cancelled", error_message="Cancelled by user", completed=True)
        logger.info("Job cancelled before start job_id=%s", job_id)
        return "cancelled"

    async def retry(self, job_id: int) -> int:
        """Reopen the job's failed URLs and queue it again; returns how many URLs were reopened."""
        if job_id in self._running:
            raise ValueError(f"job {job_id} is still running")
        with self._repository() as repo:
            job = repo.require_job(job_id)
            if job.status == "cancelled":
                raise ValueError(f"job {job_id} was cancelled")
            reopened = repo.reset_job_for_retry(job_id)
        await self.enqueue(job_id)
        return reopened

    def status(self) -> QueueStatus:
        """Queue snapshot; paused covers jobs stopped in storage and in-flight jobs asked to pause."""
        with self._repository() as repo:
            stored = set(repo.paused_job_ids())
        flagged = {job_id for job_id, control in self._controls.items() if control.paused}
        paused = sorted(stored | flagged)
        return QueueStatus(
            queue_length=len(self._queue),
            processing_jobs=len(self._running),
            paused_jobs=len(paused),
            max_concurrent=self.max_concurrent,
            queued=list(self._queue),
            processing=sorted(self._running),
            paused=paused,
        )

    async def poll_storage(self) -> list[int]:
        """Queue pending jobs found in storage and restart recently failed ones."""
        since = self.clock.now() - timedelta(minutes=self.settings.failed_restart_window_min)
        with self._repository() as repo:
            candidates = repo.pending_job_ids(limit=10)
            for job in repo.restartable_failed_jobs(
                since=since,
                max_restarts=self.settings.failed_restart_max_attempts,
                limit=self.settings.failed_restart_limit,
            ):
                repo.reset_job_for_retry(job.id, automatic=True)
                logger.info("Restarting failed job job_id=%s", job.id)
                candidates.append(job.id)

        queued = []
        for job_id in candidates:
            if await self.enqueue(job_id):
                queued.append(job_id)
        return queued

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_storage()
            except Exception:
                logger.exception("Storage poll failed")
            await self.clock.sleep(self.settings.queue_poll_interval_sec)

    def start(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop(), name="scralytics-queue-poll")

    async def stop(self) -> None:
        self._queue.clear()
        tasks = list(self._running.values())
        if self._poll_task is not None:
            tasks.append(self._poll_task)
            self._poll_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

    async def wait_idle(self) -> None:
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)
