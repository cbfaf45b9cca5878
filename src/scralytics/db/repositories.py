from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from scralytics.core.clock import utcnow
from scralytics.core.errors import AccountNotFoundError, JobNotFoundError
from scralytics.db.models import (
    Account,
    CompanyResult,
    Job,
    JobAccountAssignment,
    JobUrl,
    ProfileResult,
)


class Repository:
    def __init__(self, session: Session):
        self.session = session

    # accounts

    def create_account(
        self,
        *,
        user_id: int,
        email: str,
        display_name: str = "",
        cookies_json: str = "[]",
        user_agent: str = "",
        daily_request_limit: int = 100,
        validation_status: str = "active",
    ) -> Account:
        account = Account(
            user_id=user_id,
            email=email,
            display_name=display_name or email,
            cookies_json=cookies_json,
            user_agent=user_agent,
            daily_request_limit=daily_request_limit,
            validation_status=validation_status,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def get_account(self, account_id: int) -> Account | None:
        return self.session.get(Account, account_id)

    def require_account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def list_accounts(self, user_id: int | None = None) -> list[Account]:
        statement = select(Account).order_by(Account.id.asc())
        if user_id is not None:
            statement = statement.where(Account.user_id == user_id)
        return list(self.session.scalars(statement).all())

    def update_account(self, account_id: int, **values: Any) -> Account:
        account = self.require_account(account_id)
        for key, value in values.items():
            setattr(account, key, value)
        self.session.commit()
        self.session.refresh(account)
        return account

    # jobs

    def create_job(
        self,
        *,
        user_id: int,
        kind: str,
        name: str = "",
        urls: list[str] | None = None,
        search_query: str = "",
        max_results: int = 100,
        account_selection_mode: str = "",
        selected_account_ids: list[int] | None = None,
    ) -> Job:
        urls = [url.strip() for url in (urls or []) if url.strip()]
        job = Job(
            user_id=user_id,
            kind=kind,
            name=name or f"{kind} job",
            status="pending",
            config_json={"urls": urls, "search_query": search_query, "max_results": max_results},
            account_selection_mode=account_selection_mode,
            selected_account_ids_json=list(selected_account_ids or []),
            total_urls=len(urls),
        )
        self.session.add(job)
        self.session.flush()
        for url in urls:
            self.session.add(JobUrl(job_id=job.id, url=url, status="pending"))
        self.session.commit()
        self.session.refresh(job)
        return job

    def get_job(self, job_id: int) -> Job | None:
        return self.session.get(Job, job_id)

    def require_job(self, job_id: int) -> Job:
        job = self.session.get(Job, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def refresh_job(self, job_id: int) -> Job:
        job = self.require_job(job_id)
        self.session.refresh(job)
        return job

    def list_jobs(self, *, user_id: int | None = None, status: str | None = None, limit: int = 50) -> list[Job]:
        statement = select(Job).order_by(Job.created_at.desc(), Job.id.desc()).limit(limit)
        if user_id is not None:
            statement = statement.where(Job.user_id == user_id)
        if status is not None:
            statement = statement.where(Job.status == status)
        return list(self.session.scalars(statement).all())

    def update_job_status(
        self,
        job_id: int,
        status: str,
        *,
        error_message: str | None = None,
        started: bool = False,
        paused: bool = False,
        resumed: bool = False,
        completed: bool = False,
    ) -> Job:
        job = self.require_job(job_id)
        now = utcnow()
        job.status = status
        if error_message is not None:
            job.error_message = error_message
        if started and job.started_at is None:
            job.started_at = now
        if paused:
            job.paused_at = now
        if resumed:
            job.resumed_at = now
        if completed:
            job.completed_at = now
        self.session.commit()
        self.session.refresh(job)
        return job

    def record_url_outcome(self, job_id: int, *, success: bool) -> Job:
        """Bump the progress counters in one statement so processed == successful + failed holds."""
        values: dict[str, Any] = {"processed_urls": Job.processed_urls + 1, "updated_at": utcnow()}
        if success:
            values["successful_urls"] = Job.successful_urls + 1
        else:
            values["failed_urls"] = Job.failed_urls + 1
        self.session.execute(update(Job).where(Job.id == job_id).values(**values))
        self.session.commit()
        return self.refresh_job(job_id)

    def pending_job_ids(self, limit: int = 10) -> list[int]:
        statement = (
            select(Job.id).where(Job.status == "pending").order_by(Job.created_at.asc(), Job.id.asc()).limit(limit)
        )
        return list(self.session.scalars(statement).all())

    def paused_job_ids(self) -> list[int]:
        statement = select(Job.id).where(Job.status == "paused").order_by(Job.id.asc())
        return list(self.session.scalars(statement).all())

    def restartable_failed_jobs(self, *, since: datetime, max_restarts: int, limit: int = 5) -> list[Job]:
        statement = (
            select(Job)
            .where(
                and_(
                    Job.status == "failed",
                    Job.created_at >= since,
                    Job.auto_restarts < max_restarts,
                    ~func.lower(Job.error_message).contains("cancel"),
                )
            )
            .order_by(Job.created_at.asc(), Job.id.asc())
            .limit(limit)
        )
        return list(self.session.scalars(statement).all())

    def reset_job_for_retry(self, job_id: int, *, automatic: bool = False) -> int:
        """Reopen every failed URL of a job and roll its counters back.

        Returns the number of URLs reopened.
        """
        job = self.require_job(job_id)
        failed_urls = self.list_job_urls(job_id, status="failed")
        for job_url in failed_urls:
            job_url.status = "pending"
            job_url.attempts = 0
            job_url.error_message = ""
            job_url.started_at = None
            job_url.completed_at = None

        reopened = len(failed_urls)
        job.failed_urls = max(0, job.failed_urls - reopened)
        job.processed_urls = job.successful_urls + job.failed_urls
        job.status = "pending"
        job.error_message = ""
        job.completed_at = None
        if automatic:
            job.auto_restarts += 1
        self.session.commit()
        return reopened

    # job urls

    def list_job_urls(self, job_id: int, status: str | None = None) -> list[JobUrl]:
        statement = select(JobUrl).where(JobUrl.job_id == job_id).order_by(JobUrl.id.asc())
        if status is not None:
            statement = statement.where(JobUrl.status == status)
        return list(self.session.scalars(statement).all())

    def get_job_url(self, job_url_id: int) -> JobUrl | None:
        return self.session.get(JobUrl, job_url_id)

    def add_job_urls(self, job_id: int, urls: list[str]) -> list[JobUrl]:
        job = self.require_job(job_id)
        rows = [JobUrl(job_id=job_id, url=url, status="pending") for url in urls]
        self.session.add_all(rows)
        job.total_urls += len(rows)
        self.session.commit()
        return rows

    def reset_interrupted_urls(self, job_id: int) -> int:
        result = self.session.execute(
            update(JobUrl)
            .where(and_(JobUrl.job_id == job_id, JobUrl.status == "processing"))
            .values(status="pending", updated_at=utcnow())
        )
        self.session.commit()
        return result.rowcount or 0

    def mark_url_processing(self, job_url_id: int) -> int:
        """Flag the URL as in flight and count the attempt; returns the 1-based attempt number."""
        job_url = self.session.get(JobUrl, job_url_id)
        if job_url is None:
            raise ValueError(f"job url {job_url_id} not found")
        job_url.status = "processing"
        job_url.attempts += 1
        if job_url.started_at is None:
            job_url.started_at = utcnow()
        self.session.commit()
        return job_url.attempts

    def mark_url_completed(self, job_url_id: int, *, result_kind: str, result_id: int) -> None:
        job_url = self.session.get(JobUrl, job_url_id)
        if job_url is None:
            raise ValueError(f"job url {job_url_id} not found")
        job_url.status = "completed"
        job_url.error_message = ""
        job_url.result_kind = result_kind
        job_url.result_id = result_id
        job_url.completed_at = utcnow()
        self.session.commit()

    def mark_url_failed(self, job_url_id: int, error_message: str) -> None:
        job_url = self.session.get(JobUrl, job_url_id)
        if job_url is None:
            raise ValueError(f"job url {job_url_id} not found")
        job_url.status = "failed"
        job_url.error_message = error_message
        job_url.completed_at = utcnow()
        self.session.commit()

    # assignments

    def upsert_assignment(self, job_id: int, account_id: int) -> JobAccountAssignment:
        existing = self.session.scalar(
            select(JobAccountAssignment).where(
                and_(
                    JobAccountAssignment.job_id == job_id,
                    JobAccountAssignment.account_id == account_id,
                )
            )
        )
        if existing:
            return existing

        assignment = JobAccountAssignment(
            job_id=job_id,
            account_id=account_id,
            status="active",
            assigned_at=utcnow(),
        )
        self.session.add(assignment)
        self.session.commit()
        self.session.refresh(assignment)
        return assignment

    def record_assignment_use(self, job_id: int, account_id: int) -> None:
        assignment = self.upsert_assignment(job_id, account_id)
        self.session.execute(
            update(JobAccountAssignment)
            .where(JobAccountAssignment.id == assignment.id)
            .values(urls_assigned=JobAccountAssignment.urls_assigned + 1, last_used_at=utcnow())
        )
        self.session.commit()

    def record_assignment_outcome(self, job_id: int, account_id: int, *, success: bool) -> None:
        values: dict[str, Any] = {"urls_processed": JobAccountAssignment.urls_processed + 1}
        if success:
            values["urls_successful"] = JobAccountAssignment.urls_successful + 1
        self.session.execute(
            update(JobAccountAssignment)
            .where(
                and_(
                    JobAccountAssignment.job_id == job_id,
                    JobAccountAssignment.account_id == account_id,
                )
            )
            .values(**values)
        )
        self.session.commit()

    def close_assignments(self, job_id: int, status: str) -> None:
        self.session.execute(
            update(JobAccountAssignment)
            .where(and_(JobAccountAssignment.job_id == job_id, JobAccountAssignment.status == "active"))
            .values(status=status, completed_at=utcnow())
        )
        self.session.commit()

    def list_assignments(self, job_id: int) -> list[JobAccountAssignment]:
        statement = (
            select(JobAccountAssignment)
            .where(JobAccountAssignment.job_id == job_id)
            .order_by(JobAccountAssignment.id.asc())
        )
        return list(self.session.scalars(statement).all())

    # results

    def list_profile_results(self, job_id: int) -> list[ProfileResult]:
        statement = select(ProfileResult).where(ProfileResult.job_id == job_id).order_by(ProfileResult.id.asc())
        return list(self.session.scalars(statement).all())

    def list_company_results(self, job_id: int) -> list[CompanyResult]:
        statement = select(CompanyResult).where(CompanyResult.job_id == job_id).order_by(CompanyResult.id.asc())
        return list(self.session.scalars(statement).all())

    def serialize_job(self, job_id: int) -> dict[str, Any]:
        job = self.require_job(job_id)
        return {
            "id": job.id,
            "user_id": job.user_id,
            "name": job.name,
            "kind": job.kind,
            "status": job.status,
            "total_urls": job.total_urls,
            "processed_urls": job.processed_urls,
            "successful_urls": job.successful_urls,
            "failed_urls": job.failed_urls,
            "error_message": job.error_message,
            "account_selection_mode": job.account_selection_mode,
            "selected_account_ids": list(job.selected_account_ids_json or []),
            "created_at": job.created_at.isoformat() if job.created_at else None,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "paused_at": job.paused_at.isoformat() if job.paused_at else None,
            "resumed_at": job.resumed_at.isoformat() if job.resumed_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        }
