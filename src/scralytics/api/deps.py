from __future__ import annotations

from collections.abc import Generator

from fastapi import HTTPException
from sqlalchemy.orm import Session

from scralytics.core.runtime import get_scheduler
from scralytics.core.scheduler import JobScheduler
from scralytics.db.session import get_db_session


def get_db() -> Generator[Session, None, None]:
    yield from get_db_session()


def get_job_scheduler() -> JobScheduler:
    try:
        return get_scheduler()
    except (ValueError, ImportError) as exc:
        raise HTTPException(status_code=503, detail=f"Scheduler unavailable: {exc}") from exc
