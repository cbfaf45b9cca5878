from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import String, Text
from sqlalchemy.orm import Session

from scralytics.config import Settings, get_settings
from scralytics.core.clock import utcnow
from scralytics.core.errors import MissingJobError
from scralytics.db.models import CompanyResult, Job, ProfileResult
from scralytics.types import CompanyRecord, JobFallback, ProfileRecord

logger = logging.getLogger(__name__)

_LIST_FIELDS = {
    "profile": {"skills": "skills_json", "education": "education_json", "experience": "experience_json"},
    "company": {"specialties": "specialties_json"},
}


class ResultSink:
    def __init__(self, session: Session, *, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    def ensure_job(self, job_id: int, fallback: JobFallback | None = None) -> Job:
        """Return the parent job, creating a minimal running job from ``fallback`` if it is missing."""
        job = self.session.get(Job, job_id)
        if job is not None:
            return job
        if fallback is None:
            raise MissingJobError(job_id)

        logger.warning("Parent job missing, recreating job_id=%s user_id=%s", job_id, fallback.user_id)
        job = Job(
            id=job_id,
            user_id=fallback.user_id,
            name=fallback.name or f"{fallback.kind} job",
            kind=fallback.kind,
            status="running",
            started_at=utcnow(),
        )
        self.session.add(job)
        self.session.commit()
        return job

    def _fit(self, model: type, column_name: str, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        column_type = model.__table__.c[column_name].type
        if isinstance(column_type, Text):
            limit = self.settings.result_text_max_length
        elif isinstance(column_type, String):
            limit = column_type.length
        else:
            return value
        if limit and len(value) > limit:
            return value[:limit]
        return value

    def save(
        self,
        record: ProfileRecord | CompanyRecord,
        job_id: int,
        fallback: JobFallback | None = None,
        *,
        job_url_id: int | None = None,
    ) -> int:
        self.ensure_job(job_id, fallback)

        model = ProfileResult if record.kind == "profile" else CompanyResult
        list_fields = _LIST_FIELDS[record.kind]
        values: dict[str, Any] = {"job_id": job_id, "job_url_id": job_url_id}
        for field_name, value in record.model_dump(exclude={"kind", "raw"}).items():
            column_name = list_fields.get(field_name, field_name)
            values[column_name] = self._fit(model, column_name, value)
        values["raw_json"] = record.raw

        row = model(**values)
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row.id
