from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator

JobKind = Literal["profile", "company", "search"]
ScrapeKind = Literal["profile", "company"]
JobStatus = Literal[
    "pending",
    "running",
    "paused",
    "completed",
    "completed_with_errors",
    "failed",
    "cancelled",
]
UrlStatus = Literal["pending", "processing", "completed", "failed"]
AccountStatus = Literal["active", "pending", "blocked", "invalid"]
RotationPolicy = Literal["round_robin", "load_balance", "manual"]

TERMINAL_JOB_STATUSES = frozenset({"completed", "completed_with_errors", "failed", "cancelled"})


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    AUTHENTICATION = "authentication"
    INVALID_COOKIES = "invalid_cookies"
    RATE_LIMIT = "rate_limit"
    BLOCKED = "blocked"
    VALIDATION = "validation"
    UNKNOWN = "unknown"

    @property
    def account_attributable(self) -> bool:
        return self in {
            FailureKind.AUTHENTICATION,
            FailureKind.INVALID_COOKIES,
            FailureKind.RATE_LIMIT,
            FailureKind.BLOCKED,
        }


class AccountCredentials(BaseModel):
    account_id: int
    email: str = ""
    cookies: list[dict[str, Any]] = Field(default_factory=list)
    user_agent: str = ""


class ScrapeSuccess(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    raw_html_ref: str | None = None


class ScrapeFailure(BaseModel):
    message: str = ""
    http_status: int | None = None


ScrapeOutcome = Union[ScrapeSuccess, ScrapeFailure]


class ProfileRecord(BaseModel):
    kind: Literal["profile"] = "profile"
    source_url: str
    full_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    headline: str | None = None
    about: str | None = None
    country: str | None = None
    city: str | None = None
    industry: str | None = None
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    current_job_title: str | None = None
    current_company: str | None = None
    current_company_url: str | None = None
    skills: list[Any] = Field(default_factory=list)
    education: list[Any] = Field(default_factory=list)
    experience: list[Any] = Field(default_factory=list)
    content_validation: str = "unknown"
    raw: dict[str, Any] = Field(default_factory=dict)

    @field_validator("source_url")
    @classmethod
    def validate_source_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("source_url must not be empty")
        return value.strip()


class CompanyRecord(BaseModel):
    kind: Literal["company"] = "company"
    source_url: str
    company_name: str | None = None
    industry: str | None = None
    headquarters: str | None = None
    follower_count: str | None = None
    employee_size: str | None = None
    website: str | None = None
    company_type: str | None = None
    specialties: list[Any] = Field(default_factory=list)
    description: str | None = None
    content_validation: str = "unknown"
    raw: dict[str, Any] = Field(default_factory=dict)

    @field_validator("source_url")
    @classmethod
    def validate_source_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("source_url must not be empty")
        return value.strip()


ScrapedRecord = Annotated[Union[ProfileRecord, CompanyRecord], Field(discriminator="kind")]


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [value]


def build_record(kind: ScrapeKind, source_url: str, data: dict[str, Any]) -> ProfileRecord | CompanyRecord:
    """Resolve a scraper payload into the record variant for ``kind``.

    Scrapers are not consistent about field names, so each attribute accepts the
    handful of spellings they are known to emit.
    """
    url = _first(data, "linkedin_url", "profile_url", "company_url", "url") or source_url
    validation = _first(data, "content_validation", "validation_status") or "unknown"

    if kind == "profile":
        return ProfileRecord(
            source_url=url,
            full_name=_text(_first(data, "full_name", "name")),
            first_name=_text(_first(data, "first_name")),
            last_name=_text(_first(data, "last_name")),
            headline=_text(_first(data, "headline", "title", "current_job_title")),
            about=_text(_first(data, "about", "description", "summary")),
            country=_text(_first(data, "country")),
            city=_text(_first(data, "city", "location")),
            industry=_text(_first(data, "industry")),
            email=_text(_first(data, "email")),
            phone=_text(_first(data, "phone")),
            website=_text(_first(data, "website")),
            current_job_title=_text(_first(data, "current_job_title", "current_position", "title")),
            current_company=_text(_first(data, "current_company", "company", "company_name")),
            current_company_url=_text(_first(data, "current_company_url")),
            skills=_as_list(data.get("skills")),
            education=_as_list(data.get("education")),
            experience=_as_list(data.get("experience")),
            content_validation=str(validation),
            raw=data,
        )

    if kind == "company":
        return CompanyRecord(
            source_url=url,
            company_name=_text(_first(data, "company_name", "name")),
            industry=_text(_first(data, "industry", "company_industry")),
            headquarters=_text(_first(data, "headquarters", "company_hq", "location")),
            follower_count=_text(_first(data, "follower_count", "company_followers", "followers")),
            employee_size=_text(_first(data, "employee_size", "company_size", "company_employee_size")),
            website=_text(_first(data, "website", "company_website")),
            company_type=_text(_first(data, "company_type", "type")),
            specialties=_as_list(_first(data, "specialties", "company_specialties")),
            description=_text(_first(data, "description", "about")),
            content_validation=str(validation),
            raw=data,
        )

    raise ValueError(f"unsupported record kind '{kind}'")


class JobFallback(BaseModel):
    user_id: int
    name: str = ""
    kind: JobKind = "profile"


class JobProgressEvent(BaseModel):
    job_id: int
    status: str
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    message: str = ""


class QueueStatus(BaseModel):
    queue_length: int
    processing_jobs: int
    paused_jobs: int
    max_concurrent: int
    queued: list[int] = Field(default_factory=list)
    processing: list[int] = Field(default_factory=list)
    paused: list[int] = Field(default_factory=list)


class RotationStats(BaseModel):
    user_id: int
    total_accounts: int = 0
    active_accounts: int = 0
    eligible_accounts: int = 0
    cooldown_accounts: int = 0
    blocked_accounts: int = 0
    invalid_accounts: int = 0
    requests_today: int = 0
    next_eligible_at: datetime | None = None
