from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from scralytics.types import JobKind


class JobCreateRequest(BaseModel):
    user_id: int
    kind: JobKind
    name: str = ""
    urls: list[str] = Field(default_factory=list)
    search_query: str = ""
    max_results: int = Field(default=100, ge=1, le=1000)
    account_selection_mode: str = ""
    selected_account_ids: list[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_targets(self) -> "JobCreateRequest":
        if self.kind == "search":
            if not self.search_query.strip():
                raise ValueError("search jobs need a search_query")
        elif not any(url.strip() for url in self.urls):
            raise ValueError(f"{self.kind} jobs need at least one url")
        if self.account_selection_mode not in {"", "round_robin", "load_balance", "manual"}:
            raise ValueError("account_selection_mode must be round_robin, load_balance or manual")
        if self.account_selection_mode == "manual" and not self.selected_account_ids:
            raise ValueError("manual account selection needs selected_account_ids")
        return self


class JobUrlResponse(BaseModel):
    id: int
    url: str
    status: str
    attempts: int
    error_message: str


class JobResponse(BaseModel):
    id: int
    user_id: int
    name: str
    kind: str
    status: str
    total_urls: int
    processed_urls: int
    successful_urls: int
    failed_urls: int
    error_message: str
    account_selection_mode: str
    selected_account_ids: list[int] = Field(default_factory=list)
    created_at: datetime | None = None
    started_at: datetime | None = None
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    completed_at: datetime | None = None
    urls: list[JobUrlResponse] = Field(default_factory=list)


class JobActionResponse(BaseModel):
    job_id: int
    state: str
    reopened_urls: int | None = None
