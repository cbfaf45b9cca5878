from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from scralytics.api.deps import get_db, get_job_scheduler
from scralytics.api.schemas import JobActionResponse, JobCreateRequest, JobResponse, JobUrlResponse
from scralytics.core.errors import JobNotFoundError
from scralytics.core.runtime import get_event_bus
from scralytics.core.scheduler import JobScheduler
from scralytics.db.repositories import Repository
from scralytics.types import QueueStatus, RotationStats

router = APIRouter(prefix="/api", tags=["api"])


def _job_response(repo: Repository, job_id: int, *, include_urls: bool = False) -> JobResponse:
    response = JobResponse.model_validate(repo.serialize_job(job_id))
    if include_urls:
        response.urls = [
            JobUrlResponse(
                id=row.id,
                url=row.url,
                status=row.status,
                attempts=row.attempts,
                error_message=row.error_message,
            )
            for row in repo.list_job_urls(job_id)
        ]
    return response


@router.post("/jobs", response_model=JobResponse, status_code=201)
async def create_job(
    payload: JobCreateRequest,
    db: Session = Depends(get_db),
    scheduler: JobScheduler = Depends(get_job_scheduler),
) -> JobResponse:
    repo = Repository(db)
    job = repo.create_job(
        user_id=payload.user_id,
        kind=payload.kind,
        name=payload.name,
        urls=payload.urls,
        search_query=payload.search_query,
        max_results=payload.max_results,
        account_selection_mode=payload.account_selection_mode,
        selected_account_ids=payload.selected_account_ids,
    )
    await scheduler.enqueue(job.id)
    return _job_response(repo, job.id)


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: int, db: Session = Depends(get_db)) -> JobResponse:
    repo = Repository(db)
    if repo.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(repo, job_id, include_urls=True)


@router.post("/jobs/{job_id}/{action}", response_model=JobActionResponse)
async def job_action(
    job_id: int,
    action: str,
    scheduler: JobScheduler = Depends(get_job_scheduler),
) -> JobActionResponse:
    handlers = {
        "pause": scheduler.pause,
        "resume": scheduler.resume,
        "cancel": scheduler.cancel,
    }
    try:
        if action == "retry":
            reopened = await scheduler.retry(job_id)
            return JobActionResponse(job_id=job_id, state="queued", reopened_urls=reopened)
        if action not in handlers:
            raise HTTPException(status_code=404, detail=f"Unknown action '{action}'")
        state = await handlers[action](job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return JobActionResponse(job_id=job_id, state=state)


@router.get("/queue", response_model=QueueStatus)
def queue_status(scheduler: JobScheduler = Depends(get_job_scheduler)) -> QueueStatus:
    return scheduler.status()


@router.get("/accounts/stats", response_model=RotationStats)
def account_stats(user_id: int, scheduler: JobScheduler = Depends(get_job_scheduler)) -> RotationStats:
    return scheduler.dispatcher.health.rotation_stats(user_id)


@router.websocket("/jobs/{job_id}/events")
async def stream_job_events(websocket: WebSocket, job_id: int) -> None:
    await websocket.accept()
    event_bus = get_event_bus()
    try:
        async for event in event_bus.subscribe(job_id):
            await websocket.send_json(event)
    except WebSocketDisconnect:
        return
