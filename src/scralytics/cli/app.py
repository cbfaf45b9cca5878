from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
import uvicorn

from scralytics.api.app import create_app
from scralytics.config import get_settings
from scralytics.core.errors import AccountNotFoundError, JobNotFoundError
from scralytics.core.health import AccountHealthStore
from scralytics.core.runtime import build_scheduler
from scralytics.db.init import init_database
from scralytics.db.repositories import Repository
from scralytics.db.session import SessionLocal
from scralytics.logging_config import configure_logging
from scralytics.types import TERMINAL_JOB_STATUSES

app = typer.Typer(help="Scralytics CLI")
account_app = typer.Typer(help="Manage scraping accounts")
job_app = typer.Typer(help="Create and control scraping jobs")

app.add_typer(account_app, name="account")
app.add_typer(job_app, name="job")

_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _account_payload(account) -> dict:
    return {
        "id": account.id,
        "user_id": account.user_id,
        "email": account.email,
        "display_name": account.display_name,
        "is_active": account.is_active,
        "validation_status": account.validation_status,
        "requests_today": account.requests_today,
        "daily_request_limit": account.daily_request_limit,
        "consecutive_failures": account.consecutive_failures,
        "cooldown_until": account.cooldown_until.isoformat() if account.cooldown_until else None,
        "blocked_until": account.blocked_until.isoformat() if account.blocked_until else None,
        "last_error": account.last_error,
    }


@app.command("init")
def init_cmd() -> None:
    """Create the data directory and database tables."""
    configure_logging()
    result = init_database()
    typer.echo(json.dumps({"ok": True, **result}, indent=2))


@account_app.command("add")
def account_add(
    user_id: int = typer.Option(..., "--user-id"),
    email: str = typer.Option(..., "--email"),
    cookies_file: Path | None = typer.Option(None, "--cookies-file", exists=True, readable=True),
    display_name: str = typer.Option("", "--display-name"),
    user_agent: str = typer.Option("", "--user-agent"),
    daily_limit: int | None = typer.Option(None, "--daily-limit", min=1),
) -> None:
    configure_logging()
    ensure_initialized()
    cookies_json = "[]"
    if cookies_file is not None:
        raw = cookies_file.read_text(encoding="utf-8")
        try:
            json.loads(raw)
        except ValueError as exc:
            raise typer.BadParameter(f"cookies file is not valid JSON: {exc}") from exc
        cookies_json = raw

    with SessionLocal() as db:
        account = Repository(db).create_account(
            user_id=user_id,
            email=email,
            display_name=display_name,
            cookies_json=cookies_json,
            user_agent=user_agent,
            daily_request_limit=daily_limit or get_settings().default_daily_request_limit,
        )
        typer.echo(json.dumps(_account_payload(account), indent=2))


@account_app.command("list")
def account_list(user_id: int | None = typer.Option(None, "--user-id")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        accounts = Repository(db).list_accounts(user_id)
        typer.echo(json.dumps([_account_payload(account) for account in accounts], indent=2))


@account_app.command("stats")
def account_stats(user_id: int = typer.Option(..., "--user-id")) -> None:
    configure_logging()
    ensure_initialized()
    stats = AccountHealthStore().rotation_stats(user_id)
    typer.echo(stats.model_dump_json(indent=2))


@account_app.command("reactivate")
def account_reactivate(account_id: int = typer.Option(..., "--account-id")) -> None:
    configure_logging()
    ensure_initialized()
    try:
        account = AccountHealthStore().reactivate(account_id)
    except AccountNotFoundError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(json.dumps(_account_payload(account), indent=2))


@account_app.command("reset-daily")
def account_reset_daily(user_id: int | None = typer.Option(None, "--user-id")) -> None:
    configure_logging()
    ensure_initialized()
    count = AccountHealthStore().reset_daily_counters(user_id)
    typer.echo(json.dumps({"reset_accounts": count}, indent=2))


@job_app.command("create")
def job_create(
    user_id: int = typer.Option(..., "--user-id"),
    kind: str = typer.Option("profile", "--kind"),
    url: list[str] = typer.Option([], "--url"),
    urls_file: Path | None = typer.Option(None, "--urls-file", exists=True, readable=True),
    query: str = typer.Option("", "--query"),
    max_results: int = typer.Option(100, "--max-results", min=1),
    name: str = typer.Option("", "--name"),
    selection: str = typer.Option("", "--selection"),
    account_id: list[int] = typer.Option([], "--account-id"),
) -> None:
    """Store a job as pending; a running worker picks it up."""
    configure_logging()
    ensure_initialized()
    if kind not in {"profile", "company", "search"}:
        raise typer.BadParameter("kind must be profile, company or search")
    if selection not in {"", "round_robin", "load_balance", "manual"}:
        raise typer.BadParameter("selection must be round_robin, load_balance or manual")

    urls = list(url)
    if urls_file is not None:
        urls.extend(line.strip() for line in urls_file.read_text(encoding="utf-8").splitlines() if line.strip())
    if kind == "search" and not query.strip():
        raise typer.BadParameter("search jobs need --query")
    if kind != "search" and not urls:
        raise typer.BadParameter("give at least one --url or --urls-file")

    with SessionLocal() as db:
        repo = Repository(db)
        job = repo.create_job(
            user_id=user_id,
            kind=kind,
            name=name,
            urls=urls,
            search_query=query,
            max_results=max_results,
            account_selection_mode=selection,
            selected_account_ids=account_id,
        )
        typer.echo(json.dumps(repo.serialize_job(job.id), indent=2))


@job_app.command("list")
def job_list(
    user_id: int | None = typer.Option(None, "--user-id"),
    status: str | None = typer.Option(None, "--status"),
    limit: int = typer.Option(20, "--limit"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        jobs = repo.list_jobs(user_id=user_id, status=status, limit=limit)
        typer.echo(json.dumps([repo.serialize_job(job.id) for job in jobs], indent=2))


@job_app.command("status")
def job_status(job_id: int = typer.Option(..., "--job-id")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        try:
            job = repo.serialize_job(job_id)
        except JobNotFoundError as exc:
            raise typer.BadParameter(str(exc)) from exc
        urls = repo.list_job_urls(job_id)
        typer.echo(
            json.dumps(
                {
                    "job": job,
                    "urls": [
                        {
                            "id": row.id,
                            "url": row.url,
                            "status": row.status,
                            "attempts": row.attempts,
                            "error_message": row.error_message,
                        }
                        for row in urls
                    ],
                },
                indent=2,
            )
        )


def _transition(job_id: int, allowed: set[str], status: str, **flags) -> dict:
    with SessionLocal() as db:
        repo = Repository(db)
        try:
            job = repo.require_job(job_id)
        except JobNotFoundError as exc:
            raise typer.BadParameter(str(exc)) from exc
        if job.status not in allowed:
            raise typer.BadParameter(f"job {job_id} is {job.status}")
        repo.update_job_status(job_id, status, **flags)
        return repo.serialize_job(job_id)


@job_app.command("pause")
def job_pause(job_id: int = typer.Option(..., "--job-id")) -> None:
    """Pause a job that is waiting in storage."""
    configure_logging()
    ensure_initialized()
    job = _transition(job_id, {"pending"}, "paused", error_message="Paused by user", paused=True)
    typer.echo(json.dumps(job, indent=2))


@job_app.command("resume")
def job_resume(job_id: int = typer.Option(..., "--job-id")) -> None:
    configure_logging()
    ensure_initialized()
    job = _transition(job_id, {"paused"}, "pending", error_message="", resumed=True)
    typer.echo(json.dumps(job, indent=2))


@job_app.command("cancel")
def job_cancel(job_id: int = typer.Option(..., "--job-id")) -> None:
    configure_logging()
    ensure_initialized()
    allowed = {"pending", "paused"}
    job = _transition(job_id, allowed, "cancelled", error_message="Cancelled by user", completed=True)
    typer.echo(json.dumps(job, indent=2))


@job_app.command("retry")
def job_retry(job_id: int = typer.Option(..., "--job-id")) -> None:
    """Reopen failed URLs; the job goes back to pending for the worker."""
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        try:
            job = repo.require_job(job_id)
        except JobNotFoundError as exc:
            raise typer.BadParameter(str(exc)) from exc
        if job.status not in TERMINAL_JOB_STATUSES - {"cancelled"}:
            raise typer.BadParameter(f"job {job_id} is {job.status}")
        reopened = repo.reset_job_for_retry(job_id)
        typer.echo(json.dumps({"job": repo.serialize_job(job_id), "reopened_urls": reopened}, indent=2))


async def _run_worker(until_idle: bool) -> None:
    scheduler = build_scheduler()
    if until_idle:
        await scheduler.poll_storage()
        await scheduler.wait_idle()
        return

    scheduler.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await scheduler.stop()


@app.command("worker")
def worker(
    until_idle: bool = typer.Option(False, "--until-idle", help="Exit once stored jobs are processed"),
    log_level: str | None = typer.Option(None, "--log-level"),
) -> None:
    """Process stored jobs with the configured scraper backend."""
    configure_logging(log_level)
    ensure_initialized()
    try:
        asyncio.run(_run_worker(until_idle))
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except KeyboardInterrupt:
        typer.echo("worker stopped")


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)
