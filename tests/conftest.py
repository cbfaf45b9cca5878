from __future__ import annotations

import asyncio
import os
from datetime import timedelta
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "sqlite:///./data/test_scralytics.db")
os.environ.setdefault("APP_ENV", "test")
Path("data").mkdir(exist_ok=True)

import pytest  # noqa: E402

from scralytics.config import Settings  # noqa: E402
from scralytics.core.clock import utcnow  # noqa: E402
from scralytics.core.events import EventBus  # noqa: E402
from scralytics.core.runtime import build_scheduler  # noqa: E402
from scralytics.db.base import Base  # noqa: E402
from scralytics.db.repositories import Repository  # noqa: E402
from scralytics.db.session import SessionLocal, engine  # noqa: E402
from scralytics.types import ScrapeSuccess  # noqa: E402

COOKIES = '[{"name": "li_at", "value": "session-token"}]'


class FakeClock:
    """Clock whose sleeps advance time instantly and yield to the event loop."""

    def __init__(self, start=None):
        self.current = start or utcnow()
        self.sleeps: list[float] = []

    def now(self):
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.advance(seconds)
        await asyncio.sleep(0)


class ScriptedScraper:
    """Scraper double; ``script`` maps a url to an outcome, a list of outcomes, or a callable."""

    def __init__(self, script=None, default=None):
        self.script = dict(script or {})
        self.default = default
        self.calls: list[tuple[str, int, str]] = []

    async def scrape(self, url, credentials, kind):
        self.calls.append((url, credentials.account_id, kind))
        await asyncio.sleep(0)
        handler = self.script.get(url, self.default)
        if isinstance(handler, list):
            handler = handler.pop(0) if len(handler) > 1 else handler[0]
        if callable(handler):
            handler = handler(url, credentials, kind)
        if handler is None:
            handler = ScrapeSuccess(data={"full_name": f"Person at {url}", "headline": "Engineer"})
        if isinstance(handler, BaseException):
            raise handler
        return handler

    def calls_for(self, url: str) -> list[tuple[str, int, str]]:
        return [call for call in self.calls if call[0] == url]


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(app_env="test", url_processing_delay_sec=2.0, retry_jitter_ratio=0.0)


@pytest.fixture
def add_account():
    def _add(user_id: int = 1, email: str | None = None, **values):
        with SessionLocal() as db:
            repo = Repository(db)
            account = repo.create_account(
                user_id=user_id,
                email=email or f"user{user_id}-{len(repo.list_accounts()) + 1}@example.com",
                cookies_json=values.pop("cookies_json", COOKIES),
            )
            if values:
                account = repo.update_account(account.id, **values)
            return account

    return _add


@pytest.fixture
def add_job():
    def _add(urls=None, user_id: int = 1, kind: str = "profile", **values):
        with SessionLocal() as db:
            return Repository(db).create_job(user_id=user_id, kind=kind, urls=urls or [], **values)

    return _add


@pytest.fixture
def make_scheduler(clock, settings):
    def _make(scraper, **overrides):
        run_settings = settings.model_copy(update=overrides) if overrides else settings
        return build_scheduler(scraper=scraper, settings=run_settings, clock=clock, event_bus=EventBus())

    return _make


@pytest.fixture
def scripted_scraper():
    return ScriptedScraper
