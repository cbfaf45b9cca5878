from __future__ import annotations

from collections.abc import Callable

from sqlalchemy.orm import Session

from scralytics.config import Settings, get_settings
from scralytics.core.clock import SystemClock
from scralytics.core.dispatcher import UrlDispatcher
from scralytics.core.events import EventBus
from scralytics.core.health import AccountHealthStore
from scralytics.core.retry import RetryPolicy
from scralytics.core.rotation import AccountRotator
from scralytics.core.scheduler import JobScheduler
from scralytics.core.scraper import CredentialStore, Scraper, SearchExpander, load_scraper
from scralytics.db.session import SessionLocal

_EVENT_BUS: EventBus | None = None
_SCHEDULER: JobScheduler | None = None


def get_event_bus() -> EventBus:
    global _EVENT_BUS
    if _EVENT_BUS is None:
        _EVENT_BUS = EventBus()
    return _EVENT_BUS


def build_scheduler(
    *,
    scraper: Scraper | None = None,
    search_expander: SearchExpander | None = None,
    settings: Settings | None = None,
    clock: SystemClock | None = None,
    credentials: CredentialStore | None = None,
    event_bus: EventBus | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> JobScheduler:
    """Wire health store, rotator, retry policy, dispatcher and scheduler together.

    Without ``scraper`` the one named by ``settings.scraper_backend`` is loaded;
    a scraper that also has ``expand`` doubles as the search expander.
    """
    settings = settings or get_settings()
    if scraper is None:
        scraper = load_scraper(settings.scraper_backend)
    if search_expander is None and hasattr(scraper, "expand"):
        search_expander = scraper

    health = AccountHealthStore(session_factory, settings=settings, clock=clock or SystemClock())
    rotator = AccountRotator(health)
    dispatcher = UrlDispatcher(
        rotator,
        scraper,
        policy=RetryPolicy(settings),
        credentials=credentials,
        settings=settings,
        event_bus=event_bus or get_event_bus(),
        session_factory=session_factory,
        search_expander=search_expander,
    )
    return JobScheduler(dispatcher, settings=settings, session_factory=session_factory)


def get_scheduler() -> JobScheduler:
    global _SCHEDULER
    if _SCHEDULER is None:
        _SCHEDULER = build_scheduler()
    return _SCHEDULER


def set_scheduler(scheduler: JobScheduler | None) -> None:
    global _SCHEDULER
    _SCHEDULER = scheduler
