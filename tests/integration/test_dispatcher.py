import asyncio
from contextlib import suppress

from scralytics.core.clock import as_utc
from scralytics.core.dispatcher import JobControl
from scralytics.core.errors import AccountAuthError, RateLimitError, TransientError
from scralytics.db.repositories import Repository
from scralytics.db.session import SessionLocal
from scralytics.types import ScrapeFailure, ScrapeSuccess

URLS = [
    "https://www.linkedin.com/in/first",
    "https://www.linkedin.com/in/second",
    "https://www.linkedin.com/in/third",
]


def _job(job_id: int):
    with SessionLocal() as db:
        return Repository(db).get_job(job_id)


def _urls(job_id: int):
    with SessionLocal() as db:
        return Repository(db).list_job_urls(job_id)


def _account(account_id: int):
    with SessionLocal() as db:
        return Repository(db).get_account(account_id)


async def _wait_for_status(job_id: int, status: str) -> None:
    for _ in range(2000):
        if _job(job_id).status == status:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"job {job_id} never reached {status}")


def test_all_urls_succeed_with_one_account(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    account = add_account()
    job = add_job(URLS)
    scraper = scripted_scraper()
    dispatcher = make_scheduler(scraper).dispatcher

    status = asyncio.run(dispatcher.process_job(job.id))

    assert status == "completed"
    finished = _job(job.id)
    assert (finished.total_urls, finished.processed_urls, finished.successful_urls, finished.failed_urls) == (
        3,
        3,
        3,
        0,
    )
    assert finished.started_at is not None and finished.completed_at is not None
    assert [row.status for row in _urls(job.id)] == ["completed"] * 3
    assert [call[0] for call in scraper.calls] == URLS

    with SessionLocal() as db:
        repo = Repository(db)
        results = repo.list_profile_results(job.id)
        assignments = repo.list_assignments(job.id)
    assert [row.source_url for row in results] == URLS
    assert [row.job_url_id for row in results] == [row.id for row in _urls(job.id)]
    assert len(assignments) == 1
    assert (assignments[0].account_id, assignments[0].urls_processed, assignments[0].urls_successful) == (
        account.id,
        3,
        3,
    )
    assert assignments[0].status == "completed"
    assert _account(account.id).requests_today == 3


def test_rate_limited_single_account_fails_url_after_ceiling(
    add_account, add_job, make_scheduler, scripted_scraper, clock
) -> None:
    account = add_account()
    job = add_job(URLS[:2])
    scraper = scripted_scraper({URLS[0]: ScrapeFailure(http_status=429, message="rate limit")})
    scraped_at = {}
    early_scrapes = []

    original = scraper.scrape

    async def tracking_scrape(url, credentials, kind):
        scraped_at.setdefault(url, clock.now())
        cooldown = _account(credentials.account_id).cooldown_until
        if cooldown is not None and as_utc(cooldown) > clock.now():
            early_scrapes.append(url)
        return await original(url, credentials, kind)

    scraper.scrape = tracking_scrape
    dispatcher = make_scheduler(scraper).dispatcher

    status = asyncio.run(dispatcher.process_job(job.id))

    first, second = _urls(job.id)
    assert len(scraper.calls_for(URLS[0])) == 3
    assert (first.status, first.attempts, first.error_message) == ("failed", 3, "rate limit")
    assert len(scraper.calls_for(URLS[1])) == 1
    assert second.status == "completed"
    assert scraped_at[URLS[1]] > scraped_at[URLS[0]]
    assert early_scrapes == []
    assert status == "completed_with_errors"

    finished = _job(job.id)
    assert (finished.processed_urls, finished.successful_urls, finished.failed_urls) == (2, 1, 1)
    refreshed = _account(account.id)
    assert refreshed.consecutive_failures == 0
    assert refreshed.validation_status == "active"


def test_auth_failure_rotates_to_second_account(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    first = add_account()
    second = add_account()
    job = add_job(URLS[:1])

    def by_account(url, credentials, kind):
        if credentials.account_id == first.id:
            return AccountAuthError("session expired, please login")
        return None

    scraper = scripted_scraper(default=by_account)
    dispatcher = make_scheduler(scraper).dispatcher

    status = asyncio.run(dispatcher.process_job(job.id))

    assert status == "completed"
    assert [call[1] for call in scraper.calls] == [first.id, second.id]
    (job_url,) = _urls(job.id)
    assert (job_url.status, job_url.attempts) == ("completed", 2)
    assert _account(first.id).validation_status == "invalid"
    assert _account(second.id).consecutive_failures == 0


def test_transient_failure_retries_same_account_after_backoff(
    add_account, add_job, make_scheduler, scripted_scraper, clock
) -> None:
    account = add_account()
    add_account(requests_today=50)
    job = add_job(URLS[:1])
    scraper = scripted_scraper({URLS[0]: [TransientError("navigation timeout"), None]})
    dispatcher = make_scheduler(scraper).dispatcher

    status = asyncio.run(dispatcher.process_job(job.id))

    assert status == "completed"
    assert [call[1] for call in scraper.calls] == [account.id, account.id]
    assert 5.0 in clock.sleeps
    assert _account(account.id).consecutive_failures == 0


def test_invalid_url_fails_without_scraping(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    add_account()
    job = add_job(["not a url", URLS[0]])
    scraper = scripted_scraper()
    dispatcher = make_scheduler(scraper).dispatcher

    status = asyncio.run(dispatcher.process_job(job.id))

    invalid, valid = _urls(job.id)
    assert invalid.status == "failed"
    assert "invalid target url" in invalid.error_message
    assert valid.status == "completed"
    assert [call[0] for call in scraper.calls] == [URLS[0]]
    assert status == "completed_with_errors"


def test_all_failures_mark_job_failed(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    add_account()
    job = add_job(URLS[:2])
    scraper = scripted_scraper(default=ScrapeFailure(http_status=404, message="page not found"))
    dispatcher = make_scheduler(scraper).dispatcher

    status = asyncio.run(dispatcher.process_job(job.id))

    assert status == "failed"
    assert len(scraper.calls) == 2
    assert _job(job.id).error_message == "all 2 urls failed"


def test_progress_counters_stay_consistent(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    add_account()
    add_account()
    urls = [f"https://www.linkedin.com/in/person-{index}" for index in range(6)]
    job = add_job(urls)
    scraper = scripted_scraper(
        {
            urls[1]: ScrapeFailure(http_status=404),
            urls[3]: [TransientError("timeout"), None],
            urls[4]: ScrapeFailure(http_status=429, message="rate limit"),
        }
    )
    dispatcher = make_scheduler(scraper).dispatcher

    async def scenario():
        events = []

        async def collect() -> None:
            async for event in dispatcher.event_bus.subscribe(job.id):
                row = _job(job.id)
                assert row.processed_urls == row.successful_urls + row.failed_urls
                assert row.processed_urls <= row.total_urls
                events.append(event)

        collector = asyncio.create_task(collect())
        await asyncio.sleep(0)
        status = await dispatcher.process_job(job.id)
        await asyncio.sleep(0)
        collector.cancel()
        with suppress(asyncio.CancelledError):
            await collector
        return status, events

    status, events = asyncio.run(scenario())

    assert status == "completed_with_errors"
    assert events[-1]["status"] == "completed_with_errors"
    for event in events:
        assert event["processed"] == event["successful"] + event["failed"]
        assert event["processed"] <= event["total"]
    finished = _job(job.id)
    assert finished.processed_urls == finished.total_urls == 6
    assert finished.failed_urls == 2
    for row in _urls(job.id):
        assert row.attempts <= 3


def test_consecutive_failures_pause_the_job(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    add_account()
    job = add_job([f"bad-url-{index}" for index in range(7)])
    scraper = scripted_scraper()
    dispatcher = make_scheduler(scraper).dispatcher

    assert asyncio.run(dispatcher.process_job(job.id)) == "paused"

    paused = _job(job.id)
    assert paused.status == "paused"
    assert paused.error_message == "Paused due to 5 consecutive failures"
    assert paused.processed_urls == 5
    assert paused.paused_at is not None
    assert [row.status for row in _urls(job.id)] == ["failed"] * 5 + ["pending"] * 2


def test_no_usable_accounts_pauses_for_intervention(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    add_account(validation_status="invalid")
    job = add_job(URLS[:1])
    scraper = scripted_scraper()
    dispatcher = make_scheduler(scraper).dispatcher

    assert asyncio.run(dispatcher.process_job(job.id)) == "paused"

    assert _job(job.id).error_message == "Paused: no eligible accounts for user 1"
    assert [row.status for row in _urls(job.id)] == ["pending"]
    assert scraper.calls == []


def test_paused_job_continues_from_first_pending_url(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    add_account()
    job = add_job(URLS)
    control = JobControl()

    def pause_on_first(url, credentials, kind):
        control.pause("Paused by user")
        return None

    scraper = scripted_scraper({URLS[0]: pause_on_first})
    dispatcher = make_scheduler(scraper).dispatcher

    assert asyncio.run(dispatcher.process_job(job.id, control)) == "paused"
    assert [row.status for row in _urls(job.id)] == ["completed", "pending", "pending"]

    assert asyncio.run(dispatcher.process_job(job.id)) == "completed"
    assert [call[0] for call in scraper.calls] == URLS
    assert _job(job.id).successful_urls == 3


def test_rejected_result_does_not_count_as_account_success(
    add_account, add_job, make_scheduler, scripted_scraper, monkeypatch
) -> None:
    account = add_account(consecutive_failures=2, last_error="timeout")
    job = add_job(URLS[:1])
    dispatcher = make_scheduler(scripted_scraper()).dispatcher

    def reject(self, record, job_id, fallback=None, *, job_url_id=None):
        raise ValueError("record has no usable fields")

    monkeypatch.setattr("scralytics.core.dispatcher.ResultSink.save", reject)

    assert asyncio.run(dispatcher.process_job(job.id)) == "failed"

    (job_url,) = _urls(job.id)
    assert job_url.error_message == "invalid result: record has no usable fields"
    refreshed = _account(account.id)
    assert refreshed.requests_today == 0
    assert refreshed.consecutive_failures == 2


def test_dead_targets_do_not_hurt_account_health(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    account = add_account()
    urls = [f"https://www.linkedin.com/in/gone-{index}" for index in range(6)]
    job = add_job(urls)
    scraper = scripted_scraper(default=ScrapeFailure(http_status=404, message="page not found"))
    dispatcher = make_scheduler(scraper, job_max_consecutive_failures=10).dispatcher

    assert asyncio.run(dispatcher.process_job(job.id)) == "failed"

    refreshed = _account(account.id)
    assert refreshed.consecutive_failures == 0
    assert refreshed.cooldown_until is None
    assert refreshed.validation_status == "active"
    assert len(scraper.calls) == 6


def test_cancel_between_urls_stops_processing(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    add_account()
    job = add_job(URLS)
    control = JobControl()

    def cancel_on_first(url, credentials, kind):
        control.cancel()
        return None

    scraper = scripted_scraper({URLS[0]: cancel_on_first})
    dispatcher = make_scheduler(scraper).dispatcher

    status = asyncio.run(dispatcher.process_job(job.id, control))

    assert status == "cancelled"
    assert [row.status for row in _urls(job.id)] == ["completed", "pending", "pending"]
    assert _job(job.id).error_message == "Cancelled by user"


def test_search_job_expands_into_profile_urls(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    add_account()
    job = add_job(kind="search", search_query="data engineer berlin", max_results=2)

    class Expander:
        def __init__(self) -> None:
            self.queries = []

        async def expand(self, query, credentials, max_results):
            self.queries.append((query, max_results))
            return URLS[:max_results] + [URLS[0]]

    expander = Expander()
    scraper = scripted_scraper()
    dispatcher = make_scheduler(scraper).dispatcher
    dispatcher.search_expander = expander

    status = asyncio.run(dispatcher.process_job(job.id))

    assert status == "completed"
    assert expander.queries == [("data engineer berlin", 2)]
    assert [(call[0], call[2]) for call in scraper.calls] == [(URLS[0], "profile"), (URLS[1], "profile")]
    assert _job(job.id).total_urls == 2


def test_company_job_stores_company_results(add_account, add_job, make_scheduler, scripted_scraper) -> None:
    add_account()
    url = "https://www.linkedin.com/company/acme"
    job = add_job([url], kind="company")
    scraper = scripted_scraper({url: ScrapeSuccess(data={"company_name": "Acme", "industry": "Rockets"})})
    dispatcher = make_scheduler(scraper).dispatcher

    assert asyncio.run(dispatcher.process_job(job.id)) == "completed"

    with SessionLocal() as db:
        (row,) = Repository(db).list_company_results(job.id)
    assert (row.company_name, row.industry) == ("Acme", "Rockets")
    assert scraper.calls[0][2] == "company"


class FlakyExpander:
    """Search expander that raises the scripted errors before returning ``urls``."""

    def __init__(self, errors, urls) -> None:
        self.errors = list(errors)
        self.urls = urls
        self.accounts = []

    async def expand(self, query, credentials, max_results):
        self.accounts.append(credentials.account_id)
        if self.errors:
            raise self.errors.pop(0)
        return self.urls


def test_search_expansion_rotates_away_from_rate_limited_account(
    add_account, add_job, make_scheduler, scripted_scraper, clock
) -> None:
    first = add_account()
    second = add_account()
    job = add_job(kind="search", search_query="staff engineers", max_results=2)
    expander = FlakyExpander([RateLimitError("429 too many requests")], URLS[:2])
    dispatcher = make_scheduler(scripted_scraper(), default_rotation_policy="round_robin").dispatcher
    dispatcher.search_expander = expander

    assert asyncio.run(dispatcher.process_job(job.id)) == "completed"

    assert expander.accounts == [first.id, second.id]
    limited = _account(first.id)
    assert limited.consecutive_failures == 1
    assert as_utc(limited.cooldown_until) > clock.now()
    assert _job(job.id).total_urls == 2


def test_search_expansion_that_keeps_failing_fails_the_job(
    add_account, add_job, make_scheduler, scripted_scraper
) -> None:
    account = add_account()
    job = add_job(kind="search", search_query="staff engineers")
    expander = FlakyExpander([TransientError("timeout")] * 3, URLS)
    scraper = scripted_scraper()
    dispatcher = make_scheduler(scraper).dispatcher
    dispatcher.search_expander = expander

    assert asyncio.run(dispatcher.process_job(job.id)) == "failed"

    failed = _job(job.id)
    assert failed.error_message == "search expansion failed: timeout"
    assert failed.completed_at is not None
    assert expander.accounts == [account.id] * 3
    assert scraper.calls == []
    assert _account(account.id).consecutive_failures == 3
