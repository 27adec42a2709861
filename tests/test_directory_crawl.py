from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from harvester.core.config import Settings
from harvester.core.results import NOT_FOUND, Backoff, Error, Skipped, Stored
from harvester.jobs.directory_crawl import (
    DIRECTORY_PROVIDER,
    DirectoryCrawler,
    DirectoryUpperBoundError,
    directory_wait_seconds,
    run_directory_crawl,
)
from harvester.schemas.summaries import DirectoryCrawlSummary
from harvester.services.directory_client import DirectoryClient
from harvester.services.repository import DirectoryCursor, DirectoryOutcome
from harvester.services.store import InMemoryRepository

START = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
LOOKUP_RE = re.compile(r"/Search/FullDetails/Phone/(\d+)$")


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


class CursorTrackingRepository(InMemoryRepository):
    def __init__(self) -> None:
        super().__init__()
        self.cursor_history: list[int] = []

    async def record_directory_result(self, result: DirectoryOutcome, *, advance: bool) -> DirectoryCursor:
        cursor = await super().record_directory_result(result, advance=advance)
        self.cursor_history.append(cursor.next_fetch_id)
        return cursor


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {"otel_enabled": False, "directory_start_id": 100, "directory_batch_size": 3}
    values.update(overrides)
    return Settings(**values)


def _directory_handler(max_id: int, *, statuses: dict[int, list[int]] | None = None, calls: list[int] | None = None):
    """Serve the newest-id search and per-id lookups; ``statuses`` queues non-200 answers per id."""
    pending = {arka_id: list(codes) for arka_id, codes in (statuses or {}).items()}

    def handler(request: httpx.Request) -> httpx.Response:
        match = LOOKUP_RE.search(request.url.path)
        if match is None:
            return httpx.Response(200, json={"posts": [{"id": max_id - 6}, {"id": max_id}, {"id": "x"}]})
        arka_id = int(match.group(1))
        if calls is not None:
            calls.append(arka_id)
        queued = pending.get(arka_id)
        if queued:
            return httpx.Response(queued.pop(0), json={"message": "nope"})
        return httpx.Response(
            200,
            json={
                "data": {
                    "link": f"https://divar.ir/v/tok{arka_id}",
                    "phone": "۰۹۱۲۳۴۵۶۷۸۹",
                    "malk_name": "Owner",
                }
            },
        )

    return handler


def _repository(repository: InMemoryRepository | None = None) -> InMemoryRepository:
    repository = repository or InMemoryRepository()
    repository.add_session(DIRECTORY_PROVIDER, headers={"Authorization": "Bearer token", "Content-Length": "0"})
    return repository


def _crawl(repository: InMemoryRepository, handler, settings: Settings, clock: FakeClock) -> DirectoryCrawlSummary:
    async def run() -> DirectoryCrawlSummary:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            crawler = DirectoryCrawler(repository, DirectoryClient("https://dir.example.test", client=http), settings, clock=clock)
            return await run_directory_crawl(crawler, sleep=clock.sleep, clock=clock)

    return asyncio.run(run())


def _fetch_next(repository: InMemoryRepository, handler, settings: Settings, clock: FakeClock, **kwargs: Any):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            crawler = DirectoryCrawler(repository, DirectoryClient("https://dir.example.test", client=http), settings, clock=clock)
            return await crawler.fetch_next(**kwargs)

    return asyncio.run(run())


def test_crawl_walks_cursor_up_to_newest_id_and_stops() -> None:
    repository = _repository()
    repository.cursor = None
    clock = FakeClock()

    summary = _crawl(repository, _directory_handler(105, statuses={102: [404]}), _settings(), clock)

    assert (summary.start_cursor, summary.final_cursor, summary.max_id) == (100, 105, 105)
    assert (summary.stored, summary.not_found) == (4, 1)
    assert repository.cursor is not None and repository.cursor.next_fetch_id == 105
    assert sorted(repository.records) == [100, 101, 102, 103, 104]
    assert repository.records[102].outcome == NOT_FOUND
    assert repository.records[101].external_id == "tok101"
    assert repository.records[101].phone == "09123456789"
    assert repository.records[101].owner_name == "Owner"
    assert repository.claims == {}
    assert clock.sleeps == []


def test_crawl_records_each_id_once_and_cursor_never_moves_backwards() -> None:
    repository = _repository(CursorTrackingRepository())
    calls: list[int] = []

    _crawl(repository, _directory_handler(120, calls=calls), _settings(directory_batch_size=5), FakeClock())

    assert sorted(repository.records) == list(range(100, 120))
    assert sorted(calls) == list(range(100, 120))
    assert repository.cursor_history == sorted(repository.cursor_history)
    assert repository.cursor.next_fetch_id == 120


def test_crawl_waits_out_rate_limit_backoff() -> None:
    repository = _repository()
    clock = FakeClock()

    summary = _crawl(repository, _directory_handler(102, statuses={100: [429]}), _settings(directory_batch_size=1), clock)

    assert summary.final_cursor == 102
    assert clock.sleeps == [10.0]
    assert clock.sleeps[0] >= 5
    assert sorted(repository.records) == [100, 101]


def test_crawl_pauses_after_http_error_then_waits_for_error_gate() -> None:
    repository = _repository()
    clock = FakeClock()

    summary = _crawl(repository, _directory_handler(101, statuses={100: [500]}), _settings(directory_batch_size=1), clock)

    assert summary.final_cursor == 101
    assert clock.sleeps == [1.0, 14.0]


def test_crawl_is_a_no_op_when_cursor_already_reached_newest_id() -> None:
    repository = _repository()
    asyncio.run(repository.bootstrap_directory_cursor(200))
    calls: list[int] = []

    summary = _crawl(repository, _directory_handler(150, calls=calls), _settings(), FakeClock())

    assert summary.batches == 0
    assert summary.final_cursor == 200
    assert calls == []


def test_crawl_requires_newest_id() -> None:
    repository = InMemoryRepository()

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(DirectoryUpperBoundError):
        _crawl(repository, handler, _settings(), FakeClock())
    assert repository.cursor is None


def test_crawl_stops_between_batches_when_shutdown_requested() -> None:
    repository = _repository()
    clock = FakeClock()

    async def run() -> DirectoryCrawlSummary:
        stop = asyncio.Event()

        async def stopping_sleep(seconds: float) -> None:
            stop.set()
            await clock.sleep(seconds)

        async with httpx.AsyncClient(transport=httpx.MockTransport(_directory_handler(110, statuses={100: [429]}))) as http:
            crawler = DirectoryCrawler(repository, DirectoryClient("https://dir.example.test", client=http), _settings(directory_batch_size=1), clock=clock)
            return await run_directory_crawl(crawler, stop_event=stop, sleep=stopping_sleep, clock=clock)

    summary = asyncio.run(run())

    assert summary.batches == 1
    assert repository.records == {}
    assert repository.cursor.next_fetch_id == 100


def test_fetch_latest_id_deactivates_session_on_auth_failure() -> None:
    repository = _repository()
    [session_id] = repository.sessions

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "expired"})

    async def run() -> int | None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            crawler = DirectoryCrawler(repository, DirectoryClient("https://dir.example.test", client=http), _settings())
            return await crawler.fetch_latest_arka_id()

    assert asyncio.run(run()) is None
    assert repository.sessions[session_id].active is False


def test_fetch_next_returns_backoff_while_gate_is_active() -> None:
    repository = _repository()
    asyncio.run(repository.bootstrap_directory_cursor(100))
    repository.cursor.backoff_until = START + timedelta(seconds=30)

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result = _fetch_next(repository, handler, _settings(), FakeClock())

    assert result == Backoff(reason="backoff_active", until=START + timedelta(seconds=30))


def test_fetch_next_forbidden_id_is_retried_not_skipped() -> None:
    repository = _repository()

    result = _fetch_next(repository, _directory_handler(110, statuses={100: [403]}), _settings(), FakeClock())

    assert result == Skipped(reason="http_403")
    assert repository.records == {}
    assert repository.claims == {}
    assert repository.cursor.next_fetch_id == 100
    assert repository.cursor.backoff_until is None


def test_fetch_next_network_failure_is_an_error() -> None:
    repository = _repository()

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    result = _fetch_next(repository, handler, _settings(), FakeClock())

    assert result == Error(reason="network_error")
    assert repository.claims == {}
    assert repository.cursor.last_error == "network_error"


def test_fetch_next_without_session_headers_is_an_error() -> None:
    repository = InMemoryRepository()

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert _fetch_next(repository, handler, _settings(), FakeClock()) == Error(reason="missing_headers")


def test_fetch_next_reports_exhausted_at_upper_bound() -> None:
    repository = _repository()

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result = _fetch_next(repository, handler, _settings(), FakeClock(), upper_bound=100)

    assert result == Skipped(reason="exhausted")


def test_probe_mode_reads_cursor_id_without_advancing() -> None:
    repository = _repository()
    handler = _directory_handler(110)
    clock = FakeClock()

    probed = _fetch_next(repository, handler, _settings(), clock, advance_cursor=False)
    assert probed == Stored(arka_id=100, external_id="tok100")
    assert repository.cursor.next_fetch_id == 100

    advanced = _fetch_next(repository, handler, _settings(), clock)
    assert advanced == Stored(arka_id=101, external_id="tok101")
    assert repository.cursor.next_fetch_id == 102


def test_bootstrap_never_lowers_existing_cursor() -> None:
    repository = InMemoryRepository()

    async def run() -> list[int]:
        first = await repository.bootstrap_directory_cursor(100)
        await repository.record_directory_result(DirectoryOutcome(arka_id=100, outcome="stored", status=200), advance=True)
        again = await repository.bootstrap_directory_cursor(100)
        return [first.next_fetch_id, again.next_fetch_id]

    assert asyncio.run(run()) == [100, 101]


def test_directory_wait_seconds_policy() -> None:
    now = START
    assert directory_wait_seconds([Stored(arka_id=1)], now) == 0.0
    assert directory_wait_seconds([Skipped(reason=NOT_FOUND)], now) == 0.0
    assert directory_wait_seconds([None, None], now) == 0.2
    assert directory_wait_seconds([Skipped(reason="exhausted")], now) == 0.2
    assert directory_wait_seconds([Error(reason="http_500"), Skipped(reason="exhausted")], now) == 1.0
    assert directory_wait_seconds([Backoff(reason="rate_limited", until=now + timedelta(seconds=5)), Stored(arka_id=1)], now) == 5.0
    assert directory_wait_seconds([Backoff(reason="backoff_active", until=now)], now) == 1.0
