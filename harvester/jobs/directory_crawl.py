from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from opentelemetry import trace

from harvester.core.config import Settings
from harvester.core.driver import BatchDriver, BatchOutcome, Sleep, gather_batch
from harvester.core.results import NOT_FOUND, Backoff, Error, FetchResult, Skipped, Stored, is_progress
from harvester.core.text import normalize_phone, parse_external_id, snippet
from harvester.schemas.summaries import DirectoryCrawlSummary
from harvester.services.directory_client import DirectoryClient, has_authorization, prepare_headers
from harvester.services.repository import ApiSession, DirectoryCursor, DirectoryOutcome

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DIRECTORY_PROVIDER = "directory"
SKIP_WAIT_SECONDS = 0.2
ERROR_WAIT_SECONDS = 1.0
MIN_BACKOFF_WAIT_SECONDS = 1.0
AUTH_STATUSES = frozenset({401, 403, 412})


class DirectoryUpperBoundError(RuntimeError):
    """The directory's newest id could not be determined; the crawl cannot be bounded."""


class DirectoryRepository(Protocol):
    async def get_active_session(self, provider: str) -> ApiSession | None: ...

    async def deactivate_session(self, session_id: str, reason: str) -> None: ...

    async def bootstrap_directory_cursor(self, start_id: int) -> DirectoryCursor: ...

    async def get_directory_cursor(self) -> DirectoryCursor | None: ...

    async def claim_directory_id(
        self, *, upper_bound: int | None, claim_seconds: float, now: datetime
    ) -> int | None: ...

    async def release_directory_claim(
        self,
        arka_id: int | None,
        *,
        status: int | None,
        error: str | None,
        backoff_until: datetime | None = None,
    ) -> None: ...

    async def record_directory_result(self, result: DirectoryOutcome, *, advance: bool) -> DirectoryCursor: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DirectoryCrawler:
    def __init__(
        self,
        repository: DirectoryRepository,
        client: DirectoryClient,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.client = client
        self.settings = settings
        self._clock = clock

    async def fetch_latest_arka_id(self) -> int | None:
        session = await self.repository.get_active_session(DIRECTORY_PROVIDER)
        headers = prepare_headers(session.headers if session else None)
        if session is None or not headers:
            logger.warning("no directory headers available to fetch latest id")
            return None
        if not has_authorization(headers):
            logger.warning("directory headers missing Authorization; cannot fetch latest id")
            return None

        response = await self.client.search_page(headers, page=1)
        if not response.ok:
            logger.warning(
                "directory latest-id request failed http=%s body=%s", response.status, snippet(response.payload)
            )
            if response.status in {401, 403}:
                await self.repository.deactivate_session(session.id, "auth_failed")
            return None

        posts = response.payload.get("posts") if isinstance(response.payload, dict) else None
        ids = [
            post["id"]
            for post in posts or []
            if isinstance(post, dict) and isinstance(post.get("id"), int) and not isinstance(post.get("id"), bool)
        ]
        return max(ids) if ids else None

    async def bootstrap_cursor(self) -> DirectoryCursor:
        return await self.repository.bootstrap_directory_cursor(self.settings.directory_start_id)

    async def current_cursor(self) -> DirectoryCursor:
        cursor = await self.repository.get_directory_cursor()
        return cursor if cursor is not None else await self.bootstrap_cursor()

    async def fetch_next(self, advance_cursor: bool = True, *, upper_bound: int | None = None) -> FetchResult:
        """Look up one directory id.

        With ``advance_cursor`` the lowest unclaimed id at or above the cursor
        is leased and progress moves the cursor forward. Without it the id
        under the cursor is probed and the cursor is left alone.
        """
        now = self._clock()
        cursor = await self.current_cursor()
        if cursor.backoff_until is not None and cursor.backoff_until > now:
            return Backoff(reason="backoff_active", until=cursor.backoff_until)

        session = await self.repository.get_active_session(DIRECTORY_PROVIDER)
        headers = prepare_headers(session.headers if session else None)
        if not headers:
            await self.repository.release_directory_claim(None, status=None, error="missing_headers")
            return Error(reason="missing_headers")

        if advance_cursor:
            arka_id = await self.repository.claim_directory_id(
                upper_bound=upper_bound,
                claim_seconds=self.settings.directory_claim_seconds,
                now=now,
            )
            if arka_id is None:
                return Skipped(reason="exhausted")
        else:
            arka_id = cursor.next_fetch_id
        claimed = arka_id if advance_cursor else None

        response = await self.client.lookup_phone(arka_id, headers)
        status = response.status

        if status == 0:
            await self.repository.release_directory_claim(claimed, status=0, error="network_error")
            return Error(reason="network_error")

        if status == 404:
            await self.repository.record_directory_result(
                DirectoryOutcome(arka_id=arka_id, outcome=NOT_FOUND, status=status),
                advance=advance_cursor,
            )
            logger.debug("directory id=%s not found", arka_id)
            return Skipped(reason=NOT_FOUND)

        if status == 429:
            until = now + timedelta(seconds=self.settings.directory_rate_limit_backoff_seconds)
            await self.repository.release_directory_claim(
                claimed, status=status, error="rate_limited", backoff_until=until
            )
            logger.warning("directory rate limited at id=%s; backing off until %s", arka_id, until.isoformat())
            return Backoff(reason="rate_limited", until=until)

        if status in AUTH_STATUSES:
            await self.repository.release_directory_claim(claimed, status=status, error=f"http_{status}")
            logger.warning(
                "directory fetch forbidden id=%s status=%s body=%s", arka_id, status, snippet(response.payload)
            )
            return Skipped(reason=f"http_{status}")

        if not response.ok:
            until = now + timedelta(seconds=self.settings.directory_http_error_backoff_seconds)
            await self.repository.release_directory_claim(
                claimed, status=status, error=f"http_{status}", backoff_until=until
            )
            logger.warning("directory fetch failed id=%s status=%s body=%s", arka_id, status, snippet(response.payload))
            return Error(reason=f"http_{status}")

        outcome = self._stored_outcome(arka_id, status, response.payload)
        await self.repository.record_directory_result(outcome, advance=advance_cursor)
        logger.info(
            "directory stored id=%s external_id=%s phone=%s",
            arka_id,
            outcome.external_id or "n/a",
            outcome.phone or "n/a",
        )
        return Stored(arka_id=arka_id, external_id=outcome.external_id)

    @staticmethod
    def _stored_outcome(arka_id: int, status: int, payload: Any) -> DirectoryOutcome:
        record = payload.get("data") if isinstance(payload, dict) else None
        record = record if isinstance(record, dict) else None
        source = record or {}
        link = source.get("link") if isinstance(source.get("link"), str) else None
        phone = source.get("phone") if isinstance(source.get("phone"), str) else None
        owner = source.get("malk_name") if isinstance(source.get("malk_name"), str) else None
        return DirectoryOutcome(
            arka_id=arka_id,
            outcome="stored",
            status=status,
            external_id=parse_external_id(link),
            link=link,
            phone=normalize_phone(phone),
            owner_name=owner,
            payload=record if record is not None else payload,
        )


def directory_wait_seconds(results: Sequence[FetchResult | None], now: datetime) -> float:
    """Longest wait any result in the batch asks for before the next batch."""
    wait = 0.0
    progressed = False
    for result in results:
        if result is None:
            continue
        if is_progress(result):
            progressed = True
        elif isinstance(result, Backoff):
            wait = max(wait, MIN_BACKOFF_WAIT_SECONDS, (result.until - now).total_seconds())
        elif isinstance(result, Error):
            wait = max(wait, ERROR_WAIT_SECONDS)
        else:
            wait = max(wait, SKIP_WAIT_SECONDS)
    if wait == 0.0 and not progressed:
        return SKIP_WAIT_SECONDS
    return wait


async def run_directory_crawl(
    crawler: DirectoryCrawler,
    *,
    stop_event: asyncio.Event | None = None,
    sleep: Sleep = asyncio.sleep,
    clock: Callable[[], datetime] = _utcnow,
) -> DirectoryCrawlSummary:
    max_id = await crawler.fetch_latest_arka_id()
    if max_id is None:
        raise DirectoryUpperBoundError("could not determine the newest directory id")

    cursor = await crawler.bootstrap_cursor()
    summary = DirectoryCrawlSummary(
        max_id=max_id, start_cursor=cursor.next_fetch_id, final_cursor=cursor.next_fetch_id
    )
    logger.info("directory crawl starting cursor=%s max_id=%s", cursor.next_fetch_id, max_id)
    if cursor.next_fetch_id >= max_id:
        return summary

    batch_size = max(1, crawler.settings.directory_batch_size)

    async def step() -> BatchOutcome:
        calls = [lambda: crawler.fetch_next(True, upper_bound=max_id) for _ in range(batch_size)]
        results = await gather_batch(calls, label="directory.fetch_next")
        for result in results:
            if isinstance(result, Stored):
                summary.stored += 1
            elif isinstance(result, Skipped) and result.reason == NOT_FOUND:
                summary.not_found += 1

        current = await crawler.current_cursor()
        summary.final_cursor = current.next_fetch_id
        if current.next_fetch_id >= max_id:
            return BatchOutcome(done=True)
        return BatchOutcome(wait_seconds=directory_wait_seconds(results, clock()))

    driver = BatchDriver("directory.crawl", step, stop_event=stop_event, sleep=sleep)
    with tracer.start_as_current_span("directory.crawl") as span:
        summary.batches = await driver.run()
        span.set_attribute("directory.final_cursor", summary.final_cursor)
    logger.info(
        "directory crawl finished cursor=%s max_id=%s stored=%s not_found=%s batches=%s",
        summary.final_cursor,
        max_id,
        summary.stored,
        summary.not_found,
        summary.batches,
    )
    return summary
