from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from harvester.core.config import Settings
from harvester.schemas.summaries import FetchSummary
from harvester.services.listing_client import ListingApiError, ListingClient
from harvester.services.repository import ReadJob

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class FetchRepository(Protocol):
    async def release_stuck_read_jobs(self, older_than_seconds: float) -> int: ...

    async def reserve_read_batch(self, limit: int) -> list[ReadJob]: ...

    async def complete_read_job(self, job: ReadJob, payload: dict[str, Any]) -> None: ...

    async def fail_read_job(self, job: ReadJob, max_attempts: int) -> tuple[str, int]: ...


class ListingFetcher:
    def __init__(
        self,
        repository: FetchRepository,
        client: ListingClient,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.client = client
        self.settings = settings
        self._sleep = sleep
        self._clock = clock

    async def fetch_next_posts(self) -> FetchSummary:
        summary = FetchSummary()
        batch_size = max(1, self.settings.fetch_batch_size)
        with tracer.start_as_current_span("fetch.next_posts") as span:
            released = await self.repository.release_stuck_read_jobs(self.settings.fetch_processing_timeout_seconds)
            if released:
                logger.warning("released %s stuck queue entries back to pending", released)

            while True:
                started = self._clock()
                jobs = await self.repository.reserve_read_batch(batch_size)
                if not jobs:
                    break

                outcomes = await asyncio.gather(*(self._process(job) for job in jobs))
                summary.attempted += len(jobs)
                summary.succeeded += sum(1 for ok in outcomes if ok)
                summary.failed += sum(1 for ok in outcomes if not ok)

                if len(jobs) < batch_size:
                    break
                elapsed = self._clock() - started
                remaining = self.settings.fetch_min_batch_interval_seconds - elapsed
                if remaining > 0:
                    await self._sleep(remaining)

            span.set_attribute("fetch.attempted", summary.attempted)
            span.set_attribute("fetch.succeeded", summary.succeeded)
            if summary.attempted:
                logger.info(
                    "fetch finished attempted=%s succeeded=%s failed=%s",
                    summary.attempted,
                    summary.succeeded,
                    summary.failed,
                )
            return summary

    async def _process(self, job: ReadJob) -> bool:
        try:
            return await self._fetch_one(job)
        except Exception:
            # The entry stays PROCESSING until the stuck-job release hands it back.
            logger.exception("fetch crashed token=%s", job.external_id)
            return False

    async def _fetch_one(self, job: ReadJob) -> bool:
        try:
            payload = await self.client.get_post(job.external_id)
        except ListingApiError as exc:
            if exc.rate_limited:
                wait = exc.retry_after_seconds()
                if wait is None:
                    wait = self.settings.fetch_rate_limit_sleep_seconds
                logger.warning("rate limited fetching token=%s; sleeping %.1fs", job.external_id, wait)
                await self._sleep(wait)
            await self._record_failure(job, f"http_{exc.status}")
            return False
        except (httpx.HTTPError, ValueError) as exc:
            await self._record_failure(job, str(exc) or exc.__class__.__name__)
            return False

        await self.repository.complete_read_job(job, payload)
        logger.debug("fetched token=%s", job.external_id)
        return True

    async def _record_failure(self, job: ReadJob, reason: str) -> None:
        status, attempts = await self.repository.fail_read_job(job, self.settings.fetch_max_attempts)
        logger.warning(
            "fetch failed token=%s reason=%s attempts=%s status=%s",
            job.external_id,
            reason,
            attempts,
            status,
        )
