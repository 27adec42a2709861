from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Protocol

from opentelemetry import trace

from harvester.core.config import Settings
from harvester.jobs.listing_parser import parse_listing
from harvester.schemas.listings import ListingRecord, ParsedListing
from harvester.schemas.summaries import AnalyzeSummary
from harvester.services.repository import AnalysisJob

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class AnalyzeRepository(Protocol):
    async def release_stuck_analysis_jobs(self, older_than_seconds: float, max_attempts: int) -> int: ...

    async def claim_analysis_jobs(self, limit: int) -> list[AnalysisJob]: ...

    async def save_analyzed_listing(self, job_id: str, record: ListingRecord) -> str: ...

    async def fail_analysis_job(self, job_id: str, error: str) -> None: ...


class MissingCategoryError(ValueError):
    pass


def resolve_published_at(job: AnalysisJob, parsed: ParsedListing) -> datetime | None:
    base = job.last_fetched_at or job.requested_at or job.created_at
    if base is None or parsed.relative_publish_seconds is None:
        return None
    return base - timedelta(seconds=parsed.relative_publish_seconds)


def build_listing_record(job: AnalysisJob, parsed: ParsedListing) -> ListingRecord:
    category_slug = job.category_slug or parsed.cat3
    if not category_slug:
        raise MissingCategoryError(f"missing category slug for listing {job.external_id}")
    return ListingRecord(
        read_queue_id=job.read_queue_id,
        source=job.source,
        external_id=job.external_id,
        category_id=job.category_id,
        category_slug=category_slug,
        province_id=job.province_id if job.province_id is not None else parsed.province_id,
        city_id=job.city_id if job.city_id is not None else parsed.city_id,
        published_at=resolve_published_at(job, parsed),
        parsed=parsed,
        payload=job.payload,
    )


class ContentAnalyzer:
    def __init__(
        self,
        repository: AnalyzeRepository,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self._sleep = sleep
        self._clock = clock

    async def process_pending_jobs(self, limit: int | None = None) -> AnalyzeSummary:
        summary = AnalyzeSummary()
        batch = max(1, limit if limit is not None else self.settings.analyze_batch_size)
        with tracer.start_as_current_span("analyze.pending_jobs") as span:
            released = await self.repository.release_stuck_analysis_jobs(
                self.settings.analyze_processing_timeout_seconds,
                self.settings.analyze_max_attempts,
            )
            if released:
                logger.warning("released %s stuck analysis jobs", released)

            jobs = await self.repository.claim_analysis_jobs(batch)
            if not jobs:
                logger.debug("no pending analysis jobs")
                return summary

            chunk_size = max(1, self.settings.analyze_chunk_size)
            chunks = [jobs[index : index + chunk_size] for index in range(0, len(jobs), chunk_size)]
            for position, chunk in enumerate(chunks):
                started = self._clock()
                outcomes = await asyncio.gather(*(self._process(job) for job in chunk))
                summary.processed += sum(1 for ok in outcomes if ok)
                summary.failed += sum(1 for ok in outcomes if not ok)

                elapsed = self._clock() - started
                remaining = self.settings.analyze_chunk_interval_seconds - elapsed
                if position < len(chunks) - 1 and remaining > 0:
                    await self._sleep(remaining)

            span.set_attribute("analyze.processed", summary.processed)
            span.set_attribute("analyze.failed", summary.failed)
            logger.info("analyze finished processed=%s failed=%s", summary.processed, summary.failed)
            return summary

    async def _process(self, job: AnalysisJob) -> bool:
        try:
            parsed = parse_listing(job.payload)
            record = build_listing_record(job, parsed)
            await self.repository.save_analyzed_listing(job.id, record)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning("analysis failed job=%s token=%s error=%s", job.id, job.external_id, message)
            await self.repository.fail_analysis_job(job.id, message)
            return False
        return True
