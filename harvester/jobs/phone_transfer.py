from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol, Union

from opentelemetry import trace

from harvester.core.config import Settings
from harvester.core.results import (
    BulkTransferred,
    BulkTransferResult,
    Deferred,
    Error,
    Skipped,
    Transferred,
    TransferResult,
)
from harvester.core.text import is_real_phone
from harvester.schemas.summaries import TransferSummary
from harvester.services.repository import DirectoryRecord, ListingRef

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

StrategyResult = Union[TransferResult, BulkTransferResult]


class TransferRepository(Protocol):
    async def bulk_transfer_phones(self, *, fetched_after: datetime, limit: int) -> int: ...

    async def claim_transfer_candidate(
        self, *, fetched_after: datetime, lock_seconds: int, now: datetime
    ) -> DirectoryRecord | None: ...

    async def find_listing_by_external_id(self, external_id: str) -> ListingRef | None: ...

    async def apply_transfer(
        self, record: DirectoryRecord, *, listing_id: str, phone: str | None, now: datetime
    ) -> None: ...

    async def defer_transfer(self, record_id: str, *, reason: str, until: datetime) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PhoneTransferMatcher:
    """Copies owner phones from directory records onto listings sharing the external id."""

    def __init__(
        self,
        repository: TransferRepository,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self._clock = clock

    def _window_start(self, now: datetime) -> datetime:
        return now - timedelta(hours=self.settings.transfer_recent_window_hours)

    async def transfer_missing_posts(self) -> BulkTransferResult:
        now = self._clock()
        count = await self.repository.bulk_transfer_phones(
            fetched_after=self._window_start(now),
            limit=self.settings.transfer_bulk_limit,
        )
        if count == 0:
            return Skipped(reason="no_matches")
        logger.info("bulk transfer applied to %s listings missing phone numbers", count)
        return BulkTransferred(count=count)

    async def transfer_one(self) -> TransferResult:
        now = self._clock()
        record = await self.repository.claim_transfer_candidate(
            fetched_after=self._window_start(now),
            lock_seconds=self.settings.transfer_lock_seconds,
            now=now,
        )
        if record is None:
            return Skipped(reason="no_pending_records")

        retry_at = now + timedelta(seconds=self.settings.transfer_defer_seconds)
        if not record.external_id:
            await self.repository.defer_transfer(record.id, reason="missing_external_id", until=retry_at)
            logger.warning("directory record arka_id=%s has no external id", record.arka_id)
            return Error(reason="missing_external_id")

        listing = await self.repository.find_listing_by_external_id(record.external_id)
        if listing is None:
            await self.repository.defer_transfer(record.id, reason="post_not_found", until=retry_at)
            logger.debug("no listing for external_id=%s yet; deferred", record.external_id)
            return Deferred(reason="post_not_found", until=retry_at)

        phone = record.phone if is_real_phone(record.phone) else None
        await self.repository.apply_transfer(record, listing_id=listing.id, phone=phone, now=now)
        logger.info(
            "transferred phone to listing external_id=%s phone=%s arka_id=%s",
            record.external_id,
            phone or "n/a",
            record.arka_id,
        )
        return Transferred(external_id=record.external_id, phone=phone)


@dataclass(slots=True)
class TransferStrategy:
    name: str
    attempt: Callable[[], Awaitable[StrategyResult]]


def default_strategies(matcher: PhoneTransferMatcher) -> list[TransferStrategy]:
    return [
        TransferStrategy("bulk", matcher.transfer_missing_posts),
        TransferStrategy("per_record", matcher.transfer_one),
    ]


async def run_phone_transfer(
    matcher: PhoneTransferMatcher,
    *,
    strategies: Sequence[TransferStrategy] | None = None,
    stop_event: asyncio.Event | None = None,
) -> TransferSummary:
    """Run each strategy until it reports no more work.

    ``Skipped`` ends a strategy successfully and moves on to the next one;
    ``Deferred`` or ``Error`` ends the whole run.
    """
    summary = TransferSummary()
    with tracer.start_as_current_span("transfer.run") as span:
        for strategy in strategies or default_strategies(matcher):
            while stop_event is None or not stop_event.is_set():
                result = await strategy.attempt()
                if isinstance(result, BulkTransferred):
                    summary.bulk_transferred += result.count
                elif isinstance(result, Transferred):
                    summary.transferred += 1
                elif isinstance(result, Skipped):
                    logger.debug("%s transfer finished: %s", strategy.name, result.reason)
                    break
                elif isinstance(result, (Deferred, Error)):
                    summary.stopped_on = result.reason
                    logger.info("%s transfer stopped: %s", strategy.name, result.reason)
                    break
            if summary.stopped_on is not None or (stop_event is not None and stop_event.is_set()):
                break

        span.set_attribute("transfer.bulk", summary.bulk_transferred)
        span.set_attribute("transfer.single", summary.transferred)
    logger.info(
        "phone transfer finished bulk=%s single=%s stopped_on=%s",
        summary.bulk_transferred,
        summary.transferred,
        summary.stopped_on,
    )
    return summary
