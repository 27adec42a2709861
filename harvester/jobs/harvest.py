from __future__ import annotations

import asyncio
import collections
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from opentelemetry import trace

from harvester.core.config import Settings
from harvester.schemas.summaries import HarvestSummary
from harvester.services.listing_client import ListingApiError, ListingClient
from harvester.services.repository import CategoryScope, LocationScope, QueueEntry, QueueItem

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SOURCE = "DIVAR"
PAGINATION_TYPE = "type.googleapis.com/post_list.PaginationData"
SERVER_PAYLOAD_TYPE = "type.googleapis.com/widgets.SearchData.ServerPayload"
INITIAL_CUMULATIVE_WIDGETS = 50
MIN_REFETCH_WINDOW_MINUTES = 60


class HarvestRepository(Protocol):
    async def list_category_scopes(self) -> list[CategoryScope]: ...

    async def list_location_scopes(self) -> list[LocationScope]: ...

    async def find_queue_entries(self, source: str, external_ids: list[str]) -> list[QueueEntry]: ...

    async def insert_queue_entries(self, source: str, items: list[QueueItem]) -> int: ...

    async def reactivate_queue_entries(
        self, entries: list[tuple[QueueEntry, QueueItem | None]], *, now: datetime
    ) -> int: ...


class RequestRateLimiter:
    """Sliding one-second window allowing at most ``max_per_second`` requests."""

    def __init__(
        self,
        max_per_second: int,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_per_second = max(1, max_per_second)
        self._sleep = sleep
        self._clock = clock
        self._stamps: collections.deque[float] = collections.deque()

    async def acquire(self) -> None:
        while True:
            now = self._clock()
            while self._stamps and now - self._stamps[0] > 1.0:
                self._stamps.popleft()
            if len(self._stamps) < self.max_per_second:
                self._stamps.append(now)
                return
            await self._sleep(max(1.0 - (now - self._stamps[0]), 0.05))


def select_category_scopes(categories: list[CategoryScope]) -> list[CategoryScope]:
    """Drop categories already covered by a selected ancestor path."""
    selected: list[CategoryScope] = []
    for category in categories:
        covered = any(
            category.path == chosen.path or category.path.startswith(f"{chosen.path}/") for chosen in selected
        )
        if not covered:
            selected.append(category)
    return selected


def extract_token(widget: dict[str, Any]) -> str | None:
    data = widget.get("data")
    if not isinstance(data, dict):
        return None
    for candidate in (data.get("token"), data.get("post_token"), data.get("token_card")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
        if isinstance(candidate, dict):
            nested = candidate.get("token")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return None


def post_rows(payload: dict[str, Any]) -> list[dict[str, Any]]:
    widgets = payload.get("list_widgets")
    if not isinstance(widgets, list):
        return []
    return [widget for widget in widgets if isinstance(widget, dict) and widget.get("widget_type") == "POST_ROW"]


def build_search_body(
    location: LocationScope,
    category: CategoryScope,
    *,
    page: int,
    cumulative_widgets: int,
    last_post_date: str | None,
) -> dict[str, Any]:
    pagination: dict[str, Any] = {
        "@type": PAGINATION_TYPE,
        "page": page,
        "layer_page": page,
        "cumulative_widgets_count": cumulative_widgets,
    }
    if last_post_date:
        pagination["last_post_date"] = last_post_date
    return {
        "city_ids": [str(location.api_id)],
        "pagination_data": pagination,
        "disable_recommendation": True,
        "map_state": {"camera_info": {"bbox": {}}},
        "search_data": {
            "form_data": {"data": {"category": {"str": {"value": category.slug}}}},
            "server_payload": {
                "@type": SERVER_PAYLOAD_TYPE,
                "additional_form_data": {"data": {"sort": {"str": {"value": "sort_date"}}}},
            },
        },
    }


def resolve_page_limit(settings: Settings, now: datetime) -> int | None:
    """Pages allowed per combination right now; ``None`` means unlimited."""
    limit = settings.harvest_max_pages
    start = settings.harvest_night_start_hour
    end = settings.harvest_night_end_hour
    if start is not None and end is not None:
        hour = now.astimezone(ZoneInfo(settings.harvest_timezone)).hour
        if start == end:
            in_night = True
        elif start < end:
            in_night = start <= hour < end
        else:
            in_night = hour >= start or hour < end
        if in_night:
            limit = settings.harvest_max_pages_night
    return limit if limit > 0 else None


class ScopeHarvester:
    def __init__(
        self,
        repository: HarvestRepository,
        client: ListingClient,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.client = client
        self.settings = settings
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.limiter = RequestRateLimiter(settings.harvest_max_requests_per_second, sleep=sleep)
        window = max(MIN_REFETCH_WINDOW_MINUTES, settings.harvest_refetch_window_minutes)
        self.refetch_window = timedelta(minutes=window)

    async def harvest_allowed_scopes(self) -> HarvestSummary:
        with tracer.start_as_current_span("harvest.allowed_scopes") as span:
            categories = select_category_scopes(await self.repository.list_category_scopes())
            locations = await self.repository.list_location_scopes()
            summary = HarvestSummary(categories=len(categories), locations=len(locations))
            if not categories or not locations:
                logger.warning(
                    "nothing to harvest categories=%s locations=%s", len(categories), len(locations)
                )
                return summary

            for location in locations:
                for category in categories:
                    summary.combinations += 1
                    try:
                        summary.enqueued += await self._harvest_combination(category, location)
                    except (ListingApiError, ValueError) as exc:
                        logger.error(
                            "harvest failed category=%s location=%s error=%s", category.slug, location.label, exc
                        )
                    except Exception:
                        logger.exception(
                            "harvest crashed category=%s location=%s", category.slug, location.label
                        )

            span.set_attribute("harvest.enqueued", summary.enqueued)
            span.set_attribute("harvest.combinations", summary.combinations)
            logger.info(
                "harvest finished enqueued=%s combinations=%s", summary.enqueued, summary.combinations
            )
            return summary

    async def _harvest_combination(self, category: CategoryScope, location: LocationScope) -> int:
        page_limit = resolve_page_limit(self.settings, self._clock())
        page = 0
        last_post_date: str | None = None
        cumulative_widgets = INITIAL_CUMULATIVE_WIDGETS
        inserted = 0

        while page_limit is None or page < page_limit:
            body = build_search_body(
                location,
                category,
                page=page,
                cumulative_widgets=cumulative_widgets,
                last_post_date=last_post_date,
            )
            await self.limiter.acquire()
            payload = await self.client.search(body)
            rows = post_rows(payload)
            if not rows:
                break

            items = self._queue_items(rows, category, location, page)
            reactivated = await self._reactivate_stale(items)
            fresh = [item for item in items if item.external_id not in reactivated]
            if fresh:
                count = await self.repository.insert_queue_entries(SOURCE, fresh)
                inserted += count
                logger.info(
                    "enqueued %s posts category=%s location=%s page=%s",
                    count,
                    category.slug,
                    location.label,
                    page,
                )

            pagination = payload.get("pagination")
            data = pagination.get("data") if isinstance(pagination, dict) else None
            data = data if isinstance(data, dict) else {}
            last_post_date = data.get("last_post_date") or None
            widgets_count = data.get("cumulative_widgets_count")
            if isinstance(widgets_count, int):
                cumulative_widgets = widgets_count
            if not last_post_date:
                break

            page += 1
            if self.settings.harvest_page_delay_seconds > 0:
                await self._sleep(self.settings.harvest_page_delay_seconds)

        return inserted

    def _queue_items(
        self,
        rows: list[dict[str, Any]],
        category: CategoryScope,
        location: LocationScope,
        page: int,
    ) -> list[QueueItem]:
        items: list[QueueItem] = []
        seen: set[str] = set()
        for widget in rows:
            token = extract_token(widget)
            if token is None:
                continue
            if token in seen:
                logger.warning(
                    "duplicate token within page token=%s category=%s location=%s page=%s",
                    token,
                    category.slug,
                    location.label,
                    page,
                )
                continue
            seen.add(token)
            data = widget.get("data")
            items.append(
                QueueItem(
                    external_id=token,
                    category_id=category.id,
                    category_slug=category.slug,
                    location_scope=location.scope,
                    province_id=location.province_id,
                    city_id=location.city_id,
                    payload=data if isinstance(data, dict) else None,
                )
            )
        return items

    async def _reactivate_stale(self, items: list[QueueItem]) -> set[str]:
        if not items:
            return set()
        lookup = {item.external_id: item for item in items}
        existing = await self.repository.find_queue_entries(SOURCE, list(lookup))
        if not existing:
            return set()

        now = self._clock()
        threshold = now - self.refetch_window
        eligible: list[tuple[QueueEntry, QueueItem | None]] = []
        for entry in existing:
            if entry.status == "PROCESSING":
                continue
            reference = entry.last_fetched_at or entry.published_at
            if reference is None:
                logger.warning("known token has no fetch or publish time token=%s", entry.external_id)
                continue
            if reference <= threshold:
                eligible.append((entry, lookup.get(entry.external_id)))

        if not eligible:
            return set()
        await self.repository.reactivate_queue_entries(eligible, now=now)
        for entry, _ in eligible:
            logger.info("reactivated token for refetch token=%s", entry.external_id)
        return {entry.external_id for entry, _ in eligible}
