from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from harvester.core.config import Settings
from harvester.jobs.harvest import SOURCE, ScopeHarvester, build_search_body, resolve_page_limit, select_category_scopes
from harvester.schemas.summaries import HarvestSummary
from harvester.services.listing_client import ListingClient
from harvester.services.repository import CategoryScope, LocationScope
from harvester.services.store import InMemoryRepository

APARTMENTS = CategoryScope(id="c1", slug="apartment-sell", name="Apartment", path="real-estate/apartment-sell")
TEHRAN = LocationScope(scope="city", api_id=1, slug="tehran", name="Tehran", province_id=8, city_id=1)
KARAJ = LocationScope(scope="city", api_id=2, slug="karaj", name="Karaj", province_id=30, city_id=2)


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "otel_enabled": False,
        "harvest_page_delay_seconds": 0.0,
        "harvest_max_requests_per_second": 100,
    }
    values.update(overrides)
    return Settings(**values)


def _search_handler(pages: list[list[str]], *, failing_city: str | None = None, calls: list[dict[str, Any]] | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if calls is not None:
            calls.append(body)
        if failing_city is not None and body["city_ids"] == [failing_city]:
            return httpx.Response(500, json={"error": "boom"})
        page = body["pagination_data"]["page"]
        tokens = pages[page] if page < len(pages) else []
        return httpx.Response(
            200,
            json={
                "list_widgets": [{"widget_type": "POST_ROW", "data": {"token": token}} for token in tokens]
                + [{"widget_type": "BANNER", "data": {"token": "ignored"}}],
                "pagination": {"data": {"last_post_date": f"2024-01-0{page + 1}T00:00:00Z", "cumulative_widgets_count": 24}},
            },
        )

    return handler


def _harvest(repository: InMemoryRepository, handler, settings: Settings, **kwargs: Any) -> HarvestSummary:
    async def run() -> HarvestSummary:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = ListingClient("https://api.example.test", client=http)
            harvester = ScopeHarvester(repository, client, settings, **kwargs)
            return await harvester.harvest_allowed_scopes()

    return asyncio.run(run())


def test_harvest_enqueues_tokens_across_pages_and_is_idempotent() -> None:
    repository = InMemoryRepository()
    repository.categories = [APARTMENTS]
    repository.locations = [TEHRAN]
    handler = _search_handler([["a", "b", "a"], ["c"]])

    first = _harvest(repository, handler, _settings())
    second = _harvest(repository, handler, _settings())

    assert first.enqueued == 3
    assert first.combinations == 1
    assert second.enqueued == 0
    assert sorted(row.external_id for row in repository.queue.values()) == ["a", "b", "c"]
    assert all(row.source == SOURCE and row.status == "PENDING" for row in repository.queue.values())
    assert {row.category_slug for row in repository.queue.values()} == {"apartment-sell"}


def test_harvest_sends_pagination_state_from_previous_page() -> None:
    repository = InMemoryRepository()
    repository.categories = [APARTMENTS]
    repository.locations = [TEHRAN]
    calls: list[dict[str, Any]] = []

    _harvest(repository, _search_handler([["a"], ["b"]], calls=calls), _settings())

    assert [call["pagination_data"]["page"] for call in calls] == [0, 1, 2]
    assert "last_post_date" not in calls[0]["pagination_data"]
    assert calls[1]["pagination_data"]["last_post_date"] == "2024-01-01T00:00:00Z"
    assert calls[1]["pagination_data"]["cumulative_widgets_count"] == 24


def test_harvest_respects_page_limit() -> None:
    repository = InMemoryRepository()
    repository.categories = [APARTMENTS]
    repository.locations = [TEHRAN]
    calls: list[dict[str, Any]] = []

    summary = _harvest(repository, _search_handler([["a"], ["b"], ["c"]], calls=calls), _settings(harvest_max_pages=2))

    assert summary.enqueued == 2
    assert len(calls) == 2


def test_harvest_reactivates_stale_known_tokens() -> None:
    repository = InMemoryRepository()
    repository.categories = [APARTMENTS]
    repository.locations = [TEHRAN]
    handler = _search_handler([["a", "b"]])
    _harvest(repository, handler, _settings())

    now = datetime.now(timezone.utc)
    for row in repository.queue.values():
        row.status = "COMPLETED"
        row.fetch_attempts = 2
        row.last_fetched_at = now - (timedelta(hours=5) if row.external_id == "a" else timedelta(minutes=10))

    summary = _harvest(repository, handler, _settings(), clock=lambda: now)

    statuses = {row.external_id: (row.status, row.fetch_attempts) for row in repository.queue.values()}
    assert summary.enqueued == 0
    assert statuses == {"a": ("PENDING", 0), "b": ("COMPLETED", 2)}


def test_harvest_failure_in_one_combination_does_not_stop_the_others() -> None:
    repository = InMemoryRepository()
    repository.categories = [APARTMENTS]
    repository.locations = [KARAJ, TEHRAN]

    summary = _harvest(repository, _search_handler([["a"]], failing_city="2"), _settings())

    assert summary.combinations == 2
    assert summary.enqueued == 1


def test_harvest_without_scopes_does_nothing() -> None:
    repository = InMemoryRepository()
    repository.locations = [TEHRAN]

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    summary = _harvest(repository, handler, _settings())
    assert summary.enqueued == 0
    assert summary.combinations == 0


def test_select_category_scopes_drops_descendants_of_selected_paths() -> None:
    child = CategoryScope(id="c2", slug="apartment-sell-north", name="North", path="real-estate/apartment-sell/north")
    villas = CategoryScope(id="c3", slug="villa-sell", name="Villa", path="real-estate/villa-sell")

    assert select_category_scopes([APARTMENTS, child, villas]) == [APARTMENTS, villas]


def test_resolve_page_limit_switches_to_night_limit() -> None:
    settings = _settings(
        harvest_max_pages=20,
        harvest_max_pages_night=5,
        harvest_night_start_hour=23,
        harvest_night_end_hour=6,
        harvest_timezone="UTC",
    )

    assert resolve_page_limit(settings, datetime(2024, 1, 1, 2, tzinfo=timezone.utc)) == 5
    assert resolve_page_limit(settings, datetime(2024, 1, 1, 23, tzinfo=timezone.utc)) == 5
    assert resolve_page_limit(settings, datetime(2024, 1, 1, 12, tzinfo=timezone.utc)) == 20
    assert resolve_page_limit(_settings(harvest_max_pages=0), datetime(2024, 1, 1, tzinfo=timezone.utc)) is None


def test_build_search_body_targets_location_and_category() -> None:
    body = build_search_body(TEHRAN, APARTMENTS, page=0, cumulative_widgets=50, last_post_date=None)

    assert body["city_ids"] == ["1"]
    assert body["search_data"]["form_data"]["data"]["category"]["str"]["value"] == "apartment-sell"
    assert body["pagination_data"]["page"] == 0
