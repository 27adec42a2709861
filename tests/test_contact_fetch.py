from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from harvester.core.config import Settings
from harvester.jobs.contact_fetch import LISTING_PROVIDER, ContactFetcher, extract_phone
from harvester.schemas.summaries import ContactTarget
from harvester.services.listing_client import ListingClient
from harvester.services.store import InMemoryRepository

CONTACT_PAYLOAD = {
    "widget_list": [
        {"data": {"title": "call"}},
        {"data": {"action": {"payload": {"phone_number": "۰۹۱۲۳۴۵۶۷۸۹"}}}},
    ]
}


def _fetcher(repository: InMemoryRepository, http: httpx.AsyncClient) -> ContactFetcher:
    client = ListingClient("https://api.example.test", client=http)
    return ContactFetcher(repository, client, Settings(otel_enabled=False))


def _tick(repository: InMemoryRepository, handler) -> ContactTarget | None:
    async def run() -> ContactTarget | None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await _fetcher(repository, http).tick()

    return asyncio.run(run())


def test_tick_stores_phone_for_recent_listing() -> None:
    repository = InMemoryRepository()
    repository.add_session(LISTING_PROVIDER, token="secret")
    listing_id = repository.add_listing("tok1", contact_uuid="uuid-1", title="Flat")
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json=CONTACT_PAYLOAD)

    target = _tick(repository, handler)

    assert target == ContactTarget(id=listing_id, title="Flat")
    assert repository.listings[listing_id].phone == "09123456789"
    assert captured["auth"] == "Basic secret"


def test_tick_deactivates_session_on_unauthorized() -> None:
    repository = InMemoryRepository()
    session_id = repository.add_session(LISTING_PROVIDER, token="expired")
    listing_id = repository.add_listing("tok1", contact_uuid="uuid-1")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401)

    assert _tick(repository, handler) is None
    assert repository.sessions[session_id].active is False
    assert repository.sessions[session_id].last_error == "http_401"
    assert repository.listings[listing_id].phone is None


def test_tick_without_session_makes_no_request() -> None:
    repository = InMemoryRepository()
    repository.add_listing("tok1", contact_uuid="uuid-1")

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert _tick(repository, handler) is None


def test_tick_skips_listings_outside_recent_window() -> None:
    repository = InMemoryRepository()
    repository.add_session(LISTING_PROVIDER, token="secret")
    repository.add_listing(
        "tok1",
        contact_uuid="uuid-1",
        created_at=datetime.now(timezone.utc) - timedelta(hours=2),
    )

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert _tick(repository, handler) is None


def test_tick_rotates_listing_when_payload_has_no_phone() -> None:
    repository = InMemoryRepository()
    repository.add_session(LISTING_PROVIDER, token="secret")
    old = datetime.now(timezone.utc) - timedelta(minutes=5)
    listing_id = repository.add_listing("tok1", contact_uuid="uuid-1", created_at=old)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"widget_list": []})

    assert _tick(repository, handler) is None
    assert repository.listings[listing_id].phone is None
    assert repository.listings[listing_id].updated_at > old


def test_tick_is_skipped_while_previous_tick_runs() -> None:
    repository = InMemoryRepository()
    repository.add_session(LISTING_PROVIDER, token="secret")
    repository.add_listing("tok1", contact_uuid="uuid-1")

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async def run() -> ContactTarget | None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            fetcher = _fetcher(repository, http)
            fetcher._running = True
            return await fetcher.tick()

    assert asyncio.run(run()) is None


def test_extract_phone_ignores_widgets_without_phone() -> None:
    assert extract_phone(CONTACT_PAYLOAD) == "09123456789"
    assert extract_phone({"widget_list": [{"data": None}]}) is None
    assert extract_phone({}) is None
