from __future__ import annotations

import asyncio
from typing import Any

import httpx

from harvester.core.config import Settings
from harvester.jobs.media_sync import MediaSyncer, guess_content_type, object_key
from harvester.schemas.summaries import MediaSyncSummary
from harvester.services.media_store import S3MediaStore
from harvester.services.store import InMemoryRepository

PHOTO = "https://s100.divarcdn.com/static/photo/post/a.webp"
THUMB = "https://s100.divarcdn.com/static/thumbnails/post/a.webp"


class FakeStore:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str | None]] = {}

    async def put(self, key: str, body: bytes, content_type: str | None) -> str:
        self.objects[key] = (body, content_type)
        return f"https://media.example.test/{key}"


class FakeS3Client:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        return {}


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {"otel_enabled": False, "media_request_delay_seconds": 0.0, "media_batch_size": 25}
    values.update(overrides)
    return Settings(**values)


def _sync(repository: InMemoryRepository, store: FakeStore, handler, settings: Settings) -> MediaSyncSummary:
    async def fake_sleep(seconds: float) -> None:
        return None

    async def run() -> MediaSyncSummary:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            syncer = MediaSyncer(repository, store, settings, client=http, sleep=fake_sleep)
            return await syncer.sync_next_batch()

    return asyncio.run(run())


def test_sync_mirrors_image_and_thumbnail_and_flags_listing() -> None:
    repository = InMemoryRepository()
    listing_id = repository.add_listing("tok1")
    media_id = repository.add_media(listing_id, PHOTO, THUMB)
    store = FakeStore()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"image-bytes", headers={"content-type": "image/webp"})

    summary = _sync(repository, store, handler, _settings())

    assert (summary.processed, summary.stored, summary.failed) == (1, 2, 0)
    row = repository.media[media_id]
    assert row.local_url == "https://media.example.test/static/photo/post/a.webp"
    assert row.local_thumbnail_url == "https://media.example.test/static/thumbnails/post/a.webp"
    assert store.objects["static/photo/post/a.webp"] == (b"image-bytes", "image/webp")
    assert repository.listings[listing_id].has_media is True


def test_sync_leaves_missing_remote_media_unmirrored_and_terminates() -> None:
    repository = InMemoryRepository()
    listing_id = repository.add_listing("tok1")
    media_id = repository.add_media(listing_id, PHOTO)
    before = repository.media[media_id].updated_at
    requests: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        return httpx.Response(404)

    summary = _sync(repository, FakeStore(), handler, _settings())

    assert (summary.processed, summary.stored, summary.failed) == (1, 0, 1)
    assert requests == [PHOTO]
    row = repository.media[media_id]
    assert row.local_url is None
    assert row.updated_at >= before
    assert repository.listings[listing_id].has_media is False


def test_sync_retries_transient_download_errors() -> None:
    repository = InMemoryRepository()
    listing_id = repository.add_listing("tok1")
    media_id = repository.add_media(listing_id, PHOTO)
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectError("reset", request=request)
        return httpx.Response(200, content=b"ok")

    summary = _sync(repository, FakeStore(), handler, _settings(media_max_download_attempts=3))

    assert summary.stored == 1
    assert len(attempts) == 2
    assert repository.media[media_id].local_url is not None


def test_sync_skips_media_hosted_elsewhere() -> None:
    repository = InMemoryRepository()
    listing_id = repository.add_listing("tok1")
    repository.add_media(listing_id, "https://images.example.com/a.jpg")

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    summary = _sync(repository, FakeStore(), handler, _settings())
    assert summary.processed == 0


def test_object_key_and_content_type_follow_remote_path() -> None:
    assert object_key(PHOTO) == "static/photo/post/a.webp"
    assert object_key("https://s100.divarcdn.com/") is None
    assert guess_content_type("https://x.test/a.JPG?v=1") == "image/jpeg"
    assert guess_content_type("https://x.test/a.bin") == "application/octet-stream"


def test_s3_store_puts_object_and_returns_public_url() -> None:
    s3 = FakeS3Client()
    store = S3MediaStore("listing-media", public_base_url="https://cdn.example.test/", client=s3)

    url = asyncio.run(store.put("/static/a.webp", b"data", "image/webp"))

    assert url == "https://cdn.example.test/static/a.webp"
    assert s3.calls == [
        {"Bucket": "listing-media", "Key": "static/a.webp", "Body": b"data", "ContentType": "image/webp"}
    ]


class FlakyMediaRepository(InMemoryRepository):
    def __init__(self) -> None:
        super().__init__()
        self.broken_media: set[str] = set()

    async def update_media_local_urls(
        self,
        media_id: str,
        *,
        local_url: str | None = None,
        local_thumbnail_url: str | None = None,
    ) -> None:
        if media_id in self.broken_media:
            raise RuntimeError("connection reset by peer")
        await super().update_media_local_urls(media_id, local_url=local_url, local_thumbnail_url=local_thumbnail_url)


def test_storage_error_for_one_asset_does_not_abort_the_run() -> None:
    repository = FlakyMediaRepository()
    broken_id = repository.add_media(repository.add_listing("tok1"), PHOTO)
    healthy_listing = repository.add_listing("tok2")
    healthy_id = repository.add_media(healthy_listing, "https://s100.divarcdn.com/static/photo/post/b.webp")
    repository.broken_media.add(broken_id)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"image-bytes", headers={"content-type": "image/webp"})

    summary = _sync(repository, FakeStore(), handler, _settings())

    assert (summary.processed, summary.failed) == (2, 1)
    assert repository.media[broken_id].local_url is None
    assert repository.media[healthy_id].local_url == "https://media.example.test/static/photo/post/b.webp"
    assert repository.listings[healthy_listing].has_media is True
