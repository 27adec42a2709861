from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlparse

import httpx
from opentelemetry import trace

from harvester.core.config import Settings
from harvester.schemas.summaries import MediaSyncSummary
from harvester.services.media_store import MediaStore
from harvester.services.repository import MediaAsset

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_CONTENT_TYPES = {
    ".webp": "image/webp",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}


class MediaRepository(Protocol):
    async def list_unsynced_media(self, host_suffix: str, limit: int) -> list[MediaAsset]: ...

    async def update_media_local_urls(
        self, media_id: str, *, local_url: str | None = None, local_thumbnail_url: str | None = None
    ) -> None: ...

    async def refresh_listing_media_flag(self, listing_id: str) -> bool: ...


@dataclass(slots=True)
class Download:
    body: bytes
    content_type: str


def object_key(remote_url: str) -> str | None:
    path = urlparse(remote_url).path.lstrip("/")
    return path or None


def guess_content_type(url: str) -> str:
    lower = urlparse(url).path.lower()
    for suffix, content_type in _CONTENT_TYPES.items():
        if lower.endswith(suffix):
            return content_type
    return "application/octet-stream"


class MediaSyncer:
    def __init__(
        self,
        repository: MediaRepository,
        store: MediaStore,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.store = store
        self.settings = settings
        self._client = client
        self._sleep = sleep

    async def sync_next_batch(self) -> MediaSyncSummary:
        summary = MediaSyncSummary()
        batch_size = max(1, self.settings.media_batch_size)
        seen: set[str] = set()
        with tracer.start_as_current_span("media.sync") as span:
            async with self._http() as client:
                while True:
                    assets = await self.repository.list_unsynced_media(
                        self.settings.media_cdn_host_suffix, batch_size
                    )
                    fresh = [asset for asset in assets if asset.id not in seen]
                    if not fresh:
                        break
                    logger.info("processing media batch size=%s processed=%s", len(fresh), summary.processed)

                    for asset in fresh:
                        seen.add(asset.id)
                        try:
                            await self._sync_asset(client, asset, summary)
                        except Exception:
                            summary.failed += 1
                            logger.exception("media sync crashed id=%s listing=%s", asset.id, asset.listing_id)
                        summary.processed += 1
                        if self.settings.media_request_delay_seconds > 0:
                            await self._sleep(self.settings.media_request_delay_seconds)

                    if len(assets) < batch_size:
                        break

            span.set_attribute("media.processed", summary.processed)
            span.set_attribute("media.stored", summary.stored)
            if summary.processed:
                logger.info(
                    "media sync processed=%s stored=%s failed=%s",
                    summary.processed,
                    summary.stored,
                    summary.failed,
                )
            else:
                logger.debug("no media pending sync")
            return summary

    async def _sync_asset(self, client: httpx.AsyncClient, asset: MediaAsset, summary: MediaSyncSummary) -> None:
        local_url: str | None = None
        local_thumbnail_url: str | None = None

        if self._should_mirror(asset.url, asset.local_url):
            local_url = await self._mirror(client, asset.url, asset.id, summary)
        if self._should_mirror(asset.thumbnail_url, asset.local_thumbnail_url):
            local_thumbnail_url = await self._mirror(client, asset.thumbnail_url or "", asset.id, summary)

        # Always written so failed rows rotate behind the rest of the backlog.
        await self.repository.update_media_local_urls(
            asset.id,
            local_url=local_url,
            local_thumbnail_url=local_thumbnail_url,
        )
        await self.repository.refresh_listing_media_flag(asset.listing_id)

    async def _mirror(
        self, client: httpx.AsyncClient, remote_url: str, media_id: str, summary: MediaSyncSummary
    ) -> str | None:
        key = object_key(remote_url)
        if key is None:
            summary.failed += 1
            return None
        try:
            download = await self._download(client, remote_url)
            if download is None:
                summary.failed += 1
                return None
            stored = await self.store.put(key, download.body, download.content_type)
        except Exception:
            summary.failed += 1
            logger.warning("failed to sync media id=%s url=%s", media_id, remote_url, exc_info=True)
            return None
        summary.stored += 1
        return stored

    async def _download(self, client: httpx.AsyncClient, remote_url: str) -> Download | None:
        attempts = max(1, self.settings.media_max_download_attempts)
        for attempt in range(1, attempts + 1):
            try:
                response = await client.get(remote_url)
                if response.status_code == 404:
                    logger.warning("remote media not found url=%s", remote_url)
                    return None
                response.raise_for_status()
                content_type = response.headers.get("content-type") or guess_content_type(remote_url)
                return Download(body=response.content, content_type=content_type)
            except httpx.HTTPError:
                if attempt >= attempts:
                    raise
                await self._sleep(self.settings.media_request_delay_seconds * attempt)
        return None

    def _should_mirror(self, remote: str | None, local: str | None) -> bool:
        if local or not remote:
            return False
        host = urlparse(remote).hostname or ""
        return host.endswith(self.settings.media_cdn_host_suffix)

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            timeout=self.settings.listing_detail_timeout_seconds, follow_redirects=True
        ) as client:
            yield client
