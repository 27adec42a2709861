from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import boto3

from harvester.core.config import Settings

logger = logging.getLogger(__name__)


class MediaStore(Protocol):
    async def put(self, key: str, body: bytes, content_type: str | None) -> str: ...


class S3MediaStore:
    """Object storage for mirrored listing images (any S3-compatible endpoint)."""

    def __init__(
        self,
        bucket: str,
        *,
        region: str | None = None,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        public_base_url: str | None = None,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.public_base_url = (public_base_url or "").rstrip("/") or None
        self.endpoint_url = endpoint_url
        self.s3 = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    async def put(self, key: str, body: bytes, content_type: str | None) -> str:
        key = key.lstrip("/")
        extra: dict[str, Any] = {"ContentType": content_type} if content_type else {}
        await asyncio.to_thread(self.s3.put_object, Bucket=self.bucket, Key=key, Body=body, **extra)
        logger.debug("stored object bucket=%s key=%s bytes=%s", self.bucket, key, len(body))
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"s3://{self.bucket}/{key}"


def build_media_store(settings: Settings) -> S3MediaStore:
    if not settings.media_bucket:
        raise ValueError("HARVESTER_MEDIA_BUCKET is required for media sync")
    return S3MediaStore(
        settings.media_bucket,
        region=settings.media_region,
        endpoint_url=settings.media_endpoint_url,
        access_key_id=settings.media_access_key_id,
        secret_access_key=settings.media_secret_access_key,
        public_base_url=settings.media_public_base_url,
    )
