from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DirectoryResponse:
    """Raw answer from the directory; ``status == 0`` means no HTTP response arrived."""

    status: int
    payload: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def prepare_headers(headers: dict[str, str] | None) -> dict[str, str]:
    if not headers:
        return {}
    prepared = {key: value for key, value in headers.items() if key.lower() != "content-length"}
    if not any(key.lower() == "content-type" for key in prepared):
        prepared["Content-Type"] = "application/json"
    return prepared


def has_authorization(headers: dict[str, str]) -> bool:
    return any(key.lower() == "authorization" and value for key, value in headers.items())


class DirectoryClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def search_page(self, headers: dict[str, str], page: int = 1) -> DirectoryResponse:
        return await self._post(f"{self.base_url}/Search/FullDetails", {"page": page}, headers)

    async def lookup_phone(self, arka_id: int, headers: dict[str, str]) -> DirectoryResponse:
        return await self._post(f"{self.base_url}/Search/FullDetails/Phone/{arka_id}", {}, headers)

    async def _post(self, url: str, body: dict[str, Any], headers: dict[str, str]) -> DirectoryResponse:
        try:
            async with self._http() as client:
                response = await client.post(url, json=body, headers=prepare_headers(headers))
        except httpx.HTTPError as exc:
            logger.warning("directory request failed url=%s error=%s", url, exc)
            return DirectoryResponse(status=0)

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        return DirectoryResponse(status=response.status_code, payload=payload)

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            yield client
