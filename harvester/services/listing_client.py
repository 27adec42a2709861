from __future__ import annotations

import random
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from harvester.core.text import retry_after_seconds

BOT_USER_AGENT = "Mozilla/5.0 (compatible; MyAdsBot/1.0)"
CONTACT_USER_AGENT = "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:146.0) Gecko/20100101 Firefox/146.0"
BROWSER_USER_AGENTS: tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.6778.86 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.6778.86 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.6778.70 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.5 Safari/605.1.15",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 18_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.0 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8 Pro) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.6778.70 Mobile Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:131.0) Gecko/20100101 Firefox/131.0",
    "Mozilla/5.0 (X11; Linux x86_64; rv:131.0) Gecko/20100101 Firefox/131.0",
)


class ListingApiError(Exception):
    """Non-2xx answer from the listing API."""

    def __init__(self, message: str, *, status: int, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.headers = {key.lower(): value for key, value in (headers or {}).items()}

    @property
    def not_found(self) -> bool:
        return self.status == 404

    @property
    def rate_limited(self) -> bool:
        return self.status == 429

    @property
    def unauthorized(self) -> bool:
        return self.status in {401, 403}

    def retry_after_seconds(self) -> float | None:
        return retry_after_seconds(self.headers.get("retry-after"))


class ListingClient:
    def __init__(
        self,
        base_url: str,
        *,
        site_origin: str = "https://divar.ir",
        session_cookie: str | None = None,
        search_timeout_seconds: float = 15.0,
        detail_timeout_seconds: float = 15.0,
        contact_timeout_seconds: float = 8.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.site_origin = site_origin.rstrip("/")
        self.session_cookie = session_cookie
        self.search_timeout_seconds = search_timeout_seconds
        self.detail_timeout_seconds = detail_timeout_seconds
        self.contact_timeout_seconds = contact_timeout_seconds
        self._client = client

    async def search(self, body: dict[str, Any]) -> dict[str, Any]:
        headers = self._site_headers(BOT_USER_AGENT)
        headers["Content-Type"] = "application/json"
        async with self._http(self.search_timeout_seconds) as client:
            response = await client.post(f"{self.base_url}/v8/postlist/w/search", json=body, headers=headers)
        return self._json_or_raise(response, "search")

    async def get_post(self, token: str) -> dict[str, Any]:
        headers = self._site_headers(random.choice(BROWSER_USER_AGENTS))
        headers["Accept"] = "application/json, text/plain, */*"
        async with self._http(self.detail_timeout_seconds) as client:
            response = await client.get(f"{self.base_url}/v8/posts-v2/web/{token}", headers=headers)
        return self._json_or_raise(response, f"post {token}")

    async def get_contact(self, token: str, *, contact_uuid: str, auth_token: str) -> dict[str, Any]:
        headers = {
            "User-Agent": CONTACT_USER_AGENT,
            "Accept": "application/json, text/plain, */*",
            "Content-Type": "application/json",
            "Referer": f"{self.site_origin}/",
            "Origin": self.site_origin,
            "X-Render-Type": "CSR",
            "Authorization": auth_token if auth_token.startswith("Basic ") else f"Basic {auth_token}",
        }
        async with self._http(self.contact_timeout_seconds) as client:
            response = await client.post(
                f"{self.base_url}/v8/postcontact/web/contact_info_v2/{token}",
                json={"contact_uuid": contact_uuid},
                headers=headers,
            )
        return self._json_or_raise(response, f"contact {token}")

    def _site_headers(self, user_agent: str) -> dict[str, str]:
        headers = {
            "User-Agent": user_agent,
            "Referer": f"{self.site_origin}/",
            "Origin": self.site_origin,
        }
        if self.session_cookie:
            headers["Cookie"] = self.session_cookie
        return headers

    @asynccontextmanager
    async def _http(self, timeout: float) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=timeout) as client:
            yield client

    @staticmethod
    def _json_or_raise(response: httpx.Response, label: str) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise ListingApiError(
                f"listing api {label} failed with {response.status_code}",
                status=response.status_code,
                headers=dict(response.headers),
            )
        payload = response.json()
        return payload if isinstance(payload, dict) else {}
