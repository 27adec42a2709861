from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from harvester.core.config import Settings
from harvester.core.text import normalize_digits, snippet
from harvester.schemas.summaries import ContactTarget
from harvester.services.listing_client import ListingApiError, ListingClient
from harvester.services.repository import ApiSession, ContactCandidate

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

LISTING_PROVIDER = "listing"


class ContactRepository(Protocol):
    async def get_active_session(self, provider: str) -> ApiSession | None: ...

    async def deactivate_session(self, session_id: str, reason: str) -> None: ...

    async def next_contact_candidate(self, created_after: datetime) -> ContactCandidate | None: ...

    async def get_contact_candidate(self, listing_id: str) -> ContactCandidate | None: ...

    async def store_listing_phone(self, listing_id: str, phone: str) -> None: ...

    async def touch_listing(self, listing_id: str) -> None: ...


def extract_phone(payload: dict[str, Any]) -> str | None:
    widgets = payload.get("widget_list")
    if not isinstance(widgets, list):
        return None
    for widget in widgets:
        if not isinstance(widget, dict):
            continue
        data = widget.get("data") or {}
        action = data.get("action") if isinstance(data, dict) else None
        action_payload = action.get("payload") if isinstance(action, dict) else None
        phone = action_payload.get("phone_number") if isinstance(action_payload, dict) else None
        if isinstance(phone, str) and phone.strip():
            return normalize_digits(phone.strip())
    return None


class ContactFetcher:
    """Fetches one owner phone number per tick using the active listing session."""

    def __init__(
        self,
        repository: ContactRepository,
        client: ListingClient,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.client = client
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._running = False

    async def tick(self) -> ContactTarget | None:
        if self._running:
            return None
        self._running = True
        try:
            with tracer.start_as_current_span("contact.tick"):
                session = await self.repository.get_active_session(LISTING_PROVIDER)
                if session is None:
                    logger.debug("no active listing session for contact fetch")
                    return None

                created_after = self._clock() - timedelta(minutes=self.settings.contact_recent_window_minutes)
                candidate = await self.repository.next_contact_candidate(created_after)
                if candidate is None:
                    return None

                phone = await self._request_phone(session, candidate)
                if phone is None:
                    return None
                return ContactTarget(id=candidate.id, title=candidate.title)
        finally:
            self._running = False

    async def fetch_for_listing(self, listing_id: str) -> str | None:
        candidate = await self.repository.get_contact_candidate(listing_id)
        if candidate is None or not candidate.external_id or not candidate.contact_uuid:
            logger.warning("cannot fetch contact listing=%s: missing external id or contact uuid", listing_id)
            return None
        session = await self.repository.get_active_session(LISTING_PROVIDER)
        if session is None:
            logger.warning("no active listing session for contact fetch")
            return None
        return await self._request_phone(session, candidate)

    async def _request_phone(self, session: ApiSession, candidate: ContactCandidate) -> str | None:
        label = f"listing {candidate.id}" + (f" ({candidate.title})" if candidate.title else "")
        if not session.token:
            logger.warning("listing session %s has no token", session.label)
            return None
        try:
            payload = await self.client.get_contact(
                candidate.external_id,
                contact_uuid=candidate.contact_uuid or "",
                auth_token=session.token,
            )
        except ListingApiError as exc:
            if exc.unauthorized:
                await self.repository.deactivate_session(session.id, f"http_{exc.status}")
                logger.warning("contact fetch unauthorized for %s; deactivated session %s", label, session.label)
                return None
            if exc.rate_limited:
                logger.warning("contact fetch rate limited for %s", label)
                return None
            logger.warning("contact fetch failed for %s status=%s", label, exc.status)
            await self.repository.touch_listing(candidate.id)
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("error fetching contact for %s: %s", label, snippet(str(exc), 300))
            await self.repository.touch_listing(candidate.id)
            return None

        phone = extract_phone(payload)
        if phone is None:
            logger.warning("no phone number found for %s", label)
            await self.repository.touch_listing(candidate.id)
            return None

        await self.repository.store_listing_phone(candidate.id, phone)
        logger.debug("stored phone number for %s", label)
        return phone
