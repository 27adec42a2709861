from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from harvester.core.text import PLACEHOLDER_PHONE
from harvester.schemas.listings import ListingRecord
from harvester.services.repository import (
    DIRECTORY_SCAN_WINDOW,
    AnalysisJob,
    ApiSession,
    CategoryScope,
    ContactCandidate,
    DirectoryCursor,
    DirectoryOutcome,
    DirectoryRecord,
    ListingRef,
    LocationScope,
    MediaAsset,
    QueueEntry,
    QueueItem,
    ReadJob,
    RepositoryConflictError,
    RepositoryNotFoundError,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class QueueRow:
    id: str
    source: str
    external_id: str
    category_id: str | None
    category_slug: str
    location_scope: str
    province_id: int | None
    city_id: int | None
    payload: dict[str, Any] | None
    status: str = "PENDING"
    fetch_attempts: int = 0
    requested_at: datetime = field(default_factory=_now)
    last_fetched_at: datetime | None = None
    updated_at: datetime = field(default_factory=_now)


@dataclass(slots=True)
class JobRow:
    id: str
    read_queue_id: str
    source: str
    external_id: str
    payload: dict[str, Any]
    status: str = "PENDING"
    attempts: int = 0
    last_error: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)


@dataclass(slots=True)
class ListingRow:
    id: str
    read_queue_id: str
    source: str
    external_id: str
    category_slug: str
    title: str | None = None
    contact_uuid: str | None = None
    published_at: datetime | None = None
    phone: str | None = None
    owner_name: str | None = None
    has_media: bool = False
    parsed: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass(slots=True)
class MediaRow:
    id: str
    listing_id: str
    position: int
    url: str
    thumbnail_url: str | None = None
    alt: str | None = None
    local_url: str | None = None
    local_thumbnail_url: str | None = None
    updated_at: datetime = field(default_factory=_now)


@dataclass(slots=True)
class SessionRow:
    id: str
    provider: str
    label: str
    token: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    active: bool = True
    locked: bool = False
    last_error: str | None = None
    updated_at: datetime = field(default_factory=_now)


@dataclass(slots=True)
class CursorRow:
    next_fetch_id: int
    backoff_until: datetime | None = None
    last_status: int | None = None
    last_error: str | None = None
    updated_at: datetime = field(default_factory=_now)


@dataclass(slots=True)
class RecordRow:
    id: str
    arka_id: int
    outcome: str
    external_id: str | None = None
    link: str | None = None
    phone: str | None = None
    owner_name: str | None = None
    payload: Any = None
    fetched_at: datetime = field(default_factory=_now)
    transfer_status: str = "NOT_TRANSFERRED"
    transfer_attempts: int = 0
    transfer_locked_until: datetime | None = None
    next_transfer_attempt_at: datetime | None = None
    transfer_last_error: str | None = None
    transferred_at: datetime | None = None


class InMemoryRepository:
    """Process-local stand-in for ``PostgresRepository``.

    Every claim runs under one ``asyncio.Lock`` so concurrent callers see the
    same at-most-once claim behavior the SQL conditional updates provide.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.categories: list[CategoryScope] = []
        self.locations: list[LocationScope] = []
        self.queue: dict[str, QueueRow] = {}
        self.jobs: dict[str, JobRow] = {}
        self.listings: dict[str, ListingRow] = {}
        self.media: dict[str, MediaRow] = {}
        self.attributes: dict[str, list[dict[str, Any]]] = {}
        self.sessions: dict[str, SessionRow] = {}
        self.cursor: CursorRow | None = None
        self.claims: dict[int, datetime] = {}
        self.records: dict[int, RecordRow] = {}

    async def close(self) -> None:
        return None

    # -- fixtures ------------------------------------------------------------

    def add_session(self, provider: str, *, token: str | None = None, headers: dict[str, str] | None = None) -> str:
        session_id = str(uuid4())
        self.sessions[session_id] = SessionRow(
            id=session_id,
            provider=provider,
            label=f"{provider}-session",
            token=token,
            headers=dict(headers or {}),
        )
        return session_id

    def add_listing(
        self,
        external_id: str,
        *,
        phone: str | None = None,
        contact_uuid: str | None = None,
        title: str | None = None,
        created_at: datetime | None = None,
    ) -> str:
        listing_id = str(uuid4())
        created = created_at or _now()
        self.listings[listing_id] = ListingRow(
            id=listing_id,
            read_queue_id=str(uuid4()),
            source="DIVAR",
            external_id=external_id,
            category_slug="apartment-sell",
            title=title,
            contact_uuid=contact_uuid,
            phone=phone,
            created_at=created,
            updated_at=created,
        )
        return listing_id

    def add_media(self, listing_id: str, url: str, thumbnail_url: str | None = None) -> str:
        media_id = str(uuid4())
        position = sum(1 for row in self.media.values() if row.listing_id == listing_id)
        self.media[media_id] = MediaRow(
            id=media_id,
            listing_id=listing_id,
            position=position,
            url=url,
            thumbnail_url=thumbnail_url,
        )
        return media_id

    def add_record(
        self,
        arka_id: int,
        *,
        external_id: str | None,
        phone: str | None,
        owner_name: str | None = None,
        fetched_at: datetime | None = None,
    ) -> RecordRow:
        row = RecordRow(
            id=str(uuid4()),
            arka_id=arka_id,
            outcome="stored",
            external_id=external_id,
            phone=phone,
            owner_name=owner_name,
            fetched_at=fetched_at or _now(),
        )
        self.records[arka_id] = row
        return row

    def listing_by_external_id(self, external_id: str) -> ListingRow | None:
        return next((row for row in self.listings.values() if row.external_id == external_id), None)

    # -- scopes --------------------------------------------------------------

    async def list_category_scopes(self) -> list[CategoryScope]:
        return list(self.categories)

    async def list_location_scopes(self) -> list[LocationScope]:
        return list(self.locations)

    # -- read queue ----------------------------------------------------------

    async def find_queue_entries(self, source: str, external_ids: list[str]) -> list[QueueEntry]:
        wanted = set(external_ids)
        entries: list[QueueEntry] = []
        for row in self.queue.values():
            if row.source != source or row.external_id not in wanted:
                continue
            listing = next((item for item in self.listings.values() if item.read_queue_id == row.id), None)
            entries.append(
                QueueEntry(
                    id=row.id,
                    external_id=row.external_id,
                    status=row.status,
                    last_fetched_at=row.last_fetched_at,
                    published_at=listing.published_at if listing else None,
                    payload=row.payload,
                )
            )
        return entries

    async def insert_queue_entries(self, source: str, items: list[QueueItem]) -> int:
        inserted = 0
        async with self._lock:
            known = {(row.source, row.external_id) for row in self.queue.values()}
            for item in items:
                if (source, item.external_id) in known:
                    continue
                queue_id = str(uuid4())
                self.queue[queue_id] = QueueRow(
                    id=queue_id,
                    source=source,
                    external_id=item.external_id,
                    category_id=item.category_id,
                    category_slug=item.category_slug,
                    location_scope=item.location_scope,
                    province_id=item.province_id,
                    city_id=item.city_id,
                    payload=item.payload,
                )
                known.add((source, item.external_id))
                inserted += 1
        return inserted

    async def reactivate_queue_entries(
        self,
        entries: list[tuple[QueueEntry, QueueItem | None]],
        *,
        now: datetime,
    ) -> int:
        reactivated = 0
        async with self._lock:
            for entry, latest in entries:
                row = self.queue.get(entry.id)
                if row is None or row.status == "PROCESSING":
                    continue
                row.status = "PENDING"
                row.requested_at = now
                row.fetch_attempts = 0
                row.updated_at = now
                if latest is not None and latest.payload is not None:
                    row.payload = latest.payload
                reactivated += 1
        return reactivated

    async def release_stuck_read_jobs(self, older_than_seconds: float) -> int:
        threshold = _now() - timedelta(seconds=older_than_seconds)
        released = 0
        async with self._lock:
            for row in self.queue.values():
                if row.status == "PROCESSING" and row.updated_at < threshold:
                    row.status = "PENDING"
                    row.fetch_attempts = 0
                    row.requested_at = _now()
                    row.updated_at = _now()
                    released += 1
        return released

    async def reserve_read_batch(self, limit: int) -> list[ReadJob]:
        async with self._lock:
            pending = sorted(
                (row for row in self.queue.values() if row.status == "PENDING"),
                key=lambda row: row.requested_at,
            )[: max(1, limit)]
            for row in pending:
                row.status = "PROCESSING"
                row.updated_at = _now()
            return [
                ReadJob(
                    id=row.id,
                    source=row.source,
                    external_id=row.external_id,
                    fetch_attempts=row.fetch_attempts,
                    requested_at=row.requested_at,
                )
                for row in pending
            ]

    async def complete_read_job(self, job: ReadJob, payload: dict[str, Any]) -> None:
        async with self._lock:
            row = self.queue[job.id]
            row.status = "COMPLETED"
            row.last_fetched_at = _now()
            row.updated_at = _now()
            existing = next((item for item in self.jobs.values() if item.read_queue_id == job.id), None)
            if existing is None:
                job_id = str(uuid4())
                self.jobs[job_id] = JobRow(
                    id=job_id,
                    read_queue_id=job.id,
                    source=job.source,
                    external_id=job.external_id,
                    payload=copy.deepcopy(payload),
                )
            else:
                existing.payload = copy.deepcopy(payload)
                existing.status = "PENDING"
                existing.attempts = 0
                existing.last_error = None
                existing.claimed_at = None

    async def fail_read_job(self, job: ReadJob, max_attempts: int) -> tuple[str, int]:
        async with self._lock:
            row = self.queue.get(job.id)
            if row is None:
                raise RepositoryNotFoundError(f"queue entry {job.id} not found")
            row.fetch_attempts += 1
            row.status = "FAILED" if row.fetch_attempts >= max_attempts else "PENDING"
            row.last_fetched_at = _now()
            row.updated_at = _now()
            return row.status, row.fetch_attempts

    # -- sessions ------------------------------------------------------------

    async def get_active_session(self, provider: str) -> ApiSession | None:
        candidates = sorted(
            (row for row in self.sessions.values() if row.provider == provider and row.active and not row.locked),
            key=lambda row: row.updated_at,
            reverse=True,
        )
        if not candidates:
            return None
        row = candidates[0]
        return ApiSession(id=row.id, provider=row.provider, label=row.label, token=row.token, headers=dict(row.headers))

    async def deactivate_session(self, session_id: str, reason: str) -> None:
        row = self.sessions.get(session_id)
        if row is not None:
            row.active = False
            row.last_error = reason
            row.updated_at = _now()

    # -- listings ------------------------------------------------------------

    async def next_contact_candidate(self, created_after: datetime) -> ContactCandidate | None:
        candidates = sorted(
            (
                row
                for row in self.listings.values()
                if row.phone is None and row.contact_uuid and row.created_at >= created_after
            ),
            key=lambda row: row.updated_at,
        )
        if not candidates:
            return None
        row = candidates[0]
        return ContactCandidate(id=row.id, external_id=row.external_id, contact_uuid=row.contact_uuid, title=row.title)

    async def get_contact_candidate(self, listing_id: str) -> ContactCandidate | None:
        row = self.listings.get(listing_id)
        if row is None:
            return None
        return ContactCandidate(id=row.id, external_id=row.external_id, contact_uuid=row.contact_uuid, title=row.title)

    async def store_listing_phone(self, listing_id: str, phone: str) -> None:
        row = self.listings[listing_id]
        row.phone = phone
        row.updated_at = _now()

    async def touch_listing(self, listing_id: str) -> None:
        self.listings[listing_id].updated_at = _now()

    async def find_listing_by_external_id(self, external_id: str) -> ListingRef | None:
        row = self.listing_by_external_id(external_id)
        if row is None:
            return None
        return ListingRef(id=row.id, external_id=row.external_id, phone=row.phone)

    # -- media ---------------------------------------------------------------

    async def list_unsynced_media(self, host_suffix: str, limit: int) -> list[MediaAsset]:
        def pending(row: MediaRow) -> bool:
            if row.local_url is None and host_suffix in row.url:
                return True
            return row.local_thumbnail_url is None and bool(row.thumbnail_url) and host_suffix in row.thumbnail_url

        rows = sorted((row for row in self.media.values() if pending(row)), key=lambda row: row.updated_at)
        return [
            MediaAsset(
                id=row.id,
                listing_id=row.listing_id,
                url=row.url,
                thumbnail_url=row.thumbnail_url,
                local_url=row.local_url,
                local_thumbnail_url=row.local_thumbnail_url,
            )
            for row in rows[: max(1, limit)]
        ]

    async def update_media_local_urls(
        self,
        media_id: str,
        *,
        local_url: str | None = None,
        local_thumbnail_url: str | None = None,
    ) -> None:
        row = self.media[media_id]
        if local_url is not None:
            row.local_url = local_url
        if local_thumbnail_url is not None:
            row.local_thumbnail_url = local_thumbnail_url
        row.updated_at = _now()

    async def refresh_listing_media_flag(self, listing_id: str) -> bool:
        listing = self.listings[listing_id]
        listing.has_media = any(
            row.listing_id == listing_id and row.local_url is not None for row in self.media.values()
        )
        return listing.has_media

    # -- analysis jobs -------------------------------------------------------

    async def release_stuck_analysis_jobs(self, older_than_seconds: float, max_attempts: int) -> int:
        threshold = _now() - timedelta(seconds=older_than_seconds)
        released = 0
        async with self._lock:
            for row in self.jobs.values():
                if row.status != "PROCESSING" or row.claimed_at is None or row.claimed_at >= threshold:
                    continue
                row.status = "FAILED" if row.attempts >= max_attempts else "PENDING"
                row.last_error = row.last_error or "processing_timeout"
                row.claimed_at = None
                released += 1
        return released

    async def claim_analysis_jobs(self, limit: int) -> list[AnalysisJob]:
        async with self._lock:
            pending = sorted(
                (row for row in self.jobs.values() if row.status == "PENDING"),
                key=lambda row: row.created_at,
            )[: max(1, limit)]
            claimed: list[AnalysisJob] = []
            for row in pending:
                row.status = "PROCESSING"
                row.attempts += 1
                row.claimed_at = _now()
                queue_row = self.queue.get(row.read_queue_id)
                claimed.append(
                    AnalysisJob(
                        id=row.id,
                        read_queue_id=row.read_queue_id,
                        source=row.source,
                        external_id=row.external_id,
                        payload=copy.deepcopy(row.payload),
                        attempts=row.attempts,
                        created_at=row.created_at,
                        category_id=queue_row.category_id if queue_row else None,
                        category_slug=queue_row.category_slug if queue_row else None,
                        province_id=queue_row.province_id if queue_row else None,
                        city_id=queue_row.city_id if queue_row else None,
                        last_fetched_at=queue_row.last_fetched_at if queue_row else None,
                        requested_at=queue_row.requested_at if queue_row else None,
                    )
                )
            return claimed

    async def save_analyzed_listing(self, job_id: str, record: ListingRecord) -> str:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.status != "PROCESSING":
                raise RepositoryConflictError(f"analysis job {job_id} is no longer processing")
            parsed = record.parsed
            listing = next(
                (row for row in self.listings.values() if row.read_queue_id == record.read_queue_id),
                None,
            )
            if listing is None:
                listing = ListingRow(
                    id=str(uuid4()),
                    read_queue_id=record.read_queue_id,
                    source=record.source,
                    external_id=record.external_id,
                    category_slug=record.category_slug,
                )
                self.listings[listing.id] = listing
            listing.category_slug = record.category_slug
            listing.title = parsed.title
            listing.contact_uuid = parsed.contact_uuid
            listing.published_at = record.published_at
            listing.parsed = parsed.model_dump(mode="json", exclude={"medias", "attributes"})
            listing.payload = copy.deepcopy(record.payload)
            listing.updated_at = _now()

            previous = {
                row.url: (row.local_url, row.local_thumbnail_url)
                for row in self.media.values()
                if row.listing_id == listing.id
            }
            self.media = {key: row for key, row in self.media.items() if row.listing_id != listing.id}
            for media in parsed.medias:
                local_url, local_thumbnail_url = previous.get(media.url, (None, None))
                media_id = str(uuid4())
                self.media[media_id] = MediaRow(
                    id=media_id,
                    listing_id=listing.id,
                    position=media.position,
                    url=media.url,
                    thumbnail_url=media.thumbnail_url,
                    alt=media.alt,
                    local_url=local_url,
                    local_thumbnail_url=local_thumbnail_url,
                )
            self.attributes[listing.id] = [attribute.model_dump() for attribute in parsed.attributes]
            listing.has_media = any(
                row.listing_id == listing.id and row.local_url is not None for row in self.media.values()
            )
            job.status = "COMPLETED"
            job.last_error = None
            return listing.id

    async def fail_analysis_job(self, job_id: str, error: str) -> None:
        async with self._lock:
            row = self.jobs.get(job_id)
            if row is not None and row.status == "PROCESSING":
                row.status = "FAILED"
                row.last_error = error[:2000]

    # -- directory cursor ----------------------------------------------------

    async def bootstrap_directory_cursor(self, start_id: int) -> DirectoryCursor:
        async with self._lock:
            if self.cursor is None:
                self.cursor = CursorRow(next_fetch_id=start_id)
            elif self.cursor.next_fetch_id < start_id:
                self.cursor.next_fetch_id = start_id
                self.cursor.updated_at = _now()
            return self._cursor_view()

    async def get_directory_cursor(self) -> DirectoryCursor | None:
        return self._cursor_view() if self.cursor is not None else None

    async def claim_directory_id(self, *, upper_bound: int | None, claim_seconds: float, now: datetime) -> int | None:
        async with self._lock:
            if self.cursor is None:
                raise RepositoryNotFoundError("directory cursor is not initialized")
            start = self.cursor.next_fetch_id
            last_id = start + DIRECTORY_SCAN_WINDOW
            if upper_bound is not None:
                last_id = min(last_id, upper_bound - 1)
            for arka_id in range(start, last_id + 1):
                if arka_id in self.records:
                    continue
                claimed_until = self.claims.get(arka_id)
                if claimed_until is not None and claimed_until > now:
                    continue
                self.claims[arka_id] = now + timedelta(seconds=claim_seconds)
                return arka_id
            return None

    async def release_directory_claim(
        self,
        arka_id: int | None,
        *,
        status: int | None,
        error: str | None,
        backoff_until: datetime | None = None,
    ) -> None:
        async with self._lock:
            if arka_id is not None:
                self.claims.pop(arka_id, None)
            if self.cursor is None:
                return
            self.cursor.last_status = status
            self.cursor.last_error = error
            if backoff_until is not None:
                current = self.cursor.backoff_until
                self.cursor.backoff_until = backoff_until if current is None else max(current, backoff_until)
            self.cursor.updated_at = _now()

    async def record_directory_result(self, result: DirectoryOutcome, *, advance: bool) -> DirectoryCursor:
        async with self._lock:
            existing = self.records.get(result.arka_id)
            if existing is None:
                self.records[result.arka_id] = RecordRow(
                    id=str(uuid4()),
                    arka_id=result.arka_id,
                    outcome=result.outcome,
                    external_id=result.external_id,
                    link=result.link,
                    phone=result.phone,
                    owner_name=result.owner_name,
                    payload=copy.deepcopy(result.payload),
                )
            else:
                existing.outcome = result.outcome
                existing.external_id = result.external_id or existing.external_id
                existing.link = result.link or existing.link
                existing.phone = result.phone or existing.phone
                existing.owner_name = result.owner_name or existing.owner_name
                if result.payload is not None:
                    existing.payload = copy.deepcopy(result.payload)
                existing.fetched_at = _now()
                existing.transfer_status = "NOT_TRANSFERRED"
                existing.transfer_attempts = 0
                existing.transfer_last_error = None
                existing.next_transfer_attempt_at = None
            self.claims.pop(result.arka_id, None)
            if self.cursor is None:
                raise RepositoryNotFoundError("directory cursor is not initialized")
            if advance:
                watermark = self.cursor.next_fetch_id
                while watermark in self.records:
                    watermark += 1
                self.cursor.next_fetch_id = max(self.cursor.next_fetch_id, watermark)
                self.cursor.last_status = result.status
                self.cursor.last_error = None
                self.cursor.updated_at = _now()
            return self._cursor_view()

    async def count_directory_records(self) -> int:
        return len(self.records)

    # -- phone transfer ------------------------------------------------------

    async def bulk_transfer_phones(self, *, fetched_after: datetime, limit: int) -> int:
        async with self._lock:
            newest: dict[str, RecordRow] = {}
            for row in self.records.values():
                if (
                    row.outcome != "stored"
                    or not row.external_id
                    or not row.phone
                    or row.phone == PLACEHOLDER_PHONE
                    or row.transfer_status == "TRANSFERRED"
                    or row.fetched_at < fetched_after
                ):
                    continue
                listing = self.listing_by_external_id(row.external_id)
                if listing is None or listing.phone is not None:
                    continue
                current = newest.get(row.external_id)
                if current is None or row.fetched_at > current.fetched_at:
                    newest[row.external_id] = row

            transferred = 0
            for external_id in sorted(newest)[: max(1, limit)]:
                row = newest[external_id]
                listing = self.listing_by_external_id(external_id)
                if listing is None or listing.phone is not None:
                    continue
                listing.phone = row.phone
                listing.owner_name = row.owner_name or listing.owner_name
                listing.updated_at = _now()
                for sibling in self.records.values():
                    if (
                        sibling.external_id != external_id
                        or sibling.outcome != "stored"
                        or sibling.transfer_status == "TRANSFERRED"
                    ):
                        continue
                    sibling.transfer_status = "TRANSFERRED"
                    sibling.transferred_at = _now()
                    sibling.transfer_locked_until = None
                    sibling.transfer_last_error = None
                    sibling.next_transfer_attempt_at = None
                transferred += 1
            return transferred

    async def claim_transfer_candidate(
        self,
        *,
        fetched_after: datetime,
        lock_seconds: int,
        now: datetime,
    ) -> DirectoryRecord | None:
        async with self._lock:

            def eligible(row: RecordRow) -> bool:
                if row.outcome != "stored" or row.fetched_at < fetched_after:
                    return False
                lock_free = row.transfer_locked_until is None or row.transfer_locked_until < now
                if row.transfer_status == "IN_PROGRESS":
                    if row.transfer_locked_until is None or row.transfer_locked_until >= now:
                        return False
                elif row.transfer_status != "NOT_TRANSFERRED":
                    return False
                due = row.next_transfer_attempt_at is None or row.next_transfer_attempt_at <= now
                return lock_free and due

            candidates = sorted((row for row in self.records.values() if eligible(row)), key=lambda row: row.fetched_at)
            if not candidates:
                return None
            row = candidates[0]
            row.transfer_status = "IN_PROGRESS"
            row.transfer_locked_until = now + timedelta(seconds=lock_seconds)
            row.transfer_attempts += 1
            row.transfer_last_error = None
            row.next_transfer_attempt_at = None
            return DirectoryRecord(
                id=row.id,
                arka_id=row.arka_id,
                outcome=row.outcome,
                external_id=row.external_id,
                phone=row.phone,
                owner_name=row.owner_name,
                fetched_at=row.fetched_at,
                transfer_status=row.transfer_status,
                transfer_attempts=row.transfer_attempts,
            )

    async def apply_transfer(
        self,
        record: DirectoryRecord,
        *,
        listing_id: str,
        phone: str | None,
        now: datetime,
    ) -> None:
        async with self._lock:
            listing = self.listings[listing_id]
            if phone is not None:
                listing.phone = phone
            if record.owner_name is not None:
                listing.owner_name = record.owner_name
            listing.updated_at = now
            row = self._record_by_id(record.id)
            row.transfer_status = "TRANSFERRED"
            row.transferred_at = now
            row.transfer_locked_until = None
            row.transfer_last_error = None

    async def defer_transfer(self, record_id: str, *, reason: str, until: datetime) -> None:
        async with self._lock:
            row = self._record_by_id(record_id)
            row.transfer_status = "NOT_TRANSFERRED"
            row.transfer_locked_until = None
            row.transfer_last_error = reason
            row.next_transfer_attempt_at = until

    # -- internals -----------------------------------------------------------

    def _record_by_id(self, record_id: str) -> RecordRow:
        for row in self.records.values():
            if row.id == record_id:
                return row
        raise RepositoryNotFoundError(f"directory record {record_id} not found")

    def _cursor_view(self) -> DirectoryCursor:
        assert self.cursor is not None
        return DirectoryCursor(
            next_fetch_id=self.cursor.next_fetch_id,
            backoff_until=self.cursor.backoff_until,
            updated_at=self.cursor.updated_at,
        )
