from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from harvester.core.config import get_settings
from harvester.core.text import PLACEHOLDER_PHONE
from harvester.schemas.listings import ListingRecord

CURSOR_ID = "singleton"
DIRECTORY_SCAN_WINDOW = 10_000


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


@dataclass(slots=True)
class CategoryScope:
    id: str
    slug: str
    name: str
    path: str


@dataclass(slots=True)
class LocationScope:
    scope: str
    api_id: int
    slug: str
    name: str
    province_id: int | None
    city_id: int | None

    @property
    def label(self) -> str:
        return f"{self.scope}:{self.slug}"


@dataclass(slots=True)
class QueueItem:
    external_id: str
    category_id: str | None
    category_slug: str
    location_scope: str
    province_id: int | None
    city_id: int | None
    payload: dict[str, Any] | None = None


@dataclass(slots=True)
class QueueEntry:
    id: str
    external_id: str
    status: str
    last_fetched_at: datetime | None
    published_at: datetime | None
    payload: dict[str, Any] | None = None


@dataclass(slots=True)
class ReadJob:
    id: str
    source: str
    external_id: str
    fetch_attempts: int
    requested_at: datetime


@dataclass(slots=True)
class ApiSession:
    id: str
    provider: str
    label: str
    token: str | None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ContactCandidate:
    id: str
    external_id: str
    contact_uuid: str | None
    title: str | None


@dataclass(slots=True)
class MediaAsset:
    id: str
    listing_id: str
    url: str
    thumbnail_url: str | None
    local_url: str | None
    local_thumbnail_url: str | None


@dataclass(slots=True)
class AnalysisJob:
    id: str
    read_queue_id: str
    source: str
    external_id: str
    payload: dict[str, Any]
    attempts: int
    created_at: datetime
    category_id: str | None = None
    category_slug: str | None = None
    province_id: int | None = None
    city_id: int | None = None
    last_fetched_at: datetime | None = None
    requested_at: datetime | None = None


@dataclass(slots=True)
class DirectoryCursor:
    next_fetch_id: int
    backoff_until: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class DirectoryOutcome:
    arka_id: int
    outcome: str
    status: int
    external_id: str | None = None
    link: str | None = None
    phone: str | None = None
    owner_name: str | None = None
    payload: Any = None


@dataclass(slots=True)
class DirectoryRecord:
    id: str
    arka_id: int
    outcome: str
    external_id: str | None
    phone: str | None
    owner_name: str | None
    fetched_at: datetime
    transfer_status: str = "NOT_TRANSFERRED"
    transfer_attempts: int = 0


@dataclass(slots=True)
class ListingRef:
    id: str
    external_id: str
    phone: str | None


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # -- scopes --------------------------------------------------------------

    async def list_category_scopes(self) -> list[CategoryScope]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, slug, name, path
            from categories
            where allow_posting and is_active
            order by depth asc, position asc, display_path asc
            """
        )
        return [CategoryScope(id=row["id"], slug=row["slug"], name=row["name"], path=row["path"]) for row in rows]

    async def list_location_scopes(self) -> list[LocationScope]:
        pool = await self._get_pool()
        provinces = await pool.fetch(
            "select id, slug, name from provinces where allow_posting order by name asc"
        )
        cities = await pool.fetch(
            """
            select c.id, c.slug, c.name, c.province_id
            from cities c
            where c.allow_posting
              and not exists (
                select 1 from provinces p where p.id = c.province_id and p.allow_posting
              )
            order by c.name asc
            """
        )
        scopes = [
            LocationScope(
                scope="province",
                api_id=row["id"],
                slug=row["slug"],
                name=row["name"],
                province_id=row["id"],
                city_id=None,
            )
            for row in provinces
        ]
        scopes.extend(
            LocationScope(
                scope="city",
                api_id=row["id"],
                slug=row["slug"],
                name=row["name"],
                province_id=row["province_id"],
                city_id=row["id"],
            )
            for row in cities
        )
        return scopes

    # -- read queue ----------------------------------------------------------

    async def find_queue_entries(self, source: str, external_ids: list[str]) -> list[QueueEntry]:
        if not external_ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              q.id::text as id,
              q.external_id,
              q.status,
              q.last_fetched_at,
              q.payload,
              l.published_at
            from read_queue q
            left join listings l on l.read_queue_id = q.id
            where q.source = $1 and q.external_id = any($2::text[])
            """,
            source,
            external_ids,
        )
        return [
            QueueEntry(
                id=row["id"],
                external_id=row["external_id"],
                status=row["status"],
                last_fetched_at=row["last_fetched_at"],
                published_at=row["published_at"],
                payload=self._coerce_json_dict(row["payload"]) or None,
            )
            for row in rows
        ]

    async def insert_queue_entries(self, source: str, items: list[QueueItem]) -> int:
        if not items:
            return 0
        pool = await self._get_pool()
        inserted = 0
        async with pool.acquire() as conn:
            async with conn.transaction():
                for item in items:
                    queue_id = await conn.fetchval(
                        """
                        insert into read_queue (
                          source, external_id, category_id, category_slug,
                          location_scope, province_id, city_id, payload
                        )
                        values ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
                        on conflict (source, external_id) do nothing
                        returning id
                        """,
                        source,
                        item.external_id,
                        item.category_id,
                        item.category_slug,
                        item.location_scope,
                        item.province_id,
                        item.city_id,
                        json.dumps(item.payload) if item.payload is not None else None,
                    )
                    if queue_id is not None:
                        inserted += 1
        return inserted

    async def reactivate_queue_entries(
        self,
        entries: list[tuple[QueueEntry, QueueItem | None]],
        *,
        now: datetime,
    ) -> int:
        if not entries:
            return 0
        pool = await self._get_pool()
        reactivated = 0
        async with pool.acquire() as conn:
            async with conn.transaction():
                for entry, latest in entries:
                    payload = latest.payload if latest and latest.payload is not None else entry.payload
                    status = await conn.execute(
                        """
                        update read_queue
                        set
                          status = 'PENDING',
                          requested_at = $2,
                          fetch_attempts = 0,
                          category_id = coalesce($3, category_id),
                          category_slug = coalesce($4, category_slug),
                          location_scope = coalesce($5, location_scope),
                          province_id = coalesce($6, province_id),
                          city_id = coalesce($7, city_id),
                          payload = coalesce($8::jsonb, payload),
                          updated_at = $2
                        where id = $1::uuid and status <> 'PROCESSING'
                        """,
                        entry.id,
                        now,
                        latest.category_id if latest else None,
                        latest.category_slug if latest else None,
                        latest.location_scope if latest else None,
                        latest.province_id if latest else None,
                        latest.city_id if latest else None,
                        json.dumps(payload) if payload is not None else None,
                    )
                    if status.endswith(" 1"):
                        reactivated += 1
        return reactivated

    async def release_stuck_read_jobs(self, older_than_seconds: float) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update read_queue
            set status = 'PENDING', requested_at = now(), fetch_attempts = 0, updated_at = now()
            where status = 'PROCESSING'
              and updated_at < now() - ($1::float8 * interval '1 second')
            returning id
            """,
            older_than_seconds,
        )
        return len(rows)

    async def reserve_read_batch(self, limit: int) -> list[ReadJob]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with picked as (
              select id
              from read_queue
              where status = 'PENDING'
              order by requested_at asc
              limit $1
              for update skip locked
            )
            update read_queue q
            set status = 'PROCESSING', updated_at = now()
            from picked p
            where q.id = p.id
            returning q.id::text as id, q.source, q.external_id, q.fetch_attempts, q.requested_at
            """,
            max(1, limit),
        )
        jobs = [
            ReadJob(
                id=row["id"],
                source=row["source"],
                external_id=row["external_id"],
                fetch_attempts=row["fetch_attempts"],
                requested_at=row["requested_at"],
            )
            for row in rows
        ]
        return sorted(jobs, key=lambda job: job.requested_at)

    async def complete_read_job(self, job: ReadJob, payload: dict[str, Any]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    update read_queue
                    set status = 'COMPLETED', last_fetched_at = now(), updated_at = now()
                    where id = $1::uuid
                    """,
                    job.id,
                )
                await conn.execute(
                    """
                    insert into analysis_jobs (read_queue_id, source, external_id, payload, status)
                    values ($1::uuid, $2, $3, $4::jsonb, 'PENDING')
                    on conflict (read_queue_id) do update
                    set payload = excluded.payload,
                        status = 'PENDING',
                        attempts = 0,
                        last_error = null,
                        claimed_at = null,
                        updated_at = now()
                    """,
                    job.id,
                    job.source,
                    job.external_id,
                    json.dumps(payload),
                )

    async def fail_read_job(self, job: ReadJob, max_attempts: int) -> tuple[str, int]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update read_queue
            set
              fetch_attempts = fetch_attempts + 1,
              status = case when fetch_attempts + 1 >= $2 then 'FAILED' else 'PENDING' end,
              last_fetched_at = now(),
              updated_at = now()
            where id = $1::uuid
            returning status, fetch_attempts
            """,
            job.id,
            max_attempts,
        )
        if row is None:
            raise RepositoryNotFoundError(f"queue entry {job.id} not found")
        return row["status"], row["fetch_attempts"]

    # -- sessions ------------------------------------------------------------

    async def get_active_session(self, provider: str) -> ApiSession | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id::text as id, provider, label, token, headers
            from api_sessions
            where provider = $1 and active and not locked
            order by updated_at desc
            limit 1
            """,
            provider,
        )
        if row is None:
            return None
        headers = self._coerce_json_dict(row["headers"])
        return ApiSession(
            id=row["id"],
            provider=row["provider"],
            label=row["label"],
            token=row["token"],
            headers={str(key): str(value) for key, value in headers.items()},
        )

    async def deactivate_session(self, session_id: str, reason: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update api_sessions
            set active = false, last_error = $2, last_error_at = now(), updated_at = now()
            where id = $1::uuid
            """,
            session_id,
            reason,
        )

    # -- listings ------------------------------------------------------------

    async def next_contact_candidate(self, created_after: datetime) -> ContactCandidate | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id::text as id, external_id, contact_uuid, title
            from listings
            where phone is null and contact_uuid is not null and created_at >= $1
            order by updated_at asc
            limit 1
            """,
            created_after,
        )
        return self._contact_row(row)

    async def get_contact_candidate(self, listing_id: str) -> ContactCandidate | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                "select id::text as id, external_id, contact_uuid, title from listings where id = $1::uuid",
                listing_id,
            )
        except (asyncpg.DataError, asyncpg.exceptions.InvalidTextRepresentationError):
            return None
        return self._contact_row(row)

    async def store_listing_phone(self, listing_id: str, phone: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "update listings set phone = $2, updated_at = now() where id = $1::uuid",
            listing_id,
            phone,
        )

    async def touch_listing(self, listing_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute("update listings set updated_at = now() where id = $1::uuid", listing_id)

    async def find_listing_by_external_id(self, external_id: str) -> ListingRef | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select id::text as id, external_id, phone from listings where external_id = $1",
            external_id,
        )
        if row is None:
            return None
        return ListingRef(id=row["id"], external_id=row["external_id"], phone=row["phone"])

    # -- media ---------------------------------------------------------------

    async def list_unsynced_media(self, host_suffix: str, limit: int) -> list[MediaAsset]:
        pool = await self._get_pool()
        pattern = f"%{host_suffix}%"
        rows = await pool.fetch(
            """
            select
              id::text as id,
              listing_id::text as listing_id,
              url,
              thumbnail_url,
              local_url,
              local_thumbnail_url
            from listing_media
            where (local_url is null and url like $1)
               or (local_thumbnail_url is null and thumbnail_url like $1)
            order by updated_at asc
            limit $2
            """,
            pattern,
            max(1, limit),
        )
        return [
            MediaAsset(
                id=row["id"],
                listing_id=row["listing_id"],
                url=row["url"],
                thumbnail_url=row["thumbnail_url"],
                local_url=row["local_url"],
                local_thumbnail_url=row["local_thumbnail_url"],
            )
            for row in rows
        ]

    async def update_media_local_urls(
        self,
        media_id: str,
        *,
        local_url: str | None = None,
        local_thumbnail_url: str | None = None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update listing_media
            set
              local_url = coalesce($2, local_url),
              local_thumbnail_url = coalesce($3, local_thumbnail_url),
              updated_at = now()
            where id = $1::uuid
            """,
            media_id,
            local_url,
            local_thumbnail_url,
        )

    async def refresh_listing_media_flag(self, listing_id: str) -> bool:
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            update listings l
            set has_media = exists (
              select 1 from listing_media m where m.listing_id = l.id and m.local_url is not null
            )
            where l.id = $1::uuid
            returning l.has_media
            """,
            listing_id,
        )
        return bool(value)

    # -- analysis jobs -------------------------------------------------------

    async def release_stuck_analysis_jobs(self, older_than_seconds: float, max_attempts: int) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update analysis_jobs
            set
              status = case when attempts >= $2 then 'FAILED' else 'PENDING' end,
              last_error = coalesce(last_error, 'processing_timeout'),
              claimed_at = null,
              updated_at = now()
            where status = 'PROCESSING'
              and claimed_at < now() - ($1::float8 * interval '1 second')
            returning id
            """,
            older_than_seconds,
            max_attempts,
        )
        return len(rows)

    async def claim_analysis_jobs(self, limit: int) -> list[AnalysisJob]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with picked as (
              select id
              from analysis_jobs
              where status = 'PENDING'
              order by created_at asc
              limit $1
              for update skip locked
            )
            update analysis_jobs j
            set status = 'PROCESSING', attempts = j.attempts + 1, claimed_at = now(), updated_at = now()
            from picked p, read_queue q
            where j.id = p.id and q.id = j.read_queue_id
            returning
              j.id::text as id,
              j.read_queue_id::text as read_queue_id,
              j.source,
              j.external_id,
              j.payload,
              j.attempts,
              j.created_at,
              q.category_id,
              q.category_slug,
              q.province_id,
              q.city_id,
              q.last_fetched_at,
              q.requested_at
            """,
            max(1, limit),
        )
        jobs = [
            AnalysisJob(
                id=row["id"],
                read_queue_id=row["read_queue_id"],
                source=row["source"],
                external_id=row["external_id"],
                payload=self._coerce_json_dict(row["payload"]),
                attempts=row["attempts"],
                created_at=row["created_at"],
                category_id=row["category_id"],
                category_slug=row["category_slug"],
                province_id=row["province_id"],
                city_id=row["city_id"],
                last_fetched_at=row["last_fetched_at"],
                requested_at=row["requested_at"],
            )
            for row in rows
        ]
        return sorted(jobs, key=lambda job: job.created_at)

    async def save_analyzed_listing(self, job_id: str, record: ListingRecord) -> str:
        parsed = record.parsed
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                listing_id = await conn.fetchval(
                    """
                    insert into listings (
                      read_queue_id, source, external_id, category_id, category_slug,
                      province_id, city_id, city_slug, district_slug, title, description,
                      contact_uuid, business_type, price_total, deposit_amount, rent_amount,
                      area, rooms, floor, year_built, latitude, longitude, published_at,
                      expires_at, parsed, payload, analyzed
                    )
                    values (
                      $1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                      $16, $17, $18, $19, $20, $21, $22, $23, $24, $25::jsonb, $26::jsonb, true
                    )
                    on conflict (read_queue_id) do update
                    set
                      category_id = excluded.category_id,
                      category_slug = excluded.category_slug,
                      province_id = excluded.province_id,
                      city_id = excluded.city_id,
                      city_slug = excluded.city_slug,
                      district_slug = excluded.district_slug,
                      title = excluded.title,
                      description = excluded.description,
                      contact_uuid = excluded.contact_uuid,
                      business_type = excluded.business_type,
                      price_total = excluded.price_total,
                      deposit_amount = excluded.deposit_amount,
                      rent_amount = excluded.rent_amount,
                      area = excluded.area,
                      rooms = excluded.rooms,
                      floor = excluded.floor,
                      year_built = excluded.year_built,
                      latitude = excluded.latitude,
                      longitude = excluded.longitude,
                      published_at = excluded.published_at,
                      expires_at = excluded.expires_at,
                      parsed = excluded.parsed,
                      payload = excluded.payload,
                      analyzed = true,
                      updated_at = now()
                    returning id::text
                    """,
                    record.read_queue_id,
                    record.source,
                    record.external_id,
                    record.category_id,
                    record.category_slug,
                    record.province_id,
                    record.city_id,
                    parsed.city_slug,
                    parsed.district_slug,
                    parsed.title,
                    parsed.description,
                    parsed.contact_uuid,
                    parsed.business_type,
                    parsed.price_total,
                    parsed.deposit_amount,
                    parsed.rent_amount,
                    parsed.area,
                    parsed.rooms,
                    parsed.floor,
                    parsed.year_built,
                    parsed.latitude,
                    parsed.longitude,
                    record.published_at,
                    parsed.expires_at,
                    parsed.model_dump_json(exclude={"medias", "attributes"}),
                    json.dumps(record.payload),
                )

                previous = await conn.fetch(
                    """
                    delete from listing_media
                    where listing_id = $1::uuid
                    returning url, local_url, local_thumbnail_url
                    """,
                    listing_id,
                )
                mirrored = {row["url"]: (row["local_url"], row["local_thumbnail_url"]) for row in previous}
                if parsed.medias:
                    await conn.executemany(
                        """
                        insert into listing_media (
                          listing_id, position, url, thumbnail_url, alt, local_url, local_thumbnail_url
                        )
                        values ($1::uuid, $2, $3, $4, $5, $6, $7)
                        """,
                        [
                            (
                                listing_id,
                                media.position,
                                media.url,
                                media.thumbnail_url,
                                media.alt,
                                mirrored.get(media.url, (None, None))[0],
                                mirrored.get(media.url, (None, None))[1],
                            )
                            for media in parsed.medias
                        ],
                    )

                await conn.execute("delete from listing_attributes where listing_id = $1::uuid", listing_id)
                if parsed.attributes:
                    await conn.executemany(
                        """
                        insert into listing_attributes (
                          listing_id, key, label, type, string_value, number_value, bool_value
                        )
                        values ($1::uuid, $2, $3, $4, $5, $6, $7)
                        """,
                        [
                            (
                                listing_id,
                                attribute.key,
                                attribute.label,
                                attribute.type,
                                attribute.string_value,
                                attribute.number_value,
                                attribute.bool_value,
                            )
                            for attribute in parsed.attributes
                        ],
                    )

                await conn.execute(
                    """
                    update listings l
                    set has_media = exists (
                      select 1 from listing_media m where m.listing_id = l.id and m.local_url is not null
                    )
                    where l.id = $1::uuid
                    """,
                    listing_id,
                )
                completed = await conn.execute(
                    """
                    update analysis_jobs
                    set status = 'COMPLETED', last_error = null, updated_at = now()
                    where id = $1::uuid and status = 'PROCESSING'
                    """,
                    job_id,
                )
                if not completed.endswith(" 1"):
                    raise RepositoryConflictError(f"analysis job {job_id} is no longer processing")
                return listing_id

    async def fail_analysis_job(self, job_id: str, error: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update analysis_jobs
            set status = 'FAILED', last_error = $2, updated_at = now()
            where id = $1::uuid and status = 'PROCESSING'
            """,
            job_id,
            error[:2000],
        )

    # -- directory cursor ----------------------------------------------------

    async def bootstrap_directory_cursor(self, start_id: int) -> DirectoryCursor:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    insert into directory_cursor (id, next_fetch_id)
                    values ($1, $2)
                    on conflict (id) do update
                    set next_fetch_id = excluded.next_fetch_id, updated_at = now()
                    where directory_cursor.next_fetch_id < excluded.next_fetch_id
                    """,
                    CURSOR_ID,
                    start_id,
                )
                row = await conn.fetchrow(
                    "select next_fetch_id, backoff_until, updated_at from directory_cursor where id = $1",
                    CURSOR_ID,
                )
        return self._cursor_row(row)

    async def get_directory_cursor(self) -> DirectoryCursor | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select next_fetch_id, backoff_until, updated_at from directory_cursor where id = $1",
            CURSOR_ID,
        )
        return self._cursor_row(row) if row is not None else None

    async def claim_directory_id(self, *, upper_bound: int | None, claim_seconds: float, now: datetime) -> int | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                cursor = await conn.fetchval(
                    "select next_fetch_id from directory_cursor where id = $1 for update",
                    CURSOR_ID,
                )
                if cursor is None:
                    raise RepositoryNotFoundError("directory cursor is not initialized")
                last_id = cursor + DIRECTORY_SCAN_WINDOW
                if upper_bound is not None:
                    last_id = min(last_id, upper_bound - 1)
                if last_id < cursor:
                    return None
                arka_id = await conn.fetchval(
                    """
                    select min(g)
                    from generate_series($1::int, $2::int) g
                    where not exists (select 1 from directory_records r where r.arka_id = g)
                      and not exists (
                        select 1 from directory_claims c where c.arka_id = g and c.claimed_until > $3
                      )
                    """,
                    cursor,
                    last_id,
                    now,
                )
                if arka_id is None:
                    return None
                await conn.execute(
                    """
                    insert into directory_claims (arka_id, claimed_until)
                    values ($1, $2)
                    on conflict (arka_id) do update set claimed_until = excluded.claimed_until
                    """,
                    arka_id,
                    now + timedelta(seconds=claim_seconds),
                )
                return arka_id

    async def release_directory_claim(
        self,
        arka_id: int | None,
        *,
        status: int | None,
        error: str | None,
        backoff_until: datetime | None = None,
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if arka_id is not None:
                    await conn.execute("delete from directory_claims where arka_id = $1", arka_id)
                await conn.execute(
                    """
                    update directory_cursor
                    set
                      last_status = $2,
                      last_error = $3,
                      backoff_until = case
                        when $4::timestamptz is null then backoff_until
                        else greatest(coalesce(backoff_until, $4::timestamptz), $4::timestamptz)
                      end,
                      updated_at = now()
                    where id = $1
                    """,
                    CURSOR_ID,
                    status,
                    error,
                    backoff_until,
                )

    async def record_directory_result(self, result: DirectoryOutcome, *, advance: bool) -> DirectoryCursor:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    insert into directory_records (
                      arka_id, outcome, external_id, link, phone, owner_name, payload, fetched_at
                    )
                    values ($1, $2, $3, $4, $5, $6, $7::jsonb, now())
                    on conflict (arka_id) do update
                    set
                      outcome = excluded.outcome,
                      external_id = coalesce(excluded.external_id, directory_records.external_id),
                      link = coalesce(excluded.link, directory_records.link),
                      phone = coalesce(excluded.phone, directory_records.phone),
                      owner_name = coalesce(excluded.owner_name, directory_records.owner_name),
                      payload = coalesce(excluded.payload, directory_records.payload),
                      fetched_at = now(),
                      transfer_status = 'NOT_TRANSFERRED',
                      transfer_attempts = 0,
                      transfer_last_error = null,
                      next_transfer_attempt_at = null
                    """,
                    result.arka_id,
                    result.outcome,
                    result.external_id,
                    result.link,
                    result.phone,
                    result.owner_name,
                    json.dumps(result.payload) if result.payload is not None else None,
                )
                await conn.execute("delete from directory_claims where arka_id = $1", result.arka_id)
                if advance:
                    row = await conn.fetchrow(
                        """
                        update directory_cursor c
                        set
                          next_fetch_id = greatest(
                            c.next_fetch_id,
                            (
                              select min(g)
                              from generate_series(c.next_fetch_id, c.next_fetch_id + $2) g
                              where not exists (select 1 from directory_records r where r.arka_id = g)
                            )
                          ),
                          last_status = $3,
                          last_error = null,
                          updated_at = now()
                        where c.id = $1
                        returning next_fetch_id, backoff_until, updated_at
                        """,
                        CURSOR_ID,
                        DIRECTORY_SCAN_WINDOW,
                        result.status,
                    )
                else:
                    row = await conn.fetchrow(
                        "select next_fetch_id, backoff_until, updated_at from directory_cursor where id = $1",
                        CURSOR_ID,
                    )
                if row is None:
                    raise RepositoryNotFoundError("directory cursor is not initialized")
                return self._cursor_row(row)

    async def count_directory_records(self) -> int:
        pool = await self._get_pool()
        return int(await pool.fetchval("select count(*) from directory_records"))

    # -- phone transfer ------------------------------------------------------

    async def bulk_transfer_phones(self, *, fetched_after: datetime, limit: int) -> int:
        pool = await self._get_pool()
        # Older records for a filled listing are settled too, so the per-record
        # pass cannot later overwrite the newest phone with a stale one.
        count = await pool.fetchval(
            """
            with candidates as (
              select distinct on (r.external_id) r.id, r.external_id, r.phone, r.owner_name
              from directory_records r
              join listings l on l.external_id = r.external_id and l.phone is null
              where r.outcome = 'stored'
                and r.external_id is not null
                and r.phone is not null
                and r.phone <> $3
                and r.transfer_status <> 'TRANSFERRED'
                and r.fetched_at >= $1
              order by r.external_id, r.fetched_at desc
              limit $2
            ),
            updated as (
              update listings l
              set phone = c.phone, owner_name = coalesce(c.owner_name, l.owner_name), updated_at = now()
              from candidates c
              where l.external_id = c.external_id and l.phone is null
              returning l.external_id
            ),
            settled as (
              update directory_records r
              set
                transfer_status = 'TRANSFERRED',
                transferred_at = now(),
                transfer_locked_until = null,
                transfer_last_error = null,
                next_transfer_attempt_at = null
              where r.external_id in (select external_id from updated)
                and r.outcome = 'stored'
                and r.transfer_status <> 'TRANSFERRED'
              returning r.id
            )
            select count(*) from updated
            """,
            fetched_after,
            max(1, limit),
            PLACEHOLDER_PHONE,
        )
        return int(count or 0)

    async def claim_transfer_candidate(
        self,
        *,
        fetched_after: datetime,
        lock_seconds: int,
        now: datetime,
    ) -> DirectoryRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            with candidate as (
              select id
              from directory_records
              where outcome = 'stored'
                and fetched_at >= $1
                and (
                  transfer_status = 'NOT_TRANSFERRED'
                  or (transfer_status = 'IN_PROGRESS' and transfer_locked_until < $3)
                )
                and (transfer_locked_until is null or transfer_locked_until < $3)
                and (next_transfer_attempt_at is null or next_transfer_attempt_at <= $3)
              order by fetched_at asc
              limit 1
              for update skip locked
            )
            update directory_records r
            set
              transfer_status = 'IN_PROGRESS',
              transfer_locked_until = $3 + ($2::int * interval '1 second'),
              transfer_attempts = r.transfer_attempts + 1,
              transfer_last_error = null,
              next_transfer_attempt_at = null
            from candidate c
            where r.id = c.id
            returning
              r.id::text as id, r.arka_id, r.outcome, r.external_id, r.phone, r.owner_name,
              r.fetched_at, r.transfer_status, r.transfer_attempts
            """,
            fetched_after,
            lock_seconds,
            now,
        )
        if row is None:
            return None
        return DirectoryRecord(
            id=row["id"],
            arka_id=row["arka_id"],
            outcome=row["outcome"],
            external_id=row["external_id"],
            phone=row["phone"],
            owner_name=row["owner_name"],
            fetched_at=row["fetched_at"],
            transfer_status=row["transfer_status"],
            transfer_attempts=row["transfer_attempts"],
        )

    async def apply_transfer(
        self,
        record: DirectoryRecord,
        *,
        listing_id: str,
        phone: str | None,
        now: datetime,
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    update listings
                    set
                      phone = coalesce($2, phone),
                      owner_name = coalesce($3, owner_name),
                      updated_at = $4
                    where id = $1::uuid
                    """,
                    listing_id,
                    phone,
                    record.owner_name,
                    now,
                )
                await conn.execute(
                    """
                    update directory_records
                    set
                      transfer_status = 'TRANSFERRED',
                      transferred_at = $2,
                      transfer_locked_until = null,
                      transfer_last_error = null
                    where id = $1::uuid
                    """,
                    record.id,
                    now,
                )

    async def defer_transfer(self, record_id: str, *, reason: str, until: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update directory_records
            set
              transfer_status = 'NOT_TRANSFERRED',
              transfer_locked_until = null,
              transfer_last_error = $2,
              next_transfer_attempt_at = $3
            where id = $1::uuid
            """,
            record_id,
            reason,
            until,
        )

    # -- internals -----------------------------------------------------------

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("HARVESTER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=30,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value if isinstance(value, dict) else {}

    @staticmethod
    def _cursor_row(row: asyncpg.Record) -> DirectoryCursor:
        return DirectoryCursor(
            next_fetch_id=row["next_fetch_id"],
            backoff_until=row["backoff_until"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _contact_row(row: asyncpg.Record | None) -> ContactCandidate | None:
        if row is None:
            return None
        return ContactCandidate(
            id=row["id"],
            external_id=row["external_id"],
            contact_uuid=row["contact_uuid"],
            title=row["title"],
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
