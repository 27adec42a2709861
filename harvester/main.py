from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import Sequence
from dataclasses import asdict
from typing import Any

from opentelemetry import trace
from pydantic import BaseModel

from harvester.core.config import Settings, get_settings
from harvester.core.telemetry import configure_stage_logging, stage_telemetry
from harvester.jobs.analyze import ContentAnalyzer
from harvester.jobs.contact_fetch import ContactFetcher
from harvester.jobs.directory_crawl import DirectoryCrawler, DirectoryUpperBoundError, run_directory_crawl
from harvester.jobs.harvest import ScopeHarvester
from harvester.jobs.listing_fetch import ListingFetcher
from harvester.jobs.media_sync import MediaSyncer
from harvester.jobs.phone_transfer import PhoneTransferMatcher, run_phone_transfer
from harvester.services.directory_client import DirectoryClient
from harvester.services.listing_client import ListingClient
from harvester.services.media_store import build_media_store
from harvester.services.repository import RepositoryError, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

STAGES = (
    "harvest",
    "fetch-posts",
    "fetch-contact",
    "sync-media",
    "analyze",
    "crawl-directory",
    "probe-directory",
    "transfer-phones",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="harvester", description="Run one pipeline stage and exit.")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="stage", required=True)
    for stage in STAGES:
        stage_parser = sub.add_parser(stage)
        if stage == "analyze":
            stage_parser.add_argument("--limit", type=int, default=None)
        if stage == "fetch-contact":
            stage_parser.add_argument("--listing-id", default=None)
    return parser


def listing_client(settings: Settings) -> ListingClient:
    return ListingClient(
        settings.listing_api_base_url,
        site_origin=settings.listing_site_origin,
        session_cookie=settings.listing_session_cookie,
        search_timeout_seconds=settings.listing_search_timeout_seconds,
        detail_timeout_seconds=settings.listing_detail_timeout_seconds,
        contact_timeout_seconds=settings.listing_contact_timeout_seconds,
    )


def directory_crawler(settings: Settings) -> DirectoryCrawler:
    client = DirectoryClient(settings.directory_api_base_url, timeout_seconds=settings.directory_timeout_seconds)
    return DirectoryCrawler(get_repository(), client, settings)


async def run_stage(args: argparse.Namespace, settings: Settings, stop_event: asyncio.Event) -> Any:
    repository = get_repository()
    stage = args.stage
    if stage == "harvest":
        return await ScopeHarvester(repository, listing_client(settings), settings).harvest_allowed_scopes()
    if stage == "fetch-posts":
        return await ListingFetcher(repository, listing_client(settings), settings).fetch_next_posts()
    if stage == "fetch-contact":
        fetcher = ContactFetcher(repository, listing_client(settings), settings)
        if args.listing_id:
            return {"listing_id": args.listing_id, "phone": await fetcher.fetch_for_listing(args.listing_id)}
        return await fetcher.tick()
    if stage == "sync-media":
        return await MediaSyncer(repository, build_media_store(settings), settings).sync_next_batch()
    if stage == "analyze":
        return await ContentAnalyzer(repository, settings).process_pending_jobs(args.limit)
    if stage == "crawl-directory":
        return await run_directory_crawl(directory_crawler(settings), stop_event=stop_event)
    if stage == "probe-directory":
        result = await directory_crawler(settings).fetch_next(advance_cursor=False)
        return asdict(result)
    if stage == "transfer-phones":
        return await run_phone_transfer(PhoneTransferMatcher(repository, settings), stop_event=stop_event)
    raise ValueError(f"unknown stage: {stage}")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)


def _render(result: Any) -> str:
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    return json.dumps(result, default=str)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    with stage_telemetry(settings, args.stage):
        try:
            with tracer.start_as_current_span(f"stage.{args.stage}"):
                result = await run_stage(args, settings, stop_event)
        except (RepositoryError, DirectoryUpperBoundError, ValueError) as exc:
            logger.error("stage %s aborted: %s", args.stage, exc)
            return 1
        finally:
            await get_repository().close()

    print(_render(result))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_stage_logging(args.stage, level=getattr(logging, str(args.log_level).upper(), logging.INFO))
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
