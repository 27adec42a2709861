from pydantic import BaseModel


class HarvestSummary(BaseModel):
    enqueued: int = 0
    combinations: int = 0
    locations: int = 0
    categories: int = 0


class FetchSummary(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0


class ContactTarget(BaseModel):
    id: str
    title: str | None = None


class MediaSyncSummary(BaseModel):
    processed: int = 0
    stored: int = 0
    failed: int = 0


class AnalyzeSummary(BaseModel):
    processed: int = 0
    failed: int = 0


class DirectoryCrawlSummary(BaseModel):
    max_id: int
    start_cursor: int
    final_cursor: int
    batches: int = 0
    stored: int = 0
    not_found: int = 0


class TransferSummary(BaseModel):
    bulk_transferred: int = 0
    transferred: int = 0
    stopped_on: str | None = None
