from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    listing_api_base_url: str = "https://api.divar.ir"
    listing_site_origin: str = "https://divar.ir"
    listing_session_cookie: str | None = None
    listing_search_timeout_seconds: float = 15.0
    listing_detail_timeout_seconds: float = 15.0
    listing_contact_timeout_seconds: float = 8.0

    harvest_max_pages: int = 20
    harvest_max_pages_night: int = 5
    harvest_night_start_hour: int | None = None
    harvest_night_end_hour: int | None = None
    harvest_timezone: str = "Asia/Tehran"
    harvest_page_delay_seconds: float = 0.75
    harvest_max_requests_per_second: int = 3
    harvest_refetch_window_minutes: int = 240

    fetch_batch_size: int = 3
    fetch_max_attempts: int = 5
    fetch_min_batch_interval_seconds: float = 1.0
    fetch_rate_limit_sleep_seconds: float = 5.0
    fetch_processing_timeout_seconds: float = 60.0

    contact_recent_window_minutes: int = 30

    media_batch_size: int = 25
    media_cdn_host_suffix: str = "divarcdn.com"
    media_request_delay_seconds: float = 0.5
    media_max_download_attempts: int = 5
    media_bucket: str = "listing-media"
    media_endpoint_url: str | None = None
    media_region: str | None = None
    media_access_key_id: str | None = None
    media_secret_access_key: str | None = None
    media_public_base_url: str | None = None

    analyze_batch_size: int = 100
    analyze_chunk_size: int = 50
    analyze_chunk_interval_seconds: float = 1.0
    analyze_max_attempts: int = 5
    analyze_processing_timeout_seconds: float = 300.0

    directory_api_base_url: str = "https://back.arkafile.info"
    directory_timeout_seconds: float = 10.0
    directory_start_id: int = 19015
    directory_batch_size: int = 10
    directory_claim_seconds: float = 30.0
    directory_rate_limit_backoff_seconds: float = 10.0
    directory_http_error_backoff_seconds: float = 15.0

    transfer_recent_window_hours: float = 4.0
    transfer_bulk_limit: int = 500
    transfer_lock_seconds: int = 60
    transfer_defer_seconds: float = 600.0

    otel_enabled: bool = True
    otel_service_name: str = "listing-harvester"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="HARVESTER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
