from __future__ import annotations

import json
import logging

import pytest

import harvester.main as cli
from harvester.core.config import Settings, get_settings
from harvester.core.telemetry import StageLogFilter, otlp_exporter, parse_otlp_headers, stage_telemetry
from harvester.schemas.summaries import AnalyzeSummary
from harvester.services.repository import get_repository
from harvester.services.store import InMemoryRepository


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("HARVESTER_OTEL_ENABLED", "false")
    monkeypatch.delenv("HARVESTER_DATABASE_URL", raising=False)
    get_settings.cache_clear()
    get_repository.cache_clear()
    yield
    get_settings.cache_clear()
    get_repository.cache_clear()


def test_parser_accepts_every_stage_and_stage_options() -> None:
    parser = cli.build_parser()

    for stage in cli.STAGES:
        assert parser.parse_args([stage]).stage == stage
    assert parser.parse_args(["analyze", "--limit", "5"]).limit == 5
    assert parser.parse_args(["fetch-contact", "--listing-id", "abc"]).listing_id == "abc"


def test_parser_rejects_unknown_stage() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["bogus"])


def test_main_exits_non_zero_without_database() -> None:
    assert cli.main(["analyze", "--limit", "1"]) == 1


def test_main_prints_stage_summary_as_json(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    repository = InMemoryRepository()
    repository.add_listing("tokA")
    repository.add_record(1, external_id="tokA", phone="09121111111")
    monkeypatch.setattr(cli, "get_repository", lambda: repository)

    assert cli.main(["transfer-phones"]) == 0

    output = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert output == {"bulk_transferred": 1, "transferred": 0, "stopped_on": None}
    assert repository.listing_by_external_id("tokA").phone == "09121111111"


def test_main_fails_crawl_without_directory_session(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "get_repository", lambda: InMemoryRepository())

    assert cli.main(["crawl-directory"]) == 1


def test_render_handles_models_and_plain_values() -> None:
    assert json.loads(cli._render(AnalyzeSummary(processed=2))) == {"processed": 2, "failed": 0}
    assert cli._render(None) == "null"


def test_parse_otlp_headers_skips_malformed_pairs() -> None:
    assert parse_otlp_headers("api-key=abc, x-team = core ,broken") == {"api-key": "abc", "x-team": "core"}
    assert parse_otlp_headers(None) == {}


def test_stage_log_filter_stamps_stage_outside_any_span() -> None:
    record = logging.LogRecord("harvester.jobs.analyze", logging.INFO, __file__, 1, "done", None, None)

    assert StageLogFilter("analyze").filter(record) is True
    assert record.stage == "analyze"
    assert record.trace_id == "-"


def test_stage_telemetry_is_inert_when_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    settings = Settings(otel_enabled=False)

    with stage_telemetry(settings, "analyze") as provider:
        assert provider is None
    assert otlp_exporter(settings) is None
