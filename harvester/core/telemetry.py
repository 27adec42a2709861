from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from harvester.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s stage=%(stage)s trace_id=%(trace_id)s %(message)s"
STAGE_ATTRIBUTE = "harvester.stage"

logger = logging.getLogger(__name__)


class StageLogFilter(logging.Filter):
    """Stamps each record with the running stage and the active span's trace id."""

    def __init__(self, stage: str) -> None:
        super().__init__()
        self.stage = stage

    def filter(self, record: logging.LogRecord) -> bool:
        record.stage = self.stage
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "-"
        return True


def configure_stage_logging(stage: str, *, level: int = logging.INFO) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in root.handlers:
        handler.addFilter(StageLogFilter(stage))


@contextmanager
def stage_telemetry(settings: Settings, stage: str) -> Iterator[TracerProvider | None]:
    """Trace one stage run; spans are flushed and httpx uninstrumented on exit."""
    if not settings.otel_enabled:
        yield None
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
                STAGE_ATTRIBUTE: stage,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = otlp_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    instrumentor = HTTPXClientInstrumentor()
    instrumentor.instrument(tracer_provider=provider)
    try:
        yield provider
    finally:
        instrumentor.uninstrument()
        provider.force_flush()
        provider.shutdown()


def otlp_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = settings.otel_exporter_otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    if not endpoint:
        logger.debug("no OTLP endpoint configured; spans are not exported")
        return None
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers)
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, sep, value in pairs if sep and key.strip()}
