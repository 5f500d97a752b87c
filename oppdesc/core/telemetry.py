"""Logging and OpenTelemetry wiring shared by the API and the batch jobs.

Every process calls ``configure_logging()`` once, then one of
``setup_api_telemetry`` / ``setup_worker_telemetry``. Log lines carry the
active trace and span ids so they can be joined with exported spans.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from oppdesc.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_ENDPOINT_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")
_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16

logger = logging.getLogger(__name__)
_httpx_instrumentor = HTTPXClientInstrumentor()
_default_record_factory = logging.getLogRecordFactory()
_correlation_active = False


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    instrumented_apps: list[FastAPI] = field(default_factory=list)

    def shutdown(self) -> None:
        if not self.enabled:
            return
        for app in self.instrumented_apps:
            FastAPIInstrumentor.uninstrument_app(app)
        self.instrumented_apps.clear()
        _httpx_instrumentor.uninstrument()
        if self.provider is not None:
            self.provider.force_flush()
            self.provider.shutdown()


def configure_logging(level: int = logging.INFO) -> None:
    _enable_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    runtime = _start(settings, component="api")
    if runtime.enabled:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider)
        runtime.instrumented_apps.append(app)
    return runtime


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if app not in runtime.instrumented_apps:
        runtime.instrumented_apps.append(app)
    runtime.shutdown()


def setup_worker_telemetry(settings: Settings, *, service_suffix: str = "worker") -> TelemetryRuntime:
    """Tracing for ingest/backfill runs; outbound httpx calls get client spans."""
    return _start(settings, component=service_suffix)


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    runtime.shutdown()


def _start(settings: Settings, *, component: str) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)
    if settings.otel_log_correlation:
        _enable_log_correlation()

    service_name = f"{settings.otel_service_name}-{component}"
    resource = Resource.create({SERVICE_NAME: service_name, DEPLOYMENT_ENVIRONMENT: settings.environment})
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))

    endpoint = resolve_exporter_endpoint(settings)
    if endpoint:
        headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", service_name)

    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def resolve_exporter_endpoint(settings: Settings) -> str | None:
    if settings.otel_exporter_otlp_endpoint:
        return settings.otel_exporter_otlp_endpoint
    for name in _ENDPOINT_ENV_VARS:
        value = os.getenv(name)
        if value:
            return value
    return None


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``k1=v1,k2=v2``; entries without ``=`` or with a blank key are ignored."""
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        name, sep, value = item.partition("=")
        if sep and name.strip():
            headers[name.strip()] = value.strip()
    return headers


def _enable_log_correlation() -> None:
    global _correlation_active
    if _correlation_active:
        return

    def correlated_record(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _default_record_factory(*args, **kwargs)
        span_context = trace.get_current_span().get_span_context()
        record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else _EMPTY_TRACE_ID
        record.span_id = format(span_context.span_id, "016x") if span_context.is_valid else _EMPTY_SPAN_ID
        return record

    logging.setLogRecordFactory(correlated_record)
    _correlation_active = True
