"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import Counter, Histogram, generate_latest, CollectorRegistry
import structlog

from .config import settings

SERVICE_NAME = "tour-payments-api"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=REGISTRY
)

# Payment metrics
PAYMENTS_INITIATED = Counter(
    'payments_initiated_total',
    'Payment initiation attempts by provider and outcome',
    ['provider', 'outcome'],
    registry=REGISTRY
)

PAYMENT_CALLBACKS = Counter(
    'payment_callbacks_total',
    'Gateway callbacks and redirects received',
    ['provider'],
    registry=REGISTRY
)

PAYMENT_RECONCILIATIONS = Counter(
    'payment_reconciliations_total',
    'Reconciliation results by provider and outcome',
    ['provider', 'outcome'],
    registry=REGISTRY
)

GATEWAY_ERRORS = Counter(
    'gateway_errors_total',
    'Gateway call failures by provider and error kind',
    ['provider', 'kind'],
    registry=REGISTRY
)

GATEWAY_REQUEST_DURATION = Histogram(
    'gateway_request_duration_seconds',
    'Outbound gateway call duration in seconds',
    ['provider', 'operation'],
    registry=REGISTRY
)

RATE_CLASS_FALLBACKS = Counter(
    'pricing_rate_class_fallbacks_total',
    'Quotes priced at the non-resident tier because the rate class was unknown',
    registry=REGISTRY
)

AUDIT_WRITE_FAILURES = Counter(
    'payment_audit_write_failures_total',
    'Best-effort audit transaction writes that failed',
    ['provider'],
    registry=REGISTRY
)

WORKER_RUNS = Counter(
    'background_worker_runs_total',
    'Background worker iterations by worker and result',
    ['worker', 'result'],
    registry=REGISTRY
)


def setup_structured_logging():
    """Configure structured logging with structlog."""

    def add_trace_context(logger, method_name, event_dict):
        """Add trace context to log events."""
        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            event_dict['trace_id'] = format(ctx.trace_id, '032x')
            event_dict['span_id'] = format(ctx.span_id, '016x')
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _resource(app_name: str) -> Resource:
    return Resource.create({
        "service.name": app_name,
        "service.version": "1.0.0",
        "environment": settings.environment,
    })


def setup_tracing(app_name: str = SERVICE_NAME):
    """Setup OpenTelemetry tracing."""
    trace.set_tracer_provider(TracerProvider(resource=_resource(app_name)))

    if settings.otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
        span_processor = BatchSpanProcessor(otlp_exporter)
        trace.get_tracer_provider().add_span_processor(span_processor)

    return trace.get_tracer(__name__)


def setup_metrics(app_name: str = SERVICE_NAME):
    """Setup OpenTelemetry metrics."""
    if settings.otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=settings.otlp_endpoint)
        reader = PeriodicExportingMetricReader(exporter=otlp_exporter, export_interval_millis=60000)
        metrics.set_meter_provider(MeterProvider(resource=_resource(app_name), metric_readers=[reader]))

    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy():
    """Instrument SQLAlchemy with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument()


class MetricsCollector:
    """Collector for payment metrics."""

    @staticmethod
    def record_request(method: str, endpoint: str, status_code: int, duration: float):
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
        REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(duration)

    @staticmethod
    def record_initiation(provider: str, outcome: str):
        """Record a payment initiation attempt."""
        PAYMENTS_INITIATED.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_callback(provider: str):
        PAYMENT_CALLBACKS.labels(provider=provider).inc()

    @staticmethod
    def record_reconciliation(provider: str, outcome: str):
        PAYMENT_RECONCILIATIONS.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_gateway_error(provider: str, kind: str):
        GATEWAY_ERRORS.labels(provider=provider, kind=kind).inc()

    @staticmethod
    def observe_gateway_call(provider: str, operation: str, duration: float):
        GATEWAY_REQUEST_DURATION.labels(provider=provider, operation=operation).observe(duration)

    @staticmethod
    def record_rate_class_fallback():
        RATE_CLASS_FALLBACKS.inc()

    @staticmethod
    def record_audit_failure(provider: str):
        AUDIT_WRITE_FAILURES.labels(provider=provider).inc()

    @staticmethod
    def record_worker_run(worker: str, result: str):
        WORKER_RUNS.labels(worker=worker, result=result).inc()


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()


class StructuredLogger:
    """Structured logger with business context."""

    def __init__(self, name_or_logger):
        if isinstance(name_or_logger, str):
            self.logger = structlog.get_logger(name_or_logger)
        else:
            self.logger = name_or_logger

    def info(self, message: str, **kwargs):
        """Log info message with context."""
        self.logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with context."""
        self.logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with context."""
        self.logger.error(message, **kwargs)

    def debug(self, message: str, **kwargs):
        """Log debug message with context."""
        self.logger.debug(message, **kwargs)

    def with_context(self, **kwargs) -> "StructuredLogger":
        """Add context to logger."""
        return StructuredLogger(self.logger.bind(**kwargs))


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
