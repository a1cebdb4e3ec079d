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
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CollectorRegistry
import structlog

from .config import settings

SERVICE_NAME = "retreat-engine"

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

# Business metrics
PAYMENT_ATTEMPTS = Counter(
    'payment_attempts_total',
    'Installment charge attempts by outcome',
    ['outcome', 'trigger'],
    registry=REGISTRY
)

BOOKINGS_CANCELLED = Counter(
    'bookings_cancelled_total',
    'Total bookings cancelled',
    ['actor'],
    registry=REGISTRY
)

CANCELLATION_STEP_FAILURES = Counter(
    'booking_cancellation_step_failures_total',
    'Cancellation side effects that failed and were skipped',
    ['step'],
    registry=REGISTRY
)

CAPACITY_CONFLICTS = Counter(
    'room_capacity_conflicts_total',
    'Conditional decrements rejected for lack of capacity',
    registry=REGISTRY
)

INVENTORY_OVER_RELEASE = Counter(
    'inventory_over_release_total',
    'Capacity releases that pushed a room above its capacity',
    registry=REGISTRY
)

WAITLIST_OFFERS = Counter(
    'waitlist_offers_total',
    'Waitlist offers sent',
    registry=REGISTRY
)

WAITLIST_EXPIRED = Counter(
    'waitlist_offers_expired_total',
    'Waitlist offers and reservations that lapsed',
    registry=REGISTRY
)

REMINDERS_SENT = Counter(
    'reminders_sent_total',
    'Reminders sent by kind and bucket',
    ['kind', 'bucket'],
    registry=REGISTRY
)

NOTIFICATION_FAILURES = Counter(
    'notification_failures_total',
    'Notifications that could not be delivered',
    ['kind'],
    registry=REGISTRY
)

PROCESSING_RECLAIMED = Gauge(
    'payment_schedules_reclaimed_last_run',
    'Processing installments reclaimed by the last orchestrator run',
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
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": "1.0.0",
        "environment": settings.environment,
    })


def setup_tracing():
    """Setup OpenTelemetry tracing."""
    trace.set_tracer_provider(TracerProvider(resource=_resource()))

    if settings.otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
        trace.get_tracer_provider().add_span_processor(BatchSpanProcessor(otlp_exporter))

    return trace.get_tracer(__name__)


def setup_metrics():
    """Setup OpenTelemetry metrics."""
    if settings.otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=settings.otlp_endpoint)
        reader = PeriodicExportingMetricReader(exporter=otlp_exporter, export_interval_millis=60000)
        metrics.set_meter_provider(MeterProvider(resource=_resource(), metric_readers=[reader]))

    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy():
    """Instrument SQLAlchemy with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument()


class MetricsCollector:
    """Collector for business metrics."""

    @staticmethod
    def record_request(method: str, endpoint: str, status_code: int, duration: float):
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
        REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(duration)

    @staticmethod
    def record_payment_attempt(outcome: str, trigger: str):
        """Record an installment charge outcome."""
        PAYMENT_ATTEMPTS.labels(outcome=outcome, trigger=trigger).inc()

    @staticmethod
    def record_booking_cancelled(actor: str):
        BOOKINGS_CANCELLED.labels(actor=actor).inc()

    @staticmethod
    def record_cancellation_step_failure(step: str):
        CANCELLATION_STEP_FAILURES.labels(step=step).inc()

    @staticmethod
    def record_capacity_conflict():
        CAPACITY_CONFLICTS.inc()

    @staticmethod
    def record_over_release():
        INVENTORY_OVER_RELEASE.inc()

    @staticmethod
    def record_waitlist_offer():
        WAITLIST_OFFERS.inc()

    @staticmethod
    def record_waitlist_expired(count: int = 1):
        WAITLIST_EXPIRED.inc(count)

    @staticmethod
    def record_reminder_sent(kind: str, bucket: str):
        REMINDERS_SENT.labels(kind=kind, bucket=bucket).inc()

    @staticmethod
    def record_notification_failure(kind: str):
        NOTIFICATION_FAILURES.labels(kind=kind).inc()

    @staticmethod
    def set_processing_reclaimed(count: int):
        PROCESSING_RECLAIMED.set(count)


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
        self.logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        self.logger.error(message, **kwargs)

    def debug(self, message: str, **kwargs):
        self.logger.debug(message, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
