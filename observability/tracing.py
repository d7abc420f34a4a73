"""
OpenTelemetry tracing for store operations.

Each adapter call made by the replication layer runs inside a span tagged with
the store name and operation, so a slow or failing replica shows up directly
in traces. Configure via environment variables:
- OTEL_ENABLED: "true" to enable (default: false)
- OTEL_SERVICE_NAME: Service name for traces (default: profile-replica)
- OTEL_EXPORTER_OTLP_ENDPOINT: OTLP collector endpoint (default: http://localhost:4317)
"""

from __future__ import annotations

import functools
import logging
import os
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# The SDK is optional at runtime; spans become no-ops without it.
OTEL_AVAILABLE = False
try:
    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    OTEL_AVAILABLE = True
except ImportError:
    pass

_tracer: Optional[Any] = None
_initialized = False


def is_tracing_enabled() -> bool:
    return os.getenv("OTEL_ENABLED", "false").lower() == "true" and OTEL_AVAILABLE


def init_tracing(service_name: str = None, endpoint: str = None) -> bool:
    """
    Initialize OpenTelemetry tracing.

    Should be called once at process startup.
    Returns True if tracing was successfully initialized.
    """
    global _tracer, _initialized

    if _initialized:
        return True

    if not is_tracing_enabled():
        logger.info("OpenTelemetry tracing is disabled")
        return False

    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        svc_name = service_name or os.getenv("OTEL_SERVICE_NAME", "profile-replica")
        otlp_endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")

        resource = Resource(
            attributes={
                "service.name": svc_name,
                "deployment.environment": os.getenv("DEPLOYMENT_ENV", "development"),
            }
        )
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
        trace.set_tracer_provider(provider)

        _tracer = trace.get_tracer(svc_name)
        _initialized = True

        logger.info(f"OpenTelemetry tracing initialized: service={svc_name}, endpoint={otlp_endpoint}")
        return True

    except Exception as e:
        logger.error(f"Failed to initialize OpenTelemetry tracing: {e}")
        return False


def get_tracer() -> Optional[Any]:
    if not _initialized and is_tracing_enabled():
        init_tracing()
    return _tracer


def _attr_value(value: Any) -> Any:
    return value if isinstance(value, (bool, int, float)) else str(value)


@contextmanager
def trace_span(name: str, attributes: Dict[str, Any] = None, record_exception: bool = True):
    """
    Context manager for creating trace spans.

    Usage:
        with trace_span("store.get_profile", {"store": "document"}):
            ...

    If tracing is disabled, this is a no-op and yields None.
    """
    tracer = get_tracer()

    if tracer is None:
        yield None
        return

    with tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, _attr_value(value))
        try:
            yield span
        except Exception as e:
            if record_exception:
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
            raise


def traced(name: str = None, attributes: Dict[str, Any] = None):
    """
    Decorator for tracing function execution.

    Usage:
        @traced("sync.sync_all_users")
        def sync_all_users(self): ...
    """

    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__name__}"

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            span_attrs = dict(attributes or {})
            span_attrs["function.name"] = func.__name__
            with trace_span(span_name, span_attrs):
                return func(*args, **kwargs)

        return wrapper

    return decorator


def add_span_attribute(key: str, value: Any) -> None:
    """Add an attribute to the current span."""
    if not OTEL_AVAILABLE or value is None:
        return

    span = trace.get_current_span()
    if span and span.is_recording():
        span.set_attribute(key, _attr_value(value))


def get_trace_context() -> Dict[str, str]:
    """
    Return trace_id/span_id of the current span for log correlation.
    """
    if not OTEL_AVAILABLE:
        return {}

    span = trace.get_current_span()
    ctx = span.get_span_context() if span else None
    if ctx is not None and ctx.is_valid:
        return {
            "trace_id": format(ctx.trace_id, "032x"),
            "span_id": format(ctx.span_id, "016x"),
        }
    return {}
