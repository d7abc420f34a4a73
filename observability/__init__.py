from .logging import build_log_context, log_event
from .tracing import trace_span, traced

__all__ = ["build_log_context", "log_event", "trace_span", "traced"]
