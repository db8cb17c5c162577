"""Observability helpers for BuildGate."""

from buildgate.observability.metrics import metrics
from buildgate.observability.trace import TraceIdFilter, get_trace_id, set_trace_id

__all__ = ["metrics", "TraceIdFilter", "get_trace_id", "set_trace_id"]
