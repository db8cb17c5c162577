"""Trace id propagation for log correlation.

A trace id lives in a context variable. HTTP requests take it from the
``X-Trace-ID`` header; job tasks use the job id so every log line emitted
while a job runs can be grepped by that id.
"""

import logging
from contextvars import ContextVar
from uuid import uuid4

_trace_id: ContextVar[str | None] = ContextVar("buildgate_trace_id", default=None)


def get_trace_id() -> str | None:
    return _trace_id.get()


def set_trace_id(trace_id: str | None = None) -> str:
    """Set (or generate) the trace id for the current context."""
    value = trace_id or uuid4().hex
    _trace_id.set(value)
    return value


class TraceIdFilter(logging.Filter):
    """Inject ``trace_id`` into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id() or "-"
        return True
