"""Middleware components for the BuildGate API."""

from buildgate.middleware.trace import TRACE_HEADER, trace_id_middleware

__all__ = ["TRACE_HEADER", "trace_id_middleware"]
