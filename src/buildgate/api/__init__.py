"""BuildGate REST API."""

from buildgate.api.router import router

__all__ = ["router"]
