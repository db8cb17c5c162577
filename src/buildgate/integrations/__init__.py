"""External service integrations: sandbox provider and generation model."""

from buildgate.integrations.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
    CircuitState,
)
from buildgate.integrations.model_client import (
    AnthropicModelClient,
    ModelClient,
    ModelError,
    ModelResponse,
)
from buildgate.integrations.sandbox import (
    CommandResult,
    E2BSandboxProvider,
    SandboxCapacityError,
    SandboxHandle,
    SandboxProvider,
    SandboxProviderError,
)

__all__ = [
    "AnthropicModelClient",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerOpen",
    "CircuitState",
    "CommandResult",
    "E2BSandboxProvider",
    "ModelClient",
    "ModelError",
    "ModelResponse",
    "SandboxCapacityError",
    "SandboxHandle",
    "SandboxProvider",
    "SandboxProviderError",
]
