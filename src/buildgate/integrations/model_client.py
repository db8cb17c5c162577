"""Generation model client (Anthropic Messages API over httpx)."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from buildgate.config import settings
from buildgate.integrations.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from buildgate.observability.metrics import metrics

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

# Rate limiting and server-side failures are worth another attempt.
RETRYABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504, 529}


class ModelError(Exception):
    """The generation model could not produce a turn."""

    def __init__(self, detail: str, status_code: int | None = None):
        super().__init__(f"Model call failed: {detail}")
        self.detail = detail
        self.status_code = status_code


class ModelResponse(BaseModel):
    """One assistant turn: content blocks plus the reason generation stopped."""

    content: list[dict[str, Any]] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: Optional[dict[str, Any]] = None


class ModelClient(ABC):
    """Abstract generation model."""

    @abstractmethod
    async def create_message(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        """
        Produce the next assistant turn.

        Raises:
            ModelError: the model could not be reached or rejected the request
        """

    async def close(self) -> None:
        pass


class AnthropicModelClient(ModelClient):
    """
    Messages API client.

    Each call is bounded by ``model_request_timeout_seconds``; 429/5xx
    responses are retried with exponential backoff, and the whole call goes
    through a circuit breaker so a degraded API fails jobs fast.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or settings.model_api_key
        self.base_url = (base_url or settings.model_base_url).rstrip("/")
        self.model = model or settings.model_name
        self.max_tokens = max_tokens or settings.model_max_tokens
        self.timeout = timeout or settings.model_request_timeout_seconds
        self.max_retries = settings.model_max_retries if max_retries is None else max_retries
        self.backoff_seconds = (
            settings.model_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self._client = http_client or httpx.AsyncClient(timeout=self.timeout)
        self._owns_client = http_client is None

        if settings.model_circuit_breaker_enabled:
            self._circuit_breaker: CircuitBreaker | None = CircuitBreaker(
                name="model",
                config=CircuitBreakerConfig(
                    failure_threshold=settings.model_circuit_breaker_failure_threshold,
                    timeout_seconds=settings.model_circuit_breaker_timeout_seconds,
                    half_open_max_calls=settings.model_circuit_breaker_half_open_max_calls,
                    success_threshold=settings.model_circuit_breaker_success_threshold,
                ),
                trips_on=_is_upstream_failure,
            )
        else:
            self._circuit_breaker = None

    @property
    def circuit_breaker(self) -> CircuitBreaker | None:
        return self._circuit_breaker

    async def create_message(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        if not self.api_key:
            raise ModelError("model API key is not configured")

        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
            # One tool per step keeps the trace strictly sequential
            payload["tool_choice"] = {"type": "auto", "disable_parallel_tool_use": True}

        with metrics.timer("model.request_ms"):
            if self._circuit_breaker is not None:
                return await self._circuit_breaker.call(self._post_with_retries, payload)
            return await self._post_with_retries(payload)

    async def _post_with_retries(self, payload: dict[str, Any]) -> ModelResponse:
        headers = {
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        url = f"{self.base_url}/v1/messages"
        last_error: ModelError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._client.post(url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                last_error = ModelError(f"{type(e).__name__}: {e}")
            else:
                if response.status_code in RETRYABLE_STATUS_CODES:
                    last_error = ModelError(
                        f"HTTP {response.status_code}: {response.text[:500]}",
                        status_code=response.status_code,
                    )
                elif response.status_code >= 400:
                    metrics.inc_counter("model.errors")
                    raise ModelError(
                        f"HTTP {response.status_code}: {response.text[:500]}",
                        status_code=response.status_code,
                    )
                else:
                    try:
                        parsed = ModelResponse.model_validate(response.json())
                    except (ValueError, ValidationError) as e:
                        metrics.inc_counter("model.errors")
                        raise ModelError(f"malformed response: {e}") from e
                    metrics.inc_counter("model.requests")
                    return parsed

            if attempt < self.max_retries:
                metrics.inc_counter("model.retries")
                delay = self.backoff_seconds * (2**attempt)
                logger.warning(
                    f"Model call failed (attempt {attempt + 1}/{self.max_retries + 1}), "
                    f"retrying in {delay:.1f}s: {last_error}"
                )
                await asyncio.sleep(delay)

        metrics.inc_counter("model.errors")
        raise last_error or ModelError("no attempts made")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _is_upstream_failure(error: BaseException) -> bool:
    """A 4xx other than rate limiting is our request's fault, not the API's."""
    if isinstance(error, ModelError) and error.status_code is not None:
        return error.status_code in RETRYABLE_STATUS_CODES
    return True
