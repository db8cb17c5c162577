"""Circuit breaker for the generation model API."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from buildgate.observability.metrics import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    timeout_seconds: int = 60
    half_open_max_calls: int = 3
    success_threshold: int = 2


class CircuitBreakerOpen(Exception):
    """The call was refused without reaching the service."""

    def __init__(self, service_name: str, retry_after: int):
        self.service_name = service_name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker open for {service_name}, retry after {retry_after}s")


class CircuitBreaker:
    """
    Fails calls fast while an upstream service keeps failing.

    ``failure_threshold`` consecutive failures open the circuit. After
    ``timeout_seconds`` up to ``half_open_max_calls`` probes are let
    through; ``success_threshold`` probe successes close it again and any
    probe failure reopens it.

    Only exceptions accepted by ``trips_on`` count as failures, so a
    request the service rejected as malformed does not take the circuit
    down for every other job.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig,
        trips_on: Callable[[BaseException], bool] = lambda e: True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config
        self._trips_on = trips_on
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._probe_successes = 0
        self._probes_in_flight = 0
        self._opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "retry_after": self._retry_after() if self._state == CircuitState.OPEN else 0,
        }

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await ``func(*args, **kwargs)`` unless the circuit refuses it.

        Raises:
            CircuitBreakerOpen: the circuit is open, or all half-open probes are in flight
        """
        async with self._lock:
            if self._state == CircuitState.OPEN and self._cooled_down():
                self._state = CircuitState.HALF_OPEN
                self._probe_successes = 0
                self._probes_in_flight = 0
                logger.info(f"Circuit {self.name} half-open, probing")

            if self._state == CircuitState.OPEN or (
                self._state == CircuitState.HALF_OPEN
                and self._probes_in_flight >= self.config.half_open_max_calls
            ):
                metrics.inc_counter(f"circuit.{self.name}.rejected")
                raise CircuitBreakerOpen(self.name, self._retry_after())

            probing = self._state == CircuitState.HALF_OPEN
            if probing:
                self._probes_in_flight += 1

        # The call itself runs unlocked; jobs share one breaker
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self._record(probing, failed=self._trips_on(e), error=e)
            raise
        await self._record(probing, failed=False)
        return result

    async def reset(self) -> None:
        async with self._lock:
            self._close()
            logger.info(f"Circuit {self.name} reset")

    async def _record(self, probing: bool, failed: bool, error: Exception | None = None) -> None:
        async with self._lock:
            if probing:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)

            if not failed:
                self._consecutive_failures = 0
                if self._state == CircuitState.HALF_OPEN:
                    self._probe_successes += 1
                    if self._probe_successes >= self.config.success_threshold:
                        self._close()
                        logger.info(f"Circuit {self.name} closed after recovery")
                return

            self._consecutive_failures += 1
            logger.warning(
                f"Circuit {self.name} failure {self._consecutive_failures}/"
                f"{self.config.failure_threshold}: {error}"
            )
            if (
                self._state == CircuitState.HALF_OPEN
                or self._consecutive_failures >= self.config.failure_threshold
            ) and self._state != CircuitState.OPEN:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                metrics.inc_counter(f"circuit.{self.name}.opened")
                logger.error(
                    f"Circuit {self.name} opened after {self._consecutive_failures} failures"
                )

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._probe_successes = 0
        self._probes_in_flight = 0
        self._opened_at = None

    def _cooled_down(self) -> bool:
        if self._opened_at is None:
            return True
        return self._clock() - self._opened_at >= self.config.timeout_seconds

    def _retry_after(self) -> int:
        if self._opened_at is None:
            return 0
        elapsed = self._clock() - self._opened_at
        return int(max(0.0, self.config.timeout_seconds - elapsed))
