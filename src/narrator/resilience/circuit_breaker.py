"""Circuit breakers, one per logical external dependency."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..errors import CircuitOpenError
from .timeouts import AUDIO_GENERATION, EXTERNAL_API, TEXT_GENERATION, TimeoutConfig, with_timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    success_threshold: int
    timeout: float  # seconds the circuit stays open after the last failure


TEXT_BREAKER = CircuitBreakerConfig(failure_threshold=5, success_threshold=3, timeout=60.0)
AUDIO_BREAKER = CircuitBreakerConfig(failure_threshold=3, success_threshold=2, timeout=120.0)
EXTERNAL_BREAKER = CircuitBreakerConfig(failure_threshold=10, success_threshold=5, timeout=30.0)


class CircuitBreaker:
    """Closed / open / half-open guard around an async operation.

    Counters are updated under a lock that is never held while the guarded
    operation runs.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure: Optional[float] = None
        self._last_failure_wall: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._before_call()
        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _before_call(self) -> None:
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return
            elapsed = self._clock() - (self._last_failure or 0.0)
            if elapsed < self.config.timeout:
                raise CircuitOpenError(self.name, self.config.timeout - elapsed)
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
        logger.info("Circuit breaker %s transitioning to half-open", self.name)

    def _on_success(self) -> None:
        closed = False
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._state = CircuitState.CLOSED
                    self._failures = 0
                    self._successes = 0
                    closed = True
            else:
                self._failures = 0
        if closed:
            logger.info("Circuit breaker %s closed", self.name)

    def _on_failure(self) -> None:
        opened = False
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()
            self._last_failure_wall = time.time()
            if self._state is CircuitState.HALF_OPEN or (
                self._failures >= self.config.failure_threshold
            ):
                opened = self._state is not CircuitState.OPEN
                self._state = CircuitState.OPEN
                self._successes = 0
        if opened:
            logger.warning(
                "Circuit breaker %s opened after %d failures", self.name, self._failures
            )

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "failures": self._failures,
                "successes": self._successes,
                "lastFailureTime": self._last_failure_wall,
            }

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._successes = 0
            self._last_failure = None
            self._last_failure_wall = None


class CircuitBreakerRegistry:
    """Holds the process-wide breakers and pairs each with its timeout policy."""

    TEXT = "text_generation"
    AUDIO = "audio_generation"
    EXTERNAL = "external_api"

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        text: CircuitBreakerConfig = TEXT_BREAKER,
        audio: CircuitBreakerConfig = AUDIO_BREAKER,
        external: CircuitBreakerConfig = EXTERNAL_BREAKER,
        text_timeout: TimeoutConfig = TEXT_GENERATION,
        audio_timeout: TimeoutConfig = AUDIO_GENERATION,
        external_timeout: TimeoutConfig = EXTERNAL_API,
    ) -> None:
        self.text = CircuitBreaker(self.TEXT, text, clock=clock)
        self.audio = CircuitBreaker(self.AUDIO, audio, clock=clock)
        self.external = CircuitBreaker(self.EXTERNAL, external, clock=clock)
        self._timeouts = {
            self.TEXT: text_timeout,
            self.AUDIO: audio_timeout,
            self.EXTERNAL: external_timeout,
        }

    def get(self, name: str) -> CircuitBreaker:
        return {self.TEXT: self.text, self.AUDIO: self.audio, self.EXTERNAL: self.external}[name]

    async def guard(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: Optional[str] = None,
        timeout: Optional[TimeoutConfig] = None,
    ) -> T:
        """Run ``operation`` through the named breaker with timeout and retry."""

        config = timeout or self._timeouts[name]
        label = operation_name or name
        return await self.get(name).call(lambda: with_timeout(operation, config, label))

    async def guard_text(self, operation: Callable[[], Awaitable[T]], name: str = "text generation") -> T:
        return await self.guard(self.TEXT, operation, operation_name=name)

    async def guard_audio(self, operation: Callable[[], Awaitable[T]], name: str = "audio generation") -> T:
        return await self.guard(self.AUDIO, operation, operation_name=name)

    async def guard_external(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str = "external api",
        timeout: Optional[TimeoutConfig] = None,
    ) -> T:
        return await self.guard(self.EXTERNAL, operation, operation_name=name, timeout=timeout)

    def health(self) -> dict[str, dict[str, Any]]:
        return {
            breaker.name: breaker.snapshot()
            for breaker in (self.text, self.audio, self.external)
        }
