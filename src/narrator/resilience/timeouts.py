"""Timeout-with-retry helper for guarded external calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from ..errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class TimeoutConfig:
    """Per-attempt deadline plus retry/backoff policy, all in seconds."""

    timeout: float
    retries: int = 0
    backoff_multiplier: float = 2.0
    max_backoff: float = 10.0

    def backoff_for(self, attempt: int) -> float:
        """Delay before retrying after zero-based ``attempt``."""

        return min(self.backoff_multiplier**attempt * 1.0, self.max_backoff)


TEXT_GENERATION = TimeoutConfig(timeout=30.0, retries=2, backoff_multiplier=2.0, max_backoff=10.0)
AUDIO_GENERATION = TimeoutConfig(timeout=60.0, retries=1, backoff_multiplier=2.0, max_backoff=5.0)
EXTERNAL_API = TimeoutConfig(timeout=15.0, retries=3, backoff_multiplier=1.5, max_backoff=8.0)


async def with_timeout(
    operation: Callable[[], Awaitable[T]],
    config: TimeoutConfig,
    operation_name: str = "operation",
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with a per-attempt deadline, retrying with backoff.

    ``operation`` is a zero-argument callable so every attempt gets a fresh
    awaitable. After ``config.retries + 1`` failed attempts the last error is
    re-raised unchanged. Cancellation of the caller is never retried.
    """

    attempts = config.retries + 1
    last_error: BaseException | None = None

    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(operation(), timeout=config.timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            last_error = OperationTimeoutError(operation_name, config.timeout, attempt + 1)
        except Exception as exc:
            last_error = exc

        if attempt + 1 < attempts:
            delay = config.backoff_for(attempt)
            logger.warning(
                "%s failed on attempt %d/%d, retrying in %.1fs: %s",
                operation_name,
                attempt + 1,
                attempts,
                delay,
                last_error,
            )
            await sleep(delay)

    logger.error("%s failed after %d attempts: %s", operation_name, attempts, last_error)
    assert last_error is not None
    raise last_error
