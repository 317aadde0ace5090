from __future__ import annotations

import asyncio

import pytest

from narrator.errors import OperationTimeoutError
from narrator.resilience.timeouts import AUDIO_GENERATION, TEXT_GENERATION, TimeoutConfig, with_timeout


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_backoff_grows_and_caps() -> None:
    config = TimeoutConfig(timeout=1, retries=5, backoff_multiplier=2.0, max_backoff=5.0)

    assert [config.backoff_for(attempt) for attempt in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_presets_match_dependency_budgets() -> None:
    assert (TEXT_GENERATION.timeout, TEXT_GENERATION.retries) == (30.0, 2)
    assert (AUDIO_GENERATION.timeout, AUDIO_GENERATION.retries) == (60.0, 1)


@pytest.mark.anyio
async def test_retries_until_success() -> None:
    attempts = 0
    sleep = RecordingSleep()

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise ConnectionError("reset")
        return "done"

    config = TimeoutConfig(timeout=1, retries=2, backoff_multiplier=2.0, max_backoff=10.0)
    result = await with_timeout(flaky, config, "flaky call", sleep=sleep)

    assert result == "done"
    assert attempts == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.anyio
async def test_last_error_propagates_unchanged() -> None:
    error = ValueError("bad payload")

    async def broken() -> None:
        raise error

    with pytest.raises(ValueError) as excinfo:
        await with_timeout(broken, TimeoutConfig(timeout=1, retries=1), sleep=RecordingSleep())

    assert excinfo.value is error


@pytest.mark.anyio
async def test_timeout_raises_operation_timeout() -> None:
    async def slow() -> None:
        await asyncio.sleep(5)

    with pytest.raises(OperationTimeoutError) as excinfo:
        await with_timeout(slow, TimeoutConfig(timeout=0.01, retries=0), "slow call")

    assert excinfo.value.operation == "slow call"
    assert isinstance(excinfo.value, TimeoutError)


@pytest.mark.anyio
async def test_cancellation_is_not_retried() -> None:
    attempts = 0
    sleep = RecordingSleep()

    async def cancelled() -> None:
        nonlocal attempts
        attempts += 1
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await with_timeout(cancelled, TimeoutConfig(timeout=1, retries=3), sleep=sleep)

    assert attempts == 1
    assert sleep.delays == []
