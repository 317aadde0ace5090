from __future__ import annotations

import base64
import json

import pytest

from narrator.resilience.rate_limiter import (
    RateLimiter,
    RateLimitPolicy,
    RateLimitService,
    get_client_ip,
    get_user_id,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


POLICY = RateLimitPolicy("test", window_seconds=60, max_requests=3, key_prefix="t:")


def test_exactly_max_requests_allowed_per_window() -> None:
    clock = FakeClock()
    limiter = RateLimiter(POLICY, clock=clock)

    results = [limiter.check_limit("1.2.3.4") for _ in range(3)]
    assert all(result.allowed for result in results)
    assert [result.remaining for result in results] == [2, 1, 0]

    clock.advance(20)
    rejected = limiter.check_limit("1.2.3.4")

    assert not rejected.allowed
    assert rejected.retry_after == 40


def test_window_resets_after_expiry() -> None:
    clock = FakeClock()
    limiter = RateLimiter(POLICY, clock=clock)
    for _ in range(4):
        limiter.check_limit("a")

    clock.advance(60)
    result = limiter.check_limit("a")

    assert result.allowed
    assert result.remaining == 2


def test_keys_are_counted_separately() -> None:
    limiter = RateLimiter(POLICY, clock=FakeClock())
    for _ in range(3):
        limiter.check_limit("a")

    assert limiter.check_limit("b").allowed
    assert not limiter.check_limit("a").allowed


def test_cleanup_evicts_expired_records() -> None:
    clock = FakeClock()
    limiter = RateLimiter(POLICY, clock=clock)
    limiter.check_limit("a")
    limiter.check_limit("b")

    clock.advance(61)

    assert limiter.cleanup() == 2
    assert limiter.stats()["activeKeys"] == 0


def _service(clock: FakeClock) -> RateLimitService:
    return RateLimitService(
        clock=clock,
        ip=RateLimitPolicy("ip", window_seconds=900, max_requests=5, key_prefix="ip:"),
        user=RateLimitPolicy("user", window_seconds=900, max_requests=10, key_prefix="user:"),
        expensive=RateLimitPolicy("expensive", window_seconds=60, max_requests=2, key_prefix="endpoint:"),
        streaming=RateLimitPolicy("streaming", window_seconds=300, max_requests=1, key_prefix="stream:"),
    )


def test_service_rejects_when_any_policy_rejects() -> None:
    service = _service(FakeClock())

    assert service.check("9.9.9.9", generate_audio=True).allowed
    assert service.check("9.9.9.9", generate_audio=True).allowed
    decision = service.check("9.9.9.9", generate_audio=True)

    assert not decision.allowed
    assert decision.message is not None
    assert decision.message.startswith("Rate limit exceeded for expensive.")
    headers = decision.headers()
    assert headers["X-RateLimit-Limit"] == "2"
    assert headers["X-RateLimit-Remaining"] == "0"
    assert "Retry-After" in headers


def test_service_reports_most_restrictive_remaining() -> None:
    service = _service(FakeClock())

    decision = service.check("8.8.8.8", "user-1", generate_audio=True)

    assert decision.allowed
    # ip leaves 4, user 9, expensive 1
    assert decision.headers()["X-RateLimit-Remaining"] == "1"
    assert decision.headers()["X-RateLimit-Limit"] == "2"


def test_plain_requests_skip_expensive_policy() -> None:
    service = _service(FakeClock())

    for _ in range(5):
        assert service.check("7.7.7.7").allowed

    assert service.expensive.stats()["activeKeys"] == 0
    assert not service.check("7.7.7.7").allowed


def test_client_ip_prefers_forwarded_header() -> None:
    assert get_client_ip({"x-forwarded-for": "203.0.113.7, 10.0.0.1"}) == "203.0.113.7"
    assert get_client_ip({"x-real-ip": "198.51.100.2"}) == "198.51.100.2"
    assert get_client_ip({}) == "unknown"


def _token(payload: dict) -> str:
    body = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")
    return f"Bearer eyJhbGciOiJIUzI1NiJ9.{body}.signature"


@pytest.mark.parametrize(
    ("headers", "expected"),
    [
        ({"authorization": _token({"sub": "user-42"})}, "user-42"),
        ({"authorization": _token({"user_id": 7})}, "7"),
        ({"authorization": "Bearer not-a-jwt"}, None),
        ({"authorization": "Basic abc"}, None),
        ({}, None),
    ],
)
def test_user_id_from_bearer_token(headers: dict, expected: str | None) -> None:
    assert get_user_id(headers) == expected
