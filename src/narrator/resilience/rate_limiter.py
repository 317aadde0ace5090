"""Fixed-window rate limiting keyed by IP, user and endpoint."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import math
import threading
import time
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_seconds: float
    max_requests: int
    key_prefix: str


IP_POLICY = RateLimitPolicy("ip", window_seconds=15 * 60, max_requests=100, key_prefix="ip:")
USER_POLICY = RateLimitPolicy("user", window_seconds=15 * 60, max_requests=200, key_prefix="user:")
EXPENSIVE_POLICY = RateLimitPolicy("expensive", window_seconds=60, max_requests=10, key_prefix="endpoint:")
STREAMING_POLICY = RateLimitPolicy("streaming", window_seconds=5 * 60, max_requests=20, key_prefix="stream:")


@dataclass
class RateLimitRecord:
    count: int
    reset_time: float
    first_request: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_time: float  # epoch seconds
    retry_after: Optional[int] = None
    policy: str = ""

    @property
    def reset_iso(self) -> str:
        return datetime.fromtimestamp(self.reset_time, tz=timezone.utc).isoformat()


class RateLimiter:
    """Fixed-window counter for a single policy."""

    def __init__(
        self,
        policy: RateLimitPolicy,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policy = policy
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, RateLimitRecord] = {}

    def check_limit(self, identifier: str) -> RateLimitResult:
        """Count one request for ``identifier`` if the window still has room."""

        key = f"{self.policy.key_prefix}{identifier}"
        now = self._clock()
        with self._lock:
            record = self._records.get(key)
            if record is None or now >= record.reset_time:
                record = RateLimitRecord(
                    count=0,
                    reset_time=now + self.policy.window_seconds,
                    first_request=now,
                )
                self._records[key] = record

            if record.count >= self.policy.max_requests:
                return RateLimitResult(
                    allowed=False,
                    limit=self.policy.max_requests,
                    remaining=0,
                    reset_time=record.reset_time,
                    retry_after=max(1, math.ceil(record.reset_time - now)),
                    policy=self.policy.name,
                )

            record.count += 1
            return RateLimitResult(
                allowed=True,
                limit=self.policy.max_requests,
                remaining=max(0, self.policy.max_requests - record.count),
                reset_time=record.reset_time,
                policy=self.policy.name,
            )

    def cleanup(self) -> int:
        """Evict expired windows; returns how many were dropped."""

        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._records.items() if now >= record.reset_time]
            for key in expired:
                del self._records[key]
        return len(expired)

    def reset(self, identifier: Optional[str] = None) -> None:
        with self._lock:
            if identifier is None:
                self._records.clear()
            else:
                self._records.pop(f"{self.policy.key_prefix}{identifier}", None)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            active = [record for record in self._records.values() if now < record.reset_time]
        return {
            "activeKeys": len(active),
            "totalRequests": sum(record.count for record in active),
            "limit": self.policy.max_requests,
            "windowSeconds": self.policy.window_seconds,
        }


@dataclass
class RateLimitDecision:
    """Combined outcome of every policy that applied to one request."""

    allowed: bool
    results: list[RateLimitResult] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def governing(self) -> Optional[RateLimitResult]:
        if not self.results:
            return None
        rejected = [result for result in self.results if not result.allowed]
        if rejected:
            return max(rejected, key=lambda result: result.retry_after or 0)
        return min(self.results, key=lambda result: result.remaining)

    def headers(self) -> dict[str, str]:
        result = self.governing
        if result is None:
            return {}
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining if result.allowed else 0),
            "X-RateLimit-Reset": result.reset_iso,
        }
        if not result.allowed and result.retry_after is not None:
            headers["Retry-After"] = str(result.retry_after)
        return headers


class RateLimitService:
    """Evaluates the IP, user, expensive and streaming policies together."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        ip: RateLimitPolicy = IP_POLICY,
        user: RateLimitPolicy = USER_POLICY,
        expensive: RateLimitPolicy = EXPENSIVE_POLICY,
        streaming: RateLimitPolicy = STREAMING_POLICY,
        sweep_interval: float = 300.0,
    ) -> None:
        self.ip = RateLimiter(ip, clock=clock)
        self.user = RateLimiter(user, clock=clock)
        self.expensive = RateLimiter(expensive, clock=clock)
        self.streaming = RateLimiter(streaming, clock=clock)
        self._sweep_interval = sweep_interval
        self._sweep_task: Optional[asyncio.Task[None]] = None

    @property
    def limiters(self) -> tuple[RateLimiter, ...]:
        return (self.ip, self.user, self.expensive, self.streaming)

    def check(
        self,
        client_ip: str,
        user_id: Optional[str] = None,
        *,
        generate_audio: bool = False,
        stream_audio: bool = False,
    ) -> RateLimitDecision:
        """Apply every relevant policy; any rejection rejects the request.

        Policies are checked in order and evaluation stops at the first
        rejection, so a rejected request does not consume quota from the
        policies after it.
        """

        checks: list[tuple[RateLimiter, str]] = [(self.ip, client_ip)]
        if user_id:
            checks.append((self.user, user_id))
        if generate_audio:
            checks.append((self.expensive, f"{client_ip}:audio"))
        if stream_audio:
            checks.append((self.streaming, f"{client_ip}:stream"))

        decision = RateLimitDecision(allowed=True)
        for limiter, identifier in checks:
            result = limiter.check_limit(identifier)
            decision.results.append(result)
            if not result.allowed:
                decision.allowed = False
                decision.message = (
                    f"Rate limit exceeded for {limiter.policy.name}. "
                    f"Try again in {result.retry_after} seconds."
                )
                logger.warning(
                    "Rate limit exceeded for %s policy (retry in %ss)",
                    limiter.policy.name,
                    result.retry_after,
                )
                break
        return decision

    def cleanup(self) -> int:
        removed = sum(limiter.cleanup() for limiter in self.limiters)
        if removed:
            logger.debug("Rate limiter sweep evicted %d expired windows", removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.cleanup()
            except Exception as exc:  # pragma: no cover
                logger.warning("Rate limiter sweep failed: %s", exc)

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

    def stats(self) -> dict[str, Any]:
        return {limiter.policy.name: limiter.stats() for limiter in self.limiters}


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Best-effort client IP from proxy headers."""

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for name in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(name)
        if value:
            return value.strip()
    return "unknown"


def get_user_id(headers: Mapping[str, str]) -> Optional[str]:
    """Read ``sub``/``user_id`` from an unverified bearer JWT.

    Only used as a rate-limit key; the token is not trusted for anything else.
    """

    auth = headers.get("authorization") or ""
    if not auth.lower().startswith("bearer "):
        return None
    parts = auth[7:].strip().split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    user_id = payload.get("sub") or payload.get("user_id")
    return str(user_id) if user_id else None
