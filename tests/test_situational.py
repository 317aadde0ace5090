from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from narrator.config import Settings
from narrator.resilience.circuit_breaker import CircuitBreakerRegistry
from narrator.schemas.narration import Coordinates, SituationalContext
from narrator.services.situational import (
    HolidayService,
    country_code_for,
    derive_season,
    derive_situational_context,
    derive_time_of_day,
    validate_situational_context,
)


def _utc(month: int, day: int, hour: int = 12) -> datetime:
    return datetime(2024, month, day, hour, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("lat", "when", "expected"),
    [
        (48.8, _utc(7, 1), "summer"),
        (48.8, _utc(1, 5), "winter"),
        (48.8, _utc(3, 20), "spring"),
        (48.8, _utc(10, 15), "fall"),
        (48.8, _utc(12, 25), "winter"),
        (-33.9, _utc(7, 1), "winter"),
        (-33.9, _utc(1, 5), "summer"),
        (10.0, _utc(7, 1), None),
    ],
)
def test_derive_season(lat: float, when: datetime, expected: str | None) -> None:
    assert derive_season(lat, when) == expected


@pytest.mark.parametrize(
    ("hour", "lng", "expected"),
    [
        (12, -75.0, "morning"),
        (20, 0.0, "evening"),
        (23, 0.0, "night"),
        (3, 135.0, "afternoon"),
    ],
)
def test_derive_time_of_day(hour: int, lng: float, expected: str) -> None:
    assert derive_time_of_day(_utc(6, 1, hour), lng) == expected


def test_client_values_take_precedence() -> None:
    context = derive_situational_context(
        Coordinates(lat=48.8, lng=2.3),
        when=_utc(7, 1, 10),
        client_context=SituationalContext(season="winter", recent_events="Jazz festival"),
    )

    assert context.season == "winter"
    assert context.time_of_day == "morning"
    assert context.recent_events == "Jazz festival"


def test_validate_situational_context_drops_unknown_values() -> None:
    context = validate_situational_context(
        {"season": "monsoon", "timeOfDay": "evening", "recentEvents": "<b>Parade</b>"}
    )

    assert context is not None
    assert context.season is None
    assert context.time_of_day == "evening"
    assert "<" not in (context.recent_events or "")


def test_validate_situational_context_rejects_non_objects() -> None:
    assert validate_situational_context("summer") is None
    assert validate_situational_context(None) is None


HOLIDAYS_2024 = [
    {"date": "2024-07-04", "localName": "Independence Day", "name": "Independence Day"},
    {"date": "2024-07-14", "localName": "Fête nationale", "name": "Bastille Day"},
]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _holidays(
    handler: Any, **overrides: Any
) -> tuple[HolidayService, CircuitBreakerRegistry]:
    values: dict[str, Any] = {"_env_file": None, "enable_holiday_lookup": True}
    values.update(overrides)
    breakers = CircuitBreakerRegistry()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HolidayService(Settings(**values), breakers, client=client), breakers


@pytest.mark.parametrize(
    ("lat", "lng", "expected"),
    [
        (40.7, -74.0, "US"),
        (48.85, 2.35, "FR"),
        (35.68, 139.69, "JP"),
        (-33.87, 151.21, "AU"),
        (0.0, 0.0, "US"),
    ],
)
def test_country_code_for(lat: float, lng: float, expected: str) -> None:
    assert country_code_for(Coordinates(lat=lat, lng=lng)) == expected


def test_holiday_fills_recent_events_unless_client_sent_some() -> None:
    paris = Coordinates(lat=48.85, lng=2.35)

    derived = derive_situational_context(paris, when=_utc(7, 14), holiday="Fête nationale")
    supplied = derive_situational_context(
        paris,
        when=_utc(7, 14),
        client_context=SituationalContext(recent_events="Jazz festival"),
        holiday="Fête nationale",
    )

    assert derived.recent_events == "Fête nationale"
    assert supplied.recent_events == "Jazz festival"


@pytest.mark.anyio
async def test_lookup_returns_local_name_and_caches_year() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json=HOLIDAYS_2024)

    service, _ = _holidays(handler)
    paris = Coordinates(lat=48.85, lng=2.35)

    assert await service.lookup(paris, _utc(7, 14)) == "Fête nationale"
    assert await service.lookup(paris, _utc(7, 15)) is None
    assert calls == ["/api/v3/publicholidays/2024/FR"]


@pytest.mark.anyio
async def test_lookup_failure_is_absorbed_and_counted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "down"})

    service, breakers = _holidays(handler)

    assert await service.lookup(Coordinates(lat=40.7, lng=-74.0), _utc(7, 4)) is None
    assert breakers.external.snapshot()["failures"] == 1


@pytest.mark.anyio
async def test_disabled_lookup_makes_no_requests() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=HOLIDAYS_2024)

    service, _ = _holidays(handler, enable_holiday_lookup=False)

    assert await service.lookup(Coordinates(lat=40.7, lng=-74.0), _utc(7, 4)) is None
    assert calls == []
