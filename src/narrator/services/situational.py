"""Season, time-of-day and public holiday context for the listener's position."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from ..config import Settings
from ..resilience.circuit_breaker import CircuitBreakerRegistry
from ..resilience.timeouts import TimeoutConfig
from ..schemas.narration import Coordinates, Season, SituationalContext, TimeOfDay

logger = logging.getLogger(__name__)

TROPIC_LATITUDE = 23.5

# (month, day) each northern season starts on, latest first
_NORTHERN_STARTS: tuple[tuple[tuple[int, int], Season], ...] = (
    ((12, 21), "winter"),
    ((9, 23), "fall"),
    ((6, 21), "summer"),
    ((3, 20), "spring"),
)
_SOUTHERN: dict[Season, Season] = {
    "winter": "summer",
    "summer": "winter",
    "spring": "fall",
    "fall": "spring",
}


def derive_season(lat: float, when: datetime) -> Optional[Season]:
    """Astronomical season for ``lat``; ``None`` between the tropics."""

    if -TROPIC_LATITUDE < lat < TROPIC_LATITUDE:
        return None
    month_day = (when.month, when.day)
    northern: Season = "winter"
    for start, season in _NORTHERN_STARTS:
        if month_day >= start:
            northern = season
            break
    return northern if lat > 0 else _SOUTHERN[northern]


def derive_time_of_day(when: datetime, lng: float) -> TimeOfDay:
    """Local part of day, approximating the UTC offset as ``lng / 15`` hours."""

    utc = when.astimezone(timezone.utc) if when.tzinfo else when
    local_hour = (utc.hour + int(round(lng / 15))) % 24
    if 5 <= local_hour < 12:
        return "morning"
    if 12 <= local_hour < 18:
        return "afternoon"
    if 18 <= local_hour < 22:
        return "evening"
    return "night"


def validate_situational_context(raw: Any) -> Optional[SituationalContext]:
    """Keep only recognised values from a client-supplied context object."""

    if isinstance(raw, SituationalContext):
        return raw
    if not isinstance(raw, dict):
        return None
    return SituationalContext.model_validate(raw)


def derive_situational_context(
    user_location: Coordinates,
    when: Optional[datetime] = None,
    client_context: Optional[SituationalContext] = None,
    holiday: Optional[str] = None,
) -> SituationalContext:
    """Fill season, time of day and holiday automatically; client values take precedence."""

    when = when or datetime.now(timezone.utc)
    provided = client_context or SituationalContext()
    return SituationalContext(
        season=provided.season or derive_season(user_location.lat, when),
        time_of_day=provided.time_of_day or derive_time_of_day(when, user_location.lng),
        recent_events=provided.recent_events or holiday,
    )


# (country, lat min, lat max, lng min, lng max), first match wins
_COUNTRY_BOXES: tuple[tuple[str, float, float, float, float], ...] = (
    ("US", 24, 50, -125, -66),
    ("CA", 42, 70, -141, -52),
    ("MX", 14, 33, -118, -86),
    ("GB", 49, 61, -8, 2),
    ("FR", 41, 51, -5, 10),
    ("DE", 47, 55, 5, 16),
    ("IT", 36, 47, 6, 19),
    ("ES", 36, 44, -10, 5),
    ("JP", 24, 46, 123, 154),
    ("CN", 18, 54, 73, 135),
    ("AU", -44, -10, 113, 154),
    ("BR", -34, 5, -74, -34),
    ("IN", 8, 36, 68, 97),
)
DEFAULT_COUNTRY = "US"

HOLIDAY_CACHE_SIZE = 50
HOLIDAY_CACHE_TTL = 365 * 24 * 60 * 60.0
HOLIDAY_TIMEOUT = TimeoutConfig(timeout=2.0, retries=0)


def country_code_for(location: Coordinates) -> str:
    """Coarse country lookup for the countries most visitors travel to."""

    for country, lat_min, lat_max, lng_min, lng_max in _COUNTRY_BOXES:
        if lat_min <= location.lat <= lat_max and lng_min <= location.lng <= lng_max:
            return country
    return DEFAULT_COUNTRY


class HolidayService:
    """Public holiday names from Nager.Date, cached per country and year."""

    def __init__(
        self,
        settings: Settings,
        breakers: CircuitBreakerRegistry,
        *,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._enabled = settings.enable_holiday_lookup
        self._url = settings.holiday_api_url
        self._breakers = breakers
        self._clock = clock
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(5.0))
        self._cache: OrderedDict[str, tuple[float, list[dict[str, Any]]]] = OrderedDict()

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def lookup(self, location: Coordinates, when: Optional[datetime] = None) -> Optional[str]:
        """Name of the public holiday on ``when`` at ``location``, if any."""

        if not self._enabled:
            return None
        when = (when or datetime.now(timezone.utc)).astimezone(timezone.utc)
        country = country_code_for(location)
        try:
            holidays = await self._holidays(country, when.year)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Holiday lookup failed for %s/%d: %s", country, when.year, exc)
            return None

        today = when.date().isoformat()
        for holiday in holidays:
            if holiday.get("date") == today:
                return holiday.get("localName") or holiday.get("name") or None
        return None

    async def _holidays(self, country: str, year: int) -> list[dict[str, Any]]:
        key = f"{country}:{year}"
        cached = self._cache.get(key)
        if cached is not None and self._clock() - cached[0] < HOLIDAY_CACHE_TTL:
            return cached[1]

        url = self._url.format(year=year, country=country)

        async def _request() -> httpx.Response:
            response = await self._client.get(url)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        response = await self._breakers.guard_external(
            _request, name="holiday lookup", timeout=HOLIDAY_TIMEOUT
        )
        if response.status_code != 200:
            logger.warning("Holiday API returned %d for %s", response.status_code, country)
            return []
        data = response.json()
        holidays = [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []

        self._cache[key] = (self._clock(), holidays)
        self._cache.move_to_end(key)
        while len(self._cache) > HOLIDAY_CACHE_SIZE:
            self._cache.popitem(last=False)
        return holidays

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
