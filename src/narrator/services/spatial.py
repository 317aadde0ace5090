"""Coarse spatial hints for prompts and redaction of precise locations."""

from __future__ import annotations

import math
import re
from typing import Optional

from ..schemas.narration import Coordinates, SpatialHints

EARTH_RADIUS_METERS = 6_371_000

_CARDINALS_16 = {
    "en": ("N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE", "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW"),
    "es": ("N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE", "S", "SSO", "SO", "OSO", "O", "ONO", "NO", "NNO"),
}
_CARDINALS_8 = {
    "en": ("N", "NE", "E", "SE", "S", "SW", "W", "NW"),
    "es": ("N", "NE", "E", "SE", "S", "SO", "O", "NO"),
}
_RELATIVE = {
    "en": {"ahead": "ahead", "right": "right", "behind": "behind", "left": "left"},
    "es": {"ahead": "delante", "right": "derecha", "behind": "detrás", "left": "izquierda"},
}


def _lang(language: str) -> str:
    return "es" if language == "es" else "en"


def haversine_distance(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance in meters."""

    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(b.lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bearing_between(a: Coordinates, b: Coordinates) -> float:
    """Initial bearing from ``a`` to ``b`` in degrees, ``[0, 360)``."""

    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lng = math.radians(b.lng - a.lng)
    y = math.sin(d_lng) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(d_lng)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def bearing_to_cardinal(bearing: float, *, points: int = 16, language: str = "en") -> str:
    table = (_CARDINALS_16 if points == 16 else _CARDINALS_8)[_lang(language)]
    step = 360 / len(table)
    return table[int((bearing % 360) / step + 0.5) % len(table)]


def bucket_distance(meters: float, language: str = "en") -> str:
    """Approximate distance text that avoids false precision."""

    spanish = _lang(language) == "es"
    meters = max(0.0, meters)
    if meters < 50:
        return "a pocos metros" if spanish else "a few meters"
    if meters < 1000:
        rounded = int(meters / 50 + 0.5) * 50
        if rounded >= 1000:
            return "a unos 1 km" if spanish else "about 1 km"
        return f"a unos {rounded} m" if spanish else f"about {rounded} m"
    km = round(meters / 1000, 1)
    km_text = f"{km:g}"
    return f"a unos {km_text} km" if spanish else f"about {km_text} km"


def relative_direction(bearing: float, heading: float, language: str = "en") -> str:
    angle = (bearing - heading) % 360
    if angle <= 45 or angle >= 315:
        key = "ahead"
    elif angle < 135:
        key = "right"
    elif angle <= 225:
        key = "behind"
    else:
        key = "left"
    return _RELATIVE[_lang(language)][key]


def derive_spatial_hints(
    user: Coordinates,
    poi: Coordinates,
    heading: Optional[float] = None,
    language: str = "en",
) -> SpatialHints:
    bearing = bearing_between(user, poi)
    distance = haversine_distance(user, poi)
    relative = None
    if heading is not None and math.isfinite(heading):
        relative = relative_direction(bearing, heading, language)
    return SpatialHints(
        bearing=round(bearing, 1),
        cardinal8=bearing_to_cardinal(bearing, points=8, language=language),
        cardinal16=bearing_to_cardinal(bearing, points=16, language=language),
        distance_meters=round(distance),
        distance_text=bucket_distance(distance, language),
        relative=relative,
    )


_STREET_TYPES = (
    r"Street|St\.?|Avenue|Ave\.?|Boulevard|Blvd\.?|Road|Rd\.?|Drive|Dr\.?|Lane|Ln\.?|Way|"
    r"Highway|Hwy\.?|Court|Ct\.?|Place|Pl\.?|Square|Sq\.?|Plaza|Calle|Av\.?|Avenida|Carrer|"
    r"Rua|Camino|Paseo|Passeig"
)

_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"-?\b\d{1,2}\.\d{3,}\s*,\s*-?\d{1,3}\.\d{3,}\b"),
        "[coordinates withheld]",
    ),
    (
        re.compile(r"\b(latitude|latitud|longitude|longitud|lat|lng)\b[^\d\n-]*-?\d{1,3}(?:[.,]\d+)?", re.I),
        r"\1 [withheld]",
    ),
    (
        re.compile(
            r"\b\d{1,3}°\s*\d{1,2}['′]\s*\d{1,2}(?:\.\d+)?[\"″]?\s*[NSEWO]\b"
            r"(?:\s*,?\s*\d{1,3}°\s*\d{1,2}['′]\s*\d{1,2}(?:\.\d+)?[\"″]?\s*[NSEWO]\b)?"
        ),
        "[coordinates withheld]",
    ),
    (
        re.compile(
            rf"\b\d{{1,5}}\s+(?:[A-ZÁÉÍÓÚÜÑ][\w.'’]*\s+){{1,4}}(?:{_STREET_TYPES})(?=\W|$)"
        ),
        "[address withheld]",
    ),
)


def redact_spatial_data(text: str) -> str:
    """Remove coordinates and street addresses that slipped into generated text."""

    if not text:
        return text
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text
