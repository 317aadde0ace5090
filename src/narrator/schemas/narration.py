"""Pydantic models for the narration endpoint."""

from __future__ import annotations

import math
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Theme = Literal["history", "nature", "architecture", "culture", "general"]
AudioLength = Literal["short", "medium", "deep-dive"]
VoiceStyleName = Literal["casual", "formal", "energetic", "calm"]
Season = Literal["spring", "summer", "fall", "winter"]
TimeOfDay = Literal["morning", "afternoon", "evening", "night"]

THEMES: tuple[str, ...] = ("history", "nature", "architecture", "culture", "general")
AUDIO_LENGTHS: tuple[str, ...] = ("short", "medium", "deep-dive")
VOICE_STYLES: tuple[str, ...] = ("casual", "formal", "energetic", "calm")
SEASONS: tuple[str, ...] = ("spring", "summer", "fall", "winter")
TIMES_OF_DAY: tuple[str, ...] = ("morning", "afternoon", "evening", "night")

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "ru": "Russian",
    "ja": "Japanese",
    "ko": "Korean",
    "zh": "Chinese (Simplified)",
}

MAX_NAME_LENGTH = 200
MAX_ADDRESS_LENGTH = 500
MAX_RECENT_EVENTS_LENGTH = 200
MAX_EXISTING_TEXT_LENGTH = 20_000
MAX_CHUNK_TEXT_LENGTH = 4096


def sanitize_text(value: str) -> str:
    """Strip angle brackets and surrounding whitespace from user text."""

    return value.replace("<", "").replace(">", "").strip()


def normalize_language(value: Any) -> str:
    """Primary subtag of a supported language code, else ``"en"``."""

    if isinstance(value, str):
        code = value.strip().lower().split("-")[0]
        if code in LANGUAGE_NAMES:
            return code
    return "en"


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float

    @field_validator("lat", "lng", mode="before")
    @classmethod
    def _require_number(cls, value: Any) -> Any:
        # JSON booleans and numeric strings are not coordinates
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("must be a number")
        if not math.isfinite(value):
            raise ValueError("must be a finite number")
        return value

    @field_validator("lat")
    @classmethod
    def _lat_range(cls, value: float) -> float:
        if not -90.0 <= value <= 90.0:
            raise ValueError("latitude must be between -90 and 90")
        return value

    @field_validator("lng")
    @classmethod
    def _lng_range(cls, value: float) -> float:
        if not -180.0 <= value <= 180.0:
            raise ValueError("longitude must be between -180 and 180")
        return value


class SpatialHints(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    bearing: Optional[float] = None
    cardinal8: Optional[str] = None
    cardinal16: Optional[str] = None
    distance_meters: Optional[float] = Field(default=None, alias="distanceMeters")
    distance_text: Optional[str] = Field(default=None, alias="distanceText")
    relative: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.cardinal8 or self.cardinal16 or self.distance_text or self.relative)


class SituationalContext(BaseModel):
    """Season, time of day and recent events; unknown values are dropped."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    season: Optional[Season] = None
    time_of_day: Optional[TimeOfDay] = Field(default=None, alias="timeOfDay")
    recent_events: Optional[str] = Field(default=None, alias="recentEvents")

    @field_validator("season", mode="before")
    @classmethod
    def _known_season(cls, value: Any) -> Any:
        return value if value in SEASONS else None

    @field_validator("time_of_day", mode="before")
    @classmethod
    def _known_time(cls, value: Any) -> Any:
        return value if value in TIMES_OF_DAY else None

    @field_validator("recent_events", mode="before")
    @classmethod
    def _trim_events(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return None
        cleaned = sanitize_text(value)[:MAX_RECENT_EVENTS_LENGTH]
        return cleaned or None

    def is_empty(self) -> bool:
        return not (self.season or self.time_of_day or self.recent_events)


class Preferences(BaseModel):
    """User preferences; unsupported values fall back to defaults."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    theme: Theme = "general"
    audio_length: AudioLength = Field(default="medium", alias="audioLength")
    voice_style: VoiceStyleName = Field(default="casual", alias="voiceStyle")
    language: str = "en"

    @field_validator("theme", mode="before")
    @classmethod
    def _theme(cls, value: Any) -> Any:
        return value if value in THEMES else "general"

    @field_validator("audio_length", mode="before")
    @classmethod
    def _audio_length(cls, value: Any) -> Any:
        return value if value in AUDIO_LENGTHS else "medium"

    @field_validator("voice_style", mode="before")
    @classmethod
    def _voice_style(cls, value: Any) -> Any:
        return value if value in VOICE_STYLES else "casual"

    @field_validator("language", mode="before")
    @classmethod
    def _language(cls, value: Any) -> Any:
        return normalize_language(value)


class NarrationRequest(BaseModel):
    """Validated body of ``POST /attraction-info``; immutable once built."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    attraction_name: str = Field(alias="attractionName")
    attraction_address: Optional[str] = Field(default=None, alias="attractionAddress")
    user_location: Coordinates = Field(alias="userLocation")
    poi_location: Optional[Coordinates] = Field(default=None, alias="poiLocation")
    spatial_hints: Optional[SpatialHints] = Field(default=None, alias="spatialHints")
    user_heading: Optional[float] = Field(default=None, alias="userHeading")
    situational_context: Optional[SituationalContext] = Field(
        default=None, alias="situationalContext"
    )
    preferences: Preferences = Field(default_factory=Preferences)
    generate_audio: bool = Field(default=False, alias="generateAudio")
    stream_audio: bool = Field(default=False, alias="streamAudio")
    use_chunked_audio: bool = Field(default=False, alias="useChunkedAudio")
    progressive_audio: bool = Field(default=False, alias="progressiveAudio")
    existing_text: Optional[str] = Field(default=None, alias="existingText")
    ai_provider: Optional[str] = Field(default=None, alias="aiProvider")

    @field_validator("attraction_name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> Any:
        if not isinstance(value, str):
            raise ValueError("attractionName must be a string")
        if len(value) > MAX_NAME_LENGTH:
            raise ValueError(f"attractionName must be at most {MAX_NAME_LENGTH} characters")
        cleaned = sanitize_text(value)
        if not cleaned:
            raise ValueError("attractionName is required")
        return cleaned

    @field_validator("attraction_address", mode="before")
    @classmethod
    def _address(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("attractionAddress must be a string")
        if len(value) > MAX_ADDRESS_LENGTH:
            raise ValueError(
                f"attractionAddress must be at most {MAX_ADDRESS_LENGTH} characters"
            )
        return sanitize_text(value) or None

    @field_validator("existing_text", mode="before")
    @classmethod
    def _existing_text(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("existingText must be a string")
        if len(value) > MAX_EXISTING_TEXT_LENGTH:
            raise ValueError(
                f"existingText must be at most {MAX_EXISTING_TEXT_LENGTH} characters"
            )
        return value.strip() or None

    @field_validator("user_heading", mode="before")
    @classmethod
    def _heading(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return value if math.isfinite(value) else None

    @field_validator("ai_provider", mode="before")
    @classmethod
    def _provider(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return None
        return value.strip().lower() or None

    @property
    def wants_stream(self) -> bool:
        return self.generate_audio and self.stream_audio


class AudioChunkRequest(BaseModel):
    """Body of ``POST /generate-audio-chunk``: one chunk of already split text."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    text: str
    chunk_index: int = Field(default=0, ge=0, alias="chunkIndex")
    total_chunks: int = Field(default=1, ge=1, alias="totalChunks")
    voice_style: VoiceStyleName = Field(default="casual", alias="voiceStyle")
    language: str = "en"
    speed: float = Field(default=1.0, ge=0.25, le=4.0)

    @field_validator("text", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Any:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("text is required")
        if len(value) > MAX_CHUNK_TEXT_LENGTH:
            raise ValueError(
                f"text exceeds maximum length of {MAX_CHUNK_TEXT_LENGTH} characters"
            )
        return value

    @field_validator("voice_style", mode="before")
    @classmethod
    def _voice_style(cls, value: Any) -> Any:
        return value if value in VOICE_STYLES else "casual"

    @field_validator("language", mode="before")
    @classmethod
    def _language(cls, value: Any) -> Any:
        return normalize_language(value)


class ErrorPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error: str
    error_type: str = Field(alias="errorType")
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    retryable: bool = False
    timestamp: str
    request_id: Optional[str] = Field(default=None, alias="requestId")


__all__ = [
    "AUDIO_LENGTHS",
    "AudioChunkRequest",
    "AudioLength",
    "Coordinates",
    "ErrorPayload",
    "LANGUAGE_NAMES",
    "MAX_NAME_LENGTH",
    "NarrationRequest",
    "Preferences",
    "SEASONS",
    "SituationalContext",
    "SpatialHints",
    "THEMES",
    "TIMES_OF_DAY",
    "Theme",
    "TimeOfDay",
    "VOICE_STYLES",
    "VoiceStyleName",
    "sanitize_text",
]
