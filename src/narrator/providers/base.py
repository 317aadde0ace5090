"""Provider capability interface and the value types it exchanges."""

from __future__ import annotations

import abc
import base64
from dataclasses import dataclass
from typing import Literal

from ..errors import UnsupportedOperationError
from ..schemas.narration import NarrationRequest

VoiceStyle = Literal["casual", "formal", "energetic", "calm"]
AudioFormat = Literal["mp3", "wav", "pcm"]


@dataclass(frozen=True)
class ContentRequest:
    """Text generation input: the built prompt plus the request it came from."""

    prompt: str
    request: NarrationRequest


@dataclass(frozen=True)
class AudioOptions:
    voice_style: VoiceStyle = "casual"
    speed: float = 1.0
    language: str = "en"


@dataclass(frozen=True)
class ContentResult:
    content: str
    model_used: str


@dataclass(frozen=True)
class AudioResult:
    audio_data: bytes
    format: AudioFormat
    voice_used: str
    model_used: str

    @property
    def audio_base64(self) -> str:
        return base64.b64encode(self.audio_data).decode("ascii")


@dataclass(frozen=True)
class SimultaneousResult:
    content: str
    audio_data: bytes
    format: AudioFormat
    model_used: str
    voice_used: str

    @property
    def audio_base64(self) -> str:
        return base64.b64encode(self.audio_data).decode("ascii")


class NarrationProvider(abc.ABC):
    """What the orchestrator needs from an AI backend."""

    name: str = "provider"

    @abc.abstractmethod
    async def generate_content(self, request: ContentRequest) -> ContentResult:
        """Produce narration text for a prompt."""

    @abc.abstractmethod
    async def generate_audio(self, text: str, options: AudioOptions) -> AudioResult:
        """Synthesize speech for ``text``."""

    def supports_simultaneous_generation(self) -> bool:
        return False

    async def generate_simultaneous(
        self, request: ContentRequest, options: AudioOptions
    ) -> SimultaneousResult:
        raise UnsupportedOperationError(
            f"{self.name} does not support simultaneous text and audio generation"
        )

    async def aclose(self) -> None:
        """Release network resources held by the provider."""
