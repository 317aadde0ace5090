"""AI providers for narration text and speech."""

from .base import (
    AudioOptions,
    AudioResult,
    ContentRequest,
    ContentResult,
    NarrationProvider,
    SimultaneousResult,
)
from .factory import ProviderFactory
from .gemini_provider import GeminiLiveProvider
from .openai_provider import OpenAIProvider

__all__ = [
    "AudioOptions",
    "AudioResult",
    "ContentRequest",
    "ContentResult",
    "GeminiLiveProvider",
    "NarrationProvider",
    "OpenAIProvider",
    "ProviderFactory",
    "SimultaneousResult",
]
