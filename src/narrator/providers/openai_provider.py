"""Two-step provider: chat completions for text, the speech endpoint for audio."""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import httpx
from fastapi import status

from ..config import Settings
from ..errors import ProviderError
from .base import (
    AudioOptions,
    AudioResult,
    ContentRequest,
    ContentResult,
    NarrationProvider,
)

logger = logging.getLogger(__name__)

TEXT_MODELS: tuple[str, ...] = (
    "gpt-4.1-mini",
    "gpt-4o-mini",
    "gpt-4o",
    "gpt-4-turbo",
    "gpt-4",
    "gpt-3.5-turbo",
)
TTS_MODELS: tuple[str, ...] = ("gpt-4o-mini-tts", "tts-1-hd", "tts-1")

VOICE_STYLE_MAP: dict[str, str] = {
    "casual": "nova",
    "formal": "onyx",
    "energetic": "shimmer",
    "calm": "alloy",
}
NATIVE_VOICES = frozenset(
    {"alloy", "ash", "ballad", "coral", "echo", "fable", "nova", "onyx", "sage", "shimmer", "verse"}
)

SYSTEM_PROMPT = (
    "You are a professional tour guide. Follow every instruction in the user "
    "message precisely and keep the voice and structure it asks for."
)

# Credentials do not change between models; retrying another model is pointless
_FATAL_STATUS = {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}


def map_voice_style(voice_style: str) -> str:
    """Translate a narration voice style into an OpenAI voice name."""

    if voice_style in NATIVE_VOICES:
        return voice_style
    return VOICE_STYLE_MAP.get(voice_style, "nova")


class OpenAIProvider(NarrationProvider):
    """Text and speech over the OpenAI REST API, with ordered model fallback."""

    name = "openai"

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        text_models: Sequence[str] = TEXT_MODELS,
        tts_models: Sequence[str] = TTS_MODELS,
    ) -> None:
        if settings.openai_api_key is None:
            raise ValueError("OPENAI_API_KEY is not configured")
        self._api_key = settings.openai_api_key
        self._base_url = str(settings.openai_base_url).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=10.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        self._text_models = tuple(text_models)
        self._tts_models = tuple(tts_models)

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key.get_secret_value()}",
            "Content-Type": "application/json",
        }

    async def generate_content(self, request: ContentRequest) -> ContentResult:
        last_error: Optional[ProviderError] = None
        for model in self._text_models:
            logger.info("Attempting text generation with model %s", model)
            try:
                content = await self._call_chat_model(model, request.prompt)
            except ProviderError as exc:
                last_error = exc
                logger.warning("Text model %s failed: %s", model, exc.detail)
                if exc.status_code in _FATAL_STATUS:
                    break
                continue
            return ContentResult(content=content, model_used=model)

        raise last_error or ProviderError(
            self.name, status.HTTP_502_BAD_GATEWAY, "All OpenAI chat models failed"
        )

    async def generate_audio(self, text: str, options: AudioOptions) -> AudioResult:
        voice = map_voice_style(options.voice_style)
        last_error: Optional[ProviderError] = None
        for model in self._tts_models:
            logger.info(
                "Attempting audio generation with model %s (voice=%s, %d chars)",
                model,
                voice,
                len(text),
            )
            try:
                audio = await self._call_tts(model, text, voice, options.speed)
            except ProviderError as exc:
                last_error = exc
                logger.warning("TTS model %s failed: %s", model, exc.detail)
                if exc.status_code in _FATAL_STATUS:
                    break
                continue
            logger.debug("Audio received from %s: %d bytes", model, len(audio))
            return AudioResult(audio_data=audio, format="mp3", voice_used=voice, model_used=model)

        raise last_error or ProviderError(
            self.name, status.HTTP_502_BAD_GATEWAY, "All OpenAI TTS models failed"
        )

    async def _call_chat_model(self, model: str, prompt: str) -> str:
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.65,
            "max_tokens": 1500,
        }
        response = await self._post("/chat/completions", payload)
        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError(
                self.name, status.HTTP_502_BAD_GATEWAY, f"Unexpected chat payload: {exc}"
            ) from exc
        if not isinstance(content, str) or not content.strip():
            raise ProviderError(self.name, status.HTTP_502_BAD_GATEWAY, "Empty completion")
        return content.strip()

    async def _call_tts(self, model: str, text: str, voice: str, speed: float) -> bytes:
        payload = {
            "model": model,
            "input": text,
            "voice": voice,
            "speed": max(0.25, min(4.0, speed)),
            "response_format": "mp3",
        }
        response = await self._post("/audio/speech", payload)
        if not response.content:
            raise ProviderError(self.name, status.HTTP_502_BAD_GATEWAY, "Empty audio response")
        return response.content

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        try:
            response = await self._client.post(
                f"{self._base_url}{path}", headers=self._headers, json=payload
            )
        except httpx.TimeoutException:
            raise
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            raise ProviderError(
                self.name, response.status_code, self._extract_error_detail(response)
            )
        return response

    @staticmethod
    def _extract_error_detail(response: httpx.Response) -> Any:
        try:
            data = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                parts = [error.get("type"), error.get("code"), error.get("message")]
                return ": ".join(str(part) for part in parts if part) or data
            if error:
                return error
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
