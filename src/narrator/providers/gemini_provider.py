"""Simultaneous text + audio provider over the Gemini Live websocket API."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import websockets
from fastapi import status
from websockets.exceptions import WebSocketException

from ..config import Settings
from ..errors import ProviderError
from .audio import pcm_to_wav
from .base import (
    AudioOptions,
    AudioResult,
    ContentRequest,
    ContentResult,
    NarrationProvider,
    SimultaneousResult,
)

logger = logging.getLogger(__name__)

SESSION_TIMEOUT_SECONDS = 60.0

SYSTEM_PROMPT = (
    "You are a professional tour guide speaking live to a small group. "
    "Follow every instruction in the user message precisely."
)
READ_ALOUD_PROMPT = (
    "Read the user's text aloud exactly as written, in a natural narrating voice. "
    "Do not add, remove or comment on anything."
)

# Narration voice styles onto Gemini prebuilt voices
VOICE_STYLE_MAP: dict[str, str] = {
    "casual": "Puck",
    "formal": "Charon",
    "energetic": "Fenrir",
    "calm": "Aoede",
}


@dataclass
class _SessionOutput:
    text_parts: list[str] = field(default_factory=list)
    pcm_parts: list[bytes] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.text_parts).strip()

    @property
    def pcm(self) -> bytes:
        return b"".join(self.pcm_parts)


class GeminiLiveProvider(NarrationProvider):
    """One bidirectional session yields both narration text and 16-bit PCM."""

    name = "gemini"

    def __init__(
        self,
        settings: Settings,
        *,
        connect: Callable[..., Any] = websockets.connect,
        session_timeout: float = SESSION_TIMEOUT_SECONDS,
    ) -> None:
        if settings.google_ai_api_key is None:
            raise ValueError("GOOGLE_AI_API_KEY is not configured")
        self._api_key = settings.google_ai_api_key
        self._url = settings.gemini_live_url
        self._model = settings.gemini_model
        self._default_voice = settings.gemini_voice
        self._connect = connect
        self._session_timeout = session_timeout

    def supports_simultaneous_generation(self) -> bool:
        return True

    def _voice_for(self, voice_style: str) -> str:
        return VOICE_STYLE_MAP.get(voice_style, self._default_voice)

    async def generate_simultaneous(
        self, request: ContentRequest, options: AudioOptions
    ) -> SimultaneousResult:
        voice = self._voice_for(options.voice_style)
        output = await self._run_session(
            SYSTEM_PROMPT, request.prompt, modalities=["TEXT", "AUDIO"], voice=voice
        )
        if not output.text and not output.pcm:
            raise ProviderError(self.name, status.HTTP_502_BAD_GATEWAY, "No content received from Gemini")
        return SimultaneousResult(
            content=output.text,
            audio_data=pcm_to_wav(output.pcm) if output.pcm else b"",
            format="wav",
            model_used=self._model,
            voice_used=voice,
        )

    async def generate_content(self, request: ContentRequest) -> ContentResult:
        output = await self._run_session(
            SYSTEM_PROMPT, request.prompt, modalities=["TEXT"], voice=self._default_voice
        )
        if not output.text:
            raise ProviderError(self.name, status.HTTP_502_BAD_GATEWAY, "No text received from Gemini")
        return ContentResult(content=output.text, model_used=self._model)

    async def generate_audio(self, text: str, options: AudioOptions) -> AudioResult:
        voice = self._voice_for(options.voice_style)
        output = await self._run_session(
            READ_ALOUD_PROMPT, text, modalities=["AUDIO"], voice=voice
        )
        if not output.pcm:
            raise ProviderError(self.name, status.HTTP_502_BAD_GATEWAY, "No audio received from Gemini")
        return AudioResult(
            audio_data=pcm_to_wav(output.pcm),
            format="wav",
            voice_used=voice,
            model_used=self._model,
        )

    @property
    def _session_url(self) -> str:
        return f"{self._url}?key={self._api_key.get_secret_value()}"

    def _setup_message(self, system_prompt: str, modalities: list[str], voice: str) -> dict[str, Any]:
        return {
            "setup": {
                "model": self._model,
                "generationConfig": {
                    "responseModalities": modalities,
                    "speechConfig": {
                        "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}}
                    },
                },
                "systemInstruction": {"parts": [{"text": system_prompt}]},
            }
        }

    @staticmethod
    def _turn_message(prompt: str) -> dict[str, Any]:
        return {
            "clientContent": {
                "turns": [{"role": "user", "parts": [{"text": prompt}]}],
                "turnComplete": True,
            }
        }

    async def _run_session(
        self, system_prompt: str, prompt: str, *, modalities: list[str], voice: str
    ) -> _SessionOutput:
        try:
            return await asyncio.wait_for(
                self._exchange(system_prompt, prompt, modalities, voice),
                timeout=self._session_timeout,
            )
        except (OSError, WebSocketException) as exc:
            raise ProviderError(
                self.name, status.HTTP_502_BAD_GATEWAY, f"Gemini session failed: {exc}"
            ) from exc

    async def _exchange(
        self, system_prompt: str, prompt: str, modalities: list[str], voice: str
    ) -> _SessionOutput:
        output = _SessionOutput()
        logger.info("Connecting to Gemini Live (%s)", self._model)
        async with self._connect(self._session_url) as ws:
            await ws.send(json.dumps(self._setup_message(system_prompt, modalities, voice)))
            await ws.send(json.dumps(self._turn_message(prompt)))
            async for raw in ws:
                message = self._decode(raw)
                if message is None:
                    continue
                if "error" in message:
                    raise ProviderError(
                        self.name, status.HTTP_502_BAD_GATEWAY, message["error"]
                    )
                if self._collect(message, output):
                    break
        logger.info(
            "Gemini session finished: %d text chars, %d PCM bytes",
            len(output.text),
            len(output.pcm),
        )
        return output

    @staticmethod
    def _decode(raw: Any) -> Optional[dict[str, Any]]:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON Gemini frame")
            return None
        return message if isinstance(message, dict) else None

    @staticmethod
    def _collect(message: dict[str, Any], output: _SessionOutput) -> bool:
        """Append text/audio parts; returns True once the model turn is complete."""

        server_content = message.get("serverContent")
        if not isinstance(server_content, dict):
            return False
        model_turn = server_content.get("modelTurn") or {}
        for part in model_turn.get("parts") or []:
            text = part.get("text")
            if text:
                output.text_parts.append(text)
            inline = part.get("inlineData") or {}
            if str(inline.get("mimeType", "")).startswith("audio/pcm") and inline.get("data"):
                try:
                    output.pcm_parts.append(base64.b64decode(inline["data"]))
                except (binascii.Error, ValueError):
                    logger.warning("Dropping undecodable Gemini audio part")
        return bool(server_content.get("turnComplete") or model_turn.get("turnComplete"))
