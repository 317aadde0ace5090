"""Narration orchestrator coordinating enrichment, providers, chunking and synthesis."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from .config import Settings
from .errors import (
    ChunkValidationError,
    ErrorReporter,
    OperationTimeoutError,
    ProviderError,
    ProviderUnavailableError,
    sanitize_message,
)
from .logging_setup import request_id_var, user_id_var
from .prompts import PromptContext, build_prompt
from .providers.base import AudioOptions, AudioResult, ContentRequest, NarrationProvider
from .providers.factory import DEFAULT_PROVIDER, ProviderFactory
from .resilience.circuit_breaker import CircuitBreakerRegistry
from .schemas.narration import AudioChunkRequest, NarrationRequest, SpatialHints
from .services.situational import HolidayService, derive_situational_context
from .services.spatial import derive_spatial_hints, redact_spatial_data
from .services.tts.audio_stream import (
    AudioChunk,
    audio_metadata,
    stream_audio_chunks,
    synthesize_all,
)
from .services.tts.chunking import (
    ChunkingConfig,
    TextChunk,
    chunk_statistics,
    estimate_duration,
    prepare_text_for_audio,
    split_into_chunks,
    validate_chunks,
)
from .services.wikipedia import WikipediaData, WikipediaService

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "fallback"
EXISTING_TEXT_MODEL = "existing-text"

Frame = dict[str, Any]


class NarrationStage(str, Enum):
    TEXT_PENDING = "text_pending"
    TEXT_READY = "text_ready"
    CHUNKING = "chunking"
    AUDIO_IN_FLIGHT = "audio_in_flight"
    COMPLETE = "complete"


def fallback_narration(attraction_name: str, theme: Optional[str] = None) -> str:
    """Deterministic narration served when text generation is unavailable."""

    name = attraction_name or "this spot"
    topic = theme if theme and theme != "general" else "history and culture"
    return (
        f"Here is a short introduction to {name} while the full tour reconnects. "
        f"Places like this carry a long story of {topic}, and much of it is written "
        "into the details around you. Take a moment to look at how the buildings, "
        "paths and open spaces fit together, and notice what has been kept and what "
        "has changed. Listen to the sounds of the area and watch how people use it "
        "today. The complete narration will be ready again shortly."
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class NarrationText:
    content: str
    model_used: str
    is_fallback: bool = False


@dataclass
class NarrationResult:
    """Outcome of a non-streaming request; becomes the JSON response body."""

    info: str
    model_used: str
    voice_used: Optional[str] = None
    audio: Optional[str] = None
    audio_format: Optional[str] = None
    audio_chunks: list[AudioChunk] = field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"info": self.info, "modelUsed": self.model_used}
        if self.voice_used:
            body["voiceUsed"] = self.voice_used
        if self.audio is not None:
            body["audio"] = self.audio
            body["audioFormat"] = self.audio_format
        if self.audio_chunks:
            body["audioChunks"] = [chunk.as_dict() for chunk in self.audio_chunks]
        if self.metadata is not None:
            body["metadata"] = self.metadata
        if self.error is not None:
            # Audio failure is reported next to the narration that did succeed
            body.update(self.error)
        return body


def text_frame(content: str) -> Frame:
    return {"type": "text", "content": content, "timestamp": _now_ms()}


def metadata_frame(total_chunks: int, total_characters: int, estimated_duration: int) -> Frame:
    return {
        "type": "metadata",
        "totalChunks": total_chunks,
        "totalCharacters": total_characters,
        "estimatedDuration": estimated_duration,
        "timestamp": _now_ms(),
    }


def audio_chunk_frame(chunk: AudioChunk) -> Frame:
    return {"type": "audio_chunk", "chunk": chunk.as_dict(), "timestamp": _now_ms()}


def complete_frame() -> Frame:
    return {"type": "complete", "timestamp": _now_ms()}


def error_frame(payload: dict[str, Any]) -> Frame:
    return {
        "type": "error",
        "error": payload["error"],
        "errorCode": payload.get("errorCode"),
        "timestamp": _now_ms(),
    }


class NarrationOrchestrator:
    """Turns a validated request into narration text and, optionally, audio."""

    def __init__(
        self,
        settings: Settings,
        factory: ProviderFactory,
        breakers: CircuitBreakerRegistry,
        wikipedia: Optional[WikipediaService] = None,
        *,
        holidays: Optional[HolidayService] = None,
        reporter: Optional[ErrorReporter] = None,
    ) -> None:
        self._settings = settings
        self._factory = factory
        self._breakers = breakers
        self._wikipedia = wikipedia
        self._holidays = holidays
        self._reporter = reporter or ErrorReporter(include_stack=not settings.is_production)

    @property
    def reporter(self) -> ErrorReporter:
        return self._reporter

    def _transition(self, request: NarrationRequest, stage: NarrationStage) -> None:
        logger.info("Narration %r -> %s", request.attraction_name, stage.value)

    def _error_payload(self, exc: BaseException, context: str) -> dict[str, Any]:
        return self._reporter.create_error_response(
            exc,
            context=context,
            request_id=request_id_var.get(),
            user_id=user_id_var.get(),
        )

    def select_provider(self, request: NarrationRequest) -> Optional[NarrationProvider]:
        try:
            return self._factory.create(request.ai_provider)
        except ProviderUnavailableError as exc:
            logger.warning("No provider for %r: %s", request.attraction_name, exc)
            return None

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    async def build_context(self, request: NarrationRequest) -> PromptContext:
        language = request.preferences.language
        hints: Optional[SpatialHints] = request.spatial_hints
        if (hints is None or hints.is_empty()) and request.poi_location is not None:
            hints = derive_spatial_hints(
                request.user_location, request.poi_location, request.user_heading, language
            )

        holiday: Optional[str] = None
        client_context = request.situational_context
        if (
            self._holidays is not None
            and self._holidays.enabled
            and not (client_context and client_context.recent_events)
        ):
            holiday = await self._holidays.lookup(request.user_location)
        situation = derive_situational_context(
            request.user_location, client_context=client_context, holiday=holiday
        )

        wikipedia: Optional[WikipediaData] = None
        if self._wikipedia is not None and self._wikipedia.enabled:
            wikipedia = await self._wikipedia.enrich(request.attraction_name)

        return PromptContext(
            attraction_name=request.attraction_name,
            attraction_address=request.attraction_address,
            spatial_hints=hints,
            situational_context=situation,
            preferences=request.preferences,
            wikipedia=wikipedia,
        )

    def _fallback(self, request: NarrationRequest) -> NarrationText:
        return NarrationText(
            content=fallback_narration(request.attraction_name, request.preferences.theme),
            model_used=FALLBACK_MODEL,
            is_fallback=True,
        )

    async def generate_text(
        self,
        request: NarrationRequest,
        provider: Optional[NarrationProvider],
        context: Optional[PromptContext] = None,
    ) -> NarrationText:
        """Return narration text, falling back to a fixed narration on any failure.

        ``context`` is reused when the caller already built it.
        """

        if request.existing_text:
            return NarrationText(content=request.existing_text, model_used=EXISTING_TEXT_MODEL)
        if provider is None:
            return self._fallback(request)

        if context is None:
            context = await self.build_context(request)
        content_request = ContentRequest(prompt=build_prompt(context), request=request)
        try:
            result = await self._breakers.guard_text(
                lambda: provider.generate_content(content_request),
                name=f"{provider.name} text generation",
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Text generation failed for %r, serving fallback narration: %s",
                request.attraction_name,
                sanitize_message(str(exc)),
            )
            return self._fallback(request)

        content = result.content.strip()
        if not content:
            logger.warning("%s returned empty narration; serving fallback", provider.name)
            return self._fallback(request)
        return NarrationText(content=self._redact(content), model_used=result.model_used)

    def _redact(self, content: str) -> str:
        if self._settings.enable_spatial_redaction:
            return redact_spatial_data(content)
        return content

    # ------------------------------------------------------------------
    # Audio helpers
    # ------------------------------------------------------------------

    def _audio_options(self, request: NarrationRequest) -> AudioOptions:
        return AudioOptions(
            voice_style=request.preferences.voice_style,
            language=request.preferences.language,
        )

    def _chunk(self, text: str, *, prioritize_first: bool) -> list[TextChunk]:
        config = ChunkingConfig(
            max_chunk_size=self._settings.max_chunk_size,
            prioritize_first_chunk=prioritize_first,
            first_chunk_target_seconds=self._settings.first_chunk_target_seconds,
        )
        chunks = split_into_chunks(text, config)
        validate_chunks(chunks, self._settings.max_chunk_size)
        return chunks

    def _synthesizer(
        self,
        provider: NarrationProvider,
        options: AudioOptions,
        voices: Optional[list[str]] = None,
    ) -> Callable[[TextChunk], Awaitable[AudioResult]]:
        async def _synthesize(chunk: TextChunk) -> AudioResult:
            result = await self._breakers.guard_audio(
                lambda: provider.generate_audio(chunk.text, options),
                name=f"{provider.name} audio chunk {chunk.chunk_index + 1}/{chunk.total_chunks}",
            )
            if voices is not None:
                voices.append(result.voice_used)
            return result

        return _synthesize

    def _wants_simultaneous(
        self, request: NarrationRequest, provider: Optional[NarrationProvider]
    ) -> bool:
        return (
            provider is not None
            and request.generate_audio
            and not request.existing_text
            and provider.supports_simultaneous_generation()
        )

    async def _simultaneous(
        self, request: NarrationRequest, provider: NarrationProvider, context: PromptContext
    ) -> Optional[tuple[NarrationText, AudioResult]]:
        """Text and one audio asset from a single call, or ``None`` if that fails."""

        content_request = ContentRequest(prompt=build_prompt(context), request=request)
        options = self._audio_options(request)
        try:
            result = await self._breakers.guard_text(
                lambda: provider.generate_simultaneous(content_request, options),
                name=f"{provider.name} simultaneous generation",
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Simultaneous generation failed, using separate text and audio calls: %s",
                sanitize_message(str(exc)),
            )
            return None
        if not result.content.strip() or not result.audio_data:
            logger.warning("%s simultaneous result was incomplete", provider.name)
            return None

        text = NarrationText(content=self._redact(result.content.strip()), model_used=result.model_used)
        audio = AudioResult(
            audio_data=result.audio_data,
            format=result.format,
            voice_used=result.voice_used,
            model_used=result.model_used,
        )
        return text, audio

    async def synthesize_chunk(self, request: AudioChunkRequest) -> dict[str, Any]:
        """Synthesize one client-supplied chunk with the default TTS provider.

        Raises:
            ProviderUnavailableError: no provider is registered.
        """

        provider = self._factory.create(DEFAULT_PROVIDER)
        options = AudioOptions(
            voice_style=request.voice_style,
            speed=request.speed,
            language=request.language,
        )
        audio = await self._breakers.guard_audio(
            lambda: provider.generate_audio(request.text, options),
            name=(
                f"{provider.name} audio chunk {request.chunk_index + 1}/{request.total_chunks}"
            ),
        )
        return {
            "chunkIndex": request.chunk_index,
            "totalChunks": request.total_chunks,
            "audio": audio.audio_base64,
            "format": audio.format,
            "characterCount": len(request.text),
            "voiceUsed": audio.voice_used,
        }

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def generate_batch(self, request: NarrationRequest) -> NarrationResult:
        """Produce the complete JSON result, bounded by the request timeout."""

        timeout = self._settings.request_timeout
        try:
            return await asyncio.wait_for(self._generate_batch(request), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError("narration request", timeout, 1) from exc

    async def _generate_batch(self, request: NarrationRequest) -> NarrationResult:
        provider = self.select_provider(request)
        self._transition(request, NarrationStage.TEXT_PENDING)

        context: Optional[PromptContext] = None
        if self._wants_simultaneous(request, provider):
            context = await self.build_context(request)
            combined = await self._simultaneous(request, provider, context)
            if combined is not None:
                text, audio = combined
                self._transition(request, NarrationStage.COMPLETE)
                return NarrationResult(
                    info=text.content,
                    model_used=text.model_used,
                    voice_used=audio.voice_used,
                    audio=audio.audio_base64,
                    audio_format=audio.format,
                )

        text = await self.generate_text(request, provider, context)
        self._transition(request, NarrationStage.TEXT_READY)
        result = NarrationResult(info=text.content, model_used=text.model_used)

        if not request.generate_audio:
            self._transition(request, NarrationStage.COMPLETE)
            return result
        if provider is None:
            result.error = self._error_payload(
                ProviderUnavailableError("No AI provider is configured for audio"),
                "audio generation",
            )
            return result

        options = self._audio_options(request)
        if request.use_chunked_audio:
            await self._attach_chunked_audio(request, provider, options, text, result)
        else:
            await self._attach_single_audio(request, provider, options, text, result)
        self._transition(request, NarrationStage.COMPLETE)
        return result

    async def _attach_single_audio(
        self,
        request: NarrationRequest,
        provider: NarrationProvider,
        options: AudioOptions,
        text: NarrationText,
        result: NarrationResult,
    ) -> None:
        clip_text = prepare_text_for_audio(text.content)
        self._transition(request, NarrationStage.AUDIO_IN_FLIGHT)
        try:
            audio = await self._breakers.guard_audio(
                lambda: provider.generate_audio(clip_text, options),
                name=f"{provider.name} audio generation",
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            result.error = self._error_payload(exc, "audio generation")
            return
        result.audio = audio.audio_base64
        result.audio_format = audio.format
        result.voice_used = audio.voice_used

    async def _attach_chunked_audio(
        self,
        request: NarrationRequest,
        provider: NarrationProvider,
        options: AudioOptions,
        text: NarrationText,
        result: NarrationResult,
    ) -> None:
        self._transition(request, NarrationStage.CHUNKING)
        try:
            chunks = self._chunk(text.content, prioritize_first=request.progressive_audio)
        except (ChunkValidationError, ValueError) as exc:
            result.error = self._error_payload(exc, "text chunking")
            return

        self._transition(request, NarrationStage.AUDIO_IN_FLIGHT)
        voices: list[str] = []
        audio_chunks = await synthesize_all(
            chunks,
            self._synthesizer(provider, options, voices),
            concurrency=self._settings.audio_concurrency,
            speed=options.speed,
        )
        logger.info(
            "Synthesized %d/%d chunks for %r",
            len(audio_chunks),
            len(chunks),
            request.attraction_name,
        )
        if not audio_chunks:
            result.error = self._error_payload(
                ProviderError(provider.name, 502, "audio synthesis failed for every chunk"),
                "audio generation",
            )
            return

        result.audio_chunks = audio_chunks
        result.metadata = audio_metadata(audio_chunks)
        result.voice_used = voices[0] if voices else None

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(self, request: NarrationRequest) -> AsyncIterator[Frame]:
        """Yield ndjson frames; a failure becomes one final ``error`` frame.

        The whole stream shares the request deadline. Closing this generator
        closes the inner one, which cancels any audio still being synthesized.
        """

        loop = asyncio.get_running_loop()
        timeout = self._settings.request_timeout
        deadline = loop.time() + timeout
        frames = self._stream_frames(request)
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise OperationTimeoutError("narration stream", timeout, 1)
                try:
                    frame = await asyncio.wait_for(frames.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as exc:
                    raise OperationTimeoutError("narration stream", timeout, 1) from exc
                yield frame
                if frame["type"] == "complete":
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            yield error_frame(self._error_payload(exc, "audio stream"))
        finally:
            await frames.aclose()

    async def _stream_frames(self, request: NarrationRequest) -> AsyncIterator[Frame]:
        provider = self.select_provider(request)
        self._transition(request, NarrationStage.TEXT_PENDING)

        context: Optional[PromptContext] = None
        if self._wants_simultaneous(request, provider):
            context = await self.build_context(request)
            combined = await self._simultaneous(request, provider, context)
            if combined is not None:
                text, audio = combined
                self._transition(request, NarrationStage.TEXT_READY)
                whole = TextChunk(
                    chunk_index=0,
                    total_chunks=1,
                    text=text.content,
                    character_count=len(text.content),
                    estimated_duration=estimate_duration(text.content),
                )
                yield text_frame(text.content)
                yield metadata_frame(1, whole.character_count, whole.estimated_duration)
                yield audio_chunk_frame(AudioChunk.from_text_chunk(whole, audio))
                self._transition(request, NarrationStage.COMPLETE)
                yield complete_frame()
                return

        text = await self.generate_text(request, provider, context)
        self._transition(request, NarrationStage.TEXT_READY)
        yield text_frame(text.content)

        if provider is None:
            raise ProviderUnavailableError("No AI provider is configured for audio")

        self._transition(request, NarrationStage.CHUNKING)
        chunks = self._chunk(text.content, prioritize_first=True)
        stats = chunk_statistics(chunks)
        yield metadata_frame(
            stats.total_chunks, stats.total_characters, stats.estimated_total_duration
        )

        self._transition(request, NarrationStage.AUDIO_IN_FLIGHT)
        options = self._audio_options(request)
        delivered = 0
        audio_stream = stream_audio_chunks(
            chunks,
            self._synthesizer(provider, options),
            concurrency=self._settings.audio_concurrency,
            speed=options.speed,
        )
        try:
            async for audio_chunk in audio_stream:
                delivered += 1
                yield audio_chunk_frame(audio_chunk)
        finally:
            await audio_stream.aclose()

        if chunks and delivered == 0:
            raise ProviderError(provider.name, 502, "audio synthesis failed for every chunk")
        if delivered < len(chunks):
            logger.warning(
                "Stream for %r delivered %d of %d chunks",
                request.attraction_name,
                delivered,
                len(chunks),
            )
        self._transition(request, NarrationStage.COMPLETE)
        yield complete_frame()


__all__ = [
    "NarrationOrchestrator",
    "NarrationResult",
    "NarrationStage",
    "NarrationText",
    "fallback_narration",
]
