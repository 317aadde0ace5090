from __future__ import annotations

import asyncio
import base64
from typing import Any, Optional

import pytest

from narrator.config import Settings
from narrator.errors import OperationTimeoutError
from narrator.orchestrator import (
    EXISTING_TEXT_MODEL,
    FALLBACK_MODEL,
    NarrationOrchestrator,
    fallback_narration,
)
from narrator.providers.base import (
    AudioOptions,
    AudioResult,
    ContentRequest,
    ContentResult,
    NarrationProvider,
    SimultaneousResult,
)
from narrator.providers.factory import ProviderFactory
from narrator.resilience.circuit_breaker import CircuitBreakerRegistry
from narrator.resilience.timeouts import TimeoutConfig
from narrator.schemas.narration import NarrationRequest
from narrator.services.tts.chunking import TextChunk
from narrator.services.wikipedia import NOT_FOUND, WikipediaData

NARRATION = " ".join(
    f"Stop {index} on the walk has a story worth hearing today." for index in range(1, 7)
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class ScriptedProvider(NarrationProvider):
    """Provider double with scripted text and per-chunk audio failures."""

    name = "scripted"

    def __init__(
        self,
        content: str = NARRATION,
        *,
        fail_text: bool = False,
        fail_audio_when: Optional[str] = None,
        audio_delay: float = 0.0,
        simultaneous: bool = False,
        fail_simultaneous: bool = False,
    ) -> None:
        self.content = content
        self.fail_text = fail_text
        self.fail_audio_when = fail_audio_when
        self.audio_delay = audio_delay
        self.simultaneous = simultaneous
        self.fail_simultaneous = fail_simultaneous
        self.prompts: list[str] = []
        self.audio_calls: list[str] = []

    async def generate_content(self, request: ContentRequest) -> ContentResult:
        self.prompts.append(request.prompt)
        if self.fail_text:
            raise RuntimeError("upstream exploded")
        return ContentResult(content=self.content, model_used="scripted-model")

    async def generate_audio(self, text: str, options: AudioOptions) -> AudioResult:
        self.audio_calls.append(text)
        if self.audio_delay:
            await asyncio.sleep(self.audio_delay)
        if self.fail_audio_when is not None and self.fail_audio_when in text:
            raise RuntimeError("synthesis failed")
        return AudioResult(
            audio_data=f"audio:{text[:6]}".encode(),
            format="mp3",
            voice_used="alloy",
            model_used="tts-1",
        )

    def supports_simultaneous_generation(self) -> bool:
        return self.simultaneous

    async def generate_simultaneous(
        self, request: ContentRequest, options: AudioOptions
    ) -> SimultaneousResult:
        if self.fail_simultaneous:
            raise RuntimeError("live session dropped")
        return SimultaneousResult(
            content="Live narration.",
            audio_data=b"\x00\x01" * 100,
            format="pcm",
            model_used="live-model",
            voice_used="Puck",
        )


def _breakers() -> CircuitBreakerRegistry:
    fast = TimeoutConfig(timeout=5, retries=0)
    return CircuitBreakerRegistry(text_timeout=fast, audio_timeout=fast, external_timeout=fast)


def _orchestrator(
    settings: Settings,
    provider: Optional[NarrationProvider] = None,
    **overrides: Any,
) -> NarrationOrchestrator:
    if overrides:
        settings = settings.model_copy(update=overrides)
    providers = {"openai": provider} if provider is not None else {}
    return NarrationOrchestrator(settings, ProviderFactory(providers), _breakers())


def _request(**fields: Any) -> NarrationRequest:
    payload: dict[str, Any] = {
        "attractionName": "Old Harbor Lighthouse",
        "attractionAddress": "1 Harbor Road, Portsmouth, NH",
        "userLocation": {"lat": 43.07, "lng": -70.71},
    }
    payload.update(fields)
    return NarrationRequest.model_validate(payload)


async def _collect(orchestrator: NarrationOrchestrator, request: NarrationRequest) -> list[dict]:
    return [frame async for frame in orchestrator.stream(request)]


def test_fallback_narration_is_deterministic() -> None:
    first = fallback_narration("Old Harbor Lighthouse", "nature")

    assert first == fallback_narration("Old Harbor Lighthouse", "nature")
    assert "Old Harbor Lighthouse" in first
    assert "nature" in first
    assert "this spot" in fallback_narration("")
    assert "history and culture" in fallback_narration("Pier", "general")


@pytest.mark.anyio
async def test_text_only_batch(settings: Settings) -> None:
    provider = ScriptedProvider()
    body = (await _orchestrator(settings, provider).generate_batch(_request())).as_dict()

    assert body == {"info": NARRATION, "modelUsed": "scripted-model"}
    assert provider.audio_calls == []
    assert '"Old Harbor Lighthouse"' in provider.prompts[0]
    assert "1 Harbor Road" not in provider.prompts[0]


@pytest.mark.anyio
async def test_text_failure_serves_fallback_narration(settings: Settings) -> None:
    orchestrator = _orchestrator(settings, ScriptedProvider(fail_text=True))

    body = (await orchestrator.generate_batch(_request())).as_dict()

    assert body["modelUsed"] == FALLBACK_MODEL
    assert "Old Harbor Lighthouse" in body["info"]
    assert "error" not in body


@pytest.mark.anyio
async def test_empty_text_serves_fallback_narration(settings: Settings) -> None:
    orchestrator = _orchestrator(settings, ScriptedProvider(content="   "))

    body = (await orchestrator.generate_batch(_request())).as_dict()

    assert body["modelUsed"] == FALLBACK_MODEL


@pytest.mark.anyio
async def test_existing_text_skips_generation(settings: Settings) -> None:
    provider = ScriptedProvider()
    request = _request(existingText="Already written narration.", generateAudio=True)

    body = (await _orchestrator(settings, provider).generate_batch(request)).as_dict()

    assert body["info"] == "Already written narration."
    assert body["modelUsed"] == EXISTING_TEXT_MODEL
    assert provider.prompts == []
    assert provider.audio_calls == ["Already written narration."]


@pytest.mark.anyio
async def test_spatial_redaction_applies_to_generated_text(settings: Settings) -> None:
    provider = ScriptedProvider(content="Meet at 43.0712, -70.7101 by the gate.")
    orchestrator = _orchestrator(settings, provider, enable_spatial_redaction=True)

    body = (await orchestrator.generate_batch(_request())).as_dict()

    assert "43.0712" not in body["info"]


@pytest.mark.anyio
async def test_single_shot_audio(settings: Settings) -> None:
    provider = ScriptedProvider()

    body = (
        await _orchestrator(settings, provider).generate_batch(_request(generateAudio=True))
    ).as_dict()

    assert base64.b64decode(body["audio"]) == b"audio:Stop 1"
    assert body["audioFormat"] == "mp3"
    assert body["voiceUsed"] == "alloy"
    assert provider.audio_calls == [NARRATION]


@pytest.mark.anyio
async def test_chunked_audio_omits_failed_chunks(settings: Settings) -> None:
    provider = ScriptedProvider(fail_audio_when="Stop 3")
    orchestrator = _orchestrator(settings, provider, max_chunk_size=100)

    body = (
        await orchestrator.generate_batch(_request(generateAudio=True, useChunkedAudio=True))
    ).as_dict()

    chunks = body["audioChunks"]
    assert [chunk["chunkIndex"] for chunk in chunks] == [0, 1, 3, 4, 5]
    assert all(chunk["totalChunks"] == 6 for chunk in chunks)
    assert all("Stop 3" not in chunk["text"] for chunk in chunks)
    assert body["metadata"]["totalChunks"] == 5
    assert body["metadata"]["totalSize"] == sum(len(chunk["audio"]) for chunk in chunks)
    assert "error" not in body


@pytest.mark.anyio
async def test_chunked_audio_total_failure_reports_error(settings: Settings) -> None:
    provider = ScriptedProvider(fail_audio_when="Stop")
    orchestrator = _orchestrator(settings, provider, max_chunk_size=100)

    body = (
        await orchestrator.generate_batch(_request(generateAudio=True, useChunkedAudio=True))
    ).as_dict()

    assert body["info"] == NARRATION
    assert "audioChunks" not in body
    assert body["errorType"] == "service_unavailable"
    assert body["retryable"] is True


@pytest.mark.anyio
async def test_audio_without_provider_reports_error(settings: Settings) -> None:
    body = (
        await _orchestrator(settings).generate_batch(_request(generateAudio=True))
    ).as_dict()

    assert body["modelUsed"] == FALLBACK_MODEL
    assert body["errorCode"] == "SERVICE_UNAVAILABLE"
    assert "audio" not in body


@pytest.mark.anyio
async def test_batch_respects_request_deadline(settings: Settings) -> None:
    provider = ScriptedProvider(audio_delay=3)
    orchestrator = _orchestrator(settings, provider, request_timeout=1)

    with pytest.raises(OperationTimeoutError):
        await orchestrator.generate_batch(_request(generateAudio=True))


@pytest.mark.anyio
async def test_stream_frame_order(settings: Settings) -> None:
    provider = ScriptedProvider(fail_audio_when="Stop 2")
    orchestrator = _orchestrator(settings, provider, max_chunk_size=100)

    frames = await _collect(orchestrator, _request(generateAudio=True, streamAudio=True))

    types = [frame["type"] for frame in frames]
    assert types == ["text", "metadata"] + ["audio_chunk"] * 5 + ["complete"]
    assert frames[0]["content"] == NARRATION
    assert frames[1]["totalChunks"] == 6
    indices = [frame["chunk"]["chunkIndex"] for frame in frames if frame["type"] == "audio_chunk"]
    assert indices == [0, 2, 3, 4, 5]


@pytest.mark.anyio
async def test_stream_ends_with_single_error_frame(settings: Settings) -> None:
    provider = ScriptedProvider(fail_audio_when="Stop")
    orchestrator = _orchestrator(settings, provider, max_chunk_size=100)

    frames = await _collect(orchestrator, _request(generateAudio=True, streamAudio=True))

    assert [frame["type"] for frame in frames] == ["text", "metadata", "error"]
    assert frames[-1]["errorCode"] == "SERVICE_UNAVAILABLE"


@pytest.mark.anyio
async def test_stream_without_provider_sends_fallback_then_error(settings: Settings) -> None:
    frames = await _collect(_orchestrator(settings), _request(generateAudio=True, streamAudio=True))

    assert [frame["type"] for frame in frames] == ["text", "error"]
    assert "Old Harbor Lighthouse" in frames[0]["content"]


@pytest.mark.anyio
async def test_simultaneous_generation_batch(settings: Settings) -> None:
    provider = ScriptedProvider(simultaneous=True)

    body = (
        await _orchestrator(settings, provider).generate_batch(_request(generateAudio=True))
    ).as_dict()

    assert body["info"] == "Live narration."
    assert body["modelUsed"] == "live-model"
    assert body["audioFormat"] == "pcm"
    assert body["voiceUsed"] == "Puck"
    assert provider.prompts == []
    assert provider.audio_calls == []


@pytest.mark.anyio
async def test_simultaneous_generation_stream(settings: Settings) -> None:
    provider = ScriptedProvider(simultaneous=True)

    frames = await _collect(
        _orchestrator(settings, provider), _request(generateAudio=True, streamAudio=True)
    )

    assert [frame["type"] for frame in frames] == ["text", "metadata", "audio_chunk", "complete"]
    assert frames[1]["totalChunks"] == 1
    assert frames[2]["chunk"]["format"] == "pcm"
    assert frames[2]["chunk"]["totalChunks"] == 1


class CountingWikipedia:
    enabled = True

    def __init__(self) -> None:
        self.lookups: list[str] = []

    async def enrich(self, attraction_name: str) -> WikipediaData:
        self.lookups.append(attraction_name)
        return NOT_FOUND


@pytest.mark.anyio
async def test_failed_simultaneous_call_reuses_context(settings: Settings) -> None:
    provider = ScriptedProvider(simultaneous=True, fail_simultaneous=True)
    wikipedia = CountingWikipedia()
    orchestrator = NarrationOrchestrator(
        settings, ProviderFactory({"openai": provider}), _breakers(), wikipedia
    )

    body = (await orchestrator.generate_batch(_request(generateAudio=True))).as_dict()

    assert body["info"] == NARRATION
    assert body["voiceUsed"] == "alloy"
    assert wikipedia.lookups == ["Old Harbor Lighthouse"]
    assert len(provider.prompts) == 1


@pytest.mark.anyio
async def test_chunks_over_configured_size_are_rejected(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    oversized = "x" * 150
    monkeypatch.setattr(
        "narrator.orchestrator.split_into_chunks",
        lambda text, config: [
            TextChunk(
                chunk_index=0,
                total_chunks=1,
                text=oversized,
                character_count=len(oversized),
                estimated_duration=10,
            )
        ],
    )
    provider = ScriptedProvider()
    orchestrator = _orchestrator(settings, provider, max_chunk_size=100)

    body = (
        await orchestrator.generate_batch(_request(generateAudio=True, useChunkedAudio=True))
    ).as_dict()

    assert body["info"] == NARRATION
    assert body["errorType"] == "validation_error"
    assert "audioChunks" not in body
    assert provider.audio_calls == []
