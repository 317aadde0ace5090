from __future__ import annotations

import asyncio

import pytest

from narrator.providers.audio import MP3_BYTES_PER_SECOND
from narrator.providers.base import AudioResult
from narrator.services.tts.audio_stream import (
    AudioChunk,
    OrderedChunkBuffer,
    audio_metadata,
    stream_audio_chunks,
    synthesize_all,
)
from narrator.services.tts.chunking import ChunkingConfig, TextChunk, split_into_chunks


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _chunks(count: int) -> list[TextChunk]:
    text = " ".join(f"Sentence number {index} about the plaza." for index in range(count))
    chunks = split_into_chunks(text, ChunkingConfig(max_chunk_size=40))
    assert len(chunks) == count
    return chunks


def _mp3(seconds: float) -> AudioResult:
    return AudioResult(
        audio_data=b"\x00" * int(MP3_BYTES_PER_SECOND * seconds),
        format="mp3",
        voice_used="nova",
        model_used="tts-1",
    )


class TestOrderedChunkBuffer:
    """Results are released strictly by index, skipping failures."""

    def _audio(self, index: int) -> AudioChunk:
        chunk = TextChunk(
            chunk_index=index, total_chunks=3, text="hi", character_count=2, estimated_duration=1
        )
        return AudioChunk.from_text_chunk(chunk, _mp3(1))

    def test_holds_out_of_order_results(self) -> None:
        buffer = OrderedChunkBuffer(3)

        assert buffer.add(2, self._audio(2)) == []
        assert buffer.add(1, self._audio(1)) == []
        released = buffer.add(0, self._audio(0))

        assert [chunk.chunk_index for chunk in released] == [0, 1, 2]
        assert buffer.done

    def test_failed_chunk_does_not_block_successors(self) -> None:
        buffer = OrderedChunkBuffer(3)

        buffer.add(1, self._audio(1))
        released = buffer.add(0, None)

        assert [chunk.chunk_index for chunk in released] == [1]
        assert buffer.next_index == 2

    def test_duplicate_result_rejected(self) -> None:
        buffer = OrderedChunkBuffer(2)
        buffer.add(0, self._audio(0))

        with pytest.raises(ValueError):
            buffer.add(0, self._audio(0))


def test_audio_chunk_wire_format() -> None:
    chunk = _chunks(1)[0]

    audio = AudioChunk.from_text_chunk(chunk, _mp3(2))
    wire = audio.as_dict()

    assert wire["chunkIndex"] == 0
    assert wire["totalChunks"] == 1
    assert wire["format"] == "mp3"
    assert wire["actualDuration"] == 2.0
    assert wire["characterCount"] == len(chunk.text)
    assert isinstance(wire["audio"], str)


@pytest.mark.anyio
async def test_stream_emits_in_index_order_despite_completion_order() -> None:
    chunks = _chunks(3)
    delays = {0: 0.05, 1: 0.0, 2: 0.02}

    async def synthesize(chunk: TextChunk) -> AudioResult:
        await asyncio.sleep(delays[chunk.chunk_index])
        return _mp3(1)

    emitted = [chunk.chunk_index async for chunk in stream_audio_chunks(chunks, synthesize)]

    assert emitted == [0, 1, 2]


@pytest.mark.anyio
async def test_failed_chunk_is_omitted() -> None:
    chunks = _chunks(3)

    async def synthesize(chunk: TextChunk) -> AudioResult:
        if chunk.chunk_index == 1:
            raise RuntimeError("tts exploded")
        return _mp3(1)

    results = await synthesize_all(chunks, synthesize)

    assert [chunk.chunk_index for chunk in results] == [0, 2]


@pytest.mark.anyio
async def test_concurrency_is_bounded() -> None:
    chunks = _chunks(6)
    active = 0
    peak = 0

    async def synthesize(chunk: TextChunk) -> AudioResult:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return _mp3(1)

    results = await synthesize_all(chunks, synthesize, concurrency=2)

    assert len(results) == 6
    assert peak == 2


@pytest.mark.anyio
async def test_closing_stream_cancels_outstanding_work() -> None:
    chunks = _chunks(3)
    cancelled: list[int] = []

    async def synthesize(chunk: TextChunk) -> AudioResult:
        if chunk.chunk_index == 0:
            return _mp3(1)
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(chunk.chunk_index)
            raise
        return _mp3(1)

    stream = stream_audio_chunks(chunks, synthesize)
    first = await stream.__anext__()
    await stream.aclose()

    assert first.chunk_index == 0
    assert sorted(cancelled) == [1, 2]


def test_audio_metadata_aggregates() -> None:
    chunks = _chunks(2)
    audio = [AudioChunk.from_text_chunk(chunk, _mp3(1.5)) for chunk in chunks]

    metadata = audio_metadata(audio)

    assert metadata["totalChunks"] == 2
    assert metadata["totalDuration"] == 3.0
    assert metadata["averageChunkDuration"] == 1.5
    assert metadata["totalCharacters"] == sum(chunk.character_count for chunk in chunks)
    assert metadata["totalSize"] == sum(len(chunk.audio) for chunk in audio)
