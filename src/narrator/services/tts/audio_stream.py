"""
Per-chunk speech synthesis with bounded concurrency and ordered release.

Architecture:
    TextChunk list → workers (Semaphore) → result queue → OrderedChunkBuffer → caller

Synthesis calls for different chunks run concurrently (three at a time by
default) and may finish in any order. Results pass through a bounded queue
into ``OrderedChunkBuffer``, which only releases chunk ``n`` once every chunk
before it has either completed or failed. A failed chunk is logged and
skipped; it never blocks the chunks after it.

Closing the consuming generator (for example when the HTTP client goes away)
cancels every outstanding synthesis task.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence

from ...providers.audio import estimate_audio_duration
from ...providers.base import AudioResult
from .chunking import AVG_CHARS_PER_SECOND, TextChunk

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3
MAX_CONCURRENCY = 6

SynthesizeFn = Callable[[TextChunk], Awaitable[AudioResult]]


@dataclass(frozen=True)
class AudioChunk:
    """A TextChunk plus its synthesized audio; only built from a TextChunk."""

    chunk_index: int
    total_chunks: int
    text: str
    character_count: int
    estimated_duration: int
    audio: str  # base64
    format: str
    estimated_ms: int
    actual_duration: float  # estimate for mp3, see providers.audio
    byte_size: int

    @classmethod
    def from_text_chunk(
        cls, chunk: TextChunk, result: AudioResult, *, speed: float = 1.0
    ) -> "AudioChunk":
        rate = AVG_CHARS_PER_SECOND * max(0.5, speed)
        return cls(
            chunk_index=chunk.chunk_index,
            total_chunks=chunk.total_chunks,
            text=chunk.text,
            character_count=chunk.character_count,
            estimated_duration=chunk.estimated_duration,
            audio=result.audio_base64,
            format=result.format,
            estimated_ms=max(1000, round(chunk.character_count / rate * 1000)),
            actual_duration=estimate_audio_duration(result.audio_data, result.format),
            byte_size=len(result.audio_data),
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "chunkIndex": self.chunk_index,
            "totalChunks": self.total_chunks,
            "text": self.text,
            "characterCount": self.character_count,
            "estimatedDuration": self.estimated_duration,
            "audio": self.audio,
            "format": self.format,
            "estimatedMs": self.estimated_ms,
            "actualDuration": self.actual_duration,
        }


class OrderedChunkBuffer:
    """Hold out-of-order completions and release them by ascending index."""

    def __init__(self, total: int) -> None:
        self._total = total
        self._next = 0
        self._pending: dict[int, Optional[AudioChunk]] = {}

    @property
    def next_index(self) -> int:
        return self._next

    @property
    def done(self) -> bool:
        return self._next >= self._total

    def add(self, index: int, chunk: Optional[AudioChunk]) -> list[AudioChunk]:
        """Record the outcome for ``index`` (``None`` = failed) and return releasable chunks."""

        if index < self._next or index in self._pending:
            raise ValueError(f"duplicate result for chunk {index}")
        if not 0 <= index < self._total:
            raise ValueError(f"chunk index {index} out of range 0..{self._total - 1}")
        self._pending[index] = chunk
        ready: list[AudioChunk] = []
        while self._next in self._pending:
            item = self._pending.pop(self._next)
            self._next += 1
            if item is not None:
                ready.append(item)
        return ready


def clamp_concurrency(value: int) -> int:
    return max(1, min(MAX_CONCURRENCY, value))


async def stream_audio_chunks(
    chunks: Sequence[TextChunk],
    synthesize: SynthesizeFn,
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    speed: float = 1.0,
) -> AsyncIterator[AudioChunk]:
    """Yield synthesized chunks in index order, skipping chunks that failed."""

    if not chunks:
        return

    limit = clamp_concurrency(concurrency)
    semaphore = asyncio.Semaphore(limit)
    results: asyncio.Queue[tuple[int, Optional[AudioChunk]]] = asyncio.Queue(maxsize=limit * 2)

    async def _worker(chunk: TextChunk) -> None:
        item: Optional[AudioChunk] = None
        async with semaphore:
            try:
                result = await synthesize(chunk)
                item = AudioChunk.from_text_chunk(chunk, result, speed=speed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "Audio for chunk %d/%d failed, skipping: %s",
                    chunk.chunk_index + 1,
                    chunk.total_chunks,
                    exc,
                )
        await results.put((chunk.chunk_index, item))

    tasks = [asyncio.create_task(_worker(chunk)) for chunk in chunks]
    buffer = OrderedChunkBuffer(len(chunks))
    try:
        while not buffer.done:
            index, item = await results.get()
            for ready in buffer.add(index, item):
                yield ready
    finally:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            logger.info("Cancelled %d outstanding audio tasks", len(pending))
        await asyncio.gather(*tasks, return_exceptions=True)


async def synthesize_all(
    chunks: Sequence[TextChunk],
    synthesize: SynthesizeFn,
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    speed: float = 1.0,
) -> list[AudioChunk]:
    """Batch form of ``stream_audio_chunks``: every successful chunk, in order."""

    return [
        chunk
        async for chunk in stream_audio_chunks(
            chunks, synthesize, concurrency=concurrency, speed=speed
        )
    ]


def audio_metadata(chunks: Sequence[AudioChunk]) -> dict[str, object]:
    """Aggregate statistics for a batch response."""

    count = len(chunks)
    total_duration = round(sum(chunk.actual_duration for chunk in chunks), 2)
    total_size = sum(len(chunk.audio) for chunk in chunks)
    return {
        "totalChunks": count,
        "totalCharacters": sum(chunk.character_count for chunk in chunks),
        "totalDuration": total_duration,
        "averageChunkDuration": round(total_duration / count, 2) if count else 0,
        "totalSize": total_size,
        "averageChunkSize": round(total_size / count) if count else 0,
    }
