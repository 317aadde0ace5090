"""
Text chunking for speech synthesis.

Narration text can be far longer than a TTS request accepts (OpenAI caps
``/audio/speech`` input at 4096 characters). This module splits it into
ordered chunks that stay under a hard ceiling while preferring natural
boundaries, so each chunk reads as complete speech.

Architecture:
    narration text → split_into_chunks() → validate_chunks() → synthesis

Break points are tried from strongest to weakest, each only accepted once it
lies past a minimum fraction of the current limit:

    paragraph   "\\n\\n"                   > 50%
    sentence    ". " "! " "? " (+ "\\n")   > 50%
    punctuation ", " "; " ": " " - "       > 60%
    newline     "\\n"                      > 60%
    whitespace  " "                        > 70%

If none qualifies the chunk is hard-cut at the limit.

Usage:
    chunks = split_into_chunks(text, ChunkingConfig(prioritize_first_chunk=True))
    validate_chunks(chunks)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ...errors import ChunkValidationError

PROVIDER_CHARACTER_LIMIT = 4096
MAX_CHUNK_SIZE = 3900
AVG_CHARS_PER_SECOND = 15


@dataclass(frozen=True)
class ChunkingConfig:
    """
    Parameters for a chunking pass.

    Attributes:
        max_chunk_size: Hard ceiling for every chunk.
        avg_chars_per_second: Speaking rate used for duration estimates.
        prioritize_first_chunk: Use a smaller ceiling for chunk 0 so the
            first audio is ready sooner when streaming.
        first_chunk_target_seconds: Desired speech length of chunk 0.
        min_first_chunk_size: Floor for the derived first-chunk ceiling.
    """

    max_chunk_size: int = MAX_CHUNK_SIZE
    avg_chars_per_second: float = AVG_CHARS_PER_SECOND
    prioritize_first_chunk: bool = False
    first_chunk_target_seconds: float = 12.0
    min_first_chunk_size: int = 120

    def __post_init__(self) -> None:
        if self.max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        if self.avg_chars_per_second <= 0:
            raise ValueError("avg_chars_per_second must be positive")

    @property
    def first_chunk_max_size(self) -> int:
        target = int(self.first_chunk_target_seconds * self.avg_chars_per_second)
        floor = min(self.min_first_chunk_size, self.max_chunk_size)
        return max(floor, min(target, self.max_chunk_size))


@dataclass(frozen=True)
class TextChunk:
    chunk_index: int
    total_chunks: int
    text: str
    character_count: int
    estimated_duration: int  # seconds


@dataclass(frozen=True)
class ChunkStatistics:
    total_chunks: int
    total_characters: int
    average_chunk_size: int
    estimated_total_duration: int
    min_chunk_size: int
    max_chunk_size: int
    chunk_sizes: List[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "totalChunks": self.total_chunks,
            "totalCharacters": self.total_characters,
            "averageChunkSize": self.average_chunk_size,
            "estimatedTotalDuration": self.estimated_total_duration,
            "minChunkSize": self.min_chunk_size,
            "maxChunkSize": self.max_chunk_size,
            "chunkSizes": list(self.chunk_sizes),
        }


# (delimiters, minimum fraction of the limit the break must lie past)
BREAK_RULES: Tuple[Tuple[Tuple[str, ...], float], ...] = (
    (("\n\n",), 0.5),
    ((". ", "! ", "? ", ".\n", "!\n", "?\n"), 0.5),
    ((", ", "; ", ": ", " - "), 0.6),
    (("\n",), 0.6),
    ((" ",), 0.7),
)


def estimate_duration(text: str, avg_chars_per_second: float = AVG_CHARS_PER_SECOND) -> int:
    """Seconds of speech for ``text`` at the average speaking rate."""

    return math.ceil(len(text) / avg_chars_per_second)


def find_break_point(text: str, limit: int) -> int:
    """
    Return the cut position for the next chunk of ``text``.

    Args:
        text: Remaining narration, already stripped.
        limit: Maximum characters for this chunk.

    Returns:
        Index to slice at; ``text[:index]`` is the chunk. Always in
        ``1..limit`` for text longer than ``limit``.
    """
    if len(text) <= limit:
        return len(text)

    window = text[:limit]
    for delimiters, min_fraction in BREAK_RULES:
        threshold = limit * min_fraction
        best = -1
        for delimiter in delimiters:
            position = window.rfind(delimiter)
            if position == -1:
                continue
            # Keep sentence punctuation with the sentence it ends
            end = position + len(delimiter.rstrip()) if delimiter.strip() else position
            if end > threshold and end > best:
                best = end
        if best > 0:
            return best
    return limit


def split_into_chunks(text: str, config: Optional[ChunkingConfig] = None) -> List[TextChunk]:
    """
    Split ``text`` into ordered, size-bounded chunks.

    Args:
        text: Narration to split.
        config: Chunking parameters; defaults to ``ChunkingConfig()``.

    Returns:
        Chunks indexed ``0..N-1`` with ``total_chunks == N`` on each. Blank
        input yields an empty list.
    """
    config = config or ChunkingConfig()
    remaining = (text or "").strip()
    if not remaining:
        return []

    pieces: List[str] = []
    while remaining:
        limit = config.max_chunk_size
        if config.prioritize_first_chunk and not pieces:
            limit = config.first_chunk_max_size
        cut = find_break_point(remaining, limit)
        piece = remaining[:cut].strip()
        if piece:
            pieces.append(piece)
        remaining = remaining[cut:].strip()

    total = len(pieces)
    return [
        TextChunk(
            chunk_index=index,
            total_chunks=total,
            text=piece,
            character_count=len(piece),
            estimated_duration=estimate_duration(piece, config.avg_chars_per_second),
        )
        for index, piece in enumerate(pieces)
    ]


def validate_chunks(
    chunks: Sequence[TextChunk],
    max_chunk_size: int = PROVIDER_CHARACTER_LIMIT,
) -> None:
    """
    Reject chunk lists that would break the synthesis call.

    Raises:
        ChunkValidationError: A chunk is empty or over ``max_chunk_size``,
            or indices are not exactly ``0..N-1`` with matching totals.
    """
    total = len(chunks)
    problems: List[str] = []
    for position, chunk in enumerate(chunks):
        if chunk.chunk_index != position:
            problems.append(f"chunk at position {position} has index {chunk.chunk_index}")
        if chunk.total_chunks != total:
            problems.append(
                f"chunk {chunk.chunk_index} reports {chunk.total_chunks} total, expected {total}"
            )
        if not chunk.text:
            problems.append(f"chunk {chunk.chunk_index} is empty")
        if len(chunk.text) > max_chunk_size:
            problems.append(
                f"chunk {chunk.chunk_index} has {len(chunk.text)} characters "
                f"(limit {max_chunk_size})"
            )
    if problems:
        raise ChunkValidationError("; ".join(problems))


def chunk_statistics(chunks: Sequence[TextChunk]) -> ChunkStatistics:
    sizes = [chunk.character_count for chunk in chunks]
    total_characters = sum(sizes)
    return ChunkStatistics(
        total_chunks=len(chunks),
        total_characters=total_characters,
        average_chunk_size=round(total_characters / len(chunks)) if chunks else 0,
        estimated_total_duration=sum(chunk.estimated_duration for chunk in chunks),
        min_chunk_size=min(sizes) if sizes else 0,
        max_chunk_size=max(sizes) if sizes else 0,
        chunk_sizes=sizes,
    )


def prepare_text_for_audio(text: str, limit: int = PROVIDER_CHARACTER_LIMIT) -> str:
    """Trim ``text`` for a single synthesis call, ending on a sentence if possible."""

    cleaned = (text or "").strip()
    if len(cleaned) <= limit:
        return cleaned
    window = cleaned[:limit]
    last_sentence = max(window.rfind(". "), window.rfind("! "), window.rfind("? "))
    if last_sentence > limit * 0.5:
        return window[: last_sentence + 1]
    last_space = window.rfind(" ")
    if last_space > limit * 0.7:
        return window[:last_space]
    return window
