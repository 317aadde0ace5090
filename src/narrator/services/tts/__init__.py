"""
Speech synthesis support: chunking narration text and synthesizing it.

- chunking: splits narration into size-bounded chunks at natural boundaries
- audio_stream: synthesizes chunks concurrently and releases them in order

    narration → split_into_chunks → validate_chunks → stream_audio_chunks → frames
"""

from .audio_stream import AudioChunk, OrderedChunkBuffer, stream_audio_chunks, synthesize_all
from .chunking import (
    ChunkingConfig,
    ChunkStatistics,
    TextChunk,
    chunk_statistics,
    split_into_chunks,
    validate_chunks,
)

__all__ = [
    "AudioChunk",
    "ChunkStatistics",
    "ChunkingConfig",
    "OrderedChunkBuffer",
    "TextChunk",
    "chunk_statistics",
    "split_into_chunks",
    "stream_audio_chunks",
    "synthesize_all",
    "validate_chunks",
]
