from __future__ import annotations

import re

import pytest

from narrator.errors import ChunkValidationError
from narrator.services.tts.chunking import (
    ChunkingConfig,
    TextChunk,
    chunk_statistics,
    estimate_duration,
    find_break_point,
    prepare_text_for_audio,
    split_into_chunks,
    validate_chunks,
)

SENTENCE = "The old harbor wall was rebuilt after the storm of 1894, and fishermen still tie up here. "


def _squash(text: str) -> str:
    return re.sub(r"\s+", "", text)


def _narration(paragraphs: int = 6, sentences: int = 8) -> str:
    return "\n\n".join(SENTENCE * sentences for _ in range(paragraphs)).strip()


@pytest.mark.parametrize("max_size", [100, 250, 900, 3900])
def test_chunks_reconstruct_original_text(max_size: int) -> None:
    text = _narration()

    chunks = split_into_chunks(text, ChunkingConfig(max_chunk_size=max_size))

    assert _squash("".join(chunk.text for chunk in chunks)) == _squash(text)
    assert all(len(chunk.text) <= max_size for chunk in chunks)


VARIED_TEXTS = {
    "no_whitespace": "x" * 1000,
    "long_words": " ".join(
        ["Donaudampfschifffahrtsgesellschaftskapitänsmütze" * 3, "short", "words"] * 8
    ),
    "german": (
        "Die Brücke über den Fluss wurde im Jahr 1887 eröffnet. Früher überquerten "
        "Händler hier mit schwer beladenen Wagen das Tal; heute gehört sie Fußgängern. "
    )
    * 6,
    "french": (
        "L'église Saint-Étienne domine la place, où les marchés se tiennent depuis "
        "le Moyen Âge, et les façades conservent leurs décors sculptés. "
    )
    * 6,
    "japanese": "この灯台は明治時代に建てられ、港に入る船を百年以上見守ってきました。" * 20,
    "unpunctuated_lines": "\n".join(
        "the path bends left past the old mill and the stone bridge" for _ in range(20)
    ),
}


@pytest.mark.parametrize("prioritize", [False, True])
@pytest.mark.parametrize("name", sorted(VARIED_TEXTS))
def test_varied_text_chunks_stay_bounded_and_lossless(name: str, prioritize: bool) -> None:
    text = VARIED_TEXTS[name]
    config = ChunkingConfig(max_chunk_size=200, prioritize_first_chunk=prioritize)

    chunks = split_into_chunks(text, config)

    assert len(chunks) > 1
    assert _squash("".join(chunk.text for chunk in chunks)) == _squash(text)
    assert all(0 < len(chunk.text) <= 200 for chunk in chunks)
    assert all(chunk.character_count == len(chunk.text) for chunk in chunks)
    if prioritize:
        assert len(chunks[0].text) <= config.first_chunk_max_size
    validate_chunks(chunks, 200)


def test_text_without_whitespace_is_cut_at_the_limit() -> None:
    chunks = split_into_chunks("ab" * 250, ChunkingConfig(max_chunk_size=200))

    assert [len(chunk.text) for chunk in chunks] == [200, 200, 100]


def test_prioritized_first_chunk_is_smaller_than_the_rest() -> None:
    config = ChunkingConfig(
        max_chunk_size=900, prioritize_first_chunk=True, first_chunk_target_seconds=8
    )
    text = _narration()

    chunks = split_into_chunks(text, config)

    assert config.first_chunk_max_size < 900
    assert len(chunks[0].text) <= config.first_chunk_max_size
    assert max(len(chunk.text) for chunk in chunks[1:]) > config.first_chunk_max_size
    assert _squash("".join(chunk.text for chunk in chunks)) == _squash(text)


def test_chunk_indices_are_contiguous() -> None:
    chunks = split_into_chunks(_narration(), ChunkingConfig(max_chunk_size=300))

    assert len(chunks) > 3
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    assert {chunk.total_chunks for chunk in chunks} == {len(chunks)}


def test_sentence_break_keeps_punctuation() -> None:
    text = "First sentence is here. Second sentence follows it. Third one ends the text."

    cut = find_break_point(text, 60)

    assert text[:cut].endswith(".")
    assert text[:cut] == "First sentence is here. Second sentence follows it."


def test_paragraph_break_preferred_over_sentence() -> None:
    text = ("A" * 30 + ". " + "B" * 30) + "\n\n" + "C" * 40

    cut = find_break_point(text, 80)

    assert text[:cut].endswith("B" * 30)


def test_hard_cut_when_no_break_point_qualifies() -> None:
    text = "x" * 250

    chunks = split_into_chunks(text, ChunkingConfig(max_chunk_size=100))

    assert [len(chunk.text) for chunk in chunks] == [100, 100, 50]


def test_first_chunk_prioritised_for_quick_start() -> None:
    config = ChunkingConfig(
        max_chunk_size=3900, prioritize_first_chunk=True, first_chunk_target_seconds=12
    )
    text = _narration()

    chunks = split_into_chunks(text, config)

    assert config.first_chunk_max_size == 180
    assert len(chunks[0].text) <= 180
    assert len(chunks[1].text) > 180


def test_blank_text_yields_no_chunks() -> None:
    assert split_into_chunks("   \n ") == []


def test_estimated_duration_uses_speaking_rate() -> None:
    chunks = split_into_chunks("a" * 30)

    assert chunks[0].estimated_duration == 2
    assert estimate_duration("a" * 31) == 3


def test_validate_chunks_rejects_oversized_chunk() -> None:
    chunk = TextChunk(
        chunk_index=0, total_chunks=1, text="y" * 5000, character_count=5000, estimated_duration=1
    )

    with pytest.raises(ChunkValidationError, match="5000 characters"):
        validate_chunks([chunk])


def test_validate_chunks_rejects_index_gaps() -> None:
    chunks = [
        TextChunk(chunk_index=0, total_chunks=2, text="a", character_count=1, estimated_duration=1),
        TextChunk(chunk_index=2, total_chunks=2, text="b", character_count=1, estimated_duration=1),
    ]

    with pytest.raises(ChunkValidationError, match="has index 2"):
        validate_chunks(chunks)


def test_chunk_statistics_summarise_sizes() -> None:
    chunks = split_into_chunks(_narration(), ChunkingConfig(max_chunk_size=500))

    stats = chunk_statistics(chunks)

    assert stats.total_chunks == len(chunks)
    assert stats.total_characters == sum(chunk.character_count for chunk in chunks)
    assert stats.max_chunk_size <= 500
    assert stats.as_dict()["totalChunks"] == len(chunks)


def test_prepare_text_for_audio_ends_on_sentence() -> None:
    text = SENTENCE * 60

    prepared = prepare_text_for_audio(text, limit=1000)

    assert len(prepared) <= 1000
    assert prepared.endswith(".")
    assert text.startswith(prepared)


def test_prepare_text_for_audio_leaves_short_text_alone() -> None:
    assert prepare_text_for_audio("  Short and sweet.  ") == "Short and sweet."
