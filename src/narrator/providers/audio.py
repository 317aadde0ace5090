"""Audio container helpers and duration estimates."""

from __future__ import annotations

import io
import wave

# Presumed 128 kbps MP3 from the speech endpoint. The provider does not report
# durations, so MP3 lengths are an estimate derived from byte size only.
MP3_BYTES_PER_SECOND = 16_000

PCM_SAMPLE_RATE = 24_000
PCM_CHANNELS = 1
PCM_SAMPLE_WIDTH = 2


def pcm_to_wav(
    pcm: bytes,
    *,
    sample_rate: int = PCM_SAMPLE_RATE,
    channels: int = PCM_CHANNELS,
    sample_width: int = PCM_SAMPLE_WIDTH,
) -> bytes:
    """Wrap raw little-endian PCM in a RIFF/WAVE container."""

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(sample_width)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buffer.getvalue()


def pcm_duration(
    byte_count: int,
    *,
    sample_rate: int = PCM_SAMPLE_RATE,
    channels: int = PCM_CHANNELS,
    sample_width: int = PCM_SAMPLE_WIDTH,
) -> float:
    """Exact playback seconds for ``byte_count`` bytes of PCM."""

    return byte_count / float(sample_rate * channels * sample_width)


def estimate_mp3_duration(byte_count: int) -> float:
    """Approximate seconds of MP3 audio; see ``MP3_BYTES_PER_SECOND``."""

    return round(byte_count / MP3_BYTES_PER_SECOND, 2)


def estimate_audio_duration(audio: bytes, audio_format: str) -> float:
    if audio_format == "pcm":
        return round(pcm_duration(len(audio)), 2)
    if audio_format == "wav":
        with wave.open(io.BytesIO(audio), "rb") as wav:
            return round(wav.getnframes() / float(wav.getframerate()), 2)
    return estimate_mp3_duration(len(audio))
