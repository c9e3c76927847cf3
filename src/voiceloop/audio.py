"""
Audio conversion utilities for the voice loop.

Microphone capture produces 16-bit mono PCM chunks. The segmentation engine
decodes a run of chunks into a float32 sample array at the transcription rate
(16kHz), and synthesized speech travels as WAV bytes to the playback sink.

All conversions are numpy based.
"""

import io
import time
import wave
from dataclasses import dataclass, field
from typing import Iterable, Optional

import numpy as np

from src.voiceloop.errors import DecodeFailure

STT_SAMPLE_RATE = 16000  # Whisper expects 16kHz mono
SAMPLE_WIDTH = 2  # 16-bit PCM
MIN_DECODE_BYTES = 100  # anything smaller is a truncated/empty recorder flush


@dataclass(frozen=True)
class AudioChunk:
    """
    A time slice of captured microphone audio.

    `data` is little-endian 16-bit mono PCM at `sample_rate`.
    """

    data: bytes
    sample_rate: int = STT_SAMPLE_RATE
    timestamp: float = field(default_factory=time.time)

    @property
    def duration_ms(self) -> float:
        return get_audio_duration_ms(self.data, self.sample_rate)


def pcm16_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert 16-bit PCM bytes to float32 samples in [-1, 1].

    Args:
        pcm_bytes: Little-endian 16-bit PCM

    Returns:
        float32 numpy array
    """
    if not pcm_bytes:
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(pcm_bytes, dtype=np.int16).astype(np.float32) / 32768.0


def float32_to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float32 samples in [-1, 1] to 16-bit PCM bytes (clipped)."""
    if samples is None or len(samples) == 0:
        return b""
    clipped = np.clip(np.asarray(samples, dtype=np.float32) * 32767, -32768, 32767)
    return clipped.astype(np.int16).tobytes()


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """
    Resample float32 samples with linear interpolation.

    Good enough for speech going into an STT model; not meant for music.
    """
    if len(samples) == 0 or source_rate == target_rate:
        return samples

    target_length = int(np.ceil(len(samples) * target_rate / source_rate))
    source_positions = np.arange(len(samples), dtype=np.float64)
    target_positions = np.linspace(0, len(samples) - 1, num=target_length)
    return np.interp(target_positions, source_positions, samples).astype(np.float32)


def decode_chunks(
    chunks: Iterable[AudioChunk],
    *,
    target_rate: int = STT_SAMPLE_RATE,
    max_seconds: Optional[float] = 30.0,
) -> np.ndarray:
    """
    Decode a run of captured chunks into one continuous float32 array.

    Only the last `max_seconds` are kept (the STT window). The result is
    resampled to `target_rate` when the capture rate differs.

    Raises:
        DecodeFailure: chunks are empty/truncated, have mixed rates, or are
            not whole 16-bit frames.
    """
    chunks = list(chunks)
    if not chunks:
        raise DecodeFailure("No audio chunks to decode")

    rates = {c.sample_rate for c in chunks}
    if len(rates) != 1:
        raise DecodeFailure(f"Mixed sample rates in buffer: {sorted(rates)}")
    source_rate = rates.pop()
    if source_rate <= 0:
        raise DecodeFailure(f"Invalid sample rate: {source_rate}")

    raw = b"".join(c.data for c in chunks)
    if len(raw) < MIN_DECODE_BYTES:
        raise DecodeFailure(f"Audio buffer too small to decode ({len(raw)} bytes)")
    if len(raw) % SAMPLE_WIDTH != 0:
        raise DecodeFailure("Audio buffer is not aligned to 16-bit frames")

    samples = pcm16_to_float32(raw)
    if not np.all(np.isfinite(samples)):
        raise DecodeFailure("Audio buffer contains non-finite samples")

    if max_seconds is not None and max_seconds > 0:
        max_samples = int(max_seconds * source_rate)
        if len(samples) > max_samples:
            samples = samples[-max_samples:]

    return resample(samples, source_rate, target_rate)


def tail_rms(samples: np.ndarray, sample_rate: int, window_ms: float) -> float:
    """
    Root-mean-square energy of the trailing `window_ms` of audio.

    Returns 0.0 for empty input.
    """
    if samples is None or len(samples) == 0:
        return 0.0
    window = max(1, int(sample_rate * window_ms / 1000))
    tail = np.asarray(samples[-window:], dtype=np.float64)
    return float(np.sqrt(np.mean(tail * tail)))


def get_audio_duration_ms(pcm_bytes: bytes, sample_rate: int = STT_SAMPLE_RATE) -> float:
    """
    Calculate the duration of 16-bit PCM audio in milliseconds.

    Args:
        pcm_bytes: PCM bytes
        sample_rate: Sample rate in Hz

    Returns:
        Duration in milliseconds
    """
    if not pcm_bytes or sample_rate <= 0:
        return 0.0
    return (len(pcm_bytes) // SAMPLE_WIDTH) / sample_rate * 1000


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def samples_to_wav(samples: np.ndarray, sample_rate: int = STT_SAMPLE_RATE) -> bytes:
    """Encode float32 samples as a mono 16-bit WAV byte string."""
    return write_wav_mono_pcm16(float32_to_pcm16(samples), sample_rate)


def read_wav_samples(wav_bytes: bytes) -> tuple[int, np.ndarray]:
    """
    Read a WAV byte string and return (sample_rate, mono float32 samples).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises DecodeFailure.
    """
    if not wav_bytes:
        raise DecodeFailure("Empty WAV")

    try:
        with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise DecodeFailure(f"Invalid WAV: {e}") from e

    if sample_width != SAMPLE_WIDTH:
        raise DecodeFailure(f"Unsupported WAV sample width: {sample_width * 8} bits")

    samples = pcm16_to_float32(frames)
    if channels == 1:
        return int(sample_rate), samples

    if channels == 2:
        stereo = samples.reshape(-1, 2)
        return int(sample_rate), stereo.mean(axis=1).astype(np.float32)

    raise DecodeFailure(f"Unsupported WAV channel count: {channels}")


def create_silence_pcm16(duration_ms: int, sample_rate: int = STT_SAMPLE_RATE) -> bytes:
    """Create `duration_ms` of 16-bit PCM silence."""
    num_samples = int(sample_rate * duration_ms / 1000)
    return b"\x00\x00" * num_samples
