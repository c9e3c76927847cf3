"""
Synthesis and playback queues.

- `SynthesisQueue`: FIFO of sentences, synthesized one at a time
- `PlaybackQueue`: bounded FIFO of audio entries, played one at a time,
  dropping the oldest entry on overflow
- `AudioSink`: where audio ends up (`SoundDeviceSink` for the local speaker)

Both queues are owned by the pipeline; collaborators only produce into them.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional
import time

import structlog

from src.voiceloop.audio import read_wav_samples
from src.voiceloop.config import get_config
from src.voiceloop.errors import DeviceUnavailable
from src.voiceloop.tts_providers.base import TTSProvider
from src.voiceloop.tts_types import SynthesisRequest

logger = structlog.get_logger(__name__)


@dataclass
class PlaybackEntry:
    """Synthesized audio waiting for the speaker."""
    audio: bytes
    text: str = ""
    created_at: float = field(default_factory=time.time)


class AudioSink(ABC):
    """Plays WAV audio. At most one `play` is active at a time."""

    @abstractmethod
    async def play(self, wav_bytes: bytes) -> None:
        """Play to completion; returns early if `stop()` is called."""
        raise NotImplementedError

    @abstractmethod
    def stop(self) -> None:
        """Stop the current sound and release the output resource."""
        raise NotImplementedError


class SoundDeviceSink(AudioSink):
    """Plays through the default output device via sounddevice."""

    def __init__(self, device: Optional[Any] = None):
        self.device = device

    async def play(self, wav_bytes: bytes) -> None:
        import sounddevice as sd  # Local import: needs PortAudio at runtime

        sample_rate, samples = read_wav_samples(wav_bytes)
        if len(samples) == 0:
            return
        try:
            sd.play(samples, samplerate=sample_rate, device=self.device)
        except sd.PortAudioError as e:
            raise DeviceUnavailable(f"Audio output unavailable: {e}") from e
        await asyncio.to_thread(sd.wait)

    def stop(self) -> None:
        import sounddevice as sd

        sd.stop()


class PlaybackQueue:
    """
    Bounded FIFO of audio entries with drop-oldest backpressure.

    Entries play strictly in order and never overlap. A failed entry is
    logged and skipped.
    """

    def __init__(self, sink: AudioSink, capacity: int = 10):
        if capacity < 1:
            raise ValueError("Playback queue capacity must be at least 1")
        self._sink = sink
        self.capacity = capacity
        self._entries: Deque[PlaybackEntry] = deque()
        self._current: Optional[PlaybackEntry] = None
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def pending(self) -> List[PlaybackEntry]:
        return list(self._entries)

    @property
    def current(self) -> Optional[PlaybackEntry]:
        return self._current

    @property
    def is_playing(self) -> bool:
        return self._current is not None

    @property
    def idle(self) -> bool:
        return not self._entries and (self._task is None or self._task.done())

    def push(self, entry: PlaybackEntry) -> None:
        if len(self._entries) >= self.capacity:
            dropped = self._entries.popleft()
            self.dropped += 1
            logger.warning(
                "Audio queue size limit reached, dropping oldest chunk",
                capacity=self.capacity,
                dropped_text=dropped.text[:50],
            )
        self._entries.append(entry)
        self._ensure_playing()

    def _ensure_playing(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._play_loop())

    async def _play_loop(self) -> None:
        while self._entries:
            entry = self._entries.popleft()
            self._current = entry
            try:
                await self._sink.play(entry.audio)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Playback failed, skipping chunk", error=str(e), text=entry.text[:50])
            finally:
                self._current = None

    def stop(self) -> None:
        """Stop the active sound. Queued entries stay queued."""
        playing = self._task is not None and not self._task.done()
        if playing:
            self._task.cancel()
        self._task = None
        self._current = None
        if not playing:
            return
        try:
            self._sink.stop()
        except Exception as e:
            logger.warning("Failed to stop audio sink", error=str(e))

    def clear(self) -> None:
        self._entries.clear()

    async def join(self) -> None:
        """Wait until every queued entry has played."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})


class SynthesisQueue:
    """
    FIFO of sentences awaiting synthesis; one request in flight at a time.

    Each completed request pushes its audio to the playback queue. A failed
    request is dropped and the next one is tried after a short delay.
    """

    def __init__(
        self,
        tts: TTSProvider,
        playback: PlaybackQueue,
        config: Optional[Any] = None,
        *,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or get_config()
        self._tts = tts
        self._on_error = on_error
        self._playback = playback
        self._requests: Deque[SynthesisRequest] = deque()
        self._task: Optional[asyncio.Task] = None
        self._retry_delay_s = float(self.config.tts_retry_delay_seconds)
        self.error: Optional[str] = None

    def __len__(self) -> int:
        return len(self._requests)

    @property
    def pending(self) -> List[SynthesisRequest]:
        return list(self._requests)

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def idle(self) -> bool:
        return not self._requests and not self.in_flight

    def enqueue(self, text: str) -> None:
        text = (text or "").strip()
        if not text:
            return
        self._requests.append(
            SynthesisRequest(text=text, voice=self.config.tts_voice, speed=self.config.tts_speed)
        )
        if not self.in_flight:
            self._task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._requests:
            request = self._requests[0]
            try:
                async for chunk in self._tts.synthesize_streaming(
                    request.text, voice=request.voice, speed=request.speed
                ):
                    if chunk.audio:
                        self._playback.push(PlaybackEntry(audio=chunk.audio, text=chunk.text))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._pop(request)
                logger.error("TTS worker error", error=str(e), text=request.text[:50])
                if not self._requests:
                    self.error = str(e)
                    if self._on_error is not None:
                        self._on_error(self.error)
                    return
                await asyncio.sleep(self._retry_delay_s)
                continue

            self.error = None
            self._pop(request)

    def _pop(self, request: SynthesisRequest) -> None:
        if self._requests and self._requests[0] is request:
            self._requests.popleft()

    def cancel(self) -> None:
        """Abort the in-flight synthesis."""
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        self._tts.cancel()

    def clear(self) -> None:
        self._requests.clear()

    async def join(self) -> None:
        """Wait until every queued request has been synthesized."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})
