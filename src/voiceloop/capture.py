"""
Microphone capture and utterance segmentation.

The engine buffers ~500ms PCM chunks from the capture device and, on a
periodic tick, decodes the buffer and measures the energy of its tail:

- loud tail: any pending silence timer is cancelled and the audio goes to the
  transcription bridge for an incremental read
- quiet tail after transcribed speech: a silence timer is armed; if it runs
  out, an `UtteranceBoundary` is emitted and the buffer is cleared

The capture device is restarted ("rotated") every minute and whenever the
buffer nears its chunk cap. Audio buffered by the old device is discarded.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Union

import numpy as np
import structlog

from src.voiceloop.audio import STT_SAMPLE_RATE, AudioChunk, decode_chunks, tail_rms
from src.voiceloop.config import get_config
from src.voiceloop.errors import DecodeFailure, DeviceUnavailable
from src.voiceloop.stt import TranscriptionBridge

logger = structlog.get_logger(__name__)

ChunkCallback = Callable[[AudioChunk], None]


class CaptureDevice(ABC):
    """A source of fixed-length PCM16 mono chunks."""

    @abstractmethod
    def start(self, on_chunk: ChunkCallback) -> None:
        """
        Begin delivering chunks to `on_chunk` on the event loop thread.

        Raises:
            DeviceUnavailable: The device is missing, busy or access was denied
        """
        raise NotImplementedError

    @abstractmethod
    def stop(self) -> None:
        raise NotImplementedError


class SoundDeviceMicrophone(CaptureDevice):
    """Default input device through a sounddevice RawInputStream."""

    def __init__(self, sample_rate: int = STT_SAMPLE_RATE, chunk_ms: int = 500, device: Optional[Any] = None):
        self.sample_rate = sample_rate
        self.chunk_ms = chunk_ms
        self.device = device
        self._stream = None

    def start(self, on_chunk: ChunkCallback) -> None:
        import sounddevice as sd  # Local import: needs PortAudio at runtime

        loop = asyncio.get_running_loop()
        sample_rate = self.sample_rate

        def callback(indata, frames, time_info, status):
            if status.input_overflow:
                logger.debug("Microphone input overflow")
            # PortAudio thread -> event loop
            loop.call_soon_threadsafe(on_chunk, AudioChunk(data=bytes(indata), sample_rate=sample_rate))

        try:
            stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                blocksize=int(self.sample_rate * self.chunk_ms / 1000),
                channels=1,
                dtype="int16",
                device=self.device,
                callback=callback,
            )
            stream.start()
        except Exception as e:
            raise DeviceUnavailable(f"Failed to access microphone: {e}") from e

        self._stream = stream
        logger.info("Microphone started", sample_rate=self.sample_rate, chunk_ms=self.chunk_ms)

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()


@dataclass
class CaptureSession:
    """State of one capture device run. Replaced on every start and rotation."""
    generation: int
    started_at: float
    last_rotation_time: float
    recording: bool = True
    chunk_buffer: List[AudioChunk] = field(default_factory=list)


@dataclass(frozen=True)
class UtteranceBoundary:
    """Sustained silence after speech: one downstream turn."""
    text: str
    audio: Optional[np.ndarray] = None
    timestamp: float = field(default_factory=time.time)


UtteranceCallback = Callable[[UtteranceBoundary], Union[Awaitable[None], None]]
ErrorCallback = Callable[[str], None]


class SegmentationEngine:
    """
    Owns the capture device and turns its chunks into utterance boundaries.

    All state lives on the event loop; the device only posts chunks.
    """

    def __init__(
        self,
        device: CaptureDevice,
        bridge: TranscriptionBridge,
        config: Optional[Any] = None,
        *,
        on_utterance: Optional[UtteranceCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self._device = device
        self._bridge = bridge
        self._on_utterance = on_utterance
        self._on_error = on_error
        self._clock = clock

        self._session: Optional[CaptureSession] = None
        self._generation = 0
        self._recording = False
        self._rotating = False
        self._error: Optional[str] = None

        self._tick_task: Optional[asyncio.Task] = None
        self._rotation_task: Optional[asyncio.Task] = None
        self._silence_task: Optional[asyncio.Task] = None
        self._silence_started_at: Optional[float] = None
        self._transcribe_task: Optional[asyncio.Task] = None

        self.rotations = 0

    # --- Properties ---

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def is_rotating(self) -> bool:
        return self._rotating

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def buffered_chunks(self) -> int:
        return len(self._session.chunk_buffer) if self._session else 0

    @property
    def silence_timer_active(self) -> bool:
        return self._silence_task is not None and not self._silence_task.done()

    def set_utterance_callback(self, callback: UtteranceCallback) -> None:
        self._on_utterance = callback

    # --- Lifecycle ---

    async def start(self) -> bool:
        """
        Begin continuous capture.

        Returns False (and records an error) when the device is unavailable
        or capture is already running.
        """
        if self._recording:
            self._set_error("Already recording")
            return False

        self._generation += 1
        generation = self._generation
        try:
            self._device.start(lambda chunk: self._on_chunk(generation, chunk))
        except DeviceUnavailable as e:
            self._set_error(str(e))
            return False

        now = self._clock()
        self._error = None
        self._session = CaptureSession(generation=generation, started_at=now, last_rotation_time=now)
        self._recording = True
        self._bridge.reset()
        self._reset_silence_timer()

        self._tick_task = asyncio.create_task(self._tick_loop())
        self._schedule_rotation()
        logger.info("Recording started", generation=generation)
        return True

    async def stop(self) -> None:
        """Halt capture and run one last transcription over what was buffered."""
        if not self._recording:
            return

        self._recording = False
        for task in (self._tick_task, self._rotation_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._tick_task = None
        self._rotation_task = None
        self._reset_silence_timer()

        try:
            self._device.stop()
        except Exception as e:
            logger.warning("Error stopping capture device", error=str(e))

        session = self._session
        if session is not None:
            session.recording = False
            if session.chunk_buffer and not self._transcription_in_flight():
                try:
                    samples = self._decode(session.chunk_buffer)
                except DecodeFailure as e:
                    logger.warning("Final audio could not be decoded", error=str(e))
                else:
                    await self._bridge.submit(samples)
            session.chunk_buffer.clear()

        self._bridge.reset_speech_flag()
        logger.info("Recording stopped")

    # --- Chunk intake ---

    def _on_chunk(self, generation: int, chunk: AudioChunk) -> None:
        session = self._session
        if session is None or not self._recording or generation != session.generation:
            # Late chunk from a stopped or rotated-out device
            return
        if not chunk.data:
            logger.warning("Received empty audio chunk")
            return
        session.chunk_buffer.append(chunk)

    # --- Periodic processing ---

    async def _tick_loop(self) -> None:
        interval = float(self.config.process_interval_seconds)
        while self._recording:
            await asyncio.sleep(interval)
            await self.process_tick()

    async def process_tick(self) -> None:
        """One processing pass over the buffered audio."""
        session = self._session
        if not self._recording or self._rotating or session is None:
            return

        if len(session.chunk_buffer) > self.config.max_chunks * 0.8:
            await self.rotate(reason="chunk_cap")
            return

        if not session.chunk_buffer or self._transcription_in_flight():
            return

        try:
            samples = self._decode(session.chunk_buffer)
        except DecodeFailure as e:
            logger.warning("Audio decode failed, rotating recorder", error=str(e))
            session.chunk_buffer.clear()
            self._reset_silence_timer()
            await self.rotate(reason="decode_failure")
            return

        rms = tail_rms(samples, STT_SAMPLE_RATE, self.config.silence_duration_seconds * 1000)
        if rms < self.config.silence_threshold:
            self._maybe_arm_silence_timer(samples)
        else:
            self._reset_silence_timer()
            self._transcribe_task = asyncio.create_task(self._bridge.submit(samples))

    def _decode(self, chunks: List[AudioChunk]) -> np.ndarray:
        return decode_chunks(
            chunks,
            target_rate=STT_SAMPLE_RATE,
            max_seconds=self.config.max_audio_seconds,
        )

    def _transcription_in_flight(self) -> bool:
        if self._bridge.is_transcribing:
            return True
        return self._transcribe_task is not None and not self._transcribe_task.done()

    # --- Silence timer ---

    def _maybe_arm_silence_timer(self, samples: np.ndarray) -> None:
        if self.silence_timer_active:
            return
        if not self._bridge.has_transcribed_speech:
            return
        # Every recorder start, including rotations, opens a fresh grace period.
        if self._clock() - self._session.last_rotation_time < self.config.grace_period_seconds:
            return

        self._silence_started_at = self._clock()
        self._silence_task = asyncio.create_task(self._silence_timer(samples))
        logger.debug("Silence timer armed", duration_s=self.config.silence_duration_seconds)

    async def _silence_timer(self, samples: np.ndarray) -> None:
        await asyncio.sleep(self.config.silence_duration_seconds)
        if not self._recording or self._silence_started_at is None:
            return

        silence_s = self._clock() - self._silence_started_at
        self._silence_task = None
        self._silence_started_at = None
        await self._emit_boundary(samples, silence_s)

    def _reset_silence_timer(self) -> None:
        task = self._silence_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._silence_task = None
        self._silence_started_at = None

    async def _emit_boundary(self, samples: np.ndarray, silence_s: float) -> None:
        if self._session is not None:
            self._session.chunk_buffer.clear()
        text = self._bridge.latest_text
        # New speech is required before the next boundary can arm.
        self._bridge.reset_speech_flag()

        boundary = UtteranceBoundary(text=text, audio=samples)
        logger.info(
            "Utterance boundary",
            silence_ms=round(silence_s * 1000),
            text=text[:50],
            audio_ms=round(len(samples) / STT_SAMPLE_RATE * 1000),
        )

        if self._on_utterance is None:
            return
        try:
            result = self._on_utterance(boundary)
            # A returned Task belongs to the caller; only coroutines are awaited here.
            if inspect.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Utterance handler failed")

    # --- Rotation ---

    def _schedule_rotation(self) -> None:
        current = asyncio.current_task()
        if self._rotation_task and not self._rotation_task.done() and self._rotation_task is not current:
            self._rotation_task.cancel()
        self._rotation_task = asyncio.create_task(self._rotation_timer())

    async def _rotation_timer(self) -> None:
        await asyncio.sleep(self.config.rotation_interval_seconds)
        await self.rotate(reason="interval")

    async def rotate(self, *, reason: str = "manual") -> None:
        """
        Restart the capture device with an empty buffer.

        Audio buffered by the old device is dropped and no boundary fires
        across the splice.
        """
        session = self._session
        if not self._recording or self._rotating or session is None:
            return

        self._rotating = True
        try:
            logger.info("Rotating recorder", reason=reason, buffered_chunks=len(session.chunk_buffer))
            try:
                self._device.stop()
            except Exception as e:
                logger.warning("Error stopping recorder during rotation", error=str(e))

            session.recording = False
            session.chunk_buffer.clear()
            self._reset_silence_timer()

            await asyncio.sleep(self.config.rotation_settle_seconds)
            if not self._recording:
                return

            self._generation += 1
            generation = self._generation
            try:
                self._device.start(lambda chunk: self._on_chunk(generation, chunk))
            except DeviceUnavailable as e:
                logger.error("Failed to restart recorder after rotation", error=str(e))
                self._set_error(f"Failed to restart recorder after refresh: {e}")
                await self.stop()
                return

            now = self._clock()
            self._session = CaptureSession(
                generation=generation,
                started_at=session.started_at,
                last_rotation_time=now,
            )
            self.rotations += 1
        finally:
            self._rotating = False

        self._schedule_rotation()

    # --- Errors ---

    def _set_error(self, message: str) -> None:
        self._error = message
        logger.error("Capture error", error=message)
        if self._on_error is not None:
            self._on_error(message)
