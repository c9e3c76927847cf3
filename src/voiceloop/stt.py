"""
Speech-to-text for the voice loop.

- `Transcriber`: the opaque STT collaborator contract
- `OpenAITranscriber`: Whisper over the OpenAI audio API
- `TranscriptionBridge`: single-flight submission, blank filtering and
  duplicate debouncing between the capture engine and the STT model
"""

from __future__ import annotations

import asyncio
import inspect
import time
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import numpy as np
import structlog

from src.voiceloop.audio import STT_SAMPLE_RATE, samples_to_wav
from src.voiceloop.collaborators import Collaborator
from src.voiceloop.config import get_config
from src.voiceloop.errors import CollaboratorLoadError, CollaboratorRuntimeError

logger = structlog.get_logger(__name__)

# Whisper emits these for silent or noise-only audio.
BLANK_TRANSCRIPTS = frozenset({"", "[BLANK_AUDIO]", "[ Silence ]", "[Silence]"})

TextCallback = Callable[[str], Union[Awaitable[None], None]]


def is_blank_transcript(text: Optional[str]) -> bool:
    return (text or "").strip() in BLANK_TRANSCRIPTS


class Transcriber(Collaborator):
    """Speech-to-text collaborator."""

    name = "transcriber"

    @abstractmethod
    async def transcribe(self, samples: np.ndarray, language: str) -> list[str]:
        """Transcribe 16kHz float32 samples; returns candidate texts (best first)."""
        raise NotImplementedError


class OpenAITranscriber(Transcriber):
    """
    Whisper transcription through the OpenAI audio API.

    Samples are encoded as a 16kHz mono WAV per request.
    """

    def __init__(self, config: Optional[Any] = None):
        super().__init__()
        self.config = config or get_config()
        self.model = self.config.stt_model
        self._client = None

    async def _load(self) -> None:
        if not self.config.openai_api_key:
            raise CollaboratorLoadError(self.name, "OPENAI_API_KEY is not set")

        from openai import AsyncOpenAI  # Local import to keep module import light

        self._client = AsyncOpenAI(api_key=self.config.openai_api_key)
        await self._client.models.retrieve(self.model)

    async def transcribe(self, samples: np.ndarray, language: str) -> list[str]:
        if self._client is None:
            raise CollaboratorRuntimeError(self.name, "transcriber is not loaded")

        wav_bytes = samples_to_wav(samples, STT_SAMPLE_RATE)
        try:
            response = await self._client.audio.transcriptions.create(
                model=self.model,
                file=("utterance.wav", wav_bytes, "audio/wav"),
                language=language,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise CollaboratorRuntimeError(self.name, str(e)) from e

        text = getattr(response, "text", None)
        if text is None and isinstance(response, str):
            text = response
        return [text or ""]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


@dataclass
class TranscriptionMetrics:
    """Metrics for STT performance."""
    total_requests: int = 0
    blank_results: int = 0
    debounced_results: int = 0
    errors: int = 0
    avg_latency_ms: float = 0.0

    def record_request(self, latency_ms: float) -> None:
        self.total_requests += 1
        n = self.total_requests
        self.avg_latency_ms = (self.avg_latency_ms * (n - 1) + latency_ms) / n


class TranscriptionBridge:
    """
    Forwards decoded audio to the transcriber and emits stable text updates.

    Single-flight: a submission while another is in flight is skipped. The
    `has_transcribed_speech` flag gates the capture engine's silence timer and
    is reset by the engine once an utterance boundary fires.
    """

    def __init__(
        self,
        transcriber: Transcriber,
        config: Optional[Any] = None,
        *,
        on_text: Optional[TextCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self._transcriber = transcriber
        self._on_text = on_text
        self._clock = clock
        self._debounce_s = float(self.config.transcript_debounce_seconds)
        self._language = self.config.stt_language

        self._is_transcribing = False
        self._has_transcribed_speech = False
        self._latest_text = ""
        self._last_emitted_text: Optional[str] = None
        self._last_emit_time = 0.0
        self._error: Optional[str] = None
        self._metrics = TranscriptionMetrics()

    @property
    def is_transcribing(self) -> bool:
        return self._is_transcribing

    @property
    def has_transcribed_speech(self) -> bool:
        return self._has_transcribed_speech

    @property
    def latest_text(self) -> str:
        return self._latest_text

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def metrics(self) -> TranscriptionMetrics:
        return self._metrics

    def set_text_callback(self, callback: TextCallback) -> None:
        self._on_text = callback

    def reset_speech_flag(self) -> None:
        """Require new speech before the next silence boundary may arm."""
        self._has_transcribed_speech = False

    def reset(self) -> None:
        """Forget all per-session transcription state."""
        self._has_transcribed_speech = False
        self._latest_text = ""
        self._last_emitted_text = None
        self._last_emit_time = 0.0

    async def submit(self, samples: np.ndarray) -> Optional[str]:
        """
        Transcribe `samples` and return the emitted text.

        Returns None when skipped (already in flight), blank, debounced or failed.
        """
        if self._is_transcribing:
            logger.debug("Transcription in flight, skipping submission")
            return None

        self._is_transcribing = True
        started = self._clock()
        try:
            outputs = await self._transcriber.transcribe(samples, self._language)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._metrics.errors += 1
            self._error = str(e)
            logger.error("Transcription failed", error=str(e))
            return None
        finally:
            self._is_transcribing = False

        self._error = None
        self._metrics.record_request((self._clock() - started) * 1000)
        return await self._handle_output(outputs)

    async def _handle_output(self, outputs: Optional[list[str]]) -> Optional[str]:
        text = (outputs[0] if outputs else "") or ""
        text = text.strip()

        if is_blank_transcript(text):
            self._metrics.blank_results += 1
            self._last_emitted_text = None
            return None

        self._has_transcribed_speech = True
        self._latest_text = text

        now = self._clock()
        if text == self._last_emitted_text and now - self._last_emit_time < self._debounce_s:
            self._metrics.debounced_results += 1
            logger.debug("Debounced duplicate transcription", text=text[:50])
            return None

        self._last_emitted_text = text
        self._last_emit_time = now
        logger.debug("Transcription update", text=text[:50])

        if self._on_text is not None:
            result = self._on_text(text)
            if inspect.isawaitable(result):
                await result
        return text
