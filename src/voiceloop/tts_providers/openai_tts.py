from __future__ import annotations

import asyncio
from typing import Any, AsyncGenerator, Optional

import structlog

from src.voiceloop.config import get_config
from src.voiceloop.errors import CollaboratorLoadError, CollaboratorRuntimeError
from src.voiceloop.tts_providers.base import TTSProvider
from src.voiceloop.tts_types import SynthesisChunk

logger = structlog.get_logger(__name__)


class OpenAITTS(TTSProvider):
    """
    OpenAI speech endpoint, one WAV per sentence.

    The SDK call blocks, so it runs in a worker thread. `cancel()` abandons the
    pending request; a response that arrives afterwards is discarded.
    """

    def __init__(self, config: Optional[Any] = None):
        super().__init__()
        self.config = config or get_config()
        self.model = self.config.tts_model
        self._client = None
        self._pending: Optional[asyncio.Task] = None
        self._cancel_count = 0

    async def _load(self) -> None:
        if not self.config.openai_api_key:
            raise CollaboratorLoadError(self.name, "OPENAI_API_KEY is not set")

        from openai import OpenAI  # Local import to keep module import light

        self._client = OpenAI(api_key=self.config.openai_api_key)

    def cancel(self) -> None:
        self._cancel_count += 1
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()

    def _request_wav(self, text: str, voice: str, speed: float) -> bytes:
        response = self._client.audio.speech.create(
            model=self.model,
            voice=voice,
            input=text,
            speed=speed,
            response_format="wav",
        )
        return response.read()

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice: Optional[str] = None,
        speed: float = 1.0,
    ) -> AsyncGenerator[SynthesisChunk, None]:
        if not text or not text.strip():
            return
        if self._client is None:
            raise CollaboratorRuntimeError(self.name, "TTS provider is not loaded")

        voice = voice or self.config.tts_voice
        cancel_count = self._cancel_count
        self._pending = asyncio.create_task(asyncio.to_thread(self._request_wav, text, voice, speed or 1.0))
        pending = self._pending

        try:
            wav_bytes = await pending
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("OpenAI TTS failed", error=str(e), text=text[:50])
            raise CollaboratorRuntimeError(self.name, str(e)) from e
        finally:
            if self._pending is pending:
                self._pending = None

        if cancel_count != self._cancel_count or not wav_bytes:
            logger.debug("Discarding synthesized audio", text=text[:50], cancelled=cancel_count != self._cancel_count)
            return

        yield SynthesisChunk(text=text, audio=wav_bytes, meta={"model": self.model, "voice": voice})
