from __future__ import annotations

from abc import abstractmethod
from typing import AsyncGenerator, Optional

from src.voiceloop.collaborators import Collaborator
from src.voiceloop.tts_types import SynthesisChunk


class TTSProvider(Collaborator):
    name = "tts"

    @abstractmethod
    def synthesize_streaming(
        self,
        text: str,
        *,
        voice: Optional[str] = None,
        speed: float = 1.0,
    ) -> AsyncGenerator[SynthesisChunk, None]:
        raise NotImplementedError

    def cancel(self) -> None:
        return None
