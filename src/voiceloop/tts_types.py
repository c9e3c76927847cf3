from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class SynthesisRequest:
    """One sentence waiting to be spoken."""

    text: str
    voice: Optional[str] = None
    speed: float = 1.0
    created_at: float = field(default_factory=time.time)


@dataclass
class SynthesisChunk:
    """
    A chunk of synthesized audio.

    `audio` is a mono 16-bit PCM WAV byte string ready for the playback sink.
    """

    text: str
    audio: bytes
    timestamp: float = field(default_factory=time.time)

    # Optional: structured metadata for debugging/metrics.
    meta: Optional[dict[str, Any]] = None
