"""
Local voice conversation loop.

Heavy modules (the OpenAI SDK, sounddevice/PortAudio) are imported on first
attribute access so `src.voiceloop.audio` and friends stay cheap to import.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.voiceloop.config import Config, get_config
    from src.voiceloop.pipeline import VoicePipeline, create_pipeline
    from src.voiceloop.runtime import build_voice_loop, run

__version__ = "0.1.0"

_EXPORTS = {
    "Config": "src.voiceloop.config",
    "get_config": "src.voiceloop.config",
    "VoicePipeline": "src.voiceloop.pipeline",
    "create_pipeline": "src.voiceloop.pipeline",
    "build_voice_loop": "src.voiceloop.runtime",
    "run": "src.voiceloop.runtime",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(importlib.import_module(module), name)
