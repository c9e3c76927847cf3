"""
Local runtime: microphone in, speaker out.

Wires the capture engine, transcription bridge and pipeline together around
the OpenAI-backed collaborators and runs until interrupted.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Optional

import structlog

from src.voiceloop.capture import SegmentationEngine, SoundDeviceMicrophone
from src.voiceloop.config import Config, ConfigError, init_config
from src.voiceloop.errors import CollaboratorLoadError
from src.voiceloop.llm import OpenAIChatLLM
from src.voiceloop.memory import InMemoryMemoryStore, JsonFileMemoryStore, MemoryStore, OpenAIEmbedder
from src.voiceloop.pipeline import VoicePipeline
from src.voiceloop.playback import SoundDeviceSink
from src.voiceloop.stt import OpenAITranscriber, TranscriptionBridge
from src.voiceloop.tts_providers.openai_tts import OpenAITTS


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class VoiceLoop:
    """Everything one local session needs."""
    pipeline: VoicePipeline
    engine: SegmentationEngine
    bridge: TranscriptionBridge
    transcriber: OpenAITranscriber


def create_memory_store(config: Config) -> MemoryStore:
    embedder = OpenAIEmbedder(config)
    if config.memory_path:
        return JsonFileMemoryStore(config.memory_path, embedder)
    return InMemoryMemoryStore(embedder)


def build_voice_loop(config: Config) -> VoiceLoop:
    """Construct (but do not start) the local voice loop."""
    pipeline = VoicePipeline(
        llm=OpenAIChatLLM(config),
        tts=OpenAITTS(config),
        sink=SoundDeviceSink(),
        memory=create_memory_store(config),
        config=config,
        on_error=lambda message: logger.error("Pipeline error", error=message),
    )

    transcriber = OpenAITranscriber(config)
    bridge = TranscriptionBridge(
        transcriber,
        config,
        on_text=lambda text: logger.info("Transcription update", text=text[:50]),
    )
    engine = SegmentationEngine(
        SoundDeviceMicrophone(sample_rate=config.sample_rate, chunk_ms=config.chunk_ms),
        bridge,
        config,
        on_utterance=pipeline.handle_utterance,
        on_error=lambda message: logger.error("Capture error", error=message),
    )
    return VoiceLoop(pipeline=pipeline, engine=engine, bridge=bridge, transcriber=transcriber)


async def run(config: Optional[Config] = None) -> int:
    """Run the voice loop until cancelled. Returns a process exit code."""
    config = config or init_config()
    loop = build_voice_loop(config)

    try:
        await loop.pipeline.start()
        await loop.transcriber.load()
    except CollaboratorLoadError as e:
        logger.error("Startup failed", collaborator=e.collaborator, error=str(e))
        await loop.pipeline.stop()
        return 1

    try:
        await loop.pipeline.greet()
        if not await loop.engine.start():
            logger.error("Microphone unavailable", error=loop.engine.error)
            return 1

        logger.info("Listening", agent_name=config.agent_name)
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass
    finally:
        await loop.engine.stop()
        await loop.pipeline.stop()
        await loop.transcriber.close()
        logger.info("Voice loop stopped")
    return 0


def main() -> None:
    """Run the local voice loop."""
    try:
        config = init_config()
    except ConfigError as e:
        configure_logging("INFO")
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    configure_logging(config.log_level)
    try:
        exit_code = asyncio.run(run(config))
    except KeyboardInterrupt:
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
