"""
Configuration management for the voice loop.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    log_level: str = "INFO"

    # Persona
    agent_name: str = "OS1"

    # LLM Provider (Groq/OpenAI)
    # - Default is OpenAI; set LLM_PROVIDER=groq + GROQ_API_KEY/GROQ_MODEL to use Groq.
    llm_provider: str = "openai"  # "openai" | "groq"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    summary_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 1024
    llm_temperature: float = 0.7
    # Attach the raw utterance audio to the generation request (audio-capable models only).
    llm_audio_input: bool = False

    # Speech-to-text
    stt_model: str = "whisper-1"
    stt_language: str = "en"

    # Text-to-speech
    tts_model: str = "tts-1"
    tts_voice: str = "nova"
    tts_speed: float = 1.0

    # Memory
    embedding_model: str = "text-embedding-3-small"
    memory_path: str = ""  # empty -> in-memory only
    memory_top_k: int = 5
    memory_min_similarity: float = 0.28
    memory_similarity_weight: float = 0.7
    memory_recency_weight: float = 0.3
    max_context_chars: int = 2048

    # Capture & segmentation
    sample_rate: int = 16000
    chunk_ms: int = 500
    process_interval_seconds: float = 0.5
    silence_threshold: float = 0.005
    silence_duration_seconds: float = 1.5
    grace_period_seconds: float = 1.0
    rotation_interval_seconds: float = 60.0
    rotation_settle_seconds: float = 0.3
    max_chunks: int = 200
    max_audio_seconds: float = 30.0
    transcript_debounce_seconds: float = 1.0

    # Orchestration
    history_window: int = 10
    playback_queue_capacity: int = 10
    tts_retry_delay_seconds: float = 0.1

    @property
    def llm_model(self) -> str:
        return self.groq_model if self.llm_provider == "groq" else self.openai_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in ("openai", "groq"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'openai' or 'groq'."
            )

        # Speech, voice and embeddings always go through OpenAI.
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")
        elif not self.openai_model:
            missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.silence_threshold <= 0:
            raise ConfigError("SILENCE_THRESHOLD must be positive")
        if self.playback_queue_capacity < 1:
            raise ConfigError("PLAYBACK_QUEUE_CAPACITY must be at least 1")
        if self.memory_similarity_weight + self.memory_recency_weight <= 0:
            raise ConfigError("Memory similarity and recency weights cannot both be zero")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            log_level=self.log_level,
            agent_name=self.agent_name,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            llm_audio_input=self.llm_audio_input,
            stt_model=self.stt_model,
            tts_model=self.tts_model,
            tts_voice=self.tts_voice,
            memory_path=self.memory_path or "in-memory",
            sample_rate=self.sample_rate,
            silence_threshold=self.silence_threshold,
            silence_duration_seconds=self.silence_duration_seconds,
            rotation_interval_seconds=self.rotation_interval_seconds,
            history_window=self.history_window,
            openai_key_set=bool(self.openai_api_key),
            groq_key_set=bool(self.groq_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        agent_name=os.getenv("AGENT_NAME", "OS1"),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        summary_model=os.getenv("SUMMARY_MODEL", "gpt-4o-mini"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 1024),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        llm_audio_input=_get_bool("LLM_AUDIO_INPUT", False),

        # STT
        stt_model=os.getenv("STT_MODEL", "whisper-1"),
        stt_language=os.getenv("STT_LANGUAGE", "en"),

        # TTS
        tts_model=os.getenv("TTS_MODEL", "tts-1"),
        tts_voice=os.getenv("TTS_VOICE", "nova"),
        tts_speed=_get_float("TTS_SPEED", 1.0),

        # Memory
        embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
        memory_path=os.getenv("MEMORY_PATH", ""),
        memory_top_k=_get_int("MEMORY_TOP_K", 5),
        memory_min_similarity=_get_float("MEMORY_MIN_SIMILARITY", 0.28),
        memory_similarity_weight=_get_float("MEMORY_SIMILARITY_WEIGHT", 0.7),
        memory_recency_weight=_get_float("MEMORY_RECENCY_WEIGHT", 0.3),
        max_context_chars=_get_int("MAX_CONTEXT_CHARS", 2048),

        # Capture
        sample_rate=_get_int("SAMPLE_RATE", 16000),
        chunk_ms=_get_int("CHUNK_MS", 500),
        process_interval_seconds=_get_float("PROCESS_INTERVAL_SECONDS", 0.5),
        silence_threshold=_get_float("SILENCE_THRESHOLD", 0.005),
        silence_duration_seconds=_get_float("SILENCE_DURATION_SECONDS", 1.5),
        grace_period_seconds=_get_float("GRACE_PERIOD_SECONDS", 1.0),
        rotation_interval_seconds=_get_float("ROTATION_INTERVAL_SECONDS", 60.0),
        rotation_settle_seconds=_get_float("ROTATION_SETTLE_SECONDS", 0.3),
        max_chunks=_get_int("MAX_CHUNKS", 200),
        max_audio_seconds=_get_float("MAX_AUDIO_SECONDS", 30.0),
        transcript_debounce_seconds=_get_float("TRANSCRIPT_DEBOUNCE_SECONDS", 1.0),

        # Orchestration
        history_window=_get_int("HISTORY_WINDOW", 10),
        playback_queue_capacity=_get_int("PLAYBACK_QUEUE_CAPACITY", 10),
        tts_retry_delay_seconds=_get_float("TTS_RETRY_DELAY_SECONDS", 0.1),
    )


def init_config(config: Optional[Config] = None) -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = config or get_config()
    config.validate()
    config.log_config()
    return config
