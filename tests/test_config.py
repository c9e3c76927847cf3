"""
Tests for configuration loading and validation.
"""

import os
from unittest.mock import patch

import pytest

from src.voiceloop.config import ConfigError, get_config, init_config

from tests.fakes import make_config


class TestGetConfig:
    """Tests for reading configuration from the environment."""

    def test_defaults(self):
        config = get_config()

        assert config.agent_name == "OS1"
        assert config.llm_provider == "openai"
        assert config.llm_model == "gpt-4o-mini"
        assert config.silence_threshold == 0.005
        assert config.silence_duration_seconds == 1.5
        assert config.grace_period_seconds == 1.0
        assert config.history_window == 10
        assert config.playback_queue_capacity == 10
        assert config.memory_path == ""
        assert config.llm_audio_input is False

    def test_is_cached(self):
        assert get_config() is get_config()

    def test_env_overrides(self):
        env = {
            "AGENT_NAME": "Ava",
            "SILENCE_DURATION_SECONDS": "2.5",
            "HISTORY_WINDOW": "6",
            "LLM_AUDIO_INPUT": "yes",
        }
        with patch.dict(os.environ, env):
            get_config.cache_clear()
            config = get_config()

        assert config.agent_name == "Ava"
        assert config.silence_duration_seconds == 2.5
        assert config.history_window == 6
        assert config.llm_audio_input is True

    def test_malformed_numbers_fall_back_to_defaults(self):
        with patch.dict(os.environ, {"MAX_CHUNKS": "lots", "SILENCE_THRESHOLD": "quiet"}):
            get_config.cache_clear()
            config = get_config()

        assert config.max_chunks == 200
        assert config.silence_threshold == 0.005

    def test_groq_provider_selects_groq_model(self):
        with patch.dict(os.environ, {"LLM_PROVIDER": " Groq ", "GROQ_MODEL": "llama-3.1-8b-instant"}):
            get_config.cache_clear()
            config = get_config()

        assert config.llm_provider == "groq"
        assert config.llm_model == "llama-3.1-8b-instant"


class TestValidate:
    """Tests for startup validation."""

    def test_valid_config_passes(self):
        assert init_config() is get_config()

    def test_missing_openai_key(self):
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            make_config(openai_api_key="").validate()

    def test_groq_requires_groq_key(self):
        with pytest.raises(ConfigError, match="GROQ_API_KEY"):
            make_config(llm_provider="groq", groq_api_key="").validate()

    def test_groq_with_key_passes(self):
        make_config(llm_provider="groq", groq_api_key="test_groq_key").validate()

    def test_invalid_provider(self):
        with pytest.raises(ConfigError, match="Invalid LLM_PROVIDER"):
            make_config(llm_provider="anthropic").validate()

    def test_non_positive_threshold(self):
        with pytest.raises(ConfigError, match="SILENCE_THRESHOLD"):
            make_config(silence_threshold=0).validate()

    def test_zero_capacity(self):
        with pytest.raises(ConfigError, match="PLAYBACK_QUEUE_CAPACITY"):
            make_config(playback_queue_capacity=0).validate()

    def test_zero_weights(self):
        with pytest.raises(ConfigError, match="weights"):
            make_config(memory_similarity_weight=0, memory_recency_weight=0).validate()
