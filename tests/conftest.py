"""
Pytest configuration and fixtures.
"""

import os
from unittest.mock import patch

import pytest

from src.voiceloop.config import Config
from tests.fakes import FakeEmbedder, FakeLLM, FakeSink, FakeTTS, make_config


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "test_openai_key",
        "LLM_PROVIDER": "openai",
        "OPENAI_MODEL": "gpt-4o-mini",
        "MEMORY_PATH": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voiceloop.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def tts() -> FakeTTS:
    return FakeTTS()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()
