"""
Tests for the chat LLM wrapper and conversation history.
"""

import base64
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import numpy as np
import pytest

from src.voiceloop.errors import CollaboratorLoadError, CollaboratorRuntimeError
from src.voiceloop.llm import (
    GROQ_BASE_URL,
    OPENAI_BASE_URL,
    SUMMARY_MAX_TOKENS,
    ConversationHistory,
    OpenAIChatLLM,
    summary_prompt,
    validate_model,
)

from tests.fakes import make_config


def delta(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class FakeStream:
    def __init__(self, chunks, on_chunk=None):
        self.chunks = list(chunks)
        self.on_chunk = on_chunk
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for i, chunk in enumerate(self.chunks):
            if self.on_chunk is not None:
                self.on_chunk(i)
            yield chunk

    async def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.result


def with_client(llm, completions):
    llm._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return llm


def mock_models_api(status=200, model_ids=("gpt-4o-mini",)):
    real_client = httpx.AsyncClient

    def handler(request):
        return httpx.Response(status, json={"data": [{"id": m} for m in model_ids]})

    def factory(*args, **kwargs):
        return real_client(transport=httpx.MockTransport(handler))

    return patch("src.voiceloop.llm.httpx.AsyncClient", side_effect=factory)


class TestConversationHistory:
    """Tests for the append-only history."""

    def test_window(self):
        history = ConversationHistory(window=3)
        for i in range(3):
            history.add_user_message(f"u{i}")
            history.add_assistant_message(f"a{i}")

        assert len(history) == 6
        assert [m.content for m in history.recent()] == ["a1", "u2", "a2"]
        assert history.get_messages()[0] == {"role": "user", "content": "u0"}

    def test_zero_window(self):
        history = ConversationHistory(window=0)
        history.add_user_message("hello")
        assert history.recent() == []

    def test_clear(self):
        history = ConversationHistory()
        history.add_user_message("hello")
        history.clear()
        assert len(history) == 0


def test_summary_prompt_embeds_text():
    prompt = summary_prompt("I just adopted a greyhound called Pepper")
    assert "I just adopted a greyhound called Pepper" in prompt
    assert 'starting with "The user"' in prompt


class TestProviderSelection:
    def test_openai(self):
        llm = OpenAIChatLLM(make_config())
        assert llm._base_url == OPENAI_BASE_URL
        assert llm.model == "gpt-4o-mini"

    def test_groq(self):
        llm = OpenAIChatLLM(make_config(llm_provider="groq", groq_api_key="gk", groq_model="llama-3.3-70b-versatile"))
        assert llm._base_url == GROQ_BASE_URL
        assert llm._api_key == "gk"
        assert llm.summary_model == "llama-3.3-70b-versatile"


class TestValidateModel:
    @pytest.mark.asyncio
    async def test_known_model(self):
        with mock_models_api(model_ids=("gpt-4o-mini", "gpt-4o")):
            assert await validate_model("key", "gpt-4o-mini")

    @pytest.mark.asyncio
    async def test_unknown_model(self):
        with mock_models_api(model_ids=("gpt-4o",)):
            with pytest.raises(CollaboratorLoadError, match="not found"):
                await validate_model("key", "gpt-4o-mini")

    @pytest.mark.asyncio
    async def test_bad_key(self):
        with mock_models_api(status=401):
            with pytest.raises(CollaboratorLoadError, match="401"):
                await validate_model("bad", "gpt-4o-mini")

    @pytest.mark.asyncio
    async def test_load_without_key_fails(self):
        llm = OpenAIChatLLM(make_config(openai_api_key=""))
        with pytest.raises(CollaboratorLoadError):
            await llm.load()
        assert not llm.is_ready


class TestStreaming:
    @pytest.mark.asyncio
    async def test_yields_content_tokens(self):
        stream = FakeStream([delta("Hel"), delta(None), delta("lo.")])
        completions = FakeCompletions(result=stream)
        llm = with_client(OpenAIChatLLM(make_config()), completions)
        messages = [{"role": "user", "content": "hi"}]

        tokens = [t async for t in llm.generate_streaming(messages)]

        assert tokens == ["Hel", "lo."]
        request = completions.requests[0]
        assert request["stream"] is True
        assert request["model"] == "gpt-4o-mini"
        assert request["messages"] == messages

    @pytest.mark.asyncio
    async def test_interrupt_stops_stream(self):
        llm = OpenAIChatLLM(make_config())

        def interrupt_after_first(i):
            if i == 1:
                llm.interrupt()

        stream = FakeStream([delta("One."), delta(" Two."), delta(" Three.")], on_chunk=interrupt_after_first)
        with_client(llm, FakeCompletions(result=stream))

        tokens = [t async for t in llm.generate_streaming([{"role": "user", "content": "count"}])]

        assert tokens == ["One."]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_request_failure_is_wrapped(self):
        llm = with_client(OpenAIChatLLM(make_config()), FakeCompletions(error=RuntimeError("503")))

        with pytest.raises(CollaboratorRuntimeError, match="503"):
            async for _ in llm.generate_streaming([{"role": "user", "content": "hi"}]):
                pass


class TestAudioPayload:
    def test_ignored_for_text_only_models(self):
        llm = OpenAIChatLLM(make_config())
        messages = [{"role": "user", "content": "hi"}]

        assert llm._attach_audio(messages, np.zeros(160, dtype=np.float32)) is messages

    def test_attached_to_last_user_message(self):
        llm = OpenAIChatLLM(make_config(llm_audio_input=True))
        messages = [
            {"role": "system", "content": "persona"},
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "second"},
        ]

        out = llm._attach_audio(messages, np.zeros(160, dtype=np.float32))

        assert out[:3] == messages[:3]
        text_part, audio_part = out[3]["content"]
        assert text_part == {"type": "text", "text": "second"}
        assert audio_part["input_audio"]["format"] == "wav"
        assert base64.b64decode(audio_part["input_audio"]["data"])[:4] == b"RIFF"
        assert messages[3] == {"role": "user", "content": "second"}


class TestSummarize:
    @pytest.mark.asyncio
    async def test_returns_stripped_summary(self):
        result = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="  The user has a dog.  "))])
        completions = FakeCompletions(result=result)
        llm = with_client(OpenAIChatLLM(make_config()), completions)

        assert await llm.summarize("I have a dog") == "The user has a dog."
        assert completions.requests[0]["max_tokens"] == SUMMARY_MAX_TOKENS
        assert completions.requests[0]["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_empty_summary_is_an_error(self):
        result = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=""))])
        llm = with_client(OpenAIChatLLM(make_config()), FakeCompletions(result=result))

        with pytest.raises(CollaboratorRuntimeError):
            await llm.summarize("I have a dog")
