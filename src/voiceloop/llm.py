"""
Chat LLM wrapper with OpenAI-compatible API (OpenAI or Groq).

Provides:
- Startup model validation
- Streaming response support with interrupt
- Summarization of long user statements for memory
- Conversation history with a sliding submission window
"""

import asyncio
import base64
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Literal, Optional
import time

import httpx
import numpy as np
import structlog

from src.voiceloop.audio import samples_to_wav
from src.voiceloop.collaborators import Collaborator
from src.voiceloop.config import get_config
from src.voiceloop.errors import CollaboratorLoadError, CollaboratorRuntimeError

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"

SUMMARY_MAX_TOKENS = 72
SUMMARY_TEMPERATURE = 0.3

Role = Literal["user", "assistant", "system"]


@dataclass
class ConversationMessage:
    """A single message in the conversation."""
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class ConversationHistory:
    """Append-only conversation log; submissions see a sliding window of it."""

    def __init__(self, window: int = 10):
        self.window = window
        self._messages: List[ConversationMessage] = []

    def add_user_message(self, content: str) -> None:
        """Add a user message."""
        self._messages.append(ConversationMessage(role="user", content=content))

    def add_assistant_message(self, content: str) -> None:
        """Add an assistant message."""
        self._messages.append(ConversationMessage(role="assistant", content=content))

    def recent(self) -> List[ConversationMessage]:
        """The last `window` messages."""
        if self.window <= 0:
            return []
        return list(self._messages[-self.window:])

    def get_messages(self) -> List[Dict[str, str]]:
        """Get all messages in OpenAI format."""
        return [m.to_dict() for m in self._messages]

    def clear(self) -> None:
        """Clear conversation history."""
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)


def summary_prompt(text: str) -> str:
    """Prompt asking for a one-sentence, third-person restatement of the user's words."""
    return f"""Rewrite the following User Statement from the user's perspective into a single sentence starting with "The user". Focus ONLY on the information stated by the user. Do not add external knowledge, notes, commentary, or formatting.

User Statement:
{text}

Rewritten Sentence:"""


async def validate_model(api_key: str, model_name: str, base_url: str = OPENAI_BASE_URL) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models to check.

    Raises:
        CollaboratorLoadError: If the API is unreachable or the model is missing
    """
    logger.info("Validating LLM model", model=model_name, base_url=base_url)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise CollaboratorLoadError("llm", f"Failed to connect to LLM API: {e}") from e

    if response.status_code != 200:
        logger.error(
            "Failed to fetch models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise CollaboratorLoadError(
            "llm",
            f"Failed to validate model. API returned status {response.status_code}. Check your API key.",
        )

    data = response.json()
    model_ids = [m.get("id") for m in data.get("data", [])]

    if model_name not in model_ids:
        available = ", ".join(sorted(i for i in model_ids if i)[:10])
        logger.error("Model not found", requested_model=model_name, available_models=available)
        raise CollaboratorLoadError(
            "llm",
            f"Model '{model_name}' not found. Available models include: {available}",
        )

    logger.info("Model validated successfully", model=model_name)
    return True


class LLMClient(Collaborator):
    """Text generation collaborator."""

    name = "llm"

    @abstractmethod
    def generate_streaming(
        self,
        messages: List[Dict[str, Any]],
        audio: Optional[np.ndarray] = None,
    ) -> AsyncGenerator[str, None]:
        """Stream response tokens for `messages` (plus optional utterance audio)."""
        raise NotImplementedError

    @abstractmethod
    async def summarize(self, text: str) -> str:
        """Return a short summary of `text` suitable for memory."""
        raise NotImplementedError

    def interrupt(self) -> None:
        """Abort in-flight generation."""
        return None


class OpenAIChatLLM(LLMClient):
    """
    Streaming chat client over the OpenAI-compatible API.

    Uses the Groq base URL when LLM_PROVIDER=groq.
    """

    def __init__(self, config: Optional[Any] = None):
        super().__init__()
        if config is None:
            config = get_config()

        self.config = config
        self.provider = (config.llm_provider or "openai").strip().lower()
        if self.provider == "groq":
            self._api_key = config.groq_api_key
            self._base_url = GROQ_BASE_URL
            self.model = config.groq_model
            self.summary_model = config.groq_model
        else:
            self._api_key = config.openai_api_key
            self._base_url = OPENAI_BASE_URL
            self.model = config.openai_model
            self.summary_model = config.summary_model

        self._client = None
        self._generation = 0

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def _load(self) -> None:
        if not self._api_key:
            raise CollaboratorLoadError(self.name, f"API key for provider '{self.provider}' is not set")
        await validate_model(self._api_key, self.model, self._base_url)
        self._get_client()

    def interrupt(self) -> None:
        # Any stream started before this call stops yielding at its next chunk.
        self._generation += 1

    def _attach_audio(self, messages: List[Dict[str, Any]], audio: Optional[np.ndarray]) -> List[Dict[str, Any]]:
        if audio is None or len(audio) == 0:
            return messages
        if not self.config.llm_audio_input:
            logger.debug("Audio payload ignored; model takes text only", samples=len(audio))
            return messages

        encoded = base64.b64encode(samples_to_wav(audio)).decode("ascii")
        out = list(messages)
        for i in range(len(out) - 1, -1, -1):
            if out[i].get("role") == "user":
                out[i] = {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": out[i].get("content", "")},
                        {"type": "input_audio", "input_audio": {"data": encoded, "format": "wav"}},
                    ],
                }
                break
        return out

    async def generate_streaming(
        self,
        messages: List[Dict[str, Any]],
        audio: Optional[np.ndarray] = None,
    ) -> AsyncGenerator[str, None]:
        """
        Generate a streaming response.

        Yields:
            Text chunks as they're generated

        Raises:
            CollaboratorRuntimeError: The request failed mid-flight
        """
        generation = self._generation
        client = self._get_client()
        payload = self._attach_audio(messages, audio)

        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=payload,
                stream=True,
                max_tokens=self.config.llm_max_tokens,
                temperature=self.config.llm_temperature,
            )

            async for chunk in stream:
                if generation != self._generation:
                    logger.debug("LLM stream interrupted")
                    await stream.close()
                    return
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("LLM generation failed", error=str(e))
            raise CollaboratorRuntimeError(self.name, str(e)) from e

    async def summarize(self, text: str) -> str:
        client = self._get_client()
        try:
            completion = await client.chat.completions.create(
                model=self.summary_model,
                messages=[{"role": "user", "content": summary_prompt(text)}],
                max_tokens=SUMMARY_MAX_TOKENS,
                temperature=SUMMARY_TEMPERATURE,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Summarization failed", error=str(e))
            raise CollaboratorRuntimeError(self.name, str(e)) from e

        summary = ""
        if completion.choices and completion.choices[0].message.content:
            summary = completion.choices[0].message.content.strip()
        if not summary:
            raise CollaboratorRuntimeError(self.name, "Failed to extract summary content.")
        return summary

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
