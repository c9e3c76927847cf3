"""
Long-term conversational memory.

Records are embedded once on insert and ranked at query time by a weighted mix
of cosine similarity and an exponential recency decay (one-day half-life).
"""

from __future__ import annotations

import asyncio
import math
import time
import uuid
from abc import abstractmethod
from pathlib import Path
from typing import Any, Callable, List, Literal, Optional

import numpy as np
import structlog
from pydantic import BaseModel, Field

from src.voiceloop.collaborators import Collaborator
from src.voiceloop.config import get_config
from src.voiceloop.errors import CollaboratorLoadError, CollaboratorRuntimeError

logger = structlog.get_logger(__name__)

RECENCY_HALF_LIFE_SECONDS = 24 * 60 * 60

MemoryRole = Literal["user", "assistant"]


class MemoryRecord(BaseModel):
    """A stored memory."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: MemoryRole
    text: str
    embedding: List[float] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)


class MemorySearchResult(BaseModel):
    """A ranked hit from `MemoryStore.find_similar`."""

    id: str
    role: MemoryRole
    text: str
    timestamp: float
    similarity: float
    recency: float
    relevance: float


class MemoryFile(BaseModel):
    """On-disk layout of `JsonFileMemoryStore`."""

    version: int = 1
    records: List[MemoryRecord] = Field(default_factory=list)


def cosine_similarity(a: Any, b: Any) -> float:
    """Cosine similarity of two vectors; 0.0 when either is empty or zero."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.size == 0 or vb.size == 0 or va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def recency_score(age_seconds: float, half_life_seconds: float = RECENCY_HALF_LIFE_SECONDS) -> float:
    """exp(-ln2 * age / half_life): 1.0 for brand new, 0.5 after one half-life."""
    return math.exp(-math.log(2) / half_life_seconds * max(0.0, age_seconds))


class Embedder(Collaborator):
    """Text embedding collaborator."""

    name = "embedder"

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError


class OpenAIEmbedder(Embedder):
    def __init__(self, config: Optional[Any] = None):
        super().__init__()
        self.config = config or get_config()
        self.model = self.config.embedding_model
        self._client = None

    async def _load(self) -> None:
        if not self.config.openai_api_key:
            raise CollaboratorLoadError(self.name, "OPENAI_API_KEY is not set")

        from openai import AsyncOpenAI  # Local import to keep module import light

        self._client = AsyncOpenAI(api_key=self.config.openai_api_key)

    async def embed(self, text: str) -> List[float]:
        if self._client is None:
            raise CollaboratorRuntimeError(self.name, "embedder is not loaded")
        try:
            response = await self._client.embeddings.create(model=self.model, input=text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise CollaboratorRuntimeError(self.name, str(e)) from e
        return list(response.data[0].embedding)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class MemoryStore(Collaborator):
    """Vector-similarity memory collaborator."""

    name = "memory"

    @abstractmethod
    async def add(self, text: str, role: MemoryRole) -> str:
        """Store `text` and return the new record id."""
        raise NotImplementedError

    @abstractmethod
    async def find_similar(
        self,
        query: str,
        top_k: int = 5,
        similarity_weight: float = 0.7,
        recency_weight: float = 0.3,
    ) -> List[MemorySearchResult]:
        """Top `top_k` records by relevance, best first."""
        raise NotImplementedError

    @abstractmethod
    async def get_all(self) -> List[MemoryRecord]:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        """Remove a record; returns False when the id is unknown."""
        raise NotImplementedError


class InMemoryMemoryStore(MemoryStore):
    """Process-local store; records are lost on exit."""

    def __init__(self, embedder: Embedder, *, clock: Callable[[], float] = time.time):
        super().__init__()
        self._embedder = embedder
        self._clock = clock
        self._records: List[MemoryRecord] = []

    async def _load(self) -> None:
        if not self._embedder.is_ready:
            await self._embedder.load()

    async def add(self, text: str, role: MemoryRole) -> str:
        text = (text or "").strip()
        if not text:
            raise ValueError("Cannot store empty memory")

        embedding = await self._embedder.embed(text)
        record = MemoryRecord(role=role, text=text, embedding=embedding, timestamp=self._clock())
        self._records.append(record)
        await self._on_change()
        logger.debug("Memory stored", memory_id=record.id, role=role, chars=len(text))
        return record.id

    async def find_similar(
        self,
        query: str,
        top_k: int = 5,
        similarity_weight: float = 0.7,
        recency_weight: float = 0.3,
    ) -> List[MemorySearchResult]:
        if not self._records or top_k <= 0 or not (query or "").strip():
            return []

        query_embedding = await self._embedder.embed(query)
        now = self._clock()

        results = []
        for record in self._records:
            similarity = cosine_similarity(query_embedding, record.embedding)
            recency = recency_score(now - record.timestamp)
            results.append(
                MemorySearchResult(
                    id=record.id,
                    role=record.role,
                    text=record.text,
                    timestamp=record.timestamp,
                    similarity=similarity,
                    recency=recency,
                    relevance=similarity_weight * similarity + recency_weight * recency,
                )
            )

        results.sort(key=lambda r: r.relevance, reverse=True)
        return results[:top_k]

    async def get_all(self) -> List[MemoryRecord]:
        return list(self._records)

    async def delete(self, record_id: str) -> bool:
        before = len(self._records)
        self._records = [r for r in self._records if r.id != record_id]
        if len(self._records) == before:
            return False
        await self._on_change()
        logger.debug("Memory deleted", memory_id=record_id)
        return True

    async def _on_change(self) -> None:
        return None

    async def close(self) -> None:
        await self._embedder.close()


class JsonFileMemoryStore(InMemoryMemoryStore):
    """
    `InMemoryMemoryStore` persisted to a JSON file.

    The whole file is rewritten after every change.
    """

    def __init__(self, path: str | Path, embedder: Embedder, *, clock: Callable[[], float] = time.time):
        super().__init__(embedder, clock=clock)
        self.path = Path(path)
        self._write_lock = asyncio.Lock()

    async def _load(self) -> None:
        await super()._load()
        if not self.path.exists():
            logger.info("Memory file not found, starting empty", path=str(self.path))
            return

        try:
            data = MemoryFile.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CollaboratorLoadError(self.name, f"Failed to read memory file {self.path}: {e}") from e

        self._records = list(data.records)
        logger.info("Memory file loaded", path=str(self.path), records=len(self._records))

    async def _on_change(self) -> None:
        # Serialize on the loop so the worker thread sees a consistent snapshot.
        payload = MemoryFile(records=list(self._records)).model_dump_json()
        async with self._write_lock:
            await asyncio.to_thread(self._write_file, payload)

    def _write_file(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(self.path)
