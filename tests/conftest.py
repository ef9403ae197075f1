"""Shared fixtures: an in-process qdrant, a deterministic embedding model and fakes."""

from __future__ import annotations

import hashlib
import re
from collections.abc import AsyncIterator
from typing import Iterable

import numpy as np
import pytest
import pytest_asyncio
from qdrant_client import AsyncQdrantClient

from hobbitmind.assistant.memory_management import MemoryService
from hobbitmind.assistant.memory_store import QdrantMemoryStore
from hobbitmind.embeddings import FastEmbedTextEmbedder, TextEmbedder
from hobbitmind.settings import Settings

DIMENSION = 384
_WORD = re.compile(r"[a-z0-9]+")


class HashingEmbeddingModel:
    """Bag-of-words vectors with fastembed's ``embed`` interface.

    Texts with the same words get identical vectors; texts without shared
    words are (almost) orthogonal.
    """

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.calls = 0

    def _bucket(self, word: str) -> int:
        return int(hashlib.sha256(word.encode("utf-8")).hexdigest(), 16) % self.dimension

    def embed(self, documents: list[str]) -> Iterable[np.ndarray]:
        for text in documents:
            self.calls += 1
            vector = np.zeros(self.dimension, dtype=np.float32)
            for word in _WORD.findall(text.lower()):
                vector[self._bucket(word)] += 1.0
            if not vector.any():
                vector[0] = 1.0
            # deliberately unnormalized: the embedder must normalize
            yield vector * 3.0


class CountingEmbedder(TextEmbedder):
    def __init__(self, inner: TextEmbedder):
        self.inner = inner
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return await self.inner.embed(text)


@pytest.fixture
def settings() -> Settings:
    return Settings(LLM_RETRY_BASE_DELAY_SECONDS=0.0)


@pytest.fixture
def hashing_model() -> HashingEmbeddingModel:
    return HashingEmbeddingModel()


@pytest.fixture
def embedder(settings: Settings, hashing_model: HashingEmbeddingModel) -> CountingEmbedder:
    return CountingEmbedder(FastEmbedTextEmbedder(settings, model_factory=lambda _name: hashing_model))


@pytest_asyncio.fixture
async def qdrant_client() -> AsyncIterator[AsyncQdrantClient]:
    client = AsyncQdrantClient(location=":memory:")
    yield client
    await client.close()


@pytest.fixture
def store(qdrant_client: AsyncQdrantClient) -> QdrantMemoryStore:
    return QdrantMemoryStore(qdrant_client, "bilbo_memories")


@pytest.fixture
def memory(store: QdrantMemoryStore, embedder: CountingEmbedder) -> MemoryService:
    return MemoryService(store, embedder)
