"""Text embedding helpers."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Protocol

import numpy as np
from fastembed import TextEmbedding
from opentelemetry.trace import get_tracer

from hobbitmind.assistant.errors import EmbeddingUnavailableError
from hobbitmind.settings import Settings

logger = logging.getLogger(__name__)


class EmbeddingModel(Protocol):
    def embed(self, documents: list[str]) -> Iterable[Any]: ...


ModelFactory = Callable[[str], EmbeddingModel]


def load_fastembed_model(model_name: str) -> EmbeddingModel:
    return TextEmbedding(model_name=model_name)


class TextEmbedder(ABC):
    @abstractmethod
    async def embed(self, text: str) -> list[float]: ...


class FastEmbedTextEmbedder(TextEmbedder):
    """Mean-pooled, L2-normalized sentence embeddings from a local model.

    The model is loaded on the first call and kept for the lifetime of the
    process. A failed load is remembered: every later call raises
    ``EmbeddingUnavailableError`` instead of paying the load again.
    """

    def __init__(self, settings: Settings, model_factory: ModelFactory = load_fastembed_model):
        self.model_name = settings.EMBEDDING_MODEL_NAME
        self._model_factory = model_factory
        self._model: EmbeddingModel | None = None
        self._load_error: Exception | None = None
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    async def _ensure_model(self) -> EmbeddingModel:
        if self._model is not None:
            return self._model
        async with self._lock:
            if self._load_error is not None:
                raise EmbeddingUnavailableError(
                    f"embedding backend unavailable: {self._load_error}"
                ) from self._load_error
            if self._model is None:
                logger.info("Loading embedding model %s", self.model_name)
                try:
                    self._model = await asyncio.to_thread(self._model_factory, self.model_name)
                except Exception as exc:
                    self._load_error = exc
                    logger.error("Failed to load embedding model %s", self.model_name, exc_info=exc)
                    raise EmbeddingUnavailableError(f"embedding backend unavailable: {exc}") from exc
                logger.info("Embedding model %s loaded", self.model_name)
            return self._model

    def _embed_sync(self, model: EmbeddingModel, text: str) -> list[float]:
        vector = np.asarray(next(iter(model.embed([text]))), dtype=np.float32)
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector = vector / norm
        return vector.tolist()

    @get_tracer(__name__).start_as_current_span("embed text")
    async def embed(self, text: str) -> list[float]:
        model = await self._ensure_model()
        try:
            return await asyncio.to_thread(self._embed_sync, model, text)
        except Exception as exc:
            raise EmbeddingUnavailableError(f"embedding backend unavailable: {exc}") from exc
