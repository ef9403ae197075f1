"""Dependency wiring for the narrator stack."""

from __future__ import annotations

from collections.abc import AsyncIterator

from dishka import Provider, Scope, make_async_container, provide
from qdrant_client import AsyncQdrantClient

from hobbitmind.app.turn import NarrativeTurnController
from hobbitmind.assistant.llm_toolkit import LLMProviderRegistry, NarratorBackend
from hobbitmind.assistant.memory_management import MemoryService
from hobbitmind.assistant.memory_store import QdrantMemoryStore
from hobbitmind.assistant.tool_use import ToolUseOrchestrator
from hobbitmind.embeddings import FastEmbedTextEmbedder, TextEmbedder
from hobbitmind.settings import Settings


class MainProvider(Provider):
    scope = Scope.APP

    @provide
    async def settings(self) -> Settings:
        return Settings()

    @provide
    async def qdrant_client(self, settings: Settings) -> AsyncIterator[AsyncQdrantClient]:
        # embedded on-disk mode: the directory is the whole database
        client = AsyncQdrantClient(path=settings.MEMORY_DB_PATH)
        yield client
        await client.close()

    @provide
    async def memory_store(self, settings: Settings, qdrant_client: AsyncQdrantClient) -> QdrantMemoryStore:
        return QdrantMemoryStore(qdrant_client, settings.MEMORY_TABLE_NAME)

    @provide
    async def text_embedder(self, settings: Settings) -> TextEmbedder:
        return FastEmbedTextEmbedder(settings)

    @provide
    async def memory_service(self, memory_store: QdrantMemoryStore, text_embedder: TextEmbedder) -> MemoryService:
        return MemoryService(memory_store, text_embedder)

    llm_provider_registry = provide(source=LLMProviderRegistry, provides=LLMProviderRegistry)

    @provide
    async def narrator_backend(self, settings: Settings, llm_provider_registry: LLMProviderRegistry) -> NarratorBackend:
        return NarratorBackend.from_settings(settings, llm_provider_registry)

    @provide
    async def orchestrator(self, narrator_backend: NarratorBackend, memory_service: MemoryService) -> ToolUseOrchestrator:
        return ToolUseOrchestrator(narrator_backend, memory_service)

    turn_controller = provide(source=NarrativeTurnController, provides=NarrativeTurnController)


container = make_async_container(MainProvider())

__all__ = ["container", "MainProvider"]
