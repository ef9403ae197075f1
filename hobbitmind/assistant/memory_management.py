"""Business rules over the memory store: writing, recalling and forgetting."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Iterable

from opentelemetry.trace import get_tracer

from hobbitmind.assistant.errors import SchemaMismatchError
from hobbitmind.assistant.memory_store import MemoryStore
from hobbitmind.assistant.models import MemoryRecord, RecalledMemory
from hobbitmind.embeddings import TextEmbedder

logger = logging.getLogger(__name__)

# Turn controllers persist an event only at or above this importance.
PERSISTENCE_THRESHOLD = 0.1
DEFAULT_RECALL_THRESHOLD = 0.6
DEFAULT_RECALL_LIMIT = 3
OVER_FETCH_FACTOR = 3


def _now_millis() -> int:
    return int(time.time() * 1000)


class MemoryService:
    """Semantic memory of past events.

    ``remember`` does not gate on importance; callers decide what is worth
    keeping (see ``PERSISTENCE_THRESHOLD``). Failures of the embedder or the
    store propagate unchanged, nothing is retried here.
    """

    def __init__(self, store: MemoryStore, embedder: TextEmbedder):
        self.store = store
        self.embedder = embedder

    async def remember(
        self,
        content: str,
        *,
        time: str,
        location: str,
        theme: str,
        importance: float,
        emotions: str | list[str],
    ) -> MemoryRecord:
        embedding = await self.embedder.embed(content)
        record = MemoryRecord(
            id=uuid.uuid4().hex,
            content=content,
            embedding=embedding,
            time=time,
            location=location,
            theme=theme,
            importance=importance,
            emotions=emotions,
            created_at=_now_millis(),
        )
        await self.store.ensure_table(record)
        await self.store.append([record])
        logger.info("Saved memory: %s", record.content)
        return record

    @get_tracer(__name__).start_as_current_span("recall memories")
    async def recall(
        self,
        query: str,
        limit: int = DEFAULT_RECALL_LIMIT,
        threshold: float = DEFAULT_RECALL_THRESHOLD,
    ) -> list[RecalledMemory]:
        if limit <= 0:
            return []
        if not await self.store.table_exists():
            return []
        query_vector = await self.embedder.embed(query)
        hits = await self.store.vector_search(query_vector, limit * OVER_FETCH_FACTOR)
        recalled = [RecalledMemory(record=hit.record, similarity=1.0 - hit.distance) for hit in hits]
        kept = [memory for memory in recalled if memory.similarity >= threshold][:limit]
        logger.info("Found %d memories for: %r", len(kept), query)
        return kept

    async def recall_all(self) -> list[MemoryRecord]:
        records = await self.store.scan_all()
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    async def forget_all(self) -> None:
        await self.store.drop_table()
        logger.info("Cleared all memories")

    async def import_records(self, records: Iterable[MemoryRecord]) -> int:
        """Write records from an external save, bypassing importance gating."""
        prepared: list[MemoryRecord] = []
        for record in records:
            if record.embedding is None:
                record = record.model_copy(update={"embedding": await self.embedder.embed(record.content)})
            prepared.append(record)
        if not prepared:
            return 0
        # reject a mixed batch before ensure_table can recreate the table
        sizes = {len(record.embedding) for record in prepared}
        if len(sizes) > 1:
            raise SchemaMismatchError(f"imported memories mix embedding sizes {sorted(sizes)}")
        await self.store.ensure_table(prepared[0])
        await self.store.append(prepared)
        logger.info("Imported %d memories", len(prepared))
        return len(prepared)
