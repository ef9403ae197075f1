"""Append-only memory table backed by an embedded qdrant collection."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Protocol, Sequence, runtime_checkable

from qdrant_client import AsyncQdrantClient
from qdrant_client import models as qmodels

from hobbitmind.assistant.errors import SchemaMismatchError, StoreUnavailableError
from hobbitmind.assistant.models import MemoryHit, MemoryRecord

logger = logging.getLogger(__name__)

SCROLL_PAGE_SIZE = 256


@runtime_checkable
class MemoryStore(Protocol):
    async def table_exists(self) -> bool: ...

    async def ensure_table(self, first_record: MemoryRecord) -> None: ...

    async def append(self, records: Sequence[MemoryRecord]) -> None: ...

    async def scan_all(self) -> list[MemoryRecord]: ...

    async def vector_search(self, query_vector: Sequence[float], k: int) -> list[MemoryHit]: ...

    async def drop_table(self) -> None: ...


class QdrantMemoryStore:
    """One qdrant collection plays the role of the memory table.

    The collection is created from the first record written to it. Qdrant
    reports cosine similarity as its score; this store converts it to a
    cosine distance (smaller is closer) and leaves similarity to callers.
    """

    def __init__(self, client: AsyncQdrantClient, table_name: str = "bilbo_memories"):
        self._client = client
        self.table_name = table_name
        self._dimension: int | None = None
        self._schema_lock = asyncio.Lock()

    @classmethod
    def open(cls, path: str, table_name: str = "bilbo_memories") -> "QdrantMemoryStore":
        return cls(AsyncQdrantClient(path=path), table_name)

    async def close(self) -> None:
        await self._client.close()

    # ------------------ schema ------------------
    async def table_exists(self) -> bool:
        try:
            return await self._client.collection_exists(self.table_name)
        except Exception as exc:
            raise StoreUnavailableError(f"memory store unavailable: {exc}") from exc

    async def _table_dimension(self) -> int | None:
        if self._dimension is not None:
            return self._dimension
        if not await self.table_exists():
            return None
        try:
            info = await self._client.get_collection(self.table_name)
        except Exception as exc:
            raise StoreUnavailableError(f"memory store unavailable: {exc}") from exc
        vectors = info.config.params.vectors
        if isinstance(vectors, qmodels.VectorParams):
            self._dimension = vectors.size
        else:
            # named vectors never come from this store; treat as incompatible
            self._dimension = -1
        return self._dimension

    async def ensure_table(self, first_record: MemoryRecord) -> None:
        if first_record.embedding is None:
            raise SchemaMismatchError(f"memory {first_record.id} has no embedding")
        dimension = len(first_record.embedding)
        async with self._schema_lock:
            existing = await self._table_dimension()
            if existing == dimension:
                return
            try:
                if existing is not None:
                    logger.warning(
                        "Memory table %s has vector size %s but records have %s; "
                        "dropping and recreating it, existing memories are lost",
                        self.table_name,
                        existing,
                        dimension,
                    )
                    await self._client.delete_collection(self.table_name)
                await self._client.create_collection(
                    collection_name=self.table_name,
                    vectors_config=qmodels.VectorParams(size=dimension, distance=qmodels.Distance.COSINE),
                )
            except Exception as exc:
                self._dimension = None
                raise StoreUnavailableError(f"memory store unavailable: {exc}") from exc
            self._dimension = dimension
            logger.info("Created memory table %s (%d dimensions)", self.table_name, dimension)

    async def drop_table(self) -> None:
        async with self._schema_lock:
            self._dimension = None
            if not await self.table_exists():
                return
            try:
                await self._client.delete_collection(self.table_name)
            except Exception as exc:
                raise StoreUnavailableError(f"memory store unavailable: {exc}") from exc
            logger.info("Dropped memory table %s", self.table_name)

    # ------------------ records -----------------
    async def append(self, records: Sequence[MemoryRecord]) -> None:
        if not records:
            return
        dimension = await self._table_dimension()
        if dimension is None:
            raise StoreUnavailableError(f"memory table {self.table_name} does not exist")
        points = []
        for record in records:
            if record.embedding is None or len(record.embedding) != dimension:
                got = None if record.embedding is None else len(record.embedding)
                raise SchemaMismatchError(
                    f"memory {record.id} has embedding size {got}, table expects {dimension}"
                )
            points.append(
                qmodels.PointStruct(
                    id=self._str_to_64bit(record.id),
                    vector=list(record.embedding),
                    payload=record.model_dump(exclude={"embedding"}),
                )
            )
        try:
            await self._client.upsert(collection_name=self.table_name, points=points, wait=True)
        except Exception as exc:
            raise StoreUnavailableError(f"memory store unavailable: {exc}") from exc

    async def scan_all(self) -> list[MemoryRecord]:
        if not await self.table_exists():
            return []
        records: list[MemoryRecord] = []
        offset = None
        try:
            while True:
                points, offset = await self._client.scroll(
                    collection_name=self.table_name,
                    limit=SCROLL_PAGE_SIZE,
                    offset=offset,
                    with_payload=True,
                    with_vectors=True,
                )
                records.extend(self._to_record(point) for point in points)
                if offset is None:
                    break
        except Exception as exc:
            raise StoreUnavailableError(f"memory store unavailable: {exc}") from exc
        return records

    async def vector_search(self, query_vector: Sequence[float], k: int) -> list[MemoryHit]:
        if k <= 0:
            return []
        dimension = await self._table_dimension()
        if dimension is None:
            return []
        if len(query_vector) != dimension:
            raise SchemaMismatchError(
                f"query vector has size {len(query_vector)}, table {self.table_name} expects {dimension}"
            )
        try:
            response = await self._client.query_points(
                collection_name=self.table_name,
                query=list(query_vector),
                limit=k,
                with_payload=True,
                with_vectors=True,
            )
        except Exception as exc:
            raise StoreUnavailableError(f"memory store unavailable: {exc}") from exc
        return [MemoryHit(record=self._to_record(point), distance=1.0 - point.score) for point in response.points]

    def _to_record(self, point: qmodels.Record | qmodels.ScoredPoint) -> MemoryRecord:
        payload = dict(point.payload or {})
        vector = point.vector if isinstance(point.vector, list) else None
        return MemoryRecord.model_validate({**payload, "embedding": vector})

    def _str_to_64bit(self, s: str) -> int:
        return int(hashlib.sha256(s.encode("utf-8")).hexdigest()[:16], 16)
