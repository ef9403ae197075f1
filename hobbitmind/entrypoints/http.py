import logging
from typing import Annotated, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from hobbitmind.app.turn import NarrativeTurnController
from hobbitmind.assistant.errors import (
    MalformedModelOutputError,
    MemoryUnavailableError,
    ModelBackendError,
    ModelBackendOverloadedError,
    SchemaMismatchError,
)
from hobbitmind.assistant.memory_management import MemoryService
from hobbitmind.assistant.models import CamelModel, GameState, MemoryRecord
from hobbitmind.container import container
from hobbitmind.settings import Settings

logger = logging.getLogger(__name__)

app = FastAPI()


class GameActionRequest(CamelModel):
    game_state: GameState
    action: str


class ImportMemoriesRequest(BaseModel):
    memories: list[MemoryRecord] = Field(default_factory=list)


class MemoryView(CamelModel):
    id: str
    content: str
    time: str
    location: str
    theme: str
    importance: float
    emotions: str | list[str]
    created_at: int
    similarity: Optional[float] = None

    @classmethod
    def of(cls, record: MemoryRecord, similarity: float | None = None) -> "MemoryView":
        return cls(**record.model_dump(exclude={"embedding"}), similarity=similarity)


async def get_turn_controller() -> NarrativeTurnController:
    return await container.get(NarrativeTurnController)


async def get_memory_service() -> MemoryService:
    return await container.get(MemoryService)


async def get_settings() -> Settings:
    return await container.get(Settings)


@app.post("/api/process-game-action")
async def process_game_action(
    request: GameActionRequest,
    controller: Annotated[NarrativeTurnController, Depends(get_turn_controller)],
):
    try:
        outcome = await controller.process_action(request.game_state, request.action)
    except ModelBackendOverloadedError:
        logger.warning("Narrator backend overloaded, asking the player to retry")
        raise HTTPException(status_code=503, detail="The narrator is busy. Please try again.")
    except MalformedModelOutputError:
        logger.exception("Narrator answer could not be parsed")
        raise HTTPException(status_code=502, detail="Error processing action. Please try again.")
    except ModelBackendError:
        logger.exception("Narrator backend failed")
        raise HTTPException(status_code=500, detail="Error processing action. Please try again.")
    return outcome.model_dump(by_alias=True)


@app.get("/api/memories")
async def list_memories(
    memory: Annotated[MemoryService, Depends(get_memory_service)],
    query: Optional[str] = None,
    limit: Annotated[int, Query(ge=0, le=100)] = 10,
    threshold: Annotated[float, Query(ge=0.0, le=1.0)] = 0.0,
):
    try:
        if query:
            recalled = await memory.recall(query, limit, threshold)
            views = [MemoryView.of(m.record, m.similarity) for m in recalled]
        else:
            views = [MemoryView.of(record) for record in (await memory.recall_all())[:limit]]
    except MemoryUnavailableError:
        logger.exception("Failed to fetch memories")
        raise HTTPException(status_code=500, detail="Failed to fetch memories")
    return [view.model_dump(by_alias=True) for view in views]


@app.post("/api/clear-memories")
async def clear_memories(memory: Annotated[MemoryService, Depends(get_memory_service)]):
    try:
        await memory.forget_all()
    except MemoryUnavailableError:
        logger.exception("Failed to clear memories")
        raise HTTPException(status_code=500, detail="Failed to clear memories")
    return {"success": True}


@app.post("/api/memories/import")
async def import_memories(
    request: ImportMemoriesRequest,
    memory: Annotated[MemoryService, Depends(get_memory_service)],
):
    try:
        imported = await memory.import_records(request.memories)
    except SchemaMismatchError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except MemoryUnavailableError:
        logger.exception("Failed to import memories")
        raise HTTPException(status_code=500, detail="Failed to import memories")
    return {"imported": imported}


@app.get("/health")
async def health(settings: Annotated[Settings, Depends(get_settings)]):
    return {
        "status": "ok",
        "models": {
            "narrator": settings.NARRATOR_MODEL_NAME,
            "embedding": settings.EMBEDDING_MODEL_NAME,
        },
        "memory": {
            "path": settings.MEMORY_DB_PATH,
            "table": settings.MEMORY_TABLE_NAME,
        },
    }


def main():
    settings = Settings()
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
