"""Shared data structures used across the assistant."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


class MemoryRecord(BaseModel):
    """One persisted recollection. Never mutated after it is written."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    content: str
    embedding: Optional[list[float]] = Field(
        default=None,
        validation_alias=AliasChoices("embedding", "embeddings"),
    )
    time: str = ""
    location: str = ""
    theme: str = ""
    importance: float = Field(default=0.0, ge=0.0, le=1.0)
    emotions: str | list[str] = ""
    created_at: int = Field(validation_alias=AliasChoices("created_at", "createdAt"))


class MemoryHit(BaseModel):
    record: MemoryRecord
    distance: float


class RecalledMemory(BaseModel):
    record: MemoryRecord
    similarity: float

    @property
    def content(self) -> str:
        return self.record.content


class CamelModel(BaseModel):
    """Game payloads keep the camelCase keys the browser client sends."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BilboState(CamelModel):
    character: str = ""
    character_evolution: float = 0
    health: str = ""
    tasks: str = ""
    plans: str = ""
    thoughts: str = ""
    emotions: str = ""


class Location(CamelModel):
    region: str = ""
    settlement: str = ""
    place: str = ""

    @property
    def label(self) -> str:
        return f"{self.region} → {self.settlement} → {self.place}"


class GameTime(CamelModel):
    day: int | str = 1
    month: str = ""
    year: int | str = ""
    era: str = ""
    time: str = ""

    @property
    def label(self) -> str:
        return f"{self.day} {self.month} {self.year}, {self.time}"


class HistoryEntry(CamelModel):
    content: str
    type: Literal["bilbo", "world"]
    description: str = ""


class GameState(CamelModel):
    bilbo_state: BilboState = Field(default_factory=BilboState)
    location: Location = Field(default_factory=Location)
    time: GameTime = Field(default_factory=GameTime)
    environment: str = ""
    event: str = ""
    history: list[HistoryEntry] = Field(default_factory=list)


class NarrativeAnswer(CamelModel):
    """Structured final answer the narrator model is asked to produce."""

    reaction: str = ""
    world_response: str = ""
    memory: str = ""
    summary: str = ""
    theme: str = ""
    importance: float = 0.0
    new_emotions: Optional[str] = None
    new_character: Optional[str] = None
    new_character_evolution: Optional[float] = None
    new_health: Optional[str] = None
    new_task: Optional[str] = None
    new_plans: Optional[str] = None
    new_thoughts: Optional[str] = None
    new_environment: Optional[str] = None
    new_location: Optional[Location] = None
    new_time: Optional[GameTime] = None


class TokenUsage(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            requests=self.requests + other.requests,
        )


class TurnOutcome(CamelModel):
    reaction: str
    world_response: str
    usage: TokenUsage
    game_state: GameState
    memory_saved: bool = False
