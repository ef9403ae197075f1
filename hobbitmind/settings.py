"""Application configuration powered by pydantic settings."""

from __future__ import annotations

import dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings

dotenv.load_dotenv()


class Settings(BaseSettings):
    """Runtime configuration with sensible defaults for local development."""

    # Memory store settings
    MEMORY_DB_PATH: str = "./memory_db"
    MEMORY_TABLE_NAME: str = "bilbo_memories"

    # Embedding model (changing it invalidates an existing memory store)
    EMBEDDING_MODEL_NAME: str = "sentence-transformers/all-MiniLM-L6-v2"

    # LLM provider selection (via registry)
    # Available out of the box: "openrouter", "anthropic"
    LLM_PROVIDER: str = "openrouter"
    OPENROUTER_API_KEY: str = ""
    ANTHROPIC_API_KEY: str = ""

    # Narrator model
    NARRATOR_MODEL_NAME: str = "anthropic/claude-sonnet-4"
    NARRATOR_MAX_TOKENS: int = 2000
    LLM_TIMEOUT_SECONDS_NARRATOR: int = 60

    # Retry on "backend overloaded"
    LLM_RETRY_ATTEMPTS: int = 3
    LLM_RETRY_BASE_DELAY_SECONDS: float = 1.0

    # Number of previous history entries put into the turn prompt
    HISTORY_WINDOW: int = 3

    # HTTP server settings
    PORT: int = 5000

    @field_validator("LLM_PROVIDER")
    @classmethod
    def _validate_provider(cls, value: str) -> str:
        allowed = {"openrouter", "anthropic"}
        if value not in allowed:
            raise ValueError(f"Unknown LLM_PROVIDER: {value}")
        return value

    @field_validator("LLM_RETRY_ATTEMPTS")
    @classmethod
    def _validate_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("LLM_RETRY_ATTEMPTS must be at least 1")
        return value
