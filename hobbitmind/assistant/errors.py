from __future__ import annotations


class HobbitMindError(Exception):
    """Base exception for all hobbitmind errors."""


# ── Memory Errors ────────────────────────────────────────────────────

class MemoryUnavailableError(HobbitMindError):
    """The memory subsystem could not serve the request."""


class EmbeddingUnavailableError(MemoryUnavailableError):
    """The embedding backend failed to load or to embed."""


class StoreUnavailableError(MemoryUnavailableError):
    """The vector store failed (I/O, connection, corruption)."""


class SchemaMismatchError(HobbitMindError):
    """A vector does not match the dimension of the memory table."""


# ── Model Backend Errors ─────────────────────────────────────────────

class ModelBackendError(HobbitMindError):
    """The narrator model backend returned an error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ModelBackendOverloadedError(ModelBackendError):
    """The backend stayed overloaded after every retry attempt."""


# ── Turn Errors ──────────────────────────────────────────────────────

class MalformedModelOutputError(HobbitMindError):
    """The model's final answer could not be parsed into a narrative answer."""
