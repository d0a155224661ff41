"""Error taxonomy for project-memory-mcp.

Not-found is deliberately absent: deleting a missing or foreign memory is a
normal ``False`` result so callers cannot tell the two apart.
"""


class MemoryServiceError(Exception):
    """Base class for failures surfaced to the RPC boundary."""

    kind = "Error"

    def __str__(self) -> str:
        return f"{self.kind}: {super().__str__()}"


class ValidationError(MemoryServiceError):
    """Caller input outside the operation contract. Never retried."""

    kind = "ValidationError"


class EmbeddingError(MemoryServiceError):
    """Embedding provider failed or returned an unusable vector."""

    kind = "EmbeddingError"


class StorageError(MemoryServiceError):
    """Vector store unreachable, statement rejected, or dimension mismatch."""

    kind = "StorageError"


class ConfigurationError(MemoryServiceError):
    """Startup configuration missing or invalid."""

    kind = "ConfigurationError"
