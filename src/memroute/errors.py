"""
Exception hierarchy for memroute.

Every error raised by the core derives from :class:`MemrouteError` so that
adapters (CLI, MCP server) can catch one type.  Errors that concern a
single segment carry the offending ``key`` and its ``namespace``.
"""

from __future__ import annotations


class MemrouteError(Exception):
    """Base class for all memroute errors."""


class ConfigurationError(MemrouteError):
    """Invalid or incomplete configuration, raised at construction time."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(MemrouteError):
    """Underlying storage failure."""

    def __init__(self, message: str, key: str | None = None) -> None:
        self.key = key
        self.namespace = namespace_of(key) if key else None
        if key:
            message = f"{message} (key={key!r}, namespace={self.namespace!r})"
        super().__init__(message)


class DuplicateKeyError(StorageError):
    """A create-once key was written twice."""


class NotFoundError(StorageError):
    """No segment stored under the requested key."""


class ReadOnlyNamespaceError(StorageError):
    """Attempted to update a segment in a write-once namespace."""


class CorruptRecordError(StorageError):
    """A stored record could not be decoded."""


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------


class EmbeddingError(MemrouteError):
    """Base class for embedding failures."""


class DimensionMismatchError(EmbeddingError, ConfigurationError):
    """An embedder or vector does not match the store's fixed dimension."""

    def __init__(self, expected: int, actual: int, where: str = "embedding") -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"{where} has dimension {actual}, expected {expected}")


class EmbeddingFailedError(EmbeddingError):
    """The embedding provider failed after all retry attempts."""


class ProviderError(MemrouteError):
    """Raised by provider clients.  ``retryable`` marks transient failures."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(message)


# ---------------------------------------------------------------------------
# Index / routing
# ---------------------------------------------------------------------------


class VectorIndexError(MemrouteError):
    """Progressive index failure, e.g. a checkpoint that could not be written."""


class RoutingError(MemrouteError):
    """The router cannot produce a decision (e.g. no tiers configured)."""


def namespace_of(key: str) -> str:
    """Return the namespace root of *key* (``"memory/abc"`` → ``"memory"``)."""
    return key.split("/", 1)[0]
