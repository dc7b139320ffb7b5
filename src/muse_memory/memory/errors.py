"""
Error taxonomy for the memory layer
===================================

- ``ValidationError`` / ``AccessDeniedError``: raised before any I/O.
- ``EmbeddingProviderError`` / ``DurableStoreError``: fatal for the call.
- ``IndexServiceError``: fatal for reads and deletes, recorded in
  ``sync_status`` for writes. ``configured`` separates an unreachable or
  failing index from one that was never set up.
"""

from __future__ import annotations


class MemoryLayerError(Exception):
    """Base class for all memory layer failures."""


class ValidationError(MemoryLayerError):
    """Bad request shape, category or scope."""


class AccessDeniedError(MemoryLayerError):
    """Project access was refused by the caller's authorization check."""


class EmbeddingProviderError(MemoryLayerError):
    """The embedding provider failed or is not configured."""


class DurableStoreError(MemoryLayerError):
    """The durable store rejected a read or write."""


class IndexServiceError(MemoryLayerError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        configured: bool = True,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.configured = configured


class IndexNotConfiguredError(IndexServiceError):
    def __init__(self, message: str = "Vector index is not configured") -> None:
        super().__init__(message, configured=False)


__all__ = [
    "MemoryLayerError",
    "ValidationError",
    "AccessDeniedError",
    "EmbeddingProviderError",
    "DurableStoreError",
    "IndexServiceError",
    "IndexNotConfiguredError",
]
