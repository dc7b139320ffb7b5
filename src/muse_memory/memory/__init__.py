"""
Public façade for project memory
================================

Import from here::

    from muse_memory.memory import MemoryService, ReadRequest, retrieve_memory_context
"""

from __future__ import annotations

from .context import (
    DEFAULT_CHAT_LIMITS,
    DEFAULT_SAGA_LIMITS,
    MemoryContext,
    RetrievalLimits,
    format_memory_context,
    gather_context,
    retrieve_memory_context,
)
from .delete import DeleteFilter, DeleteResult
from .errors import (
    AccessDeniedError,
    DurableStoreError,
    EmbeddingProviderError,
    IndexNotConfiguredError,
    IndexServiceError,
    MemoryLayerError,
    ValidationError,
)
from .model import MemoryMetadata, MemoryRecord, MemoryWriteItem, WriteMetadata, content_hash_id
from .read import ReadRequest, ReadResult
from .service import MemoryService

# Limit the public surface (keeps star-imports clean)
__all__ = [
    "MemoryService",
    "MemoryRecord",
    "MemoryMetadata",
    "MemoryWriteItem",
    "WriteMetadata",
    "ReadRequest",
    "ReadResult",
    "DeleteFilter",
    "DeleteResult",
    "RetrievalLimits",
    "DEFAULT_SAGA_LIMITS",
    "DEFAULT_CHAT_LIMITS",
    "MemoryContext",
    "retrieve_memory_context",
    "gather_context",
    "format_memory_context",
    "content_hash_id",
    "MemoryLayerError",
    "ValidationError",
    "AccessDeniedError",
    "EmbeddingProviderError",
    "DurableStoreError",
    "IndexServiceError",
    "IndexNotConfiguredError",
]
