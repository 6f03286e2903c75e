"""
Librarian Schemas

Request models (pydantic) and the transient per-request records.
"""

from .records import (
    Layer,
    RetrievalRole,
    GenerationMode,
    Fragment,
    SourceFile,
    SearchOutcome,
    SessionContext,
    MemoryEntry,
    ContextCacheEntry,
    SourceItem,
    TRANSCRIPT_SOURCE_TYPE,
)
from .request import LibrarianRequest, SearchConfig, PreloadedContext

__all__ = [
    "Layer",
    "RetrievalRole",
    "GenerationMode",
    "Fragment",
    "SourceFile",
    "SearchOutcome",
    "SessionContext",
    "MemoryEntry",
    "ContextCacheEntry",
    "SourceItem",
    "TRANSCRIPT_SOURCE_TYPE",
    "LibrarianRequest",
    "SearchConfig",
    "PreloadedContext",
]
