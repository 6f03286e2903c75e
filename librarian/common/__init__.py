"""
Librarian Common Module

Shared infrastructure for the retrieval pipeline and its front-ends.
"""

from .config import ServiceConfig, load_config
from .embedding_service import EmbeddingService, get_embedding_service
from .errors import (
    LibrarianError,
    RequestValidationError,
    StoreError,
    EmbeddingError,
    RetrievalError,
    GenerationError,
    ContextCacheError,
)
from .gemini_client import GeminiClient
from .llm_client import LLMClient
from .store_client import StoreClient

__all__ = [
    "ServiceConfig",
    "load_config",
    "EmbeddingService",
    "get_embedding_service",
    "LibrarianError",
    "RequestValidationError",
    "StoreError",
    "EmbeddingError",
    "RetrievalError",
    "GenerationError",
    "ContextCacheError",
    "GeminiClient",
    "LLMClient",
    "StoreClient",
]
