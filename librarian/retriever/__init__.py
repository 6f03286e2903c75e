"""
Retriever - Grounded Answering over Layered Document Corpora

Resolves per-application configuration, retrieves document fragments and
streams a cited answer.

Key Components:
- ConfigResolver: Per-organization/application configuration with fallback
- SessionLoader: Conversation context and turn persistence
- MemoryMatcher: Reuse of curated earlier answers
- Searcher: Hierarchical hybrid search and file aggregation
- ContextCacheManager: Shared large-context caches over uploaded files
- Synthesizer: Full-document and bounded-excerpt streaming generation
- Librarian: The pipeline tying them together

Pipeline:
1. Resolve configuration and session
2. Short-circuit greetings and trusted memory hits
3. Search and aggregate files
4. Choose a generation mode and stream the answer (one fallback)
5. Build citations, persist the turn, emit sources
"""

from .config_resolver import ConfigResolver, LibrarianConfig, DEFAULT_LIBRARIAN_CONFIG
from .context_cache import ContextCacheManager
from .events import EventKind, StreamEvent
from .memory import MemoryMatcher
from .pipeline import Librarian, create_librarian
from .searcher import Searcher, SearchRequest
from .session import SessionLoader
from .strategy import Intent, IntentStrategy, resolve_strategy
from .synthesizer import Synthesizer

__all__ = [
    "ConfigResolver",
    "LibrarianConfig",
    "DEFAULT_LIBRARIAN_CONFIG",
    "ContextCacheManager",
    "EventKind",
    "StreamEvent",
    "MemoryMatcher",
    "Librarian",
    "create_librarian",
    "Searcher",
    "SearchRequest",
    "SessionLoader",
    "Intent",
    "IntentStrategy",
    "resolve_strategy",
    "Synthesizer",
]
