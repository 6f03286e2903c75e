"""
Librarian

Retrieval-augmented answering over a layered, hierarchically chunked
document corpus.

Philosophy:
- Every factual statement must be traceable to a retrieved fragment
- Level 1 fragments (verbatim text) are the only valid citation targets
- Full documents are expensive: upload once, cache the context, reuse it
- A trusted prior answer beats a fresh generation

Usage:
    from librarian.common import load_config, StoreClient, EmbeddingService
    from librarian.common.schemas import LibrarianRequest
    from librarian.retriever import Librarian, create_librarian
"""

__version__ = "0.4.0"
