"""
Shared fixtures: in-memory stand-ins for the store and the model clients.

FakeStore understands the subset of PostgREST filter syntax the pipeline
uses (eq., is.null, gt., or=(...)), keeps tables in memory and routes
procedure calls to per-test handlers.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pytest

from librarian.common.errors import GenerationError, StoreError
from librarian.retriever.pipeline import Librarian


# =============================================================================
# Store
# =============================================================================

def _as_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _matches(row: Dict[str, Any], column: str, condition: str) -> bool:
    op, _, expected = condition.partition(".")
    actual = row.get(column)
    if op == "eq":
        return actual is not None and _as_text(actual) == expected
    if op == "is":
        return actual is None if expected == "null" else _as_text(actual) == expected
    if op == "gt":
        if actual is None:
            return False
        return datetime.fromisoformat(str(actual)) > datetime.fromisoformat(expected)
    raise AssertionError(f"Unsupported filter operator: {op}")


def _matches_all(row: Dict[str, Any], filters: Optional[Dict[str, str]]) -> bool:
    for column, condition in (filters or {}).items():
        if column == "or":
            alternatives = condition.strip("()").split(",")
            if not any(_matches(row, *alt.split(".", 1)) for alt in alternatives):
                return False
        elif not _matches(row, column, condition):
            return False
    return True


class FakeStore:
    """In-memory StoreClient"""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.rpc_calls: List[tuple] = []
        self.downloads: List[tuple] = []
        self.failing: set = set()

    def table(self, schema: str, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(f"{schema}.{table}", [])

    def calls(self, name: str) -> List[Dict[str, Any]]:
        return [params for called, params in self.rpc_calls if called == name]

    async def rpc(self, name: str, params: Dict[str, Any], schema: str = "rag") -> Any:
        self.rpc_calls.append((name, params))
        if name in self.failing:
            raise StoreError(f"Procedure {schema}.{name} failed with status 500")
        handler = self.handlers.get(name)
        return handler(params) if handler else None

    async def select(self, table, schema, columns="*", filters=None, order=None, limit=None):
        if f"{schema}.{table}" in self.failing:
            raise StoreError(f"Select {schema}.{table} failed with status 500")
        rows = [dict(r) for r in self.table(schema, table) if _matches_all(r, filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: _as_text(r.get(column)), reverse=direction == "desc")
        return rows[:limit] if limit is not None else rows

    async def insert(self, table, schema, row):
        self.table(schema, table).append(dict(row))

    async def update(self, table, schema, values, filters):
        for row in self.table(schema, table):
            if _matches_all(row, filters):
                row.update(values)

    async def download(self, bucket, path):
        self.downloads.append((bucket, path))
        return b"%PDF-1.7 fake"

    async def health_check(self):
        return True

    async def close(self):
        pass


def agent_context_handler(conversation_id: str = "conv-1") -> Callable[[Dict[str, Any]], Any]:
    def handler(params):
        return [{
            "out_conversation_id": conversation_id,
            "out_effective_org_id": params.get("p_org_id"),
            "out_effective_app_id": params.get("p_app_id"),
            "out_system_prompt": "Tu es le bibliothécaire du projet.",
            "out_recent_messages": "[]",
            "out_message_count": 0,
        }]
    return handler


def chunk_row(
    chunk_id: int,
    file_id: Optional[str] = "file-a",
    similarity: float = 0.8,
    filename: str = "CCTP Lot 02.pdf",
    pages: int = 40,
    level: int = 1,
    **extra,
) -> Dict[str, Any]:
    """A match_documents_v13 result row"""
    row = {
        "out_chunk_id": chunk_id,
        "out_content": f"Contenu du fragment {chunk_id}",
        "out_similarity": similarity,
        "out_layer": "project",
        "out_source_file_id": file_id,
        "out_hierarchy_level": level,
        "out_parent_chunk_id": None,
        "out_retrieval_role": "primary",
        "out_section_title": None,
        "out_metadata": {"page": 3},
        "out_file_storage_path": f"org/{file_id}.pdf" if file_id else None,
        "out_file_storage_bucket": "documents",
        "out_file_original_filename": filename,
        "out_file_mime_type": "application/pdf",
        "out_file_total_pages": pages,
    }
    row.update(extra)
    return row


# =============================================================================
# Model clients
# =============================================================================

class FakeEmbedding:
    def __init__(self):
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    async def embed_single(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return [0.1, 0.2, 0.3]


class FakeChat:
    provider = "openai"
    is_available = True

    def __init__(self, tokens=("Réponse ", "issue ", "des ", "extraits.")):
        self.tokens = list(tokens)
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    def resolve_model(self, model):
        return model

    async def stream(self, prompt, *, system=None, model="", temperature=0.3, max_tokens=1024):
        self.calls.append({"prompt": prompt, "system": system, "model": model, "temperature": temperature})
        if self.error is not None:
            raise self.error
        for token in self.tokens:
            yield token


class FakeGemini:
    is_available = True

    def __init__(self, tokens=("Réponse ", "sur ", "documents ", "complets.")):
        self.tokens = list(tokens)
        self.uploads: List[str] = []
        self.caches: List[Dict[str, Any]] = []
        self.streams: List[str] = []
        self.fail_after: Optional[int] = None

    async def upload_file(self, data, mime_type, display_name):
        self.uploads.append(display_name)
        return f"https://files.example/{len(self.uploads)}"

    async def create_cached_context(self, model, system_prompt, files, ttl_seconds):
        name = f"cachedContents/{len(self.caches) + 1}"
        self.caches.append({"name": name, "model": model, "files": files, "ttl": ttl_seconds})
        return name, 12000

    async def stream(self, cache_name, prompt, *, temperature, max_tokens):
        self.streams.append(cache_name)
        for i, token in enumerate(self.tokens):
            if self.fail_after is not None and i >= self.fail_after:
                raise GenerationError("Full-document generation failed: connection reset")
            yield token


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    fake = FakeStore()
    fake.handlers["get_agent_context"] = agent_context_handler()
    fake.handlers["match_documents_v13"] = lambda params: [
        chunk_row(1, "file-a", 0.82),
        chunk_row(2, "file-a", 0.76),
        chunk_row(3, "file-b", 0.71, filename="Planning.pdf", pages=12),
    ]
    fake.handlers["search_qa_memory"] = lambda params: []
    fake.table("sources", "files").extend([{"id": "file-a"}, {"id": "file-b"}])
    return fake


@pytest.fixture
def embedding():
    return FakeEmbedding()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def gemini():
    return FakeGemini()


@pytest.fixture
def librarian(store, embedding, chat, gemini):
    return Librarian(store, embedding, chat, gemini)


async def collect(agen) -> list:
    return [event async for event in agen]
