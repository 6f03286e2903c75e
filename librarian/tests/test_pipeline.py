"""
Pipeline Scenario Tests

End-to-end runs of the Librarian against in-memory collaborators:
greeting short-circuit, memory hits, forced excerpt mode, cached
full-document generation, fallback and failure reporting.
"""

import httpx
import pytest

from librarian.common.errors import EmbeddingError, GenerationError
from librarian.common.schemas import LibrarianRequest
from librarian.common.store_client import StoreClient
from librarian.retriever.config_resolver import LibrarianConfig
from librarian.retriever.events import EventKind
from librarian.retriever.pipeline import GREETING, INTERNAL_ERROR, Librarian

from .conftest import collect


def _request(**kwargs):
    data = {"query": "Quel est le délai de pénalité ?", "user_id": "user-1", "org_id": "org-1"}
    data.update(kwargs)
    return LibrarianRequest(**data)


def _kinds(events):
    return [e.kind for e in events]


def _steps(events):
    return [e.data["step"] for e in events if e.kind == EventKind.STEP]


def _text(events):
    return "".join(e.data["content"] for e in events if e.kind == EventKind.TOKEN)


def _sources(events):
    payloads = [e.data for e in events if e.kind == EventKind.SOURCES]
    assert len(payloads) == 1
    return payloads[0]


def _assistant_turns(store):
    return [p for p in store.calls("add_message") if p["p_role"] == "assistant"]


def assert_single_terminal(events, kind):
    terminal = [e for e in events if e.is_terminal]
    assert len(terminal) == 1
    assert events[-1].kind == kind


class TestValidation:
    @pytest.mark.asyncio
    async def test_missing_query(self, librarian, store):
        events = await collect(librarian.run(_request(query="   ")))

        assert _kinds(events) == [EventKind.ERROR]
        assert events[0].data == {"error": "Query is required"}
        assert store.rpc_calls == []

    @pytest.mark.asyncio
    async def test_missing_user(self, librarian):
        events = await collect(librarian.run(_request(user_id="")))
        assert events[0].data == {"error": "user_id is required"}


class TestConversational:
    @pytest.mark.asyncio
    async def test_greeting_skips_retrieval(self, librarian, store, embedding, chat, gemini):
        events = await collect(librarian.run(_request(query="Bonjour", intent="conversational")))

        assert_single_terminal(events, EventKind.DONE)
        assert _text(events).strip() == GREETING
        assert embedding.calls == []
        assert store.calls("search_qa_memory") == []
        assert store.calls("match_documents_v13") == []
        assert chat.calls == [] and gemini.streams == []

        turns = _assistant_turns(store)
        assert len(turns) == 1
        assert turns[0]["p_content"] == GREETING
        assert turns[0]["p_generation_mode"] == "conversational"
        assert _sources(events)["sources"] == []


class TestMemory:
    def _memory(self, store, **row):
        entry = {
            "id": "qa-1",
            "question_text": "Délai de pénalité ?",
            "answer_text": "Le délai est de dix jours.",
            "similarity": 0.92,
            "is_expert_faq": False,
            "trust_score": 4.0,
        }
        entry.update(row)
        store.handlers["search_qa_memory"] = lambda params: [entry]

    @pytest.mark.asyncio
    async def test_trusted_hit_short_circuits(self, librarian, store, chat, gemini):
        self._memory(store)

        events = await collect(librarian.run(_request()))

        assert_single_terminal(events, EventKind.DONE)
        assert _text(events).strip() == "Le délai est de dix jours."
        assert store.calls("match_documents_v13") == []
        assert store.calls("increment_qa_usage") == [{"p_qa_id": "qa-1"}]
        assert chat.calls == [] and gemini.streams == []

        payload = _sources(events)
        assert payload["generation_mode"] == "memory"
        assert payload["from_memory"] is True
        assert payload["sources"][0]["type"] == "qa_memory"
        assert _assistant_turns(store)[0]["p_generation_mode"] == "memory"

    @pytest.mark.asyncio
    async def test_untrusted_hit_continues_to_search(self, librarian, store):
        self._memory(store, trust_score=1.0, similarity=0.95)

        events = await collect(librarian.run(_request(intent="factual")))

        assert store.calls("match_documents_v13")
        assert _sources(events)["generation_mode"] == "chunks"

    @pytest.mark.asyncio
    async def test_hit_below_threshold_continues(self, librarian, store):
        self._memory(store, similarity=0.80)

        events = await collect(librarian.run(_request(intent="factual")))

        assert _sources(events)["generation_mode"] == "chunks"

    @pytest.mark.asyncio
    async def test_no_memory_lookup_without_organization(self, librarian, store):
        self._memory(store)

        await collect(librarian.run(_request(org_id=None)))

        assert store.calls("search_qa_memory") == []


class TestExcerpts:
    @pytest.mark.asyncio
    async def test_factual_forces_chunks(self, librarian, store, chat, gemini):
        events = await collect(librarian.run(_request(intent="factual")))

        assert_single_terminal(events, EventKind.DONE)
        assert gemini.uploads == [] and gemini.streams == []
        assert _text(events) == "Réponse issue des extraits."
        assert "Contenu du fragment 1" in chat.calls[0]["system"]
        assert chat.calls[0]["model"] == "gpt-4o-mini"

        payload = _sources(events)
        assert payload["generation_mode"] == "chunks"
        assert payload["generation_mode_ui"] == "RAG Chunks"
        assert payload["effective_model"] == "gpt-4o-mini"
        assert payload["hierarchy_strategy"] == {"levels": [1], "include_children": False}
        assert payload["cache_reused"] is False
        assert payload["fallback_used"] is False
        assert {s["source_file_id"] for s in payload["sources"]} == {"file-a", "file-b"}

    @pytest.mark.asyncio
    async def test_intent_label_is_normalized(self, librarian, store, chat):
        events = await collect(librarian.run(_request(intent="  Factual ")))

        search = store.calls("match_documents_v13")[0]
        assert search["match_count"] == 6
        assert search["similarity_threshold"] == 0.5
        assert search["p_hierarchy_levels"] == [1]
        assert "INTENTION" in chat.calls[0]["system"]
        assert _sources(events)["intent"] == "factual"

    @pytest.mark.asyncio
    async def test_search_hints_override_limits(self, librarian, store):
        request = _request(search_config={"max_files": 1, "min_similarity": 0.7})

        events = await collect(librarian.run(request))

        assert store.calls("match_documents_v13")[0]["similarity_threshold"] == 0.7
        assert _sources(events)["files_count"] == 1

    @pytest.mark.asyncio
    async def test_rewritten_query_is_searched(self, librarian, store, embedding, chat):
        await collect(librarian.run(_request(intent="factual", rewritten_query="délai pénalités CCTP")))

        assert embedding.calls == ["délai pénalités CCTP"]
        assert chat.calls[0]["prompt"] == "délai pénalités CCTP"

    @pytest.mark.asyncio
    async def test_turns_are_persisted(self, librarian, store):
        await collect(librarian.run(_request(intent="factual")))

        roles = [p["p_role"] for p in store.calls("add_message")]
        assert roles == ["user", "assistant"]
        assert _assistant_turns(store)[0]["p_content"] == "Réponse issue des extraits."

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_stop_the_answer(self, librarian, store):
        store.failing.add("add_message")

        events = await collect(librarian.run(_request(intent="factual")))

        assert_single_terminal(events, EventKind.DONE)

    @pytest.mark.asyncio
    async def test_file_filter_ignored_when_disabled(self, librarian, store):
        request = _request(
            intent="factual",
            search_config={"file_filter": ["3f2504e0-4f89-11d3-9a0c-0305e82c3301"]},
        )

        events = await collect(librarian.run(request))

        assert store.calls("match_documents_v13")[0]["filter_file_ids"] is None
        assert _sources(events)["file_filter_applied"] is False


class TestFullDocument:
    @pytest.mark.asyncio
    async def test_small_corpus_uses_full_document(self, librarian, store, chat, gemini):
        events = await collect(librarian.run(_request()))

        assert_single_terminal(events, EventKind.DONE)
        assert _text(events) == "Réponse sur documents complets."
        assert chat.calls == []
        assert sorted(gemini.uploads) == ["CCTP Lot 02.pdf", "Planning.pdf"]

        payload = _sources(events)
        assert payload["generation_mode"] == "full-document"
        assert payload["effective_model"] == "gemini-2.5-flash-lite"
        assert payload["total_pages"] == 52
        assert payload["cache_reused"] is False
        assert payload["cache_type"] == "new"
        assert [s["source_file_id"] for s in payload["sources"]] == ["file-a", "file-b"]

    @pytest.mark.asyncio
    async def test_second_request_reuses_cache_and_handles(self, librarian, store, gemini):
        await collect(librarian.run(_request()))
        events = await collect(librarian.run(_request(query="Et le délai de paiement ?")))

        assert len(gemini.uploads) == 2
        assert len(gemini.caches) == 1
        payload = _sources(events)
        assert payload["cache_reused"] is True
        assert payload["cache_type"] == "global"

    @pytest.mark.asyncio
    async def test_model_change_creates_new_cache(self, store, embedding, chat, gemini):
        await collect(Librarian(store, embedding, chat, gemini).run(_request()))
        other = Librarian(store, embedding, chat, gemini, defaults=LibrarianConfig(gemini_model="gemini-2.5-pro"))

        events = await collect(other.run(_request()))

        assert len(gemini.caches) == 2
        assert gemini.caches[1]["model"] == "gemini-2.5-pro"
        assert _sources(events)["cache_reused"] is False

    @pytest.mark.asyncio
    async def test_page_ceiling_selects_chunks(self, store, embedding, chat, gemini):
        librarian = Librarian(store, embedding, chat, gemini, defaults=LibrarianConfig(gemini_max_pages=50))

        events = await collect(librarian.run(_request()))

        assert _sources(events)["generation_mode"] == "chunks"
        assert gemini.uploads == []

    @pytest.mark.asyncio
    async def test_unavailable_service_selects_chunks(self, store, embedding, chat, gemini):
        gemini.is_available = False

        events = await collect(Librarian(store, embedding, chat, gemini).run(_request(generation_mode="full-document")))

        assert _sources(events)["generation_mode"] == "chunks"

    @pytest.mark.asyncio
    async def test_transport_error_falls_back_to_excerpts(self, librarian, store, chat, gemini):
        gemini.fail_after = 1

        events = await collect(librarian.run(_request()))

        assert_single_terminal(events, EventKind.DONE)
        assert "fallback" in _steps(events)
        assert len(chat.calls) == 1

        payload = _sources(events)
        assert payload["generation_mode"] == "chunks"
        assert payload["fallback_used"] is True
        assert payload["effective_model"] == "gpt-4o-mini"
        assert _assistant_turns(store)[0]["p_content"] == "Réponse issue des extraits."

    @pytest.mark.asyncio
    async def test_citation_filter_when_enabled(self, store, embedding, chat, gemini):
        gemini.tokens = ['Voir <cite doc="file-b" page="2">planning</cite>.']
        librarian = Librarian(store, embedding, chat, gemini, defaults=LibrarianConfig(filter_sources_by_citation=True))

        events = await collect(librarian.run(_request()))

        assert [s["source_file_id"] for s in _sources(events)["sources"]] == ["file-b"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_search_failure_reports_error(self, librarian, store):
        store.failing.add("match_documents_v13")

        events = await collect(librarian.run(_request()))

        assert_single_terminal(events, EventKind.ERROR)
        assert events[-1].data == {"error": "Document search failed"}
        assert not [e for e in events if e.kind == EventKind.SOURCES]

    @pytest.mark.asyncio
    async def test_session_failure_reports_error(self, librarian, store):
        store.failing.add("get_agent_context")

        events = await collect(librarian.run(_request()))

        assert_single_terminal(events, EventKind.ERROR)
        assert events[-1].data == {"error": "Could not load the conversation"}

    @pytest.mark.asyncio
    async def test_store_failure_hides_procedure_names(self, embedding, chat, gemini):
        def handler(request):
            return httpx.Response(500, json={"message": "relation rag.conversations does not exist"})

        store = StoreClient(url="https://store.example", service_key="key")
        store._client = httpx.AsyncClient(base_url=store.url, transport=httpx.MockTransport(handler))

        events = await collect(Librarian(store, embedding, chat, gemini).run(_request()))
        await store.close()

        assert_single_terminal(events, EventKind.ERROR)
        message = events[-1].data["error"]
        assert message == "Could not load the conversation"
        assert "rag." not in message
        assert "get_agent_context" not in message

    @pytest.mark.asyncio
    async def test_both_generation_paths_failing(self, librarian, store, chat, gemini):
        gemini.fail_after = 0
        chat.error = GenerationError("openai generation failed: Error code: 429 req_abc123")

        events = await collect(librarian.run(_request()))

        assert_single_terminal(events, EventKind.ERROR)
        assert "fallback" in _steps(events)
        assert events[-1].data == {"error": "Answer generation failed"}
        assert not [e for e in events if e.kind == EventKind.SOURCES]
        assert _assistant_turns(store) == []

    @pytest.mark.asyncio
    async def test_embedding_failure(self, librarian, embedding):
        embedding.error = EmbeddingError("Could not vectorize the question")

        events = await collect(librarian.run(_request()))

        assert events[-1].data == {"error": "Could not vectorize the question"}

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_masked(self, librarian, embedding):
        embedding.error = RuntimeError("socket closed at 10.0.0.3")

        events = await collect(librarian.run(_request()))

        assert_single_terminal(events, EventKind.ERROR)
        assert events[-1].data == {"error": INTERNAL_ERROR}

    @pytest.mark.asyncio
    async def test_events_serialize_as_sse(self, librarian):
        events = await collect(librarian.run(_request(intent="factual")))

        frame = events[-1].to_sse()
        assert frame == "event: done\ndata: {}\n\n"
        assert events[0].to_sse().startswith("event: step\ndata: ")
