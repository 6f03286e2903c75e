"""
Librarian Pipeline

Orchestrates one question end to end and exposes it as an async stream of
events:

    validate -> config -> session -> persist user turn
      -> [conversational: greeting, stop]
      -> embed -> memory -> [trusted hit: stored answer, stop]
      -> retrieve -> decide mode -> generate (one fallback) -> sources
      -> persist assistant turn -> sources event -> done

Every run ends with exactly one terminal event: done on success, error on
any fatal failure. Error messages are human-readable; details only go to
the server log.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..common.config import ServiceConfig
from ..common.embedding_service import EmbeddingService, get_embedding_service
from ..common.errors import LibrarianError, RequestValidationError
from ..common.gemini_client import GeminiClient
from ..common.llm_client import LLMClient
from ..common.schemas import GenerationMode, LibrarianRequest, SearchOutcome, SessionContext, SourceItem
from ..common.store_client import StoreClient
from .config_resolver import DEFAULT_LIBRARIAN_CONFIG, ConfigResolver, LibrarianConfig
from .context_cache import ContextCacheManager
from .events import StreamEvent
from .memory import MemoryMatcher
from .mode import decide_mode, mode_label
from .prompts import build_system_prompt, build_transcript_context, format_context
from .searcher import DEFAULT_BUCKET, SearchRequest, Searcher
from .session import DEFAULT_APP_ID, SessionLoader
from .sources import filter_sources_by_citation, source_from_memory, sources_from_files, sources_from_fragments
from .strategy import GenerationParams, normalize_intent, resolve_generation_params, resolve_strategy
from .synthesizer import Synthesizer, split_words

logger = logging.getLogger("librarian.retriever.pipeline")

GREETING = (
    "Bonjour ! Je suis votre assistant documentaire. "
    "Comment puis-je vous aider avec vos documents ?"
)
INTERNAL_ERROR = "Internal error"


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class _Clock:
    """Elapsed milliseconds since the request started, with named marks"""

    def __init__(self):
        self._start = time.monotonic()
        self.timings: Dict[str, int] = {}

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000)

    def mark(self, label: str) -> None:
        self.timings[label] = self.elapsed_ms()


@dataclass
class _Generation:
    """Mutable generation state of one request"""
    parts: List[str] = field(default_factory=list)
    cache_reused: bool = False
    fallback_used: bool = False

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def restart_after_failure(self) -> None:
        # Tokens already sent stay sent; only the persisted text restarts
        self.parts.clear()
        self.cache_reused = False
        self.fallback_used = True


class Librarian:
    """
    The retrieval-augmented answering pipeline.

    One instance serves many concurrent requests; all per-request state
    lives in run().
    """

    def __init__(
        self,
        store: StoreClient,
        embedding: EmbeddingService,
        chat_client: LLMClient,
        large_context: Optional[GeminiClient] = None,
        defaults: LibrarianConfig = DEFAULT_LIBRARIAN_CONFIG,
        default_app_id: str = DEFAULT_APP_ID,
        default_bucket: str = DEFAULT_BUCKET,
    ):
        """
        Initialize the pipeline.

        Args:
            store: Configuration/corpus/conversation store client
            embedding: Query embedder
            chat_client: Streaming chat client (bounded-excerpt path)
            large_context: Large-context client (full-document path), optional
            defaults: Configuration used when no stored record applies
            default_app_id: Application id used when the request has none
            default_bucket: Storage bucket for files whose row names none
        """
        self._embedding = embedding
        self._default_app_id = default_app_id
        self._config = ConfigResolver(store, defaults)
        self._sessions = SessionLoader(store, default_app_id)
        self._memory = MemoryMatcher(store)
        self._searcher = Searcher(store, default_bucket)
        self._cache = ContextCacheManager(store, large_context) if large_context is not None else None
        self._synthesizer = Synthesizer(chat_client, large_context)

    @property
    def full_document_available(self) -> bool:
        """Check if the full-document path can be used"""
        return self._cache is not None and self._synthesizer.has_full_document

    @staticmethod
    def validate(request: LibrarianRequest) -> None:
        """Raise RequestValidationError for requests that cannot start."""
        if not request.query or not request.query.strip():
            raise RequestValidationError("Query is required")
        if not request.user_id or not request.user_id.strip():
            raise RequestValidationError("user_id is required")

    async def run(self, request: LibrarianRequest) -> AsyncIterator[StreamEvent]:
        """
        Answer one request as a stream of events.

        Closing the returned iterator early cancels the in-flight work,
        including the provider stream.
        """
        clock = _Clock()
        try:
            self.validate(request)
            async for event in self._execute(request, clock):
                yield event
        except LibrarianError as e:
            logger.error("Request failed: %s", e)
            yield StreamEvent.error(e.user_message)
            return
        except Exception:
            logger.exception("Unexpected pipeline failure")
            yield StreamEvent.error(INTERNAL_ERROR)
            return
        yield StreamEvent.done()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _execute(self, request: LibrarianRequest, clock: _Clock) -> AsyncIterator[StreamEvent]:
        # Every per-intent lookup below keys on the normalized label
        request = request.model_copy(update={"intent": normalize_intent(request.intent)})
        yield StreamEvent.step("starting", "Démarrage...")

        app_id = request.app_id or self._default_app_id
        config = await self._config.resolve(app_id, request.org_id)
        session = await self._sessions.load(
            request.user_id,
            request.org_id,
            request.project_id,
            app_id,
            preloaded=request.preloaded_context,
            timeout_minutes=config.conversation_timeout_minutes,
            messages_count=config.context_messages_count,
        )
        strategy = resolve_strategy(request.intent)
        params = resolve_generation_params(config, request.intent)
        clock.mark("context")
        logger.info(
            "Query (intent=%s, conversation=%s, config=%s): %.60s",
            request.intent, session.conversation_id, config.config_source, request.query,
        )

        await self._sessions.append_message(session.conversation_id, "user", request.query)

        if strategy.skip_retrieval:
            async for event in self._answer_conversational(request, session, clock):
                yield event
            return

        yield StreamEvent.step("embedding", "Vectorisation...")
        embedding = await self._embedding.embed_single(request.search_query)
        clock.mark("embedding")

        memory_org_id = session.effective_org_id or request.org_id
        if memory_org_id:
            yield StreamEvent.step("memory", "Mémoire collective...")
            entry = await self._memory.find(embedding, memory_org_id, request.project_id, config)
            clock.mark("memory")
            if entry is not None:
                yield StreamEvent.step("memory_hit", "Réponse trouvée en mémoire")
                for word in split_words(entry.answer_text):
                    yield StreamEvent.token(word)
                await self._memory.record_usage(entry)
                sources = [source_from_memory(entry)]
                processing_ms = clock.elapsed_ms()
                await self._sessions.append_message(
                    session.conversation_id, "assistant", entry.answer_text,
                    [s.to_dict() for s in sources], GenerationMode.MEMORY.value, processing_ms,
                )
                yield StreamEvent.sources({
                    "sources": [s.to_dict() for s in sources],
                    "conversation_id": session.conversation_id,
                    "generation_mode": GenerationMode.MEMORY.value,
                    "generation_mode_ui": mode_label(GenerationMode.MEMORY),
                    "processing_time_ms": processing_ms,
                    "from_memory": True,
                    "intent": request.intent,
                })
                return

        allow_list = self._file_allow_list(request, config)
        clock.mark("file_filter")

        yield StreamEvent.step("search", "Recherche documentaire...")
        outcome = await self._searcher.search(
            SearchRequest(
                embedding=embedding,
                query_text=request.query,
                user_id=request.user_id,
                app_id=session.effective_app_id,
                strategy=strategy,
                org_id=session.effective_org_id,
                project_id=request.project_id,
                intent=request.intent,
                include_app_layer=request.include_app_layer,
                include_org_layer=request.include_org_layer,
                include_project_layer=request.include_project_layer,
                include_user_layer=request.include_user_layer,
                filter_source_types=request.filter_source_types,
                file_ids=allow_list,
                boost_documents=request.search_config.boost_documents if request.search_config else [],
                max_files=request.search_config.max_files if request.search_config else None,
                min_similarity=request.search_config.min_similarity if request.search_config else None,
            ),
            config,
        )
        clock.mark("search")
        transcripts = len(outcome.transcript_fragments)
        yield StreamEvent.step(
            "files_found",
            f"{len(outcome.files)} document(s) trouvé(s)" + (f" + {transcripts} réunion(s)" if transcripts else ""),
        )

        mode = decide_mode(
            request.generation_mode,
            strategy,
            len(outcome.files),
            outcome.total_pages,
            config.gemini_max_pages,
            self.full_document_available,
        )
        yield StreamEvent.step("mode", f"Mode {mode_label(mode)}")

        generation = _Generation()

        if mode == GenerationMode.FULL_DOCUMENT:
            try:
                async for event in self._generate_full_document(
                    request, config, session, params, outcome, generation, clock
                ):
                    yield event
            except Exception as e:
                logger.error("Full-document generation failed, falling back to excerpts: %s", e)
                generation.restart_after_failure()
                mode = GenerationMode.CHUNKS
                yield StreamEvent.step("fallback", "Bascule en mode extraits")

        if mode == GenerationMode.CHUNKS:
            async for event in self._generate_excerpts(request, config, session, params, outcome, generation, clock):
                yield event

        response = generation.text
        sources = self._build_sources(mode, outcome, response, config)
        clock.mark("generation")

        processing_ms = clock.elapsed_ms()
        source_dicts = [s.to_dict() for s in sources]
        await self._sessions.append_message(
            session.conversation_id, "assistant", response, source_dicts, mode.value, processing_ms,
        )
        clock.mark("total")
        logger.info("Answered in %dms (mode=%s, fallback=%s): %s", processing_ms, mode.value, generation.fallback_used, clock.timings)

        yield StreamEvent.sources({
            "sources": source_dicts,
            "conversation_id": session.conversation_id,
            "generation_mode": mode.value,
            "generation_mode_ui": mode_label(mode),
            "processing_time_ms": processing_ms,
            "files_count": len(outcome.files),
            "chunks_count": len(outcome.fragments),
            "total_pages": outcome.total_pages,
            "cache_reused": generation.cache_reused,
            "cache_type": "global" if generation.cache_reused else "new",
            "intent": request.intent,
            "answer_format": request.answer_format,
            "file_filter_applied": outcome.filter_applied,
            "effective_model": (
                params.gemini_model if mode == GenerationMode.FULL_DOCUMENT
                else self._synthesizer.excerpt_model(params)
            ),
            "effective_temperature": params.temperature,
            "hierarchy_strategy": strategy.to_dict(),
            "l0_count": outcome.level0_count,
            "l1_count": outcome.level1_count,
            "child_count": outcome.child_count,
            "fallback_used": generation.fallback_used,
            "timings": dict(clock.timings),
        })

    async def _answer_conversational(
        self,
        request: LibrarianRequest,
        session: SessionContext,
        clock: _Clock,
    ) -> AsyncIterator[StreamEvent]:
        yield StreamEvent.step("conversational", "Réponse directe...")
        for word in split_words(GREETING):
            yield StreamEvent.token(word)

        processing_ms = clock.elapsed_ms()
        await self._sessions.append_message(
            session.conversation_id, "assistant", GREETING, [],
            GenerationMode.CONVERSATIONAL.value, processing_ms,
        )
        yield StreamEvent.sources({
            "sources": [],
            "conversation_id": session.conversation_id,
            "generation_mode": GenerationMode.CONVERSATIONAL.value,
            "generation_mode_ui": mode_label(GenerationMode.CONVERSATIONAL),
            "processing_time_ms": processing_ms,
            "intent": request.intent,
        })

    async def _generate_full_document(
        self,
        request: LibrarianRequest,
        config: LibrarianConfig,
        session: SessionContext,
        params: GenerationParams,
        outcome: SearchOutcome,
        generation: _Generation,
        clock: _Clock,
    ) -> AsyncIterator[StreamEvent]:
        system_prompt = build_system_prompt(
            config.gemini_system_prompt or session.gemini_system_prompt,
            session.project_identity,
            outcome.files,
            request.intent,
            request.answer_format,
            request.key_concepts,
            full_document=True,
        )

        yield StreamEvent.step("uploading", "Envoi des documents...")
        handles = await self._cache.ensure_all_uploaded(outcome.files, config.google_file_ttl_hours)
        clock.mark("upload")

        yield StreamEvent.step("caching", "Contexte partagé...")
        cache_name, generation.cache_reused = await self._cache.resolve(
            outcome.files,
            handles,
            system_prompt,
            params.gemini_model,
            config.cache_ttl_minutes,
            session.effective_org_id,
            session.effective_app_id,
        )
        clock.mark("cache")

        yield StreamEvent.step("generating", "Génération...")
        transcript_context = build_transcript_context(outcome.transcript_fragments)
        async for text in self._synthesizer.stream_full_document(
            request.search_query, cache_name, params, transcript_context
        ):
            if not generation.parts:
                clock.mark("first_token")
            generation.parts.append(text)
            yield StreamEvent.token(text)

    async def _generate_excerpts(
        self,
        request: LibrarianRequest,
        config: LibrarianConfig,
        session: SessionContext,
        params: GenerationParams,
        outcome: SearchOutcome,
        generation: _Generation,
        clock: _Clock,
    ) -> AsyncIterator[StreamEvent]:
        system_prompt = build_system_prompt(
            config.system_prompt or session.system_prompt,
            session.project_identity,
            [],
            request.intent,
            request.answer_format,
            request.key_concepts,
        )
        context = format_context(outcome.fragments, config.max_context_length)

        yield StreamEvent.step("generating", "Génération...")
        async for text in self._synthesizer.stream_excerpts(request.search_query, context, system_prompt, params):
            if not generation.parts:
                clock.mark("first_token")
            generation.parts.append(text)
            yield StreamEvent.token(text)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _file_allow_list(self, request: LibrarianRequest, config: LibrarianConfig) -> Optional[List[str]]:
        requested = request.search_config.file_filter if request.search_config else None
        if not requested:
            return None
        if not config.enable_file_filter:
            logger.info("Ignoring file filter (disabled): %s", requested)
            return None
        ids = [value for value in requested if _is_uuid(value)]
        if len(ids) < len(requested):
            logger.warning("Dropping %d non-id file filter entries", len(requested) - len(ids))
        return ids or None

    @staticmethod
    def _build_sources(
        mode: GenerationMode,
        outcome: SearchOutcome,
        response: str,
        config: LibrarianConfig,
    ) -> List[SourceItem]:
        if mode == GenerationMode.FULL_DOCUMENT:
            sources = sources_from_files(outcome.files)
            if config.filter_sources_by_citation:
                sources = filter_sources_by_citation(sources, response)
            return sources
        return sources_from_fragments(outcome.fragments)


def create_librarian(config: ServiceConfig) -> Tuple[Librarian, StoreClient]:
    """
    Build a Librarian and its store client from service configuration.

    The caller owns the returned store client and closes it on shutdown.
    """
    timeouts = config.timeouts
    store = StoreClient(
        url=config.store.url,
        service_key=config.store.service_key,
        timeout=timeouts.store,
        upload_timeout=timeouts.upload,
    )
    embedding = get_embedding_service(
        api_key=config.llm.openai_api_key or None,
        model=config.embedding.model,
        timeout=timeouts.embedding,
    )
    chat_client = LLMClient(
        provider=config.llm.chat_provider,
        openai_api_key=config.llm.openai_api_key or None,
        anthropic_api_key=config.llm.anthropic_api_key or None,
        anthropic_model=config.llm.anthropic_model,
        timeout=timeouts.generation,
        idle_timeout=timeouts.stream_idle,
    )
    large_context = GeminiClient(
        api_key=config.llm.google_api_key or None,
        upload_timeout=timeouts.upload,
        generation_timeout=timeouts.generation,
        idle_timeout=timeouts.stream_idle,
    )
    librarian = Librarian(
        store,
        embedding,
        chat_client,
        large_context,
        default_app_id=config.server.default_app_id,
        default_bucket=config.store.default_bucket,
    )
    return librarian, store
