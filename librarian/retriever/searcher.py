"""
Searcher

Hierarchical hybrid search over the layered corpus.

One call to the match_documents_v13 procedure (vector + full-text,
restricted to the strategy's hierarchy levels, optionally expanded with
the verbatim children of matched summaries), then per-file aggregation:

    score = chunk_count * avg_similarity * boost_multiplier * boost_factor

Transcript fragments are kept aside; they reach the prompt through their
own block and never count toward file scores.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..common.errors import RetrievalError, StoreError
from ..common.schemas import Fragment, RetrievalRole, SearchOutcome, SourceFile
from ..common.store_client import StoreClient
from .config_resolver import LibrarianConfig
from .strategy import IntentStrategy

logger = logging.getLogger("librarian.retriever.searcher")

SEARCH_PROCEDURE = "match_documents_v13"
ALLOW_LIST_MATCH_FACTOR = 5
DEFAULT_BUCKET = "documents"


@dataclass
class SearchRequest:
    """Inputs of one retrieval"""
    embedding: List[float]
    query_text: str
    user_id: str
    app_id: str
    strategy: IntentStrategy
    org_id: Optional[str] = None
    project_id: Optional[str] = None
    intent: Optional[str] = None
    include_app_layer: bool = True
    include_org_layer: bool = True
    include_project_layer: bool = True
    include_user_layer: bool = False
    filter_source_types: Optional[List[str]] = None
    file_ids: Optional[List[str]] = None  # explicit allow-list
    boost_documents: List[str] = field(default_factory=list)
    # Per-request router hints; take precedence over intent_config
    max_files: Optional[int] = None
    min_similarity: Optional[float] = None

    @property
    def has_allow_list(self) -> bool:
        return bool(self.file_ids)


def score_file(chunk_count: int, avg_similarity: float, boost_multiplier: float, boost_factor: float) -> float:
    """Per-file score; non-decreasing in chunk_count and avg_similarity."""
    return chunk_count * avg_similarity * boost_multiplier * boost_factor


def _to_fragment(raw: Dict[str, Any]) -> Fragment:
    """Convert a procedure row (out_* columns) to a Fragment"""
    metadata = raw.get("out_metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    chunk_id = raw.get("out_chunk_id")
    level = raw.get("out_hierarchy_level")
    level = 1 if level is None else int(level)
    parent_id = raw.get("out_parent_chunk_id")

    try:
        role = RetrievalRole(raw.get("out_retrieval_role") or "primary")
    except ValueError:
        role = RetrievalRole.PRIMARY

    # Enforce the hierarchy invariants on whatever the procedure returned
    if level == 0 and parent_id is not None:
        logger.warning("Dropping parent link on level-0 chunk %s", chunk_id)
        parent_id = None
    if role == RetrievalRole.CHILD and parent_id is None:
        logger.warning("Child chunk %s has no parent, treating as primary", chunk_id)
        role = RetrievalRole.PRIMARY

    return Fragment(
        chunk_id=chunk_id,
        content=raw.get("out_content") or "",
        similarity=float(raw.get("out_similarity") or 0.0),
        layer=raw.get("out_layer") or "app",
        source_file_id=raw.get("out_source_file_id"),
        hierarchy_level=level,
        parent_chunk_id=parent_id,
        retrieval_role=role,
        section_title=raw.get("out_section_title"),
        metadata=metadata,
        file_storage_path=raw.get("out_file_storage_path"),
        file_storage_bucket=raw.get("out_file_storage_bucket"),
        file_original_filename=raw.get("out_file_original_filename"),
        file_mime_type=raw.get("out_file_mime_type"),
        file_total_pages=int(raw.get("out_file_total_pages") or 1),
        rank_score=float(raw.get("out_rank_score") or 0.0),
        match_source=raw.get("out_match_source") or "",
        matched_concepts=list(raw.get("out_matched_concepts") or []),
    )


def aggregate_files(
    fragments: List[Fragment],
    boost_documents: List[str],
    boost_on_mention: float,
    boost_factor: float,
    default_bucket: str = DEFAULT_BUCKET,
) -> List[SourceFile]:
    """
    Group non-transcript fragments by file and score each file.

    Fragments without a file id or storage path are not aggregated.

    Returns:
        SourceFile list sorted by score, highest first
    """
    keywords = [k.lower() for k in boost_documents if k and k.strip()]
    groups: Dict[str, List[Fragment]] = {}

    for fragment in fragments:
        if fragment.is_transcript:
            continue
        if not fragment.source_file_id or not fragment.file_storage_path:
            continue
        groups.setdefault(fragment.source_file_id, []).append(fragment)

    files = []
    for file_id, members in groups.items():
        first = members[0]
        similarities = [m.similarity for m in members]
        avg_similarity = sum(similarities) / len(similarities)
        filename = first.file_original_filename or "Document"
        is_boosted = any(k in filename.lower() for k in keywords)
        boost_multiplier = boost_on_mention if is_boosted else 1.0

        files.append(SourceFile(
            file_id=file_id,
            storage_path=first.file_storage_path,
            storage_bucket=first.file_storage_bucket or default_bucket,
            original_filename=filename,
            mime_type=first.file_mime_type or "application/pdf",
            total_pages=first.file_total_pages,
            max_similarity=max(similarities),
            avg_similarity=avg_similarity,
            chunk_count=len(members),
            layer=first.layer,
            score=score_file(len(members), avg_similarity, boost_multiplier, boost_factor),
            is_boosted=is_boosted,
        ))

    files.sort(key=lambda f: f.score, reverse=True)
    return files


class Searcher:
    """
    Hierarchical retriever over the corpus store.

    Any store error is fatal for the request and raised as RetrievalError;
    there is no partial retry.
    """

    def __init__(self, store: StoreClient, default_bucket: str = DEFAULT_BUCKET):
        """
        Initialize searcher.

        Args:
            store: Store client exposing the search procedure
            default_bucket: Storage bucket for files whose row names none
        """
        self._store = store
        self._default_bucket = default_bucket

    async def search(self, request: SearchRequest, config: LibrarianConfig) -> SearchOutcome:
        """
        Run the hybrid search and aggregate files.

        Args:
            request: Search inputs
            config: Resolved Librarian configuration

        Returns:
            SearchOutcome with fragments, retained files and transcripts
        """
        intent_params = config.intent_params(request.intent)

        if request.has_allow_list:
            match_count = max(len(request.file_ids) * ALLOW_LIST_MATCH_FACTOR, config.match_count)
        else:
            match_count = (intent_params.match_count if intent_params else 0) or config.match_count
        threshold = (
            request.min_similarity
            or (intent_params.min_similarity if intent_params else 0)
            or config.match_threshold
        )

        logger.info(
            "Searching: match_count=%d threshold=%.2f levels=%s children=%s",
            match_count, threshold, sorted(request.strategy.hierarchy_levels), request.strategy.include_children,
        )

        params = {
            "query_embedding": request.embedding,
            "query_text": request.query_text,
            "p_user_id": request.user_id,
            "p_org_id": request.org_id,
            "p_project_id": request.project_id,
            "p_app_id": request.app_id,
            "match_count": match_count,
            "similarity_threshold": threshold,
            "include_app_layer": request.include_app_layer,
            "include_org_layer": request.include_org_layer,
            "include_project_layer": request.include_project_layer,
            "include_user_layer": request.include_user_layer,
            "filter_source_types": request.filter_source_types or None,
            "filter_file_ids": request.file_ids or None,
            "filter_filenames": None,
            "enable_concept_expansion": config.enable_concept_expansion,
            "p_hierarchy_levels": sorted(request.strategy.hierarchy_levels),
            "p_include_children": request.strategy.include_children,
        }

        try:
            rows = await self._store.rpc(SEARCH_PROCEDURE, params)
        except StoreError as e:
            logger.error("Search procedure failed: %s", e)
            raise RetrievalError("Document search failed") from e

        if rows is None:
            rows = []
        if not isinstance(rows, list):
            raise RetrievalError("Document search returned an unexpected payload")

        fragments = [_to_fragment(row) for row in rows]
        transcripts = [f for f in fragments if f.is_transcript]

        files = aggregate_files(
            fragments, request.boost_documents, config.boost_on_mention, config.boost_factor, self._default_bucket,
        )
        if not request.has_allow_list:
            max_files = (
                request.max_files
                or (intent_params.max_files if intent_params else 0)
                or config.gemini_max_files
            )
            files = files[:max_files]

        outcome = SearchOutcome(
            fragments=fragments,
            files=files,
            transcript_fragments=transcripts,
            total_pages=sum(f.total_pages for f in files),
            filter_applied=request.has_allow_list,
        )
        logger.info(
            "Retrieved %d chunks (L0=%d, L1=%d, children=%d, transcripts=%d), %d files, %d pages",
            len(fragments), outcome.level0_count, outcome.level1_count, outcome.child_count,
            len(transcripts), len(files), outcome.total_pages,
        )
        return outcome
