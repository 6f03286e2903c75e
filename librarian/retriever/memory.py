"""
Memory Matcher

Looks up previously answered questions close to the current one. A hit
is only trusted when it was curated by an expert or has earned enough
trust; an untrusted nearest match is discarded.
"""

import logging
from typing import Any, Dict, List, Optional

from ..common.errors import StoreError
from ..common.schemas import MemoryEntry
from ..common.store_client import StoreClient
from .config_resolver import LibrarianConfig

logger = logging.getLogger("librarian.retriever.memory")


def _to_entry(row: Dict[str, Any]) -> MemoryEntry:
    return MemoryEntry(
        id=str(row.get("id")),
        question_text=row.get("question_text") or "",
        answer_text=row.get("answer_text") or "",
        similarity=float(row.get("similarity") or 0.0),
        is_expert_faq=bool(row.get("is_expert_faq")),
        trust_score=float(row.get("trust_score") or 0.0),
        usage_count=int(row.get("usage_count") or 0),
        expert_source=row.get("expert_source"),
        source_file_ids=list(row.get("source_file_ids") or []),
    )


def is_usable(entry: MemoryEntry, min_trust_score: float) -> bool:
    return entry.is_expert_faq or entry.trust_score >= min_trust_score


class MemoryMatcher:
    """Semantic lookup over the question/answer memory."""

    def __init__(self, store: StoreClient):
        self._store = store

    async def find(
        self,
        embedding: List[float],
        org_id: Optional[str],
        project_id: Optional[str],
        config: LibrarianConfig,
    ) -> Optional[MemoryEntry]:
        """
        Return the best usable memory entry, or None.

        Store failures are logged and count as "no hit".
        """
        try:
            rows = await self._store.rpc(
                "search_qa_memory",
                {
                    "p_query_embedding": embedding,
                    "p_org_id": org_id,
                    "p_project_id": project_id,
                    "p_similarity_threshold": config.memory_similarity_threshold,
                    "p_limit": config.memory_max_results,
                },
            )
        except StoreError as e:
            logger.warning("Memory search failed, continuing without it: %s", e)
            return None

        if not isinstance(rows, list) or not rows:
            return None

        best = _to_entry(rows[0])
        if best.similarity < config.memory_similarity_threshold:
            return None
        if not is_usable(best, config.memory_min_trust_score):
            logger.info(
                "Discarding untrusted memory match (similarity=%.3f, trust=%s)",
                best.similarity, best.trust_score,
            )
            return None

        logger.info("Memory hit: similarity=%.3f, trust=%s, expert=%s", best.similarity, best.trust_score, best.is_expert_faq)
        return best

    async def record_usage(self, entry: MemoryEntry) -> None:
        """Increment the usage counter; failures are logged only."""
        try:
            await self._store.rpc("increment_qa_usage", {"p_qa_id": entry.id})
        except StoreError as e:
            logger.warning("Failed to record memory usage for %s: %s", entry.id, e)
