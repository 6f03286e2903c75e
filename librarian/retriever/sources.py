"""
Source/Citation Builder

Turns whatever retrieval artifacts generation actually used into the
citation list returned with the answer.
"""

import logging
import re
from typing import List

from ..common.schemas import Fragment, MemoryEntry, SourceFile, SourceItem

logger = logging.getLogger("librarian.retriever.sources")

PREVIEW_LENGTH = 200
CITE_DOC_PATTERN = re.compile(r'doc="([^"]+)"')


def sources_from_files(files: List[SourceFile]) -> List[SourceItem]:
    """One entry per retained file (full-document path)."""
    return [
        SourceItem(
            id=f.file_id,
            type="document",
            source_file_id=f.file_id,
            document_name=f.original_filename,
            score=f.max_similarity,
            layer=f.layer or "app",
        )
        for f in files
    ]


def sources_from_fragments(fragments: List[Fragment]) -> List[SourceItem]:
    """
    Deduplicate fragments by file id, else fragment id (bounded-excerpt path).

    The first occurrence wins and keeps its section, level and page.
    Transcript fragments become "meeting" entries.
    """
    seen = {}
    for fragment in fragments:
        key = fragment.source_file_id or f"chunk:{fragment.chunk_id}"
        if key in seen:
            continue

        preview = fragment.content[:PREVIEW_LENGTH] if fragment.content else None
        if fragment.is_transcript:
            date = fragment.metadata.get("meeting_date") or "date inconnue"
            title = fragment.metadata.get("meeting_title") or "Réunion"
            seen[key] = SourceItem(
                id=fragment.chunk_id,
                type="meeting",
                source_file_id=None,
                document_name=f"Réunion du {date} - {title}",
                score=fragment.similarity,
                layer=fragment.layer,
                content_preview=preview,
            )
        else:
            seen[key] = SourceItem(
                id=fragment.chunk_id,
                type="document",
                source_file_id=fragment.source_file_id,
                document_name=fragment.file_original_filename or "Document",
                score=fragment.similarity,
                layer=fragment.layer,
                content_preview=preview,
                section_title=fragment.section_title,
                hierarchy_level=fragment.hierarchy_level,
                page=fragment.page,
            )
    return list(seen.values())


def source_from_memory(entry: MemoryEntry) -> SourceItem:
    return SourceItem(
        id=entry.id,
        type="qa_memory",
        source_file_id=None,
        document_name="Mémoire",
        score=entry.similarity,
        layer="memory",
    )


def filter_sources_by_citation(sources: List[SourceItem], response: str) -> List[SourceItem]:
    """
    Keep the sources the response actually refers to.

    A source is cited when its id appears in a doc="..." attribute or its
    name appears in the text (case-insensitive). Never returns an empty
    list for a non-empty input: without any match, the first source is kept.
    """
    if not sources or not response.strip():
        return sources

    cited_ids = set(CITE_DOC_PATTERN.findall(response))
    lowered = response.lower()

    kept = {}
    for source in sources:
        ref = source.source_file_id or str(source.id)
        if ref in cited_ids or (source.document_name and source.document_name.lower() in lowered):
            kept.setdefault(source.source_file_id or source.document_name, source)

    result = list(kept.values())
    logger.debug("Citation filter kept %d of %d sources", len(result), len(sources))
    return result if result else sources[:1]
