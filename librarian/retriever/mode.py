"""
Mode Decision

Chooses, once per request and before generation starts, between the
bounded-excerpt path and the full-document path.
"""

import logging
from typing import Optional

from ..common.schemas import GenerationMode
from .strategy import IntentStrategy

logger = logging.getLogger("librarian.retriever.mode")

MODE_LABELS = {
    GenerationMode.FULL_DOCUMENT: "Full Document",
    GenerationMode.CHUNKS: "RAG Chunks",
    GenerationMode.MEMORY: "Mémoire Collective",
    GenerationMode.CONVERSATIONAL: "Conversation",
}


def mode_label(mode: GenerationMode) -> str:
    """UI label for a generation mode"""
    return MODE_LABELS.get(mode, mode.value)


def decide_mode(
    requested: Optional[GenerationMode],
    strategy: IntentStrategy,
    file_count: int,
    total_pages: int,
    max_pages: int,
    full_document_available: bool,
) -> GenerationMode:
    """
    Decide the generation mode.

    Precedence:
    1. a mode forced by the intent strategy
    2. an explicit caller mode; full-document still needs files and an
       available large-context service, otherwise chunks
    3. auto: chunks without files; full-document when the page budget fits
       and the service is available; chunks otherwise

    Returns:
        GenerationMode.CHUNKS or GenerationMode.FULL_DOCUMENT
    """
    if strategy.forced_mode is not None:
        return strategy.forced_mode

    full_document_possible = file_count > 0 and full_document_available

    if requested == GenerationMode.CHUNKS:
        return GenerationMode.CHUNKS

    if requested == GenerationMode.FULL_DOCUMENT:
        if full_document_possible:
            return GenerationMode.FULL_DOCUMENT
        logger.info(
            "Full-document mode requested but unavailable (files=%d, service=%s)",
            file_count, full_document_available,
        )
        return GenerationMode.CHUNKS

    if file_count == 0:
        return GenerationMode.CHUNKS
    if total_pages <= max_pages and full_document_available:
        return GenerationMode.FULL_DOCUMENT

    logger.info("Using chunks (pages=%d, ceiling=%d, service=%s)", total_pages, max_pages, full_document_available)
    return GenerationMode.CHUNKS
