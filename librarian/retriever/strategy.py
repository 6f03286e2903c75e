"""
Intent Strategy

Maps the upstream intent label to a retrieval strategy (which hierarchy
levels to search, whether to pull children of matched summaries, whether
generation mode is forced) and resolves the per-intent generation
parameters.

Rationale for the table:
- factual/citation search verbatim text only and never use the
  full-document path, so every claim can be pinned to original wording
- synthesis/comparison search the summaries and pull their verbatim
  children for detail
- conversational turns skip retrieval altogether
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional

from ..common.schemas import GenerationMode
from .config_resolver import LibrarianConfig

logger = logging.getLogger("librarian.retriever.strategy")


class Intent(str, Enum):
    """Intent labels produced by the upstream router"""
    FACTUAL = "factual"
    CITATION = "citation"
    SYNTHESIS = "synthesis"
    COMPARISON = "comparison"
    CONVERSATIONAL = "conversational"
    DEFAULT = "default"


@dataclass(frozen=True)
class IntentStrategy:
    """How retrieval and mode selection behave for one intent"""
    hierarchy_levels: FrozenSet[int]
    include_children: bool
    forced_mode: Optional[GenerationMode] = None
    skip_retrieval: bool = False

    def to_dict(self) -> dict:
        """Form reported in response metrics"""
        return {
            "levels": sorted(self.hierarchy_levels),
            "include_children": self.include_children,
        }


INTENT_STRATEGIES = {
    Intent.FACTUAL: IntentStrategy(frozenset({1}), False, GenerationMode.CHUNKS),
    Intent.CITATION: IntentStrategy(frozenset({1}), False, GenerationMode.CHUNKS),
    Intent.SYNTHESIS: IntentStrategy(frozenset({0}), True),
    Intent.COMPARISON: IntentStrategy(frozenset({0}), True),
    Intent.CONVERSATIONAL: IntentStrategy(frozenset({1}), False, GenerationMode.CHUNKS, skip_retrieval=True),
}

DEFAULT_STRATEGY = IntentStrategy(frozenset({1}), False)


def normalize_intent(intent: Optional[str]) -> Optional[str]:
    """Lower-cased, trimmed label; None when absent or blank.

    Unknown labels are kept so stored intent_config entries can still match.
    """
    if not intent:
        return None
    return intent.strip().lower() or None


def parse_intent(intent: Optional[str]) -> Intent:
    """Map a free-form label to an Intent; unknown or absent gives DEFAULT."""
    label = normalize_intent(intent)
    if label is None:
        return Intent.DEFAULT
    try:
        return Intent(label)
    except ValueError:
        logger.debug("Unknown intent %r, using default strategy", intent)
        return Intent.DEFAULT


def resolve_strategy(intent: Optional[str]) -> IntentStrategy:
    """Total function: every input yields a strategy."""
    return INTENT_STRATEGIES.get(parse_intent(intent), DEFAULT_STRATEGY)


@dataclass(frozen=True)
class GenerationParams:
    """Effective generation settings for one request"""
    gemini_model: str  # full-document path
    llm_model: str  # bounded-excerpt path
    temperature: float
    max_tokens: int


def resolve_generation_params(config: LibrarianConfig, intent: Optional[str]) -> GenerationParams:
    """Global generation settings with intent_overrides[intent] applied."""
    params = GenerationParams(
        gemini_model=config.gemini_model,
        llm_model=config.llm_model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    )
    override = config.intent_overrides.get(intent) if intent else None
    if override is None:
        return params

    logger.info("Applying generation override for intent %s", intent)
    return GenerationParams(
        gemini_model=override.gemini_model or params.gemini_model,
        llm_model=override.llm_model or params.llm_model,
        temperature=override.temperature if override.temperature is not None else params.temperature,
        max_tokens=override.max_tokens or params.max_tokens,
    )
