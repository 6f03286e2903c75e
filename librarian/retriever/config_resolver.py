"""
Config Resolver

Loads the per-(application, organization) Librarian tunables from the
configuration store. An organization record wins over the
application-global one; with neither, the compiled-in defaults apply.

The result is always fully populated: every stored value that is absent,
zero or malformed is replaced by its default, field by field.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..common.errors import StoreError
from ..common.store_client import StoreClient

logger = logging.getLogger("librarian.retriever.config_resolver")

AGENT_TYPE = "librarian_v3"


@dataclass
class IntentParams:
    """Retrieval limits for one intent"""
    max_files: int
    min_similarity: float
    match_count: int


@dataclass
class GenerationOverride:
    """Per-intent generation settings; None means use the global value"""
    gemini_model: Optional[str] = None
    llm_model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


def _default_intent_config() -> Dict[str, IntentParams]:
    return {
        "factual": IntentParams(max_files=2, min_similarity=0.5, match_count=6),
        "synthesis": IntentParams(max_files=5, min_similarity=0.35, match_count=10),
        "comparison": IntentParams(max_files=4, min_similarity=0.4, match_count=8),
        "citation": IntentParams(max_files=1, min_similarity=0.6, match_count=4),
        "conversational": IntentParams(max_files=0, min_similarity=0.5, match_count=0),
    }


@dataclass
class LibrarianConfig:
    """Librarian tunables for one application/organization"""
    # search
    match_count: int = 8
    match_threshold: float = 0.35
    vector_weight: float = 0.8
    fulltext_weight: float = 0.2
    boost_factor: float = 1.5
    enable_concept_expansion: bool = True
    min_file_score: float = 0.3
    intent_config: Dict[str, IntentParams] = field(default_factory=_default_intent_config)
    enable_file_filter: bool = False
    # generation
    gemini_model: str = "gemini-2.5-flash-lite"
    gemini_max_files: int = 5
    gemini_max_pages: int = 450
    max_tokens: int = 6400
    temperature: float = 0.3
    intent_overrides: Dict[str, GenerationOverride] = field(default_factory=dict)
    llm_model: str = "gpt-4o-mini"
    max_context_length: int = 12000
    default_answer_format: str = "paragraph"
    # prompts
    system_prompt: str = ""
    gemini_system_prompt: str = ""
    # cache
    cache_ttl_minutes: int = 60
    google_file_ttl_hours: int = 47
    # scoring
    boost_on_mention: float = 2.0
    # memory and session (stored under "legacy")
    memory_similarity_threshold: float = 0.85
    memory_max_results: int = 3
    memory_min_trust_score: float = 3.0
    conversation_timeout_minutes: int = 30
    context_messages_count: int = 4
    # sources
    filter_sources_by_citation: bool = False

    config_source: str = "fallback"  # "org", "global" or "fallback"

    def intent_params(self, intent: Optional[str]) -> Optional[IntentParams]:
        if not intent:
            return None
        return self.intent_config.get(intent)


DEFAULT_LIBRARIAN_CONFIG = LibrarianConfig()


# ============================================================================
# Field parsers
# ============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _coerce(value, default):
    if isinstance(default, int):
        return int(value) if float(value).is_integer() else default
    return float(value)


def _positive(value: Any, default, upper: Optional[float] = None):
    """Stored number if finite, > 0 and within upper; else default."""
    if not _is_number(value) or value <= 0:
        return default
    if upper is not None and value > upper:
        return default
    return _coerce(value, default)


def _non_negative(value: Any, default, upper: Optional[float] = None):
    if not _is_number(value) or value < 0:
        return default
    if upper is not None and value > upper:
        return default
    return _coerce(value, default)


def _flag(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _text(value: Any, default: str) -> str:
    return value if isinstance(value, str) and value.strip() else default


def _section(params: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = params.get(name)
    return section if isinstance(section, dict) else {}


def _parse_intent_config(data: Any, defaults: LibrarianConfig) -> Dict[str, IntentParams]:
    """Merge stored per-intent limits over the defaults, field by field."""
    merged = {
        name: IntentParams(p.max_files, p.min_similarity, p.match_count)
        for name, p in defaults.intent_config.items()
    }
    if not isinstance(data, dict):
        return merged

    for name, values in data.items():
        if not isinstance(values, dict):
            logger.warning("Ignoring malformed intent_config entry for %s", name)
            continue
        intent = str(name).strip().lower()
        base = merged.get(intent) or IntentParams(
            max_files=defaults.gemini_max_files,
            min_similarity=defaults.match_threshold,
            match_count=defaults.match_count,
        )
        merged[intent] = IntentParams(
            max_files=_non_negative(values.get("max_files"), base.max_files),
            min_similarity=_positive(values.get("min_similarity"), base.min_similarity, upper=1.0),
            match_count=_non_negative(values.get("match_count"), base.match_count),
        )
    return merged


def _parse_intent_overrides(data: Any) -> Dict[str, GenerationOverride]:
    if not isinstance(data, dict):
        return {}

    overrides = {}
    for name, values in data.items():
        if not isinstance(values, dict):
            continue
        temperature = values.get("temperature")
        overrides[str(name).strip().lower()] = GenerationOverride(
            gemini_model=_text(values.get("gemini_model"), None),
            llm_model=_text(values.get("llm_model"), None),
            temperature=float(temperature) if _is_number(temperature) and 0 <= temperature <= 2 else None,
            max_tokens=_positive(values.get("max_tokens"), 0) or None,
        )
    return overrides


def parse_librarian_config(
    row: Dict[str, Any],
    defaults: LibrarianConfig = DEFAULT_LIBRARIAN_CONFIG,
    source: str = "global",
) -> LibrarianConfig:
    """
    Build a LibrarianConfig from one stored agent_prompts row.

    Args:
        row: Row with system_prompt, gemini_system_prompt and parameters
        defaults: Values used for every absent or malformed field
        source: Label recorded in config_source

    Returns:
        Fully populated LibrarianConfig
    """
    params = row.get("parameters")
    if not isinstance(params, dict):
        params = {}

    search = _section(params, "search")
    generation = _section(params, "generation")
    cache = _section(params, "cache")
    scoring = _section(params, "scoring")
    legacy = _section(params, "legacy")
    sources = _section(params, "sources")

    temperature = generation.get("temperature")

    return LibrarianConfig(
        match_count=_positive(search.get("match_count"), defaults.match_count),
        match_threshold=_positive(search.get("match_threshold"), defaults.match_threshold, upper=1.0),
        vector_weight=_positive(search.get("vector_weight"), defaults.vector_weight),
        fulltext_weight=_positive(search.get("fulltext_weight"), defaults.fulltext_weight),
        boost_factor=_positive(search.get("boost_factor"), defaults.boost_factor),
        enable_concept_expansion=_flag(search.get("enable_concept_expansion"), defaults.enable_concept_expansion),
        min_file_score=_positive(search.get("min_file_score"), defaults.min_file_score),
        intent_config=_parse_intent_config(search.get("intent_config"), defaults),
        enable_file_filter=_flag(search.get("enable_file_filter"), defaults.enable_file_filter),
        gemini_model=_text(generation.get("gemini_model"), defaults.gemini_model),
        gemini_max_files=_positive(generation.get("gemini_max_files"), defaults.gemini_max_files),
        gemini_max_pages=_positive(generation.get("gemini_max_pages"), defaults.gemini_max_pages),
        max_tokens=_positive(generation.get("max_tokens"), defaults.max_tokens),
        # 0 is a meaningful temperature
        temperature=(
            float(temperature)
            if _is_number(temperature) and 0 <= temperature <= 2
            else defaults.temperature
        ),
        intent_overrides=_parse_intent_overrides(generation.get("intent_overrides")),
        llm_model=_text(generation.get("llm_model"), defaults.llm_model),
        max_context_length=_positive(generation.get("max_context_length"), defaults.max_context_length),
        default_answer_format=_text(generation.get("default_answer_format"), defaults.default_answer_format),
        system_prompt=_text(row.get("system_prompt"), defaults.system_prompt),
        gemini_system_prompt=_text(row.get("gemini_system_prompt"), defaults.gemini_system_prompt),
        cache_ttl_minutes=_positive(cache.get("ttl_minutes"), defaults.cache_ttl_minutes),
        google_file_ttl_hours=_positive(cache.get("google_file_ttl_hours"), defaults.google_file_ttl_hours),
        boost_on_mention=_positive(scoring.get("boost_on_mention"), defaults.boost_on_mention),
        memory_similarity_threshold=_positive(
            legacy.get("qa_memory_similarity_threshold"), defaults.memory_similarity_threshold, upper=1.0
        ),
        memory_max_results=_positive(legacy.get("qa_memory_max_results"), defaults.memory_max_results),
        memory_min_trust_score=_positive(legacy.get("qa_memory_min_trust_score"), defaults.memory_min_trust_score),
        conversation_timeout_minutes=_positive(
            legacy.get("conversation_timeout_minutes"), defaults.conversation_timeout_minutes
        ),
        context_messages_count=_positive(legacy.get("context_messages_count"), defaults.context_messages_count),
        filter_sources_by_citation=_flag(sources.get("filter_by_citation"), defaults.filter_sources_by_citation),
        config_source=source,
    )


class ConfigResolver:
    """
    Resolves LibrarianConfig from config.agent_prompts.

    Lookup order: active organization record, active application-global
    record, defaults. A store failure counts as "no record".
    """

    def __init__(self, store: StoreClient, defaults: LibrarianConfig = DEFAULT_LIBRARIAN_CONFIG):
        self._store = store
        self._defaults = defaults

    async def resolve(self, app_id: str, org_id: Optional[str] = None) -> LibrarianConfig:
        """
        Resolve the configuration for an application and organization.

        Args:
            app_id: Application id
            org_id: Organization id, if any

        Returns:
            Fully populated LibrarianConfig (never raises)
        """
        if org_id:
            row = await self._fetch(app_id, {"org_id": f"eq.{org_id}"})
            if row is not None:
                logger.debug("Using organization config (app=%s, org=%s)", app_id, org_id)
                return parse_librarian_config(row, self._defaults, source="org")

        row = await self._fetch(app_id, {"org_id": "is.null"})
        if row is not None:
            logger.debug("Using application config (app=%s)", app_id)
            return parse_librarian_config(row, self._defaults, source="global")

        logger.warning("No stored config for app=%s org=%s, using defaults", app_id, org_id or "global")
        return parse_librarian_config({}, self._defaults, source="fallback")

    async def _fetch(self, app_id: str, scope: Dict[str, str]) -> Optional[Dict[str, Any]]:
        filters = {
            "agent_type": f"eq.{AGENT_TYPE}",
            "app_id": f"eq.{app_id}",
            "is_active": "eq.true",
        }
        filters.update(scope)
        try:
            rows = await self._store.select(
                "agent_prompts",
                schema="config",
                columns="system_prompt,gemini_system_prompt,parameters,org_id",
                filters=filters,
                limit=1,
            )
        except StoreError as e:
            logger.warning("Config lookup failed, treating as missing: %s", e)
            return None
        return rows[0] if rows else None
