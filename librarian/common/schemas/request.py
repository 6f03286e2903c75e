"""
Librarian Request Schema

The inbound request: query, identity, optional intent analysis from an
upstream router, optional search hints and optional preloaded session
context (which lets the caller skip the context lookup).
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .records import GenerationMode


# Spelling accepted from older callers
LEGACY_MODE_ALIASES = {"gemini": GenerationMode.FULL_DOCUMENT}

REQUESTABLE_MODES = (GenerationMode.AUTO, GenerationMode.CHUNKS, GenerationMode.FULL_DOCUMENT)


# ============================================================================
# Sub-models
# ============================================================================

class SearchConfig(BaseModel):
    """Search hints from the upstream router; unknown keys such as scope are ignored"""
    max_files: Optional[int] = Field(default=None, ge=0)
    min_similarity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    boost_documents: List[str] = Field(default_factory=list, description="Filename keywords to boost")
    file_filter: Optional[List[str]] = Field(default=None, description="File id allow-list")


class PreloadedContext(BaseModel):
    """Session context resolved by the caller"""
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str
    effective_org_id: Optional[str] = None
    effective_app_id: Optional[str] = None
    system_prompt: Optional[str] = None
    gemini_system_prompt: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    config_source: str = "preloaded"
    project_identity: Optional[Dict[str, Any]] = None
    conversation_summary: Optional[str] = None
    conversation_first_message: Optional[str] = None
    recent_messages: List[Dict[str, Any]] = Field(default_factory=list)
    message_count: int = 0
    previous_source_file_ids: List[str] = Field(default_factory=list)
    key_documents: List[Dict[str, Any]] = Field(default_factory=list, alias="documents_cles")


# ============================================================================
# Request
# ============================================================================

class LibrarianRequest(BaseModel):
    """
    One question to the Librarian.

    query and user_id default to empty so that the pipeline, not the
    parser, reports them as missing.
    """
    query: str = ""
    user_id: str = ""
    org_id: Optional[str] = None
    project_id: Optional[str] = None
    app_id: Optional[str] = None

    # Intent analysis (optional, produced upstream)
    rewritten_query: Optional[str] = None
    intent: Optional[str] = None
    search_config: Optional[SearchConfig] = None
    answer_format: Optional[Literal["paragraph", "list", "table", "quote"]] = None
    key_concepts: List[str] = Field(default_factory=list)

    preloaded_context: Optional[PreloadedContext] = None

    generation_mode: GenerationMode = GenerationMode.AUTO
    include_app_layer: bool = True
    include_org_layer: bool = True
    include_project_layer: bool = True
    include_user_layer: bool = False
    filter_source_types: Optional[List[str]] = None

    @field_validator("generation_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value):
        if isinstance(value, str):
            value = LEGACY_MODE_ALIASES.get(value.lower(), value.lower())
        if GenerationMode(value) not in REQUESTABLE_MODES:
            raise ValueError(f"generation_mode cannot be requested: {value}")
        return value

    @property
    def search_query(self) -> str:
        """The text sent to embedding and full-text search"""
        return (self.rewritten_query or "").strip() or self.query.strip()
