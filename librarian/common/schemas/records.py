"""
Transient records built per request.

None of these are persisted as such: fragments and files are rebuilt from
the search procedure on every query, sources are serialized into the
assistant turn.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


TRANSCRIPT_SOURCE_TYPE = "meeting_transcript"


class Layer(str, Enum):
    """Visibility scope of a document"""
    APP = "app"
    ORG = "org"
    PROJECT = "project"
    USER = "user"


class RetrievalRole(str, Enum):
    """How a fragment entered the result set"""
    PRIMARY = "primary"  # matched the query directly
    CHILD = "child"  # pulled in because its level-0 parent matched


class GenerationMode(str, Enum):
    """Generation mode requested by the caller or used for a turn"""
    AUTO = "auto"
    CHUNKS = "chunks"
    FULL_DOCUMENT = "full-document"
    # Terminal labels, never requested
    MEMORY = "memory"
    CONVERSATIONAL = "conversational"


@dataclass
class Fragment:
    """A unit of indexed text returned by the hybrid search"""
    chunk_id: int
    content: str
    similarity: float
    layer: str
    source_file_id: Optional[str] = None
    hierarchy_level: int = 1  # 0 = summary/section, 1 = verbatim text
    parent_chunk_id: Optional[int] = None
    retrieval_role: RetrievalRole = RetrievalRole.PRIMARY
    section_title: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # File columns joined by the search procedure
    file_storage_path: Optional[str] = None
    file_storage_bucket: Optional[str] = None
    file_original_filename: Optional[str] = None
    file_mime_type: Optional[str] = None
    file_total_pages: int = 1
    # Search diagnostics
    rank_score: float = 0.0
    match_source: str = ""
    matched_concepts: List[str] = field(default_factory=list)

    @property
    def is_transcript(self) -> bool:
        return self.metadata.get("source_type") == TRANSCRIPT_SOURCE_TYPE

    @property
    def is_child(self) -> bool:
        return self.retrieval_role == RetrievalRole.CHILD

    @property
    def page(self) -> Optional[Any]:
        return self.metadata.get("page")


@dataclass
class SourceFile:
    """Fragments of one file, aggregated and scored"""
    file_id: str
    storage_path: str
    storage_bucket: str
    original_filename: str
    mime_type: str
    total_pages: int
    max_similarity: float
    avg_similarity: float
    chunk_count: int
    layer: str
    score: float
    is_boosted: bool = False


@dataclass
class SearchOutcome:
    """Everything retrieval produced for one request"""
    fragments: List[Fragment]
    files: List[SourceFile]
    transcript_fragments: List[Fragment]
    total_pages: int
    filter_applied: bool = False

    @property
    def level0_count(self) -> int:
        return sum(1 for f in self.fragments if f.hierarchy_level == 0)

    @property
    def level1_count(self) -> int:
        return sum(1 for f in self.fragments if f.hierarchy_level == 1)

    @property
    def child_count(self) -> int:
        return sum(1 for f in self.fragments if f.is_child)


@dataclass
class SessionContext:
    """Resolved conversation and project context for one request"""
    conversation_id: str
    effective_org_id: Optional[str]
    effective_app_id: str
    system_prompt: Optional[str] = None
    gemini_system_prompt: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    config_source: str = "fallback"
    project_identity: Optional[Dict[str, Any]] = None
    conversation_summary: Optional[str] = None
    conversation_first_message: Optional[str] = None
    recent_messages: List[Dict[str, Any]] = field(default_factory=list)
    message_count: int = 0
    previous_source_file_ids: List[str] = field(default_factory=list)
    key_documents: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class MemoryEntry:
    """A previously answered question, trust-scored"""
    id: str
    question_text: str
    answer_text: str
    similarity: float
    is_expert_faq: bool = False
    trust_score: float = 0.0
    usage_count: int = 0
    expert_source: Optional[str] = None
    source_file_ids: List[str] = field(default_factory=list)


@dataclass
class ContextCacheEntry:
    """A reusable remote context keyed by file set, prompt and model"""
    cache_name: str
    file_ids_hash: str
    system_prompt_hash: str
    model: str
    expires_at: datetime
    file_ids: List[str] = field(default_factory=list)

    def matches(self, file_ids_hash: str, system_prompt_hash: str, model: str) -> bool:
        return (
            self.file_ids_hash == file_ids_hash
            and self.system_prompt_hash == system_prompt_hash
            and self.model == model
        )

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class SourceItem:
    """One citation entry returned to the caller"""
    id: Any
    type: str  # "document", "meeting" or "qa_memory"
    source_file_id: Optional[str]
    document_name: str
    score: float
    layer: str
    content_preview: Optional[str] = None
    section_title: Optional[str] = None
    hierarchy_level: Optional[int] = None
    page: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "type": self.type,
            "source_file_id": self.source_file_id,
            "document_name": self.document_name,
            "score": self.score,
            "layer": self.layer,
            "content_preview": self.content_preview,
        }
        if self.type == "document" and self.hierarchy_level is not None:
            data["section_title"] = self.section_title
            data["hierarchy_level"] = self.hierarchy_level
            data["page"] = self.page
        return data
