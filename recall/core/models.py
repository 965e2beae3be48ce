"""
Core data model for the embedding engine.

Content items are tagged variants: each content type has its own details
record, and all of them share the embedding-related fields on ContentItem.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import ValidationError


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timezone-aware UTC copy of a datetime. Naive values are read as local time."""
    if value is None:
        return None
    return value.astimezone(timezone.utc)


class ContentType(str, Enum):
    MESSAGE = "message"
    FILE = "file"
    TRANSCRIPT = "transcript"
    KNOWLEDGE = "knowledge"

    @classmethod
    def parse(cls, value: Union[str, "ContentType"]) -> "ContentType":
        """Resolve a content type from its string value."""
        if isinstance(value, ContentType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = [t.value for t in cls]
            raise ValidationError(f"Unknown content type '{value}'; expected one of {valid}")


class EmbeddingStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass
class MessageContent:
    role: str = "user"
    conversation_id: Optional[str] = None
    project_id: Optional[str] = None


@dataclass
class FileContent:
    filename: str
    mime_type: str = "text/plain"
    project_id: Optional[str] = None


@dataclass
class TranscriptContent:
    filename: str
    speakers: List[str] = field(default_factory=list)
    duration_sec: Optional[float] = None
    project_id: Optional[str] = None


@dataclass
class KnowledgeContent:
    title: str
    category: str = "general"
    tags: List[str] = field(default_factory=list)
    project_id: Optional[str] = None


ContentDetails = Union[MessageContent, FileContent, TranscriptContent, KnowledgeContent]

DETAILS_BY_TYPE = {
    ContentType.MESSAGE: MessageContent,
    ContentType.FILE: FileContent,
    ContentType.TRANSCRIPT: TranscriptContent,
    ContentType.KNOWLEDGE: KnowledgeContent,
}


def details_from_dict(content_type: ContentType, data: Optional[Dict[str, Any]]) -> ContentDetails:
    """Build the details record for a content type from a plain mapping."""
    details_cls = DETAILS_BY_TYPE[content_type]
    data = dict(data or {})
    allowed = details_cls.__dataclass_fields__.keys()
    unknown = set(data) - set(allowed)
    if unknown:
        raise ValidationError(f"Unknown {content_type.value} metadata fields: {sorted(unknown)}")
    try:
        return details_cls(**data)
    except TypeError as e:
        raise ValidationError(f"Invalid {content_type.value} metadata: {e}")


def details_to_dict(details: ContentDetails) -> Dict[str, Any]:
    return {name: getattr(details, name) for name in details.__dataclass_fields__}


@dataclass
class ContentItem:
    """A piece of producer-owned content. The engine only writes embedding fields."""

    id: str
    scope_id: str
    type: ContentType
    text: str
    details: ContentDetails
    embedding: Optional[List[float]] = None
    embedding_status: EmbeddingStatus = EmbeddingStatus.PENDING
    model_version: Optional[str] = None
    failure_reason: Optional[str] = None
    chunk_count: int = 0
    created_at: datetime = None
    updated_at: datetime = None

    def __post_init__(self):
        self.type = ContentType.parse(self.type)
        self.embedding_status = EmbeddingStatus(self.embedding_status)
        if self.details is None:
            self.details = details_from_dict(self.type, {})
        elif isinstance(self.details, dict):
            self.details = details_from_dict(self.type, self.details)
        self.created_at = as_utc(self.created_at) or datetime.now(timezone.utc)
        self.updated_at = as_utc(self.updated_at) or self.created_at

    @property
    def title(self) -> str:
        """Display title: filename, knowledge title, or message role."""
        if isinstance(self.details, (FileContent, TranscriptContent)):
            return self.details.filename
        if isinstance(self.details, KnowledgeContent):
            return self.details.title
        return self.details.role

    @property
    def project_id(self) -> Optional[str]:
        return getattr(self.details, "project_id", None)

    @property
    def is_ready(self) -> bool:
        return self.embedding_status == EmbeddingStatus.READY and self.embedding is not None


@dataclass
class Chunk:
    index: int
    text: str
    start: int
    end: int
    token_estimate: int


@dataclass
class NormalizedContent:
    canonical_text: str
    chunks: List[Chunk]

    @property
    def is_chunked(self) -> bool:
        return len(self.chunks) > 1


@dataclass
class CacheEntry:
    key: str
    vector: List[float]
    model_version: str
    created_at: datetime = None
    hit_count: int = 0
    token_estimate: int = 0

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now()


@dataclass
class SearchFilters:
    types: List[ContentType] = None
    scope: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    project_id: Optional[str] = None

    def __post_init__(self):
        if not self.types:
            self.types = list(ContentType)
        else:
            self.types = [ContentType.parse(t) for t in self.types]
        self.date_from = as_utc(self.date_from)
        self.date_to = as_utc(self.date_to)

    def store_filters(self) -> Dict[str, Any]:
        """Filters understood by vector stores."""
        filters = {}
        if self.date_from is not None:
            filters["date_from"] = self.date_from
        if self.date_to is not None:
            filters["date_to"] = self.date_to
        if self.project_id is not None:
            filters["project_id"] = self.project_id
        return filters


@dataclass
class SearchResult:
    content_id: str
    type: ContentType
    score: float
    snippet: str
    metadata: Dict[str, Any]
    created_at: Optional[datetime] = None


@dataclass
class SearchResponse:
    results: List[SearchResult]
    diagnostics: Dict[str, Any] = None

    def __post_init__(self):
        if self.diagnostics is None:
            self.diagnostics = {}

    def __iter__(self):
        return iter(self.results)

    def __len__(self):
        return len(self.results)


@dataclass
class DuplicateCandidate:
    item_id: str
    duplicate_of: str
    score: float
    scope: str
    type: ContentType


@dataclass
class MaintenanceRun:
    """Summary of one maintenance invocation, appended to the run log."""

    run_id: str
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    flagged_duplicates: int = 0
    cost_estimate: float = 0.0
    batches: int = 0
    dry_run: bool = False
    stopped_early: bool = False
    errors: List[str] = None
    duplicates: List[DuplicateCandidate] = None
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        if self.errors is None:
            self.errors = []
        if self.duplicates is None:
            self.duplicates = []
        if self.metadata is None:
            self.metadata = {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert run to dictionary for serialization."""
        data = {
            "run_id": self.run_id,
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "flagged_duplicates": self.flagged_duplicates,
            "cost_estimate": round(self.cost_estimate, 8),
            "batches": self.batches,
            "dry_run": self.dry_run,
            "stopped_early": self.stopped_early,
            "errors": self.errors,
            "duplicates": [
                {
                    "item_id": d.item_id,
                    "duplicate_of": d.duplicate_of,
                    "score": d.score,
                    "scope": d.scope,
                    "type": d.type.value,
                }
                for d in self.duplicates
            ],
            "metadata": self.metadata,
        }
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
        return data
