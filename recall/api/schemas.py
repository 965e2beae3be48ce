"""
Request and response models for the HTTP surface.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..core.models import ContentType


class ContentRequest(BaseModel):
    id: str
    scope_id: str
    type: str
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    embed: bool = True
    timeout_sec: Optional[float] = None

    @field_validator('id', 'scope_id')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('cannot be empty')
        return v

    @field_validator('type')
    @classmethod
    def type_must_be_valid(cls, v):
        valid_types = [t.value for t in ContentType]
        if v not in valid_types:
            raise ValueError(f'type must be one of: {valid_types}')
        return v


class ContentResponse(BaseModel):
    id: str
    status: str
    chunks: int = 0
    cache_hits: int = 0
    reason: Optional[str] = None
    timed_out: bool = False


class DeleteResponse(BaseModel):
    success: bool
    id: str


class SearchRequest(BaseModel):
    query: str
    types: Optional[List[str]] = None
    scope: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    project_id: Optional[str] = None
    limit: int = Field(default=10, ge=1, le=100)
    min_similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    boosts: Optional[Dict[str, float]] = None

    @field_validator('query')
    @classmethod
    def query_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('query cannot be empty')
        return v


class SearchResultModel(BaseModel):
    content_id: str
    type: str
    score: float
    snippet: str
    metadata: Dict[str, Any]
    created_at: Optional[datetime] = None


class SearchResponseModel(BaseModel):
    query: str
    results: List[SearchResultModel]
    diagnostics: Dict[str, Any]


class SuggestResponse(BaseModel):
    suggestions: List[str]


class CacheStatsResponse(BaseModel):
    hits: int
    misses: int
    hit_rate: float
    estimated_savings: float
    size: int
    max_entries: int
    evictions: int
    corruptions: int


class WarmupRequest(BaseModel):
    texts: List[str] = Field(..., min_length=1)


class WarmupResponse(BaseModel):
    requested: int
    embedded: int
    cache_size: int


class BackfillRequest(BaseModel):
    type: Optional[str] = None
    scope: Optional[str] = None
    batch_size: int = Field(default=50, ge=1)
    dry_run: bool = False
    limit: Optional[int] = Field(default=None, ge=1)


class DedupRequest(BaseModel):
    type: str
    scope: Optional[str] = None
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class OrphanCleanupRequest(BaseModel):
    dry_run: bool = False


class MaintenanceRunResponse(BaseModel):
    run_id: str
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    processed: int
    failed: int
    skipped: int
    flagged_duplicates: int
    cost_estimate: float
    batches: int
    dry_run: bool
    stopped_early: bool
    errors: List[str]
    duplicates: List[Dict[str, Any]]
    metadata: Dict[str, Any]


class ClassifyRequest(BaseModel):
    text: str


class TagMatchModel(BaseModel):
    category: str
    confidence: float
    matched_keywords: List[str]


class ClassifyResponse(BaseModel):
    primary_category: str
    matches: List[TagMatchModel]


class HealthResponse(BaseModel):
    status: str
    version: str
    model_version: str
    content_counts: Dict[str, int]
    vector_records: int
    config_issues: List[str] = Field(default_factory=list)
