"""
Vector store interface and the in-memory implementation.

Stores hold per-content-type records of {id, vector, scope, metadata} and
answer nearest-neighbour queries filtered by type, scope, date range and
project. Upserts for the same id are idempotent.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np

from ..core.errors import DimensionMismatch
from ..core.models import as_utc
from .types import QueryResult, VectorRecord


class IVectorStore(ABC):
    """Abstract interface for vector storage operations."""

    @abstractmethod
    def upsert(self, record: VectorRecord) -> None:
        """Insert or replace a single vector record."""
        pass

    def batch_upsert(self, records: List[VectorRecord]) -> None:
        """Insert or replace multiple vector records. Stops at the first failing record."""
        for record in records:
            self.upsert(record)

    @abstractmethod
    def nearest_neighbors(self, query_vector: np.ndarray, content_type: str, scope: Optional[str] = None,
                          filters: Optional[Dict[str, Any]] = None, limit: int = 10,
                          min_similarity: float = 0.0) -> List[QueryResult]:
        """Records of one content type ranked by cosine similarity, best first."""
        pass

    @abstractmethod
    def get(self, record_id: str) -> Optional[VectorRecord]:
        """Fetch a record by id."""
        pass

    @abstractmethod
    def delete(self, record_id: str) -> bool:
        """Delete a vector record by ID. Returns False when absent."""
        pass

    def delete_where_parent(self, parent_id: str) -> int:
        """Delete a content item's representative record and all of its chunk records."""
        removed = 0
        for record in self.list_records():
            if record.parent_id == parent_id and self.delete(record.id):
                removed += 1
        return removed

    @abstractmethod
    def list_records(self, content_type: Optional[str] = None) -> List[VectorRecord]:
        """All records, optionally of one content type."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Clear all records from the store."""
        pass


def matches_filters(record: VectorRecord, content_type: str, scope: Optional[str],
                    filters: Optional[Dict[str, Any]]) -> bool:
    """Whether a record passes the type, scope, date range and project filters."""
    if record.content_type != content_type:
        return False
    if scope is not None and record.scope != scope:
        return False
    if not filters:
        return True

    created_at = record.created_at
    date_from: Optional[datetime] = as_utc(filters.get("date_from"))
    date_to: Optional[datetime] = as_utc(filters.get("date_to"))
    if date_from is not None and (created_at is None or created_at < date_from):
        return False
    if date_to is not None and (created_at is None or created_at > date_to):
        return False

    project_id = filters.get("project_id")
    if project_id is not None and record.metadata.get("project_id") != project_id:
        return False

    exclude = filters.get("exclude_parent")
    if exclude is not None and record.parent_id == exclude:
        return False

    return True


def normalize(vector) -> Optional[np.ndarray]:
    """Unit-length float32 copy of a vector, or None for a zero vector."""
    array = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = np.linalg.norm(array)
    if norm == 0:
        return None
    return array / norm


class SimpleInMemoryVectorStore(IVectorStore):
    """Simple in-memory implementation of IVectorStore using cosine similarity."""

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension
        self._vectors: Dict[str, VectorRecord] = {}  # record_id -> VectorRecord
        self._index: Dict[str, np.ndarray] = {}      # record_id -> normalized_vector
        self._lock = threading.RLock()

    def upsert(self, record: VectorRecord) -> None:
        if record.vector is None or len(record.vector) == 0:
            raise ValueError(f"Vector record {record.id} has no vector")

        with self._lock:
            if self.dimension is None:
                self.dimension = len(record.vector)
            elif len(record.vector) != self.dimension:
                raise DimensionMismatch(self.dimension, len(record.vector))

            normalized = normalize(record.vector)
            if normalized is None:
                raise ValueError(f"Vector record {record.id} is a zero vector")

            self._vectors[record.id] = record
            self._index[record.id] = normalized

    def batch_upsert(self, records: List[VectorRecord]) -> None:
        # Searches take the same lock and wait for the whole batch
        with self._lock:
            for record in records:
                self.upsert(record)

    def nearest_neighbors(self, query_vector: np.ndarray, content_type: str, scope: Optional[str] = None,
                          filters: Optional[Dict[str, Any]] = None, limit: int = 10,
                          min_similarity: float = 0.0) -> List[QueryResult]:
        normalized_query = normalize(query_vector)
        if normalized_query is None:
            # Return empty results if query vector is zero
            return []

        with self._lock:
            if self.dimension is not None and len(normalized_query) != self.dimension:
                raise DimensionMismatch(self.dimension, len(normalized_query))

            similarities = []
            for record_id, stored_vector in self._index.items():
                record = self._vectors[record_id]
                if not matches_filters(record, content_type, scope, filters):
                    continue
                similarity = float(np.dot(normalized_query, stored_vector))
                if similarity >= min_similarity:
                    similarities.append((record, similarity))

        similarities.sort(key=lambda pair: pair[1], reverse=True)
        return [
            QueryResult(id=record.id, score=score, metadata=dict(record.metadata))
            for record, score in similarities[:limit]
        ]

    def get(self, record_id: str) -> Optional[VectorRecord]:
        with self._lock:
            return self._vectors.get(record_id)

    def delete(self, record_id: str) -> bool:
        with self._lock:
            self._index.pop(record_id, None)
            return self._vectors.pop(record_id, None) is not None

    def list_records(self, content_type: Optional[str] = None) -> List[VectorRecord]:
        with self._lock:
            return [
                record for record in self._vectors.values()
                if content_type is None or record.content_type == content_type
            ]

    def clear(self) -> None:
        with self._lock:
            self._vectors.clear()
            self._index.clear()

    def __len__(self):
        with self._lock:
            return len(self._vectors)
