"""
FAISS-backed vector store.

One IndexIDMap2(IndexFlatIP) per content type over unit-normalized vectors,
so inner product equals cosine similarity. Record metadata and the
string-id <-> int64 mapping live beside the indexes.
"""

import threading
from typing import Any, Dict, List, Optional

import faiss
import numpy as np

from ..core.errors import DimensionMismatch
from .index import IVectorStore, matches_filters, normalize
from .types import QueryResult, VectorRecord


class FaissVectorStore(IVectorStore):
    """FAISS-backed implementation of IVectorStore."""

    def __init__(self, dimension: int = 1536):
        """
        Initialize FAISS vector store.

        Args:
            dimension: Dimension of the vectors (fixed for the model version)
        """
        self.dimension = dimension
        self._indexes: Dict[str, faiss.IndexIDMap2] = {}
        self._records: Dict[str, VectorRecord] = {}
        self._int_ids: Dict[str, int] = {}
        self._str_ids: Dict[int, str] = {}
        self._next_int_id = 0
        self._lock = threading.RLock()

    def _index_for(self, content_type: str) -> faiss.IndexIDMap2:
        index = self._indexes.get(content_type)
        if index is None:
            # Flat inner-product index; vectors are normalized so IP == cosine
            index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimension))
            self._indexes[content_type] = index
        return index

    def upsert(self, record: VectorRecord) -> None:
        """Add or replace a single vector record in the FAISS store."""
        if record.vector is None or len(record.vector) == 0:
            raise ValueError(f"Vector record {record.id} has no vector")
        if len(record.vector) != self.dimension:
            raise DimensionMismatch(self.dimension, len(record.vector))

        normalized = normalize(record.vector)
        if normalized is None:  # Handle zero vectors to prevent division by zero
            raise ValueError(f"Vector record {record.id} is a zero vector")

        with self._lock:
            if record.id in self._int_ids:
                self._remove(record.id)
                int_id = self._int_ids[record.id]
            else:
                int_id = self._next_int_id
                self._next_int_id += 1
                self._int_ids[record.id] = int_id
                self._str_ids[int_id] = record.id

            index = self._index_for(record.content_type)
            index.add_with_ids(normalized.reshape(1, -1), np.array([int_id], dtype=np.int64))
            self._records[record.id] = record

    def batch_upsert(self, records: List[VectorRecord]) -> None:
        """Add or replace several records under one lock; searches wait for the whole batch."""
        with self._lock:
            for record in records:
                self.upsert(record)

    def nearest_neighbors(self, query_vector: np.ndarray, content_type: str, scope: Optional[str] = None,
                          filters: Optional[Dict[str, Any]] = None, limit: int = 10,
                          min_similarity: float = 0.0) -> List[QueryResult]:
        normalized_query = normalize(query_vector)
        if normalized_query is None:
            return []
        if len(normalized_query) != self.dimension:
            raise DimensionMismatch(self.dimension, len(normalized_query))

        with self._lock:
            index = self._indexes.get(content_type)
            if index is None or not index.ntotal:
                return []

            # Scope and metadata filters are applied after the search, so scan the whole type index
            scores, ids = index.search(normalized_query.reshape(1, -1), index.ntotal)

            query_results = []
            for score, int_id in zip(scores[0], ids[0]):
                if int_id < 0 or score < min_similarity:
                    continue
                record = self._records.get(self._str_ids.get(int(int_id)))
                if record is None or not matches_filters(record, content_type, scope, filters):
                    continue
                query_results.append(QueryResult(id=record.id, score=float(score), metadata=dict(record.metadata)))
                if len(query_results) >= limit:
                    break

        return query_results

    def get(self, record_id: str) -> Optional[VectorRecord]:
        with self._lock:
            return self._records.get(record_id)

    def delete(self, record_id: str) -> bool:
        """Delete a vector record by ID using FAISS id removal."""
        with self._lock:
            if record_id not in self._records:
                return False
            self._remove(record_id)
            int_id = self._int_ids.pop(record_id)
            self._str_ids.pop(int_id, None)
            return True

    def _remove(self, record_id: str) -> None:
        record = self._records.pop(record_id)
        index = self._indexes.get(record.content_type)
        if index is not None:
            index.remove_ids(np.array([self._int_ids[record_id]], dtype=np.int64))

    def list_records(self, content_type: Optional[str] = None) -> List[VectorRecord]:
        with self._lock:
            return [
                record for record in self._records.values()
                if content_type is None or record.content_type == content_type
            ]

    def clear(self) -> None:
        """Clear all records from the FAISS store."""
        with self._lock:
            self._indexes.clear()
            self._records.clear()
            self._int_ids.clear()
            self._str_ids.clear()
            self._next_int_id = 0

    @property
    def ntotal(self) -> int:
        with self._lock:
            return sum(index.ntotal for index in self._indexes.values())
