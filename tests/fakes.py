"""
Test doubles for embedding providers and vector stores.
"""

import hashlib
import re
import threading
import time
from typing import Callable, Dict, List, Optional

import numpy as np

from recall.core.errors import InvalidInput, RateLimited, Unavailable
from recall.vector.embeddings import IEmbeddingProvider
from recall.vector.index import SimpleInMemoryVectorStore

# Words that share an axis are treated as meaning the same thing
TOPICS = {
    "project": 0, "kickoff": 0, "launch": 0, "roadmap": 0,
    "notes": 1, "minutes": 1, "summary": 1,
    "recipe": 2, "pasta": 2, "dinner": 2, "sauce": 2,
    "car": 3, "engine": 3, "tire": 3, "oil": 3,
    "budget": 4, "invoice": 4, "revenue": 4,
    "dragon": 5, "dungeon": 5, "campaign": 5,
}

# Prefix words added by the normalizer carry no meaning
STOPWORDS = {
    "user", "assistant", "system", "file", "text", "plain", "title", "category", "tags",
    "transcription", "speakers", "general", "the", "a", "an", "and", "of", "for", "to", "in",
}


class TopicEmbedding(IEmbeddingProvider):
    """Small semantic-ish provider: topic words map onto shared axes."""

    def __init__(self, dimension: int = 16):
        self.dimension = dimension
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()

    def embed(self, texts, model=None):
        with self._lock:
            self.calls.append(list(texts))
        return [self.vector_for(text) for text in texts]

    def vector_for(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension, dtype=np.float64)
        for token in re.findall(r"\w+", text.lower()):
            if token in STOPWORDS:
                continue
            if token in TOPICS:
                vector[TOPICS[token]] += 1.0
            else:
                bucket = 8 + int(hashlib.md5(token.encode()).hexdigest(), 16) % (self.dimension - 8)
                vector[bucket] += 0.5
        if not vector.any():
            vector[-1] = 1.0
        return (vector / np.linalg.norm(vector)).tolist()

    def get_dimension(self):
        return self.dimension

    @property
    def texts_embedded(self) -> int:
        with self._lock:
            return sum(len(call) for call in self.calls)


class StaticEmbedding(TopicEmbedding):
    """Returns fixed vectors for texts containing a marker word."""

    def __init__(self, vectors: Dict[str, List[float]], dimension: int = 16):
        super().__init__(dimension)
        self.vectors = vectors

    def vector_for(self, text: str) -> List[float]:
        for marker, vector in self.vectors.items():
            if marker in text:
                return list(vector)
        return super().vector_for(text)


class ScriptedProvider(TopicEmbedding):
    """Raises scripted errors for the first calls, then embeds normally.

    ``poison`` texts are refused with InvalidInput; ``report_indices``
    controls whether the error names the offending positions.
    """

    def __init__(self, errors: List[Exception] = None, poison: str = "poison",
                 report_indices: bool = True, dimension: int = 16):
        super().__init__(dimension)
        self.errors = list(errors or [])
        self.poison = poison
        self.report_indices = report_indices
        self.attempts = 0

    def embed(self, texts, model=None):
        with self._lock:
            self.attempts += 1
            error = self.errors.pop(0) if self.errors else None
        if error is not None:
            raise error
        bad = [i for i, text in enumerate(texts) if self.poison in text]
        if bad:
            raise InvalidInput("input rejected", indices=bad if self.report_indices else None)
        return super().embed(texts, model)


class AlwaysFailingProvider(TopicEmbedding):
    def __init__(self, error_factory: Callable[[], Exception] = lambda: Unavailable("provider down"),
                 dimension: int = 16):
        super().__init__(dimension)
        self.error_factory = error_factory
        self.attempts = 0

    def embed(self, texts, model=None):
        self.attempts += 1
        raise self.error_factory()


class WrongDimensionProvider(TopicEmbedding):
    """Claims one dimension and returns vectors of another."""

    def embed(self, texts, model=None):
        return [[0.5] * (self.dimension + 3) for _ in texts]


class GatedProvider(TopicEmbedding):
    """Blocks inside embed() until released."""

    def __init__(self, dimension: int = 16):
        super().__init__(dimension)
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed(self, texts, model=None):
        self.entered.set()
        self.release.wait(5)
        return super().embed(texts, model)


class FlakyVectorStore(SimpleInMemoryVectorStore):
    """Fails the Nth upsert."""

    def __init__(self, fail_on: int = 2):
        super().__init__()
        self.fail_on = fail_on
        self.upserts = 0

    def upsert(self, record):
        self.upserts += 1
        if self.upserts == self.fail_on:
            raise RuntimeError("disk full")
        super().upsert(record)


class ObservingVectorStore(SimpleInMemoryVectorStore):
    """Records the content status an item has while its records are written; can fail the Nth write."""

    def __init__(self, content_store, fail_on_batch: Optional[int] = None):
        super().__init__()
        self.content_store = content_store
        self.fail_on_batch = fail_on_batch
        self.batches = 0
        self.statuses = []

    def batch_upsert(self, records):
        self.batches += 1
        self.statuses.append(self.content_store.get(records[0].parent_id).embedding_status)
        if self.batches == self.fail_on_batch:
            # Half-written batch
            super().upsert(records[0])
            raise RuntimeError("disk full")
        super().batch_upsert(records)


class SlowTypeVectorStore(SimpleInMemoryVectorStore):
    """Delays or fails nearest-neighbour queries for chosen content types."""

    def __init__(self, slow: Dict[str, float] = None, failing: Optional[List[str]] = None):
        super().__init__()
        self.slow = slow or {}
        self.failing = failing or []

    def nearest_neighbors(self, query_vector, content_type, scope=None, filters=None, limit=10, min_similarity=0.0):
        if content_type in self.failing:
            raise RuntimeError(f"{content_type} index unavailable")
        if content_type in self.slow:
            time.sleep(self.slow[content_type])
        return super().nearest_neighbors(query_vector, content_type, scope, filters, limit, min_similarity)


class FakeClock:
    """Manual clock whose sleep advances time."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def rate_limited(retry_after=None) -> RateLimited:
    return RateLimited("slow down", retry_after=retry_after)
