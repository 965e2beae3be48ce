"""
Semantic search across content types.

The query is embedded through the pipeline's cache-aware path, one
nearest-neighbour query per requested content type runs in parallel under an
overall deadline, and the hits are merged into a single ranked list. Items
without a ready embedding are left out silently. When the query cannot be
embedded, ready items are matched by keyword instead.
"""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional

import numpy as np

from util.logging import logger

from ..vector.index import IVectorStore
from ..vector.types import QueryResult
from .content_store import IContentStore
from .errors import OperationCancelled, RecallError, ValidationError
from .models import ContentItem, ContentType, SearchFilters, SearchResponse, SearchResult, details_to_dict
from .pipeline import EmbeddingPipeline

# Chunk hits collapse onto their parent item, so each type starts with a window wider than the limit
OVERFETCH_FACTOR = 3
SNIPPET_CHARS = 200
# Fixed relevance of keyword matches when the query cannot be embedded
KEYWORD_FALLBACK_SCORE = 0.6
POLL_INTERVAL_SEC = 0.05


def clamp_score(score: float) -> float:
    """Cosine similarity mapped to [0, 1]; negative similarity clamps to 0."""
    return max(0.0, min(1.0, float(score)))


def make_snippet(text: str, query: str, width: int = SNIPPET_CHARS) -> str:
    """Window of ``text`` around the first query term it contains."""
    if not text:
        return ""
    text = " ".join(text.split())
    if len(text) <= width:
        return text

    lowered = text.lower()
    position = -1
    for term in sorted(query.lower().split(), key=len, reverse=True):
        position = lowered.find(term)
        if position >= 0:
            break

    start = 0 if position < 0 else max(0, position - width // 4)
    end = min(len(text), start + width)
    start = max(0, end - width)

    snippet = text[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


def _to_result(item: ContentItem, score: float, text: str, chunk_index: int, query: str) -> SearchResult:
    metadata = details_to_dict(item.details)
    metadata["title"] = item.title
    metadata["chunk_index"] = chunk_index
    metadata["chunk_count"] = item.chunk_count
    return SearchResult(
        content_id=item.id,
        type=item.type,
        score=score,
        snippet=make_snippet(text, query),
        metadata=metadata,
        created_at=item.created_at,
    )


class SearchCoordinator:
    """Fan-out/merge search over the per-type vector indexes."""

    def __init__(self, pipeline: EmbeddingPipeline, vector_store: IVectorStore, content_store: IContentStore,
                 deadline_sec: float = 2.0, default_limit: int = 10, min_similarity: float = 0.0):
        self.pipeline = pipeline
        self.vector_store = vector_store
        self.content_store = content_store
        self.deadline_sec = deadline_sec
        self.default_limit = default_limit
        self.min_similarity = min_similarity
        self._executor = ThreadPoolExecutor(max_workers=len(ContentType), thread_name_prefix="search")

    def search(self, query: str, filters: SearchFilters = None, limit: int = None, min_similarity: float = None,
               boosts: Dict[str, float] = None, deadline: float = None,
               cancel: threading.Event = None) -> SearchResponse:
        """
        Ranked results across the requested content types.

        Args:
            query: Free-text query
            filters: Types, scope, date range and project to search within
            limit: Maximum number of results
            min_similarity: Raw cosine similarity a hit must reach
            boosts: Optional per-type score multipliers, e.g. {"knowledge": 1.2}
            deadline: Seconds to wait for per-type queries before dropping them
            cancel: Cancellation token

        Returns:
            SearchResponse with results sorted by score (ties: newest first)
            and diagnostics naming timed-out or failed type queries.
        """
        started = time.monotonic()
        filters = filters or SearchFilters()
        limit = self.default_limit if limit is None else limit
        min_similarity = self.min_similarity if min_similarity is None else min_similarity
        deadline = self.deadline_sec if deadline is None else deadline
        boosts = {ContentType.parse(k).value: float(v) for k, v in (boosts or {}).items()}

        if limit < 1:
            raise ValidationError("limit must be at least 1")

        diagnostics: Dict[str, Any] = {"timed_out_types": [], "failed_types": [], "cancelled": False}

        try:
            query_vector = np.asarray(self.pipeline.embed_query(query, cancel=cancel), dtype=np.float32)
        except ValidationError:
            raise
        except OperationCancelled:
            diagnostics["cancelled"] = True
            return self._respond(query, [], diagnostics, started)
        except RecallError as e:
            logger.warning(f"Query embedding failed, falling back to keyword match: {e}")
            diagnostics["error"] = str(e)
            diagnostics["fallback"] = "keyword"
            results = self._keyword_fallback(query, filters)
            return self._respond(query, results[:limit], diagnostics, started)

        store_filters = filters.store_filters()
        futures = {
            self._executor.submit(
                self._query_type,
                query_vector,
                content_type,
                filters.scope,
                store_filters,
                limit,
                min_similarity,
                cancel,
            ): content_type
            for content_type in filters.types
        }

        pending = set(futures)
        cutoff = started + deadline
        while pending:
            if cancel is not None and cancel.is_set():
                diagnostics["cancelled"] = True
                break
            remaining = cutoff - time.monotonic()
            if remaining <= 0:
                break
            _, pending = wait(pending, timeout=min(remaining, POLL_INTERVAL_SEC), return_when=FIRST_COMPLETED)

        if diagnostics["cancelled"]:
            for future in futures:
                future.cancel()
            return self._respond(query, [], diagnostics, started)

        hits: Dict[str, Dict[str, Any]] = {}
        for future, content_type in futures.items():
            if future in pending:
                future.cancel()
                diagnostics["timed_out_types"].append(content_type.value)
                continue
            try:
                results: List[QueryResult] = future.result()
            except Exception as e:
                logger.warning(f"Search over {content_type.value} failed: {e}")
                diagnostics["failed_types"].append(content_type.value)
                continue
            self._collapse(results, content_type, boosts.get(content_type.value, 1.0), hits)

        merged = self._resolve(hits, filters, query, diagnostics)
        merged.sort(key=lambda r: (r.score, r.created_at.timestamp() if r.created_at else 0.0), reverse=True)
        return self._respond(query, merged[:limit], diagnostics, started)

    def suggest(self, partial_query: str, scope: Optional[str] = None, limit: int = 8) -> List[str]:
        """Autocomplete from recent filenames and knowledge titles."""
        titles = self.content_store.recent_titles(scope=scope, limit=max(limit * 25, 100))
        partial = (partial_query or "").strip().lower()
        if not partial:
            return titles[:limit]

        prefix = [t for t in titles if t.lower().startswith(partial)]
        contains = [t for t in titles if partial in t.lower() and t not in prefix]
        return (prefix + contains)[:limit]

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _query_type(self, query_vector: np.ndarray, content_type: ContentType, scope: Optional[str],
                    store_filters: Dict[str, Any], limit: int, min_similarity: float,
                    cancel: Optional[threading.Event]) -> List[QueryResult]:
        """Nearest records of one type, widening the window until ``limit`` distinct items are covered."""
        window = limit * OVERFETCH_FACTOR
        while True:
            results = self.vector_store.nearest_neighbors(
                query_vector, content_type.value, scope, store_filters, window, min_similarity
            )
            parents = {r.parent_id for r in results if not r.metadata.get("representative")}
            if len(parents) >= limit or len(results) < window:
                return results
            if cancel is not None and cancel.is_set():
                return results
            window *= 2

    @staticmethod
    def _collapse(results: List[QueryResult], content_type: ContentType, boost: float,
                  hits: Dict[str, Dict[str, Any]]) -> None:
        """Keep only the best-scoring chunk per parent item."""
        for result in results:
            # The chunk records of a chunked item carry its searchable text
            if result.metadata.get("representative"):
                continue
            parent_id = result.parent_id
            score = clamp_score(result.score * boost)
            best = hits.get(parent_id)
            if best is None or score > best["score"]:
                hits[parent_id] = {"score": score, "type": content_type, "record": result}

    def _resolve(self, hits: Dict[str, Dict[str, Any]], filters: SearchFilters, query: str,
                 diagnostics: Dict[str, Any]) -> List[SearchResult]:
        items = self.content_store.get_many(hits.keys())
        results = []
        omitted = 0
        for parent_id, hit in hits.items():
            item: Optional[ContentItem] = items.get(parent_id)
            if item is None or not item.is_ready:
                omitted += 1
                continue
            if filters.scope is not None and item.scope_id != filters.scope:
                omitted += 1
                continue

            record = hit["record"]
            results.append(_to_result(
                item,
                hit["score"],
                str(record.metadata.get("text") or item.text),
                record.metadata.get("chunk_index", 0),
                query,
            ))
        diagnostics["omitted_not_ready"] = omitted
        return results

    def _keyword_fallback(self, query: str, filters: SearchFilters) -> List[SearchResult]:
        """Case-insensitive substring match over ready items, scored with a fixed relevance."""
        phrase = " ".join(query.split())
        results = []
        for item in self.content_store.search_text(phrase, filters.types, filters.scope):
            if filters.date_from is not None and item.created_at < filters.date_from:
                continue
            if filters.date_to is not None and item.created_at > filters.date_to:
                continue
            if filters.project_id is not None and item.project_id != filters.project_id:
                continue
            results.append(_to_result(item, KEYWORD_FALLBACK_SCORE, item.text, 0, phrase))
        return results

    @staticmethod
    def _respond(query: str, results: List[SearchResult], diagnostics: Dict[str, Any],
                 started: float) -> SearchResponse:
        elapsed_ms = (time.monotonic() - started) * 1000
        diagnostics["elapsed_ms"] = round(elapsed_ms, 2)
        logger.log_search(query, len(results), elapsed_ms, {
            "timed_out_types": diagnostics.get("timed_out_types", []),
            "failed_types": diagnostics.get("failed_types", []),
        })
        return SearchResponse(results=results, diagnostics=diagnostics)
