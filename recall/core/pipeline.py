"""
Embedding pipeline: the only writer of embeddings.

Stages run in order and each returns a typed value:
normalize -> cache lookup -> provider call -> cache store -> vector store
write -> content status flip. An item becomes ready only after its vector
store write succeeds; any irrecoverable chunk failure marks it failed and
removes whatever chunk records were written for it.
"""

import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from util.logging import logger

from ..vector.embeddings import IEmbeddingProvider
from ..vector.index import IVectorStore
from ..vector.types import VectorRecord, chunk_record_id
from .cache import EmbeddingCache, cache_key
from .content_store import IContentStore
from .errors import (
    BackpressureError,
    DimensionMismatch,
    InvalidInput,
    OperationCancelled,
    ProviderError,
    RateLimited,
    StoreWriteError,
    Unavailable,
    ValidationError,
)
from .models import ContentItem, EmbeddingStatus, NormalizedContent
from .normalizer import ContentNormalizer, cache_form, estimate_tokens
from .ratelimit import RateLimiter
from .telemetry import (
    BATCH_COMPLETED,
    CACHE_HIT,
    CACHE_MISS,
    ITEM_EMBEDDED,
    ITEM_FAILED,
    TelemetryEmitter,
)


@dataclass
class EmbedOutcome:
    """Result of embedding one text."""

    key: str
    vector: Optional[List[float]] = None
    cached: bool = False
    error: Optional[str] = None
    deferred: bool = False
    """True when the text was not attempted (backpressure or cancellation); retry later"""

    @property
    def ok(self) -> bool:
        return self.vector is not None


@dataclass
class PipelineResult:
    """Outcome of embed_and_store for one content item."""

    item_id: str
    status: EmbeddingStatus
    chunks: int = 0
    cache_hits: int = 0
    reason: Optional[str] = None
    skipped: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.status == EmbeddingStatus.READY


@dataclass
class BatchReport:
    """Mixed per-item outcomes of one embed_and_store_many call."""

    results: List[PipelineResult] = field(default_factory=list)
    provider_batches: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok and not r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == EmbeddingStatus.FAILED)

    @property
    def pending(self) -> int:
        return sum(1 for r in self.results if r.status == EmbeddingStatus.PENDING)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def is_partial_failure(self) -> bool:
        return self.failed > 0 and self.succeeded > 0


class EmbeddingPipeline:
    """Normalizes, embeds, caches and stores content item vectors."""

    def __init__(self, provider: IEmbeddingProvider, vector_store: IVectorStore, content_store: IContentStore,
                 cache: EmbeddingCache, normalizer: ContentNormalizer = None, rate_limiter: RateLimiter = None,
                 telemetry: TelemetryEmitter = None, model_name: str = "text-embedding-3-small",
                 model_version: str = None, dimension: int = None, max_batch_size: int = 20, workers: int = 4,
                 max_attempts: int = 3, backoff_base_sec: float = 1.0, backoff_max_sec: float = 30.0,
                 price_per_1k_tokens: float = 0.00002, sleep: Callable[[float], None] = None):
        self.provider = provider
        self.vector_store = vector_store
        self.content_store = content_store
        self.cache = cache
        self.normalizer = normalizer or ContentNormalizer()
        self.rate_limiter = rate_limiter
        self.telemetry = telemetry or TelemetryEmitter()
        self.model_name = model_name
        self.model_version = model_version or model_name
        self._dimension = dimension
        self.max_batch_size = max(1, max_batch_size)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_sec = backoff_base_sec
        self.backoff_max_sec = backoff_max_sec
        self.price_per_1k_tokens = price_per_1k_tokens
        self._sleep = sleep

        self._batch_executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="embed-batch")
        self._item_executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="embed-item")
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self._stats = {
            "provider_calls": 0,
            "provider_batches": 0,
            "retries": 0,
            "backoff_sec": 0.0,
            "tokens_billed": 0,
            "items_embedded": 0,
            "items_failed": 0,
        }

    @property
    def dimension(self) -> int:
        """Vector dimension fixed for the current model version."""
        if self._dimension is None:
            self._dimension = self.provider.get_dimension()
        return self._dimension

    def key_for(self, text: str) -> str:
        return cache_key(cache_form(text), self.model_version)

    # Producer interface

    def embed_and_store(self, item: ContentItem, timeout: float = None,
                        cancel: threading.Event = None) -> PipelineResult:
        """Embed one content item and make it searchable.

        Raises ValidationError for malformed items. With ``timeout`` the call
        returns a pending result once the deadline passes; the background run
        is cancelled before it writes anything and backfill picks the item up.
        """
        normalized = self.normalizer.normalize(item)

        if timeout is None:
            return self._process(item, normalized, cancel)

        token = cancel or threading.Event()
        future = self._item_executor.submit(self._process, item, normalized, token)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            token.set()
            logger.log_operation("pipeline.embed_and_store", "timeout", {"item_id": item.id, "timeout_sec": timeout})
            return PipelineResult(item.id, EmbeddingStatus.PENDING, reason="timed out", timed_out=True)

    def embed_and_store_many(self, items: Sequence[ContentItem], cancel: threading.Event = None) -> BatchReport:
        """Embed several items with shared provider batches; per-item outcomes are independent."""
        report = BatchReport()
        prepared: List[Tuple[ContentItem, NormalizedContent]] = []

        for item in items:
            try:
                prepared.append((item, self.normalizer.normalize(item)))
            except ValidationError as e:
                self._fail(item, str(e))
                report.results.append(PipelineResult(item.id, EmbeddingStatus.FAILED, reason=str(e)))

        pending, skipped = self._partition_current(prepared)
        report.results.extend(skipped)
        if not pending:
            return report

        texts = [chunk.text for _, normalized in pending for chunk in normalized.chunks]
        outcomes, batches = self._embed(texts, cancel)
        report.provider_batches = batches

        offset = 0
        for item, normalized in pending:
            count = len(normalized.chunks)
            report.results.append(self._finalize(item, normalized, outcomes[offset:offset + count], cancel))
            offset += count
        return report

    def remove(self, item_id: str) -> int:
        """Remove an item's vector and chunk records. Cache entries are shared and stay."""
        removed = self.vector_store.delete_where_parent(item_id)
        logger.log_vector_operation("remove", item_id, {"records_removed": removed})
        return removed

    # Query path

    def embed_query(self, text: str, cancel: threading.Event = None) -> List[float]:
        """Cache-aware query embedding. Queries are always a single chunk."""
        normalized = self.normalizer.normalize_query(text)
        outcome = self.embed_texts([normalized], cancel=cancel)[0]
        if not outcome.ok:
            if outcome.deferred and cancel is not None and cancel.is_set():
                raise OperationCancelled(outcome.error or "query embedding cancelled")
            if outcome.deferred:
                raise BackpressureError(outcome.error or "query embedding deferred")
            raise ProviderError(outcome.error or "query embedding failed")
        return outcome.vector

    def embed_texts(self, texts: Sequence[str], cancel: threading.Event = None) -> List[EmbedOutcome]:
        """Embed raw texts through cache and provider without touching any store."""
        outcomes, _ = self._embed(list(texts), cancel)
        return outcomes

    def warmup(self, texts: Iterable[str], cancel: threading.Event = None) -> int:
        """Pre-embed common queries into the cache.

        Texts are normalized the way queries are; blank ones are ignored.
        Returns how many distinct texts were newly embedded.
        """
        queries = []
        for text in texts:
            try:
                queries.append(self.normalizer.normalize_query(text))
            except ValidationError:
                continue
        if not queries:
            return 0

        outcomes = self.embed_texts(queries, cancel=cancel)
        embedded = {outcome.key for outcome in outcomes if outcome.ok and not outcome.cached}
        failed = {outcome.key for outcome in outcomes if not outcome.ok}
        logger.log_operation("pipeline.warmup", "success" if not failed else "partial", {
            "texts": len(queries),
            "embedded": len(embedded),
            "failed": len(failed),
        })
        return len(embedded)

    def estimate_cost(self, items: Sequence[ContentItem]) -> Tuple[int, float]:
        """Tokens and USD a run over ``items`` would bill, counting only uncached texts."""
        tokens = 0
        seen = set()
        for item in items:
            try:
                normalized = self.normalizer.normalize(item)
            except ValidationError:
                continue
            for chunk in normalized.chunks:
                key = self.key_for(chunk.text)
                if key in seen or key in self.cache:
                    continue
                seen.add(key)
                tokens += chunk.token_estimate
        return tokens, self._cost(tokens)

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["cost_estimate"] = self._cost(stats["tokens_billed"])
        stats["model_version"] = self.model_version
        return stats

    def close(self) -> None:
        self._item_executor.shutdown(wait=True)
        self._batch_executor.shutdown(wait=True)

    # Stages

    def _process(self, item: ContentItem, normalized: NormalizedContent,
                 cancel: Optional[threading.Event]) -> PipelineResult:
        pending, skipped = self._partition_current([(item, normalized)])
        if skipped:
            return skipped[0]
        outcomes, _ = self._embed([chunk.text for chunk in normalized.chunks], cancel)
        return self._finalize(item, normalized, outcomes, cancel)

    def _partition_current(self, prepared: List[Tuple[ContentItem, NormalizedContent]]):
        """Split items into those needing work and results for those already ready or gone."""
        stored = self.content_store.get_many(item.id for item, _ in prepared)
        pending, results = [], []
        for item, normalized in prepared:
            current = stored.get(item.id)
            if current is None:
                results.append(PipelineResult(item.id, EmbeddingStatus.FAILED, reason="content item not found"))
            elif current.is_ready and current.model_version == self.model_version and current.text == item.text:
                results.append(PipelineResult(item.id, EmbeddingStatus.READY, chunks=current.chunk_count, skipped=True))
            else:
                pending.append((item, normalized))
        return pending, results

    def _embed(self, texts: List[str], cancel: Optional[threading.Event]) -> Tuple[List[EmbedOutcome], int]:
        positions: Dict[str, List[int]] = {}
        first_text: Dict[str, str] = {}
        for index, text in enumerate(texts):
            key = self.key_for(text)
            positions.setdefault(key, []).append(index)
            first_text.setdefault(key, text)

        resolved: Dict[str, EmbedOutcome] = {}
        owned: List[str] = []
        waiting: Dict[str, Future] = {}

        for key in positions:
            vector = self.cache.get(key, expected_dim=self.dimension)
            if vector is not None:
                resolved[key] = EmbedOutcome(key, vector, cached=True)
                self.telemetry.emit(CACHE_HIT, key=key[:16], model_version=self.model_version)
                continue

            with self._inflight_lock:
                future = self._inflight.get(key)
                if future is None:
                    self._inflight[key] = Future()
                    owned.append(key)
                else:
                    waiting[key] = future

        # An owner that finished between our cache miss and registration already stored its vector
        for key in list(owned):
            entry = self.cache.peek(key)
            if entry is not None and len(entry.vector) == self.dimension:
                outcome = EmbedOutcome(key, list(entry.vector), cached=True)
                resolved[key] = outcome
                self._resolve(key, outcome)
                owned.remove(key)
            else:
                self.telemetry.emit(CACHE_MISS, key=key[:16], model_version=self.model_version)

        batch_futures = []
        for start in range(0, len(owned), self.max_batch_size):
            batch_keys = owned[start:start + self.max_batch_size]
            batch_texts = [first_text[key] for key in batch_keys]
            batch_futures.append(self._batch_executor.submit(self._run_batch, batch_keys, batch_texts, cancel))

        wait(batch_futures)
        for future in batch_futures:
            for outcome in future.result():
                resolved[outcome.key] = outcome

        for key, future in waiting.items():
            resolved[key] = future.result()

        outcomes: List[Optional[EmbedOutcome]] = [None] * len(texts)
        for key, indices in positions.items():
            for index in indices:
                outcomes[index] = resolved[key]
        return outcomes, len(batch_futures)

    def _run_batch(self, keys: List[str], texts: List[str], cancel: Optional[threading.Event]) -> List[EmbedOutcome]:
        started = time.monotonic()
        outcomes: Dict[str, EmbedOutcome] = {}
        attempts = [0]
        try:
            results = self._embed_group(texts, cancel, attempts)
            for key, text, (vector, error, deferred) in zip(keys, texts, results):
                if vector is not None:
                    self.cache.put(key, vector, self.model_version, token_estimate=estimate_tokens(text))
                outcomes[key] = EmbedOutcome(key, vector, error=error, deferred=deferred)
        except Exception as e:
            logger.error(f"Embedding batch of {len(keys)} failed unexpectedly: {e}")
            for key in keys:
                outcomes.setdefault(key, EmbedOutcome(key, error=f"unexpected error: {e}"))
        finally:
            for key in keys:
                self._resolve(key, outcomes.get(key) or EmbedOutcome(key, error="batch aborted"))

        failed = sum(1 for outcome in outcomes.values() if not outcome.ok)
        with self._stats_lock:
            self._stats["provider_batches"] += 1
        self.telemetry.emit(
            BATCH_COMPLETED,
            batch_size=len(keys),
            embedded=len(keys) - failed,
            failed=failed,
            attempts=attempts[0],
            elapsed_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return [outcomes[key] for key in keys]

    def _embed_group(self, texts: List[str], cancel: Optional[threading.Event],
                     attempts: List[int]) -> List[Tuple[Optional[List[float]], Optional[str], bool]]:
        """Embed a group of texts, isolating invalid inputs to the offending texts only."""
        try:
            vectors = self._call_provider(texts, cancel, attempts)
        except InvalidInput as e:
            bad = {i for i in e.indices if 0 <= i < len(texts)}
            if len(texts) == 1:
                return [(None, f"invalid input: {e}", False)]
            if bad:
                rest = [i for i in range(len(texts)) if i not in bad]
                rest_results = self._embed_group([texts[i] for i in rest], cancel, attempts) if rest else []
                results = [(None, f"invalid input: {e}", False)] * len(texts)
                for i, result in zip(rest, rest_results):
                    results[i] = result
                return results
            # Provider did not say which input it refused; embed one by one
            results = []
            for text in texts:
                results.extend(self._embed_group([text], cancel, attempts))
            return results
        except (BackpressureError, OperationCancelled) as e:
            return [(None, str(e), True)] * len(texts)
        except ProviderError as e:
            return [(None, f"provider error: {e}", False)] * len(texts)

        results = []
        for vector in vectors:
            try:
                results.append((self._check_vector(vector), None, False))
            except DimensionMismatch as e:
                logger.log_operation("pipeline.dimension_guard", "rejected", {"expected": e.expected, "actual": e.actual})
                results.append((None, str(e), False))
            except ProviderError as e:
                results.append((None, str(e), False))
        return results

    def _call_provider(self, texts: List[str], cancel: Optional[threading.Event], attempts: List[int]) -> List[List[float]]:
        """Provider call with rate limiting and exponential backoff on retryable errors."""
        tokens = sum(estimate_tokens(text) for text in texts)
        attempt = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled("cancelled before provider call")
            attempt += 1
            attempts[0] += 1
            if self.rate_limiter is not None:
                self.rate_limiter.acquire(tokens=tokens, cancel=cancel)

            with self._stats_lock:
                self._stats["provider_calls"] += 1
            try:
                vectors = self.provider.embed(list(texts), model=self.model_name)
            except (RateLimited, Unavailable) as e:
                if attempt >= self.max_attempts:
                    raise ProviderError(f"{type(e).__name__} after {attempt} attempts: {e}", e.status_code)
                delay = self._backoff(attempt, e)
                logger.log_operation("pipeline.retry", "backoff", {
                    "attempt": attempt, "delay_sec": delay, "error": type(e).__name__
                })
                with self._stats_lock:
                    self._stats["retries"] += 1
                    self._stats["backoff_sec"] += delay
                self._wait(delay, cancel)
                continue

            if len(vectors) != len(texts):
                raise ProviderError(f"Provider returned {len(vectors)} vectors for {len(texts)} texts")
            with self._stats_lock:
                self._stats["tokens_billed"] += tokens
            return vectors

    def _backoff(self, attempt: int, error: Exception) -> float:
        delay = self.backoff_base_sec * (2 ** (attempt - 1))
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, retry_after)
        return min(delay, self.backoff_max_sec)

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        elif cancel is not None:
            cancel.wait(delay)
        else:
            time.sleep(delay)
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("cancelled during backoff")

    def _check_vector(self, vector) -> List[float]:
        values = [float(v) for v in vector]
        if len(values) != self.dimension:
            raise DimensionMismatch(self.dimension, len(values))
        if not all(math.isfinite(v) for v in values):
            raise ProviderError("provider returned a non-finite vector component")
        return values

    def _finalize(self, item: ContentItem, normalized: NormalizedContent, outcomes: List[EmbedOutcome],
                  cancel: Optional[threading.Event]) -> PipelineResult:
        """Write vectors and flip status, or record why the item could not be embedded."""
        hits = sum(1 for outcome in outcomes if outcome.cached)
        failures = [outcome for outcome in outcomes if not outcome.ok]
        hard = [outcome for outcome in failures if not outcome.deferred]

        if hard:
            reason = hard[0].error or "embedding failed"
            self._fail(item, reason)
            return PipelineResult(item.id, EmbeddingStatus.FAILED, cache_hits=hits, reason=reason)
        if failures:
            return PipelineResult(item.id, EmbeddingStatus.PENDING, cache_hits=hits, reason=failures[0].error)
        if cancel is not None and cancel.is_set():
            return PipelineResult(item.id, EmbeddingStatus.PENDING, cache_hits=hits, reason="cancelled")

        records, representative = self._build_records(item, normalized, outcomes)
        written = [record.id for record in records]
        # A previously embedded item leaves search until its new records are all written
        if self.vector_store.get(item.id) is not None:
            self.content_store.mark_pending(item.id, reason="re-embedding")
        try:
            self.vector_store.delete_where_parent(item.id)
            self.vector_store.batch_upsert(records)
        except DimensionMismatch as e:
            self._rollback(written)
            self._fail(item, str(e))
            return PipelineResult(item.id, EmbeddingStatus.FAILED, cache_hits=hits, reason=str(e))
        except Exception as e:
            error = StoreWriteError(f"vector store write failed: {e}")
            self._rollback(written)
            self.content_store.mark_pending(item.id, reason=str(error))
            self.telemetry.emit(ITEM_FAILED, item_id=item.id, type=item.type.value, reason=str(error), retryable=True)
            return PipelineResult(item.id, EmbeddingStatus.PENDING, cache_hits=hits, reason=str(error))

        if not self.content_store.mark_ready(item.id, representative, self.model_version, len(normalized.chunks)):
            # Deleted by its owner while we were embedding
            self._rollback(written)
            return PipelineResult(item.id, EmbeddingStatus.FAILED, cache_hits=hits, reason="content item deleted")

        with self._stats_lock:
            self._stats["items_embedded"] += 1
        self.telemetry.emit(
            ITEM_EMBEDDED,
            item_id=item.id,
            type=item.type.value,
            chunks=len(normalized.chunks),
            cache_hits=hits,
        )
        return PipelineResult(item.id, EmbeddingStatus.READY, chunks=len(normalized.chunks), cache_hits=hits)

    def _build_records(self, item: ContentItem, normalized: NormalizedContent,
                       outcomes: List[EmbedOutcome]) -> Tuple[List[VectorRecord], List[float]]:
        base = {
            "parent_id": item.id,
            "created_at": item.created_at.isoformat(),
            "project_id": item.project_id,
            "model_version": self.model_version,
            "chunk_count": len(normalized.chunks),
        }

        if not normalized.is_chunked:
            vector = outcomes[0].vector
            metadata = dict(base, chunk_index=0, text=normalized.chunks[0].text)
            record = VectorRecord(item.id, np.asarray(vector, dtype=np.float32), item.scope_id, item.type.value, metadata)
            return [record], vector

        records = []
        for chunk, outcome in zip(normalized.chunks, outcomes):
            metadata = dict(base, chunk_index=chunk.index, text=chunk.text)
            records.append(VectorRecord(
                chunk_record_id(item.id, chunk.index),
                np.asarray(outcome.vector, dtype=np.float32),
                item.scope_id,
                item.type.value,
                metadata,
            ))

        # Representative vector: length-weighted mean of the chunk vectors
        weights = np.array([len(chunk.text) for chunk in normalized.chunks], dtype=np.float32)
        matrix = np.array([outcome.vector for outcome in outcomes], dtype=np.float32)
        mean = (matrix * weights[:, None]).sum(axis=0) / weights.sum()
        norm = np.linalg.norm(mean)
        representative = (mean / norm if norm else matrix[0]).astype(np.float32)

        metadata = dict(base, chunk_index=-1, text=normalized.chunks[0].text, representative=True)
        records.append(VectorRecord(item.id, representative, item.scope_id, item.type.value, metadata))
        return records, representative.tolist()

    def _rollback(self, record_ids: List[str]) -> None:
        for record_id in record_ids:
            try:
                self.vector_store.delete(record_id)
            except Exception as e:
                logger.error(f"Failed to roll back vector record {record_id}: {e}")

    def _fail(self, item: ContentItem, reason: str) -> None:
        if item.id:
            self.content_store.mark_failed(item.id, reason)
        with self._stats_lock:
            self._stats["items_failed"] += 1
        self.telemetry.emit(ITEM_FAILED, item_id=item.id, type=item.type.value, reason=reason, retryable=False)

    def _resolve(self, key: str, outcome: EmbedOutcome) -> None:
        with self._inflight_lock:
            future = self._inflight.pop(key, None)
        if future is not None and not future.done():
            future.set_result(outcome)

    def _cost(self, tokens: int) -> float:
        return tokens / 1000.0 * self.price_per_1k_tokens
