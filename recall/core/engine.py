"""
Engine container.

Builds the cache, rate limiter, provider, stores, pipeline, search
coordinator and maintenance job from one Settings snapshot and owns their
lifecycle. close() shuts down the worker pools and clears the cache.
"""

from typing import Callable, Iterable, List, Optional

from util.logging import logger

from ..vector.embeddings import IEmbeddingProvider
from ..vector.index import IVectorStore
from .cache import EmbeddingCache
from .config import Settings, get_embedding_provider, get_settings, get_vector_store
from .content_store import IContentStore, SQLiteContentStore
from .maintenance import MaintenanceJob
from .models import ContentItem, SearchFilters, SearchResponse
from .normalizer import ContentNormalizer
from .pipeline import EmbeddingPipeline, PipelineResult
from .ratelimit import RateLimiter
from .search_service import SearchCoordinator
from .telemetry import TelemetryEmitter


class Engine:
    """Wires the engine components together. Use from_settings() to build one."""

    def __init__(self, settings: Settings, provider: IEmbeddingProvider, vector_store: IVectorStore,
                 content_store: IContentStore, cache: EmbeddingCache = None, rate_limiter: RateLimiter = None,
                 telemetry: TelemetryEmitter = None, sleep: Callable[[float], None] = None):
        self.settings = settings
        self.provider = provider
        self.vector_store = vector_store
        self.content_store = content_store
        self.telemetry = telemetry or TelemetryEmitter()
        self.cache = cache if cache is not None else EmbeddingCache(
            max_entries=settings.cache_max_entries,
            price_per_1k_tokens=settings.price_per_1k_tokens,
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            requests_per_minute=settings.rate_limit_rpm,
            tokens_per_minute=settings.rate_limit_tpm,
            max_queue_depth=settings.rate_limit_max_queue,
        )
        self.normalizer = ContentNormalizer(
            max_tokens=settings.chunk_max_tokens,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )
        self.pipeline = EmbeddingPipeline(
            provider=provider,
            vector_store=vector_store,
            content_store=content_store,
            cache=self.cache,
            normalizer=self.normalizer,
            rate_limiter=self.rate_limiter,
            telemetry=self.telemetry,
            model_name=settings.model_name,
            model_version=settings.model_version,
            max_batch_size=settings.batch_size,
            workers=settings.workers,
            max_attempts=settings.max_attempts,
            backoff_base_sec=settings.backoff_base_sec,
            backoff_max_sec=settings.backoff_max_sec,
            price_per_1k_tokens=settings.price_per_1k_tokens,
            sleep=sleep,
        )
        self.search_coordinator = SearchCoordinator(
            pipeline=self.pipeline,
            vector_store=vector_store,
            content_store=content_store,
            deadline_sec=settings.search_deadline_sec,
            default_limit=settings.search_default_limit,
            min_similarity=settings.search_min_similarity,
        )
        self.maintenance = MaintenanceJob(
            pipeline=self.pipeline,
            vector_store=vector_store,
            content_store=content_store,
            cache=self.cache,
            telemetry=self.telemetry,
            workers=settings.maintenance_workers,
            batch_size=settings.backfill_batch_size,
            dedup_threshold=settings.dedup_threshold,
        )
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings = None, provider: IEmbeddingProvider = None,
                      vector_store: IVectorStore = None, content_store: IContentStore = None,
                      **kwargs) -> "Engine":
        """Build an engine, creating any collaborator not supplied from configuration."""
        settings = settings or get_settings()
        provider = provider or get_embedding_provider(settings)
        if vector_store is None:
            vector_store = get_vector_store(settings, dimension=provider.get_dimension())
        content_store = content_store or SQLiteContentStore(settings.db_path)

        logger.log_operation("engine.start", "success", {
            "embed_provider": type(provider).__name__,
            "vector_store": type(vector_store).__name__,
            "model_version": settings.model_version,
        })
        return cls(settings, provider, vector_store, content_store, **kwargs)

    # Producer interface

    def add_content(self, item: ContentItem, embed: bool = True, timeout: float = None) -> Optional[PipelineResult]:
        """Persist a content item and, unless ``embed`` is False, embed it."""
        self.normalizer.validate(item)
        self.content_store.add(item)
        if not embed:
            return None
        return self.pipeline.embed_and_store(item, timeout=timeout)

    def delete_content(self, item_id: str) -> bool:
        """Delete a content item and its vectors."""
        deleted = self.content_store.delete(item_id)
        self.pipeline.remove(item_id)
        return deleted

    # Query interface

    def search(self, query: str, filters: SearchFilters = None, limit: int = None,
               min_similarity: float = None, **kwargs) -> SearchResponse:
        return self.search_coordinator.search(query, filters, limit=limit, min_similarity=min_similarity, **kwargs)

    def suggest(self, partial_query: str, scope: str = None, limit: int = 8) -> List[str]:
        return self.search_coordinator.suggest(partial_query, scope=scope, limit=limit)

    def warmup(self, texts: Iterable[str]) -> int:
        """Pre-embed common queries so their first search is a cache hit."""
        return self.pipeline.warmup(texts)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.maintenance.request_stop()
        self.search_coordinator.close()
        self.pipeline.close()
        self.cache.clear()
        logger.log_operation("engine.stop", "success")

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
