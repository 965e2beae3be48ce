"""
Engine configuration.

Values are read from the environment (and a local .env file) at import time.
get_settings() snapshots them into an immutable Settings object that the
Engine is constructed from; nothing else in the engine reads globals.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()

# Storage
DB_PATH = os.getenv("DB_PATH", "./data/recall.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Providers
VECTOR_PROVIDER = os.getenv("VECTOR_PROVIDER", "memory")  # memory|faiss
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")  # hash|sentence-transformers|openai
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "text-embedding-3-small")
EMBED_MODEL_VERSION = os.getenv("EMBED_MODEL_VERSION", EMBED_MODEL_NAME)
EMBED_DIMENSIONS = int(os.getenv("EMBED_DIMENSIONS", "1536"))
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
PROVIDER_TIMEOUT_SEC = float(os.getenv("PROVIDER_TIMEOUT_SEC", "30"))

# Cost accounting ($0.02 per 1M tokens for text-embedding-3-small)
EMBED_PRICE_PER_1K_TOKENS = float(os.getenv("EMBED_PRICE_PER_1K_TOKENS", "0.00002"))

# Normalizer
CHUNK_MAX_TOKENS = int(os.getenv("CHUNK_MAX_TOKENS", "500"))
CHUNK_SIZE_CHARS = int(os.getenv("CHUNK_SIZE_CHARS", "1000"))
CHUNK_OVERLAP_CHARS = int(os.getenv("CHUNK_OVERLAP_CHARS", "200"))

# Pipeline
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "20"))
EMBED_WORKERS = int(os.getenv("EMBED_WORKERS", "4"))
EMBED_MAX_ATTEMPTS = int(os.getenv("EMBED_MAX_ATTEMPTS", "3"))
EMBED_BACKOFF_BASE_SEC = float(os.getenv("EMBED_BACKOFF_BASE_SEC", "1.0"))
EMBED_BACKOFF_MAX_SEC = float(os.getenv("EMBED_BACKOFF_MAX_SEC", "30.0"))

# Rate limiting (provider published limits)
RATE_LIMIT_RPM = int(os.getenv("RATE_LIMIT_RPM", "3000"))
RATE_LIMIT_TPM = int(os.getenv("RATE_LIMIT_TPM", "1000000"))
RATE_LIMIT_MAX_QUEUE = int(os.getenv("RATE_LIMIT_MAX_QUEUE", "64"))

# Cache
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "0"))  # 0 = unbounded

# Search
SEARCH_DEADLINE_SEC = float(os.getenv("SEARCH_DEADLINE_SEC", "2.0"))
SEARCH_DEFAULT_LIMIT = int(os.getenv("SEARCH_DEFAULT_LIMIT", "10"))
SEARCH_MIN_SIMILARITY = float(os.getenv("SEARCH_MIN_SIMILARITY", "0.0"))

# Maintenance
MAINTENANCE_WORKERS = int(os.getenv("MAINTENANCE_WORKERS", "3"))
BACKFILL_BATCH_SIZE = int(os.getenv("BACKFILL_BATCH_SIZE", "50"))
DEDUP_THRESHOLD = float(os.getenv("DEDUP_THRESHOLD", "0.95"))

VERSION = "1.0.0"


@dataclass(frozen=True)
class Settings:
    """Immutable configuration snapshot used to build an Engine."""

    db_path: str = DB_PATH
    vector_provider: str = VECTOR_PROVIDER
    embed_provider: str = EMBED_PROVIDER
    model_name: str = EMBED_MODEL_NAME
    model_version: str = EMBED_MODEL_VERSION
    dimensions: int = EMBED_DIMENSIONS
    openai_api_key: str = OPENAI_API_KEY
    openai_base_url: str = OPENAI_BASE_URL
    provider_timeout_sec: float = PROVIDER_TIMEOUT_SEC
    price_per_1k_tokens: float = EMBED_PRICE_PER_1K_TOKENS
    chunk_max_tokens: int = CHUNK_MAX_TOKENS
    chunk_size: int = CHUNK_SIZE_CHARS
    chunk_overlap: int = CHUNK_OVERLAP_CHARS
    batch_size: int = EMBED_BATCH_SIZE
    workers: int = EMBED_WORKERS
    max_attempts: int = EMBED_MAX_ATTEMPTS
    backoff_base_sec: float = EMBED_BACKOFF_BASE_SEC
    backoff_max_sec: float = EMBED_BACKOFF_MAX_SEC
    rate_limit_rpm: int = RATE_LIMIT_RPM
    rate_limit_tpm: int = RATE_LIMIT_TPM
    rate_limit_max_queue: int = RATE_LIMIT_MAX_QUEUE
    cache_max_entries: int = CACHE_MAX_ENTRIES
    search_deadline_sec: float = SEARCH_DEADLINE_SEC
    search_default_limit: int = SEARCH_DEFAULT_LIMIT
    search_min_similarity: float = SEARCH_MIN_SIMILARITY
    maintenance_workers: int = MAINTENANCE_WORKERS
    backfill_batch_size: int = BACKFILL_BATCH_SIZE
    dedup_threshold: float = DEDUP_THRESHOLD


def get_settings(**overrides) -> Settings:
    """Snapshot current configuration, optionally overriding fields."""
    return Settings(**overrides)


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = DB_PATH):
    """Ensure the database directory exists."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def get_vector_store(settings: Settings = None, dimension: int = None):
    """Get configured vector store implementation."""
    settings = settings or get_settings()

    if settings.vector_provider == "faiss":
        from ..vector.faiss_store import FaissVectorStore
        return FaissVectorStore(dimension=dimension or settings.dimensions)

    from ..vector.index import SimpleInMemoryVectorStore
    return SimpleInMemoryVectorStore()


def get_embedding_provider(settings: Settings = None):
    """Get configured embedding provider implementation."""
    settings = settings or get_settings()

    if settings.embed_provider == "openai":
        from ..vector.embeddings import OpenAIEmbeddingProvider
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model_name=settings.model_name,
            dimension=settings.dimensions,
            timeout=settings.provider_timeout_sec,
        )
    elif settings.embed_provider == "sentence-transformers":
        from ..vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(settings.model_name)

    from ..vector.embeddings import HashingEmbedding
    return HashingEmbedding(dimension=settings.dimensions)


def validate_settings(settings: Settings = None) -> List[str]:
    """Validate configuration and return any issues."""
    settings = settings or get_settings()
    issues = []

    if settings.vector_provider not in ["memory", "faiss"]:
        issues.append(f"Invalid VECTOR_PROVIDER: {settings.vector_provider}")

    if settings.embed_provider not in ["hash", "sentence-transformers", "openai"]:
        issues.append(f"Invalid EMBED_PROVIDER: {settings.embed_provider}")

    if settings.embed_provider == "openai" and not settings.openai_api_key:
        issues.append("EMBED_PROVIDER=openai requires OPENAI_API_KEY")

    if settings.chunk_overlap >= settings.chunk_size:
        issues.append("CHUNK_OVERLAP_CHARS must be smaller than CHUNK_SIZE_CHARS")

    if settings.batch_size < 1:
        issues.append("EMBED_BATCH_SIZE must be >= 1")

    if settings.workers < 1 or settings.maintenance_workers < 1:
        issues.append("EMBED_WORKERS and MAINTENANCE_WORKERS must be >= 1")

    if settings.max_attempts < 1:
        issues.append("EMBED_MAX_ATTEMPTS must be >= 1")

    if not 0.0 <= settings.dedup_threshold <= 1.0:
        issues.append("DEDUP_THRESHOLD must be within [0, 1]")

    return issues
