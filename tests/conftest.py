"""
Shared fixtures: temporary SQLite content store, fake providers, engines.
"""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from recall.core.cache import EmbeddingCache
from recall.core.config import get_settings
from recall.core.content_store import SQLiteContentStore
from recall.core.engine import Engine
from recall.core.models import ContentItem
from recall.core.normalizer import ContentNormalizer
from recall.core.pipeline import EmbeddingPipeline
from recall.core.telemetry import EventRecorder, TelemetryEmitter
from recall.vector.index import SimpleInMemoryVectorStore

from fakes import TopicEmbedding

DIMENSION = 16
BASE_TIME = datetime(2025, 1, 1, 9, 0, 0)


@pytest.fixture
def settings(tmp_path):
    return get_settings(
        db_path=str(tmp_path / "recall.db"),
        vector_provider="memory",
        embed_provider="hash",
        model_name="test-model",
        model_version="test-model-v1",
        dimensions=DIMENSION,
        batch_size=20,
        workers=2,
        max_attempts=3,
        backoff_base_sec=1.0,
        backoff_max_sec=30.0,
        maintenance_workers=2,
        backfill_batch_size=10,
        dedup_threshold=0.95,
        search_deadline_sec=2.0,
    )


@pytest.fixture
def content_store(tmp_path):
    return SQLiteContentStore(str(tmp_path / "content.db"))


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_engine(settings, recorder, sleeps):
    """Factory for engines over a given provider; engines are closed after the test."""
    engines = []

    def factory(provider=None, vector_store=None, **overrides):
        engine_settings = replace(settings, **overrides)
        telemetry = TelemetryEmitter()
        telemetry.subscribe(recorder)
        engine = Engine.from_settings(
            engine_settings,
            provider=provider or TopicEmbedding(DIMENSION),
            vector_store=vector_store,
            telemetry=telemetry,
            sleep=sleeps.append,
        )
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def make_pipeline(content_store, recorder, sleeps):
    """Factory for pipelines over a memory vector store and the temporary content store."""
    pipelines = []

    def factory(provider=None, vector_store=None, cache=None, normalizer=None, **kwargs):
        telemetry = TelemetryEmitter()
        telemetry.subscribe(recorder)
        options = dict(model_name="test-model", model_version="test-model-v1", max_batch_size=20, workers=2,
                       max_attempts=3, backoff_base_sec=1.0, sleep=sleeps.append)
        options.update(kwargs)
        pipeline = EmbeddingPipeline(
            provider=provider or TopicEmbedding(DIMENSION),
            vector_store=vector_store if vector_store is not None else SimpleInMemoryVectorStore(),
            content_store=content_store,
            cache=cache if cache is not None else EmbeddingCache(),
            normalizer=normalizer or ContentNormalizer(),
            telemetry=telemetry,
            **options
        )
        pipelines.append(pipeline)
        return pipeline

    yield factory
    for pipeline in pipelines:
        pipeline.close()


@pytest.fixture
def make_item():
    """Build content items with sensible defaults and increasing timestamps."""
    counter = {"n": 0}

    def factory(item_id, text, type="message", scope="A", details=None, created_at=None):
        counter["n"] += 1
        if details is None:
            details = {
                "message": {"role": "user"},
                "file": {"filename": f"{item_id}.txt"},
                "transcript": {"filename": f"{item_id}.m4a"},
                "knowledge": {"title": item_id},
            }[type]
        return ContentItem(
            id=item_id,
            scope_id=scope,
            type=type,
            text=text,
            details=details,
            created_at=created_at or BASE_TIME + timedelta(minutes=counter["n"]),
        )

    return factory
