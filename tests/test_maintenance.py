"""
Tests for maintenance operations: backfill, near-duplicate scan and orphan cleanup.
"""

import threading

import pytest

from recall.core.errors import MaintenanceError, ValidationError
from recall.core.models import EmbeddingStatus
from recall.core.telemetry import JOB_SUMMARY

from fakes import GatedProvider, ScriptedProvider, StaticEmbedding

SIMILAR = [0.97, (1 - 0.97 ** 2) ** 0.5] + [0.0] * 14
BASE = [1.0] + [0.0] * 15


def _unembedded(engine, make_item, count, **kwargs):
    items = [make_item(f"m{i:02d}", f"note number {i}", **kwargs) for i in range(count)]
    for item in items:
        engine.add_content(item, embed=False)
    return items


class TestBackfill:
    """Embedding backfill over items that are not ready."""

    def test_backfill_in_batches(self, engine, make_item):
        """25 unembedded items with batch size 10 run as 3 batches."""
        _unembedded(engine, make_item, 25)

        run = engine.maintenance.run_backfill(batch_size=10)

        assert run.batches == 3
        assert run.processed == 25
        assert run.failed == 0
        assert run.errors == []
        assert engine.content_store.count_by_status()["ready"] == 25
        assert run.metadata["tokens_billed"] > 0
        assert run.cost_estimate > 0

    def test_backfill_is_idempotent(self, engine, make_item):
        _unembedded(engine, make_item, 5)
        engine.maintenance.run_backfill()

        again = engine.maintenance.run_backfill()

        assert again.processed == 0
        assert again.metadata["candidates"] == 0
        assert again.batches == 0

    def test_dry_run_writes_nothing(self, engine, make_item):
        _unembedded(engine, make_item, 12)

        run = engine.maintenance.run_backfill(batch_size=5, dry_run=True)

        assert run.dry_run
        assert run.processed == 0
        assert run.batches == 3
        assert run.metadata["would_process"] == 12
        assert run.metadata["estimated_tokens"] > 0
        assert run.cost_estimate > 0
        assert engine.content_store.count_by_status()["ready"] == 0
        assert engine.vector_store.list_records() == []

    def test_type_scope_and_limit(self, engine, make_item):
        _unembedded(engine, make_item, 4)
        engine.add_content(make_item("f1", "file body", type="file"), embed=False)
        engine.add_content(make_item("b1", "other scope", scope="B"), embed=False)

        files = engine.maintenance.run_backfill(content_type="file")
        assert files.processed == 1
        assert engine.content_store.get("f1").is_ready

        scoped = engine.maintenance.run_backfill(scope="B")
        assert scoped.processed == 1

        limited = engine.maintenance.run_backfill(limit=2)
        assert limited.processed == 2
        assert len(engine.content_store.list_unembedded()) == 2

    def test_failures_are_counted_not_raised(self, make_engine, make_item):
        engine = make_engine(ScriptedProvider())
        engine.add_content(make_item("m1", "alpha notes"), embed=False)
        engine.add_content(make_item("m2", "poison pill"), embed=False)
        engine.add_content(make_item("m3", "beta notes"), embed=False)

        run = engine.maintenance.run_backfill()

        assert run.processed == 2
        assert run.failed == 1
        assert any(error.startswith("m2:") for error in run.errors)
        assert engine.content_store.get("m2").embedding_status == EmbeddingStatus.FAILED

    def test_invalid_batch_size(self, engine):
        with pytest.raises(ValidationError):
            engine.maintenance.run_backfill(batch_size=0)

    def test_request_stop_finishes_in_flight_batch_only(self, make_engine, make_item):
        provider = GatedProvider()
        engine = make_engine(provider, maintenance_workers=1)
        _unembedded(engine, make_item, 3)
        runs = []

        worker = threading.Thread(target=lambda: runs.append(engine.maintenance.run_backfill(batch_size=1)))
        worker.start()
        assert provider.entered.wait(5)
        engine.maintenance.request_stop()
        provider.release.set()
        worker.join(10)

        run = runs[0]
        assert run.stopped_early
        assert run.processed == 1
        assert run.batches == 1
        assert engine.content_store.count_by_status()["ready"] == 1

    def test_one_run_at_a_time(self, engine):
        engine.maintenance._run_lock.acquire()
        try:
            with pytest.raises(MaintenanceError):
                engine.maintenance.run_backfill()
        finally:
            engine.maintenance._run_lock.release()

        assert engine.maintenance.run_backfill().processed == 0


class TestDedupScan:
    """Near-duplicate detection flags pairs and never deletes."""

    def test_similar_entries_are_flagged(self, make_engine, make_item):
        engine = make_engine(StaticEmbedding({"alpha": BASE, "beta": SIMILAR}))
        engine.add_content(make_item("k1", "alpha fact", type="knowledge"))
        engine.add_content(make_item("k2", "beta fact", type="knowledge"))

        run = engine.maintenance.run_dedup_scan("knowledge", scope="A")

        assert run.flagged_duplicates == 1
        candidate = run.duplicates[0]
        assert {candidate.item_id, candidate.duplicate_of} == {"k1", "k2"}
        assert candidate.score == pytest.approx(0.97, abs=1e-4)

        # Flagged only: both entries and their vectors remain
        assert engine.content_store.get("k1").is_ready
        assert engine.content_store.get("k2").is_ready
        assert engine.vector_store.get("k1") is not None
        assert engine.vector_store.get("k2") is not None
        assert len(engine.content_store.list_duplicate_candidates(run.run_id)) == 1

    def test_threshold_is_strict(self, make_engine, make_item):
        engine = make_engine(StaticEmbedding({"alpha": BASE, "beta": SIMILAR}))
        engine.add_content(make_item("k1", "alpha fact", type="knowledge"))
        engine.add_content(make_item("k2", "beta fact", type="knowledge"))

        assert engine.maintenance.run_dedup_scan("knowledge", threshold=0.98).flagged_duplicates == 0

    def test_scopes_are_not_compared(self, make_engine, make_item):
        engine = make_engine(StaticEmbedding({"alpha": BASE, "beta": SIMILAR}))
        engine.add_content(make_item("k1", "alpha fact", type="knowledge", scope="A"))
        engine.add_content(make_item("k2", "beta fact", type="knowledge", scope="B"))

        run = engine.maintenance.run_dedup_scan("knowledge")

        assert run.flagged_duplicates == 0
        assert run.processed == 2
        assert run.skipped == 2

    def test_invalid_threshold(self, engine):
        with pytest.raises(ValidationError):
            engine.maintenance.run_dedup_scan("knowledge", threshold=1.5)


class TestOrphanCleanup:
    def test_removes_vectors_of_deleted_items(self, engine, make_item):
        engine.add_content(make_item("m1", "kickoff notes"))
        engine.add_content(make_item("m2", "pasta recipe"))
        engine.content_store.delete("m1")

        run = engine.maintenance.run_orphan_cleanup()

        assert run.processed == 1
        assert run.metadata["orphaned_items"] == 1
        assert engine.vector_store.get("m1") is None
        assert engine.vector_store.get("m2") is not None

    def test_purges_retired_model_cache_entries(self, engine):
        engine.cache.put("retired", [1.0] * 16, "old-model")
        engine.cache.put("current", [1.0] * 16, engine.pipeline.model_version)

        run = engine.maintenance.run_orphan_cleanup()

        assert run.metadata["cache_entries_removed"] == 1
        assert "retired" not in engine.cache
        assert "current" in engine.cache

    def test_dry_run(self, engine, make_item):
        engine.add_content(make_item("m1", "kickoff notes"))
        engine.content_store.delete("m1")

        run = engine.maintenance.run_orphan_cleanup(dry_run=True)

        assert run.metadata["would_remove"] == 1
        assert engine.vector_store.get("m1") is not None


class TestRunLog:
    def test_every_run_is_recorded_and_emitted(self, engine, make_item, recorder):
        _unembedded(engine, make_item, 2)
        engine.maintenance.run_backfill(dry_run=True)
        engine.maintenance.run_backfill()
        engine.maintenance.run_orphan_cleanup()

        runs = engine.maintenance.list_runs()
        assert [r["operation"] for r in runs] == ["orphan_cleanup", "backfill", "backfill"]
        assert runs[2]["dry_run"] is True

        summaries = recorder.named(JOB_SUMMARY)
        assert [s["operation"] for s in summaries] == ["backfill", "backfill", "orphan_cleanup"]
        assert summaries[1]["processed"] == 2
