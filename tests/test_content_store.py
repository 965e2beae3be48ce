"""
Tests for the SQLite content store.
"""

from datetime import datetime

from recall.core.models import ContentType, DuplicateCandidate, EmbeddingStatus, MaintenanceRun


def test_add_and_get_round_trip(content_store, make_item):
    item = make_item("k1", "Body text", type="knowledge",
                     details={"title": "Car care", "category": "automotive", "tags": ["oil"], "project_id": "p1"})
    content_store.add(item)

    stored = content_store.get("k1")
    assert stored.type == ContentType.KNOWLEDGE
    assert stored.title == "Car care"
    assert stored.details.tags == ["oil"]
    assert stored.project_id == "p1"
    assert stored.embedding_status == EmbeddingStatus.PENDING
    assert stored.created_at == item.created_at


def test_get_missing(content_store):
    assert content_store.get("nope") is None
    assert content_store.get_many([]) == {}


def test_get_many_and_exists_many(content_store, make_item):
    for i in range(3):
        content_store.add(make_item(f"m{i}", f"text {i}"))

    assert set(content_store.get_many(["m0", "m2", "x"])) == {"m0", "m2"}
    assert content_store.exists_many(["m1", "x", "y"]) == {"m1"}


def test_delete(content_store, make_item):
    content_store.add(make_item("m1", "hello"))
    assert content_store.delete("m1") is True
    assert content_store.delete("m1") is False


class TestStatusTransitions:
    """The engine only writes embedding-related fields."""

    def test_mark_ready_writes_vector_and_status_together(self, content_store, make_item):
        content_store.add(make_item("m1", "hello"))

        assert content_store.mark_ready("m1", [0.6, 0.8], "v1", chunk_count=1) is True

        stored = content_store.get("m1")
        assert stored.is_ready
        assert stored.embedding == [0.6, 0.8]
        assert stored.model_version == "v1"
        assert stored.text == "hello"

    def test_mark_failed_clears_vector(self, content_store, make_item):
        content_store.add(make_item("m1", "hello"))
        content_store.mark_ready("m1", [1.0], "v1")

        content_store.mark_failed("m1", "invalid input")

        stored = content_store.get("m1")
        assert stored.embedding_status == EmbeddingStatus.FAILED
        assert stored.embedding is None
        assert stored.failure_reason == "invalid input"

    def test_mark_pending(self, content_store, make_item):
        content_store.add(make_item("m1", "hello"))
        content_store.mark_failed("m1", "boom")
        content_store.mark_pending("m1", reason="store write failed")

        stored = content_store.get("m1")
        assert stored.embedding_status == EmbeddingStatus.PENDING
        assert stored.failure_reason == "store write failed"

    def test_updates_on_missing_item_return_false(self, content_store):
        assert content_store.mark_ready("gone", [1.0], "v1") is False
        assert content_store.mark_failed("gone", "x") is False


def test_list_unembedded_oldest_first(content_store, make_item):
    items = [make_item(f"m{i}", f"text {i}") for i in range(4)]
    for item in reversed(items):
        content_store.add(item)
    content_store.mark_ready("m1", [1.0], "v1")
    content_store.mark_failed("m2", "bad")

    assert [i.id for i in content_store.list_unembedded()] == ["m0", "m2", "m3"]
    assert [i.id for i in content_store.list_unembedded(limit=2)] == ["m0", "m2"]
    assert [i.id for i in content_store.list_ready()] == ["m1"]


def test_list_filters_by_type_and_scope(content_store, make_item):
    content_store.add(make_item("m1", "a", scope="A"))
    content_store.add(make_item("m2", "b", scope="B"))
    content_store.add(make_item("f1", "c", type="file", scope="A"))

    assert [i.id for i in content_store.list_unembedded(ContentType.MESSAGE)] == ["m1", "m2"]
    assert [i.id for i in content_store.list_unembedded(scope="A")] == ["m1", "f1"]
    assert [i.id for i in content_store.list_unembedded("file", "A")] == ["f1"]


def test_recent_titles(content_store, make_item):
    """Filenames and knowledge titles, newest first, without duplicates or messages."""
    content_store.add(make_item("f1", "a", type="file", details={"filename": "plan.md"}))
    content_store.add(make_item("k1", "b", type="knowledge", details={"title": "Roadmap"}))
    content_store.add(make_item("m1", "c"))
    content_store.add(make_item("f2", "d", type="file", details={"filename": "plan.md"}))
    content_store.add(make_item("t1", "e", type="transcript", details={"filename": "standup.m4a"}, scope="B"))

    assert content_store.recent_titles() == ["standup.m4a", "plan.md", "Roadmap"]
    assert content_store.recent_titles(scope="A") == ["plan.md", "Roadmap"]
    assert content_store.recent_titles(limit=1) == ["standup.m4a"]


def test_record_and_list_runs(content_store):
    run = MaintenanceRun(
        run_id="dedup_scan-1",
        operation="dedup_scan",
        started_at=datetime(2025, 1, 1, 12, 0, 0),
        completed_at=datetime(2025, 1, 1, 12, 0, 5),
        processed=2,
        flagged_duplicates=1,
        duplicates=[DuplicateCandidate("k2", "k1", 0.97, "A", ContentType.KNOWLEDGE)],
    )
    content_store.record_run(run)

    runs = content_store.list_runs()
    assert len(runs) == 1
    assert runs[0]["run_id"] == "dedup_scan-1"
    assert runs[0]["flagged_duplicates"] == 1

    candidates = content_store.list_duplicate_candidates("dedup_scan-1")
    assert candidates == [DuplicateCandidate("k2", "k1", 0.97, "A", ContentType.KNOWLEDGE)]


def test_count_by_status(content_store, make_item):
    content_store.add(make_item("m1", "a"))
    content_store.add(make_item("m2", "b"))
    content_store.mark_ready("m2", [1.0], "v1")

    assert content_store.count_by_status() == {"pending": 1, "ready": 1, "failed": 0}


def test_search_text(content_store, make_item):
    """Ready items only, matched on text or title, newest first."""
    content_store.add(make_item("k1", "Brake pads", type="knowledge", details={"title": "Car Care"}))
    content_store.add(make_item("m1", "Booked the car service for Friday"))
    content_store.add(make_item("m2", "car wash", scope="B"))
    content_store.add(make_item("f1", "notes", type="file", details={"filename": "car-loan.pdf"}))
    content_store.add(make_item("m3", "Car keys are on the shelf"))
    for item_id in ("k1", "m1", "m2", "f1"):
        content_store.mark_ready(item_id, [1.0], "v1")

    assert [i.id for i in content_store.search_text("CAR")] == ["f1", "m2", "m1", "k1"]
    assert [i.id for i in content_store.search_text("car", scope="A")] == ["f1", "m1", "k1"]
    assert [i.id for i in content_store.search_text("car", ["knowledge", "file"])] == ["f1", "k1"]
    assert content_store.search_text("user") == []
    assert content_store.search_text("   ") == []
