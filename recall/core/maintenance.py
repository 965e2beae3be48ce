"""
Maintenance routines: embedding backfill, near-duplicate scan, orphan cleanup.

Each routine is safe to re-run, processes work on a bounded worker pool,
counts per-item failures instead of aborting, and appends a MaintenanceRun
summary to the content store's run log.
"""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from util.logging import logger

from ..vector.index import IVectorStore
from .cache import EmbeddingCache
from .content_store import IContentStore
from .errors import MaintenanceError, ValidationError
from .models import ContentItem, ContentType, DuplicateCandidate, MaintenanceRun
from .pipeline import BatchReport, EmbeddingPipeline
from .telemetry import JOB_SUMMARY, TelemetryEmitter

BACKFILL = "backfill"
DEDUP_SCAN = "dedup_scan"
ORPHAN_CLEANUP = "orphan_cleanup"


class MaintenanceJob:
    """Operator-triggered maintenance over the content and vector stores."""

    def __init__(self, pipeline: EmbeddingPipeline, vector_store: IVectorStore, content_store: IContentStore,
                 cache: EmbeddingCache, telemetry: TelemetryEmitter = None, workers: int = 3,
                 batch_size: int = 50, dedup_threshold: float = 0.95):
        self.pipeline = pipeline
        self.vector_store = vector_store
        self.content_store = content_store
        self.cache = cache
        self.telemetry = telemetry or pipeline.telemetry
        self.workers = max(1, workers)
        self.batch_size = batch_size
        self.dedup_threshold = dedup_threshold
        self._stop = threading.Event()
        self._run_lock = threading.Lock()

    def request_stop(self) -> None:
        """Finish in-flight batches, then stop before starting new ones."""
        self._stop.set()
        logger.log_operation("maintenance.stop", "requested")

    def run_backfill(self, content_type: Union[str, ContentType] = None, scope: Optional[str] = None,
                     batch_size: int = None, dry_run: bool = False, limit: Optional[int] = None,
                     cancel: threading.Event = None) -> MaintenanceRun:
        """
        Embed items whose status is not ready, oldest first.

        Args:
            content_type: Restrict to one content type
            scope: Restrict to one scope
            batch_size: Items handed to the pipeline per batch
            dry_run: Report what would be processed and its estimated cost without writing
            limit: Maximum number of items to consider
            cancel: Cancellation token; unlike request_stop it also aborts provider waits

        Returns:
            MaintenanceRun summary
        """
        batch_size = self.batch_size if batch_size is None else batch_size
        if batch_size < 1:
            raise ValidationError("batch_size must be at least 1")
        content_type = ContentType.parse(content_type) if content_type is not None else None

        with self._exclusive(BACKFILL, dry_run) as run:
            items = self.content_store.list_unembedded(content_type, scope, limit)
            batches = [items[i:i + batch_size] for i in range(0, len(items), batch_size)]
            run.metadata.update({
                "content_type": content_type.value if content_type else None,
                "scope": scope,
                "batch_size": batch_size,
                "candidates": len(items),
            })

            if dry_run:
                tokens, cost = self.pipeline.estimate_cost(items)
                run.batches = len(batches)
                run.cost_estimate = cost
                run.metadata["would_process"] = len(items)
                run.metadata["estimated_tokens"] = tokens
                return run

            tokens_before = self.pipeline.stats()["tokens_billed"]
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="backfill") as pool:
                futures = [pool.submit(self._backfill_batch, batch, cancel) for batch in batches]
                outcomes = [future.result() for future in futures]

            for batch, outcome in zip(batches, outcomes):
                if outcome is None:
                    run.stopped_early = True
                    continue
                run.batches += 1
                if isinstance(outcome, Exception):
                    run.failed += len(batch)
                    run.errors.append(f"Batch starting at {batch[0].id} failed: {outcome}")
                    continue
                run.processed += outcome.succeeded
                run.failed += outcome.failed
                run.skipped += outcome.skipped + outcome.pending
                run.errors.extend(
                    f"{result.item_id}: {result.reason}" for result in outcome.results if result.reason and not result.ok
                )

            tokens = self.pipeline.stats()["tokens_billed"] - tokens_before
            run.metadata["tokens_billed"] = tokens
            run.cost_estimate = tokens / 1000.0 * self.pipeline.price_per_1k_tokens
            return run

    def _backfill_batch(self, batch: List[ContentItem],
                        cancel: Optional[threading.Event]) -> Union[BatchReport, Exception, None]:
        if self._stop.is_set() or (cancel is not None and cancel.is_set()):
            return None
        try:
            return self.pipeline.embed_and_store_many(batch, cancel=cancel)
        except Exception as e:
            logger.error(f"Backfill batch of {len(batch)} items failed: {e}")
            return e

    def run_dedup_scan(self, content_type: Union[str, ContentType], scope: Optional[str] = None,
                       threshold: float = None, cancel: threading.Event = None) -> MaintenanceRun:
        """
        Flag near-duplicate pairs within a scope and type.

        An item's nearest other item with similarity strictly above the
        threshold is recorded as a candidate. Nothing is deleted or merged.
        """
        content_type = ContentType.parse(content_type)
        threshold = self.dedup_threshold if threshold is None else threshold
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be within [0, 1]")

        with self._exclusive(DEDUP_SCAN, False) as run:
            items = self.content_store.list_ready(content_type, scope)
            ready_ids = {item.id for item in items}
            run.metadata.update({"content_type": content_type.value, "scope": scope, "threshold": threshold})

            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="dedup") as pool:
                futures = [pool.submit(self._nearest_other, item, content_type, cancel) for item in items]
                outcomes = [future.result() for future in futures]

            seen: Set[Tuple[str, str]] = set()
            for item, outcome in zip(items, outcomes):
                if outcome is None:
                    run.stopped_early = True
                    continue
                if isinstance(outcome, Exception):
                    run.failed += 1
                    run.errors.append(f"{item.id}: {outcome}")
                    continue
                run.processed += 1

                neighbor_id, score = outcome
                if neighbor_id is None:
                    run.skipped += 1
                    continue
                pair = tuple(sorted((item.id, neighbor_id)))
                if score > threshold and neighbor_id in ready_ids and pair not in seen:
                    seen.add(pair)
                    run.duplicates.append(DuplicateCandidate(
                        item_id=item.id,
                        duplicate_of=neighbor_id,
                        score=round(score, 6),
                        scope=item.scope_id,
                        type=content_type,
                    ))

            run.flagged_duplicates = len(run.duplicates)
            return run

    def _nearest_other(self, item: ContentItem, content_type: ContentType, cancel: Optional[threading.Event]):
        if self._stop.is_set() or (cancel is not None and cancel.is_set()):
            return None
        try:
            record = self.vector_store.get(item.id)
            if record is None or record.vector is None:
                return (None, 0.0)
            neighbors = self.vector_store.nearest_neighbors(
                record.vector,
                content_type.value,
                scope=item.scope_id,
                filters={"exclude_parent": item.id},
                limit=1,
            )
            if not neighbors:
                return (None, 0.0)
            return (neighbors[0].parent_id, neighbors[0].score)
        except Exception as e:
            logger.warning(f"Dedup lookup failed for {item.id}: {e}")
            return e

    def run_orphan_cleanup(self, dry_run: bool = False) -> MaintenanceRun:
        """Remove vector records whose content item is gone and cache entries of retired models."""
        with self._exclusive(ORPHAN_CLEANUP, dry_run) as run:
            records = self.vector_store.list_records()
            parents = {record.parent_id for record in records}
            existing = self.content_store.exists_many(parents)
            orphans = parents - existing
            orphan_records = [record for record in records if record.parent_id in orphans]

            run.metadata.update({
                "vector_records_scanned": len(records),
                "orphaned_items": len(orphans),
                "orphaned_records": len(orphan_records),
            })

            if dry_run:
                run.metadata["would_remove"] = len(orphan_records)
                return run

            for record in orphan_records:
                try:
                    if self.vector_store.delete(record.id):
                        run.processed += 1
                    else:
                        run.skipped += 1
                except Exception as e:
                    run.failed += 1
                    run.errors.append(f"Failed to remove orphaned vector {record.id}: {e}")

            purged = self.cache.purge_model_versions([self.pipeline.model_version])
            run.metadata["cache_entries_removed"] = purged
            return run

    def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self.content_store.list_runs(limit)

    def _exclusive(self, operation: str, dry_run: bool) -> "_RunContext":
        return _RunContext(self, operation, dry_run)

    def _finish(self, run: MaintenanceRun) -> None:
        run.completed_at = datetime.now()
        try:
            self.content_store.record_run(run)
        except Exception as e:
            run.errors.append(f"Failed to record run: {e}")
            logger.error(f"Failed to record maintenance run {run.run_id}: {e}")
        self.telemetry.emit(JOB_SUMMARY, **run.to_dict())


class _RunContext:
    """One maintenance run at a time; the summary is recorded on exit."""

    def __init__(self, job: MaintenanceJob, operation: str, dry_run: bool):
        self.job = job
        self.run = MaintenanceRun(
            run_id=f"{operation}-{uuid.uuid4().hex[:12]}",
            operation=operation,
            started_at=datetime.now(),
            dry_run=dry_run,
        )

    def __enter__(self) -> MaintenanceRun:
        if not self.job._run_lock.acquire(blocking=False):
            raise MaintenanceError("Another maintenance run is in progress")
        self.job._stop.clear()
        return self.run

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc is not None:
                self.run.errors.append(f"{self.run.operation} aborted: {exc}")
            self.job._finish(self.run)
        finally:
            self.job._run_lock.release()
        return False
