"""
Structured telemetry events for external metrics and log collectors.

Event names: itemEmbedded, cacheHit, cacheMiss, batchCompleted, itemFailed,
jobSummary. Every event is logged; listeners receive (event, payload).
"""

import threading
from typing import Any, Callable, Dict, List

from util.logging import StructuredLogger, logger as default_logger

ITEM_EMBEDDED = "itemEmbedded"
CACHE_HIT = "cacheHit"
CACHE_MISS = "cacheMiss"
BATCH_COMPLETED = "batchCompleted"
ITEM_FAILED = "itemFailed"
JOB_SUMMARY = "jobSummary"

EVENTS = (ITEM_EMBEDDED, CACHE_HIT, CACHE_MISS, BATCH_COMPLETED, ITEM_FAILED, JOB_SUMMARY)

Listener = Callable[[str, Dict[str, Any]], None]


class TelemetryEmitter:
    """Thread-safe event fan-out with logging."""

    def __init__(self, logger: StructuredLogger = None):
        self.logger = logger or default_logger
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {name: 0 for name in EVENTS}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: str, **payload) -> None:
        if event not in self._counts:
            raise ValueError(f"Unknown telemetry event: {event}")

        with self._lock:
            self._counts[event] += 1
            listeners = list(self._listeners)

        if event == JOB_SUMMARY:
            self.logger.log_maintenance_run(payload.get("operation", "job"), payload)
        else:
            self.logger.log_pipeline_event(event, payload)

        for listener in listeners:
            try:
                listener(event, payload)
            except Exception as e:
                self.logger.warning(f"Telemetry listener failed for {event}: {e}")

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)


class EventRecorder:
    """Listener that keeps every event in memory, for diagnostics and tests."""

    def __init__(self):
        self.events: List[tuple] = []
        self._lock = threading.Lock()

    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((event, payload))

    def named(self, event: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [payload for name, payload in self.events if name == event]
