"""
Structured logging for the embedding engine.

Events are logged as "Operation: <op>, Status: <status>, Details: {...}" lines so
external log collectors can parse them. Text content is never logged verbatim.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for pipeline, search, and maintenance operations."""

    def __init__(self, name: str = "recall"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_vector_operation(self, operation: str, record_id: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector store operation."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details)

    def log_pipeline_event(self, event: str, details: Dict[str, Any] = None):
        """Log a pipeline telemetry event (cacheHit, batchCompleted, itemFailed, ...)."""
        status = "failed" if event == "itemFailed" else "success"
        level = logging.WARNING if status == "failed" else logging.INFO
        if event in ("cacheHit", "cacheMiss"):
            level = logging.DEBUG
        self.log_operation(f"pipeline.{event}", status, sanitize_payload(details or {}), level=level)

    def log_search(self, query: str, result_count: int, elapsed_ms: float, details: Dict[str, Any] = None):
        """Log a completed search without exposing the query text."""
        log_details = {
            "query_length": len(query),
            "result_count": result_count,
            "elapsed_ms": round(elapsed_ms, 2),
        }
        if details:
            log_details.update(details)
        self.log_operation("search.completed", "success", log_details)

    def log_maintenance_run(self, operation: str, summary: Dict[str, Any]):
        """Log a maintenance run summary."""
        status = "failed" if summary.get("failed") else "success"
        log_details = {
            key: summary.get(key)
            for key in ("run_id", "processed", "failed", "skipped", "flagged_duplicates", "batches", "cost_estimate")
            if key in summary
        }
        self.log_operation(f"maintenance.{operation}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()

SENSITIVE_FIELDS = ['text', 'content', 'query', 'snippet', 'vector', 'embedding', 'api_key']


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with content redaction."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        if len(payload) > 20:
            return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload[:20]] + ["..."]
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
