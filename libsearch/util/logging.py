"""
Structured logging for index builds, cache consistency and search.
"""

import logging
from typing import Any, Dict, List, Optional


class StructuredLogger:
    """Structured logger for embedding, cache, migration and search operations."""

    def __init__(self, name: str = "libsearch"):
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

    def log_embedding_batch(self, batch_index: int, total_batches: int, processed: int, total: int,
                            status: str = "success", details: Dict[str, Any] = None):
        """Log progress of one embedding batch."""
        log_details = {
            "batch": f"{batch_index + 1}/{total_batches}",
            "processed": f"{processed}/{total}",
        }
        if details:
            log_details.update(details)

        self.log_operation("embedding.batch", status, log_details)

    def log_rate_limit(self, batch_index: int, attempt: int, max_retries: int, wait_sec: float):
        """Log a throttled provider call and the backoff applied."""
        self.log_operation("embedding.rate_limited", "retrying", {
            "batch": batch_index,
            "attempt": f"{attempt}/{max_retries}",
            "wait_sec": wait_sec,
        }, level=logging.WARNING)

    def log_cache_event(self, event: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a cache consistency decision (validated, stale, extended, committed)."""
        self.log_operation(f"cache.{event}", status, details)

    def log_persistence_failure(self, target: str, error: Exception):
        """Log a failed cache or database write. These are non-fatal."""
        self.log_operation("persistence.write", "failed", {
            "target": target,
            "error": str(error)[:200],
        }, level=logging.WARNING)

    def log_search(self, mode: str, query: str, result_count: int, top_score: Optional[float] = None,
                   duration_ms: Optional[float] = None):
        """Log a search request. Query text is truncated."""
        details = {
            "query": query[:50] + "..." if len(query) > 50 else query,
            "results": result_count,
        }
        if top_score is not None:
            details["top_score"] = top_score
        if duration_ms is not None:
            details["duration_ms"] = duration_ms

        self.log_operation(f"search.{mode}", "success", details)

    def log_migration(self, operation: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a library migration step."""
        self.log_operation(f"migration.{operation}", status, details)

    def log_row_warning(self, row_number: int, reason: str):
        """Log a skipped or repaired library row."""
        self.log_operation("library.row", "skipped", {"row": row_number, "reason": reason},
                           level=logging.WARNING)

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


def sanitize_details(details: Dict[str, Any], secret_fields: List[str] = None) -> Dict[str, Any]:
    """Redact secret fields before logging configuration or request metadata."""
    if secret_fields is None:
        secret_fields = ['client_secret', 'access_token', 'password', 'authorization']

    sanitized = {}
    for k, v in details.items():
        if k.lower() in secret_fields:
            sanitized[k] = "[REDACTED]"
        elif isinstance(v, str) and len(v) > 100:
            sanitized[k] = v[:97] + "..."
        else:
            sanitized[k] = v
    return sanitized
