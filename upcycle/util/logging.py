"""
Structured logging for the generation pipeline.
One process-wide logger; every helper funnels into log_operation.
"""

import logging
from typing import Any, Dict, List


def _truncate(value: Any, limit: int = 100) -> Any:
    if isinstance(value, str) and len(value) > limit:
        return value[:limit - 3] + "..."
    return value


class StructuredLogger:
    """Structured logger for vector, cache, lock and generation operations."""

    def __init__(self, name: str = "upcycle"):
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
            sanitized = {k: _truncate(v) for k, v in details.items()}
            message += f", Details: {sanitized}"

        self.logger.log(level, message)

    def log_vector_operation(self, operation: str, count: int, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector index operation."""
        log_details = {"count": count}
        if details:
            log_details.update(details)

        level = logging.WARNING if status != "success" else logging.INFO
        self.log_operation(f"vector.{operation}", status, log_details, level)

    def log_cache_event(self, event: str, prompt: str, details: Dict[str, Any] = None):
        """Log a prompt cache hit, miss or store."""
        log_details = {"prompt": _truncate(prompt, 50)}
        if details:
            log_details.update(details)

        self.log_operation(f"cache.{event}", "success", log_details)

    def log_lock_event(self, record_id: str, event: str, owner: str = None):
        """Log generation lock acquisition, contention and release."""
        log_details = {"record_id": record_id}
        if owner:
            log_details["owner"] = owner

        self.log_operation(f"lock.{event}", "success" if event != "contended" else "skipped", log_details)

    def log_generation_attempt(self, record_id: str, attempt: int, max_attempts: int, status: str = "started", details: Dict[str, Any] = None):
        """Log one attempt of a full-detail generation job."""
        log_details = {
            "record_id": record_id,
            "attempt": f"{attempt}/{max_attempts}"
        }
        if details:
            log_details.update(details)

        level = logging.INFO
        if status == "failed":
            level = logging.WARNING
        elif status == "exhausted":
            level = logging.ERROR
        self.log_operation("generation.attempt", status, log_details, level)

    def log_json_repair(self, stage: str, context: str = None):
        """Log which repair stage was needed to parse model output."""
        log_details = {"stage": stage}
        if context:
            log_details["context"] = context

        # Recurring repairs point at prompt drift, so keep them visible
        self.log_operation("json.repair", "repaired", log_details, logging.WARNING)

    def log_job_failure(self, job_name: str, errors: List[Any]):
        """Log an unexpected failure of a background job."""
        log_details = {
            "job": job_name,
            "errors": [str(error)[:100] for error in errors]
        }
        self.log_operation("background.job", "failed", log_details, logging.ERROR)

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
