"""Structured logging for ingestion monitoring."""

import json
import logging
from typing import Any, Optional


class StructuredLogger:
    """Structured logger with uniform schema."""

    def __init__(self, name: str = "ingest", level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        """
        Log structured event.

        Standard keys: event, endpoint, group, status, attempt, elapsed_ms,
                      cb_state, stage, run_id, schedule_id, pipeline_type
        """
        log_data = {"event": event, **kwargs}
        self.logger.log(level, json.dumps(log_data, default=str))

    def warning(self, event: str, **kwargs: Any) -> None:
        self.log(event, level=logging.WARNING, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self.log(event, level=logging.ERROR, **kwargs)

    def request_start(self, endpoint: str, attempt: int) -> None:
        self.log("request_start", level=logging.DEBUG, endpoint=endpoint, attempt=attempt)

    def request_success(self, endpoint: str, elapsed_ms: float) -> None:
        self.log("request_success", level=logging.DEBUG, endpoint=endpoint, elapsed_ms=elapsed_ms)

    def request_error(self, endpoint: str, status: Optional[int], error: str, attempt: int) -> None:
        self.warning("request_error", endpoint=endpoint, status=status, error=error, attempt=attempt)

    def cache_hit(self, key: str) -> None:
        self.log("cache_hit", level=logging.DEBUG, key=key)

    def circuit_breaker_state(self, group: str, state: str) -> None:
        self.log("circuit_breaker", group=group, cb_state=state)

    def quota_wait(self, category: str, remaining: Optional[int], wait_seconds: float) -> None:
        self.warning("quota_wait", category=category, remaining=remaining, wait_seconds=round(wait_seconds, 3))

    def batch_processed(self, batch_size: int, succeeded: int, failed: int, elapsed_ms: float) -> None:
        self.log("batch_processed", batch_size=batch_size, succeeded=succeeded, failed=failed, elapsed_ms=elapsed_ms)

    def stage_start(self, run_id: str, stage: str) -> None:
        self.log("stage_start", run_id=run_id, stage=stage)

    def stage_complete(self, run_id: str, stage: str, elapsed_ms: float) -> None:
        self.log("stage_complete", run_id=run_id, stage=stage, elapsed_ms=elapsed_ms)

    def stage_error(self, run_id: str, stage: str, error: str, fatal: bool) -> None:
        self.error("stage_error", run_id=run_id, stage=stage, error=error, fatal=fatal)

    def schedule_fired(self, schedule_id: str, pipeline_type: str) -> None:
        self.log("schedule_fired", schedule_id=schedule_id, pipeline_type=pipeline_type)

    def schedule_skipped(self, schedule_id: str, pipeline_type: str) -> None:
        self.warning("schedule_skipped", schedule_id=schedule_id, pipeline_type=pipeline_type, reason="already_running")
