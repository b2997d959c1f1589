"""Error taxonomy for the ingestion pipeline."""

from typing import Any, Optional


class IngestionError(Exception):
    """Base class for all ingestion errors."""


class UpstreamError(IngestionError):
    """Error raised while talking to the upstream API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class TransientUpstreamError(UpstreamError):
    """Retryable failure: timeout, 5xx or network reset."""


class PermanentUpstreamError(UpstreamError):
    """Non-retryable failure: 4xx other than 429."""


class RateLimitError(UpstreamError):
    """Upstream quota exhausted (429, or 403 with no remaining calls)."""

    def __init__(
        self,
        message: str,
        reset_at: Optional[float] = None,
        category: str = "core",
        status_code: Optional[int] = 429,
        endpoint: Optional[str] = None,
    ):
        super().__init__(message, status_code=status_code, endpoint=endpoint)
        self.reset_at = reset_at
        self.category = category


class CircuitOpenError(UpstreamError):
    """Raised without a network attempt while a circuit is open."""

    def __init__(self, endpoint_group: str, retry_after: float = 0.0):
        super().__init__(
            f"Circuit open for '{endpoint_group}', retry in {retry_after:.1f}s",
            endpoint=endpoint_group,
        )
        self.endpoint_group = endpoint_group
        self.retry_after = retry_after


class StageError(IngestionError):
    """Wraps an exception raised by a pipeline stage."""

    def __init__(self, stage: str, cause: BaseException, context: Any = None):
        super().__init__(f"Stage '{stage}' failed: {cause}")
        self.stage = stage
        self.cause = cause
        self.context = context


class PipelineConfigurationError(IngestionError):
    """Invalid stage or pipeline registration."""


class PipelineNotFoundError(IngestionError):
    """Pipeline type is not registered."""


class ScheduleValidationError(IngestionError):
    """Bad cron expression, unknown pipeline type or invalid patch."""


class ScheduleNotFoundError(IngestionError):
    """No schedule exists with the given id."""

    def __init__(self, schedule_id: str):
        super().__init__(f"Schedule not found: {schedule_id}")
        self.schedule_id = schedule_id
