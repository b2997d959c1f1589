"""Core data models for the GitHub ingestion pipeline."""

import json
import random
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RunState(Enum):
    """Pipeline run lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Path prefixes mapped to logical endpoint groups, most specific first
_ENDPOINT_GROUPS: Tuple[Tuple[str, str], ...] = (
    ("/search", "search"),
    ("/rate_limit", "rate-limit"),
    ("/users", "users"),
)


@dataclass(frozen=True)
class RequestSignature:
    """Identity of an outbound request: method, endpoint and normalized params."""
    method: str
    endpoint: str
    params: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def create(
        cls,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> "RequestSignature":
        normalized = tuple(sorted((params or {}).items()))
        return cls(method=method.upper(), endpoint=endpoint, params=normalized)

    @property
    def key(self) -> str:
        return f"{self.method}:{self.endpoint}:{json.dumps(dict(self.params), sort_keys=True, default=str)}"

    @property
    def endpoint_group(self) -> str:
        """Logical group used for circuit breaking, e.g. 'pull-requests'."""
        for prefix, group in _ENDPOINT_GROUPS:
            if self.endpoint.startswith(prefix):
                return group
        if self.endpoint.startswith("/repos/"):
            if "/pulls" in self.endpoint:
                return "pull-requests"
            if "/commits" in self.endpoint:
                return "commits"
            return "repositories"
        return "default"


@dataclass
class CacheEntry:
    """Cached response value with absolute expiry time."""
    key: str
    value: Any
    expires_at: float


@dataclass
class HalfOpenToken:
    """Token for tracking the single half-open trial request."""
    endpoint: str
    timestamp: float


@dataclass
class QuotaSnapshot:
    """Upstream quota state for one category (core, search, graphql)."""
    category: str
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[float] = None  # epoch seconds
    used: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "used": self.used,
        }


@dataclass
class BatchItemResult:
    """Outcome of a single operation in a batch."""
    index: int
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchResult:
    """Aggregate outcome of a batch run."""
    results: List[BatchItemResult]
    success_count: int
    failure_count: int

    @property
    def errors(self) -> List[BaseException]:
        return [r.error for r in self.results if not r.ok]


@dataclass(frozen=True)
class PipelineDefinition:
    """Immutable description of a pipeline: ordered stage names plus run options."""
    pipeline_type: str
    stages: Tuple[str, ...]
    concurrency: int = 1
    max_retries: int = 3
    fatal_stages: FrozenSet[str] = frozenset()
    description: str = ""
    stage_options: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def options_for(self, stage: str) -> Dict[str, Any]:
        return dict(self.stage_options.get(stage, {}))

    def is_fatal(self, stage: str) -> bool:
        return stage in self.fatal_stages


@dataclass(frozen=True)
class StageErrorRecord:
    """Error captured from a stage during a run."""
    stage: str
    message: str
    error_type: str
    timestamp: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "stage": self.stage,
            "message": self.message,
            "error_type": self.error_type,
            "timestamp": self.timestamp,
        }


def generate_run_id() -> str:
    return f"run-{int(time.time() * 1000)}-{random.randint(0, 999999):06d}"


@dataclass(frozen=True)
class PipelineRunContext:
    """
    Accumulator threaded through the stages of one run.

    Stages never mutate a context in place; every helper returns a new
    context so each stage's contribution is visible in what it returns.
    """
    pipeline_type: str
    run_id: str = field(default_factory=generate_run_id)
    params: Dict[str, Any] = field(default_factory=dict)
    stats: Dict[str, int] = field(default_factory=dict)
    errors: Tuple[StageErrorRecord, ...] = ()
    entity_counts: Dict[str, int] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)
    state: RunState = RunState.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def with_data(self, **values: Any) -> "PipelineRunContext":
        return replace(self, data={**self.data, **values})

    def increment_stat(self, name: str, amount: int = 1) -> "PipelineRunContext":
        stats = dict(self.stats)
        stats[name] = stats.get(name, 0) + amount
        return replace(self, stats=stats)

    def add_entity_count(self, entity_type: str, amount: int) -> "PipelineRunContext":
        counts = dict(self.entity_counts)
        counts[entity_type] = counts.get(entity_type, 0) + amount
        return replace(self, entity_counts=counts)

    def record_error(self, stage: str, error: BaseException) -> "PipelineRunContext":
        record = StageErrorRecord(
            stage=stage,
            message=str(error),
            error_type=type(error).__name__,
            timestamp=utc_now().isoformat(),
        )
        return replace(self, errors=self.errors + (record,))

    def mark_running(self) -> "PipelineRunContext":
        return replace(self, state=RunState.RUNNING, started_at=utc_now())

    def mark_completed(self) -> "PipelineRunContext":
        return replace(self, state=RunState.COMPLETED, completed_at=utc_now())

    def mark_failed(self) -> "PipelineRunContext":
        return replace(self, state=RunState.FAILED, completed_at=utc_now())

    @property
    def items_processed(self) -> int:
        return sum(self.entity_counts.values())

    def summary(self) -> Dict[str, Any]:
        duration = None
        if self.started_at and self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()
        return {
            "run_id": self.run_id,
            "pipeline_type": self.pipeline_type,
            "state": self.state.value,
            "success": self.state == RunState.COMPLETED and not self.errors,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "duration_seconds": duration,
            "stats": dict(self.stats),
            "entity_counts": dict(self.entity_counts),
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class ScheduleRecord:
    """Persisted schedule binding a cron expression to a pipeline type."""
    id: str
    name: str
    pipeline_type: str
    cron_expression: str
    time_zone: str = "UTC"
    description: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    is_running: bool = False
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_result: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "pipeline_type": self.pipeline_type,
            "cron_expression": self.cron_expression,
            "time_zone": self.time_zone,
            "description": self.description,
            "parameters": self.parameters,
            "is_active": self.is_active,
            "is_running": self.is_running,
            "last_run_at": to_iso(self.last_run_at),
            "next_run_at": to_iso(self.next_run_at),
            "last_result": self.last_result,
        }


# Entities extracted from upstream payloads


@dataclass
class Repository:
    github_id: int
    full_name: str
    name: str
    owner_login: Optional[str]
    description: Optional[str] = None
    url: Optional[str] = None
    stars: int = 0
    forks: int = 0
    language: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "github_id": self.github_id,
            "full_name": self.full_name,
            "name": self.name,
            "owner_login": self.owner_login,
            "description": self.description,
            "url": self.url,
            "stars": self.stars,
            "forks": self.forks,
            "language": self.language,
            "updated_at": utc_now(),
        }


@dataclass
class Contributor:
    github_id: int
    login: str
    avatar_url: Optional[str] = None
    html_url: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "github_id": self.github_id,
            "login": self.login,
            "avatar_url": self.avatar_url,
            "html_url": self.html_url,
            "updated_at": utc_now(),
        }


@dataclass
class MergeRequest:
    github_id: int
    repository_full_name: str
    number: int
    title: str
    state: str
    author_login: Optional[str] = None
    author_id: Optional[int] = None
    created_at: Optional[str] = None
    closed_at: Optional[str] = None
    merged_at: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "github_id": self.github_id,
            "repository_full_name": self.repository_full_name,
            "number": self.number,
            "title": self.title,
            "state": self.state,
            "author_login": self.author_login,
            "author_id": self.author_id,
            "created_at": self.created_at,
            "closed_at": self.closed_at,
            "merged_at": self.merged_at,
            "updated_at": utc_now(),
        }


@dataclass
class Commit:
    sha: str
    repository_full_name: str
    message: str
    author_login: Optional[str] = None
    committed_at: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "sha": self.sha,
            "repository_full_name": self.repository_full_name,
            "message": self.message,
            "author_login": self.author_login,
            "committed_at": self.committed_at,
            "updated_at": utc_now(),
        }


@dataclass
class RawDataRecord:
    """Unprocessed upstream payload keyed by (entity_type, github_id)."""
    entity_type: str
    github_id: str
    data: Dict[str, Any]
    api_endpoint: Optional[str] = None
    etag: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "github_id": self.github_id,
            "data": self.data,
            "api_endpoint": self.api_endpoint,
            "etag": self.etag,
            "fetched_at": utc_now(),
        }
