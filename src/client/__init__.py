"""Resilient GitHub API client layer."""

from .batch_executor import run_batch
from .cache import ResponseCache
from .circuit_breaker import CircuitBreaker
from .github_api import GitHubAPI
from .http_client import AsyncHTTPClient
from .quota_tracker import QuotaTracker
from .resilient_client import ResilientClient
from .retry_handler import RetryPolicy

__all__ = [
    "AsyncHTTPClient",
    "CircuitBreaker",
    "GitHubAPI",
    "QuotaTracker",
    "ResilientClient",
    "ResponseCache",
    "RetryPolicy",
    "run_batch",
]
