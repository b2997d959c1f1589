"""Deterministic GitHub API payloads and test doubles."""

import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional


def get_sample_repository(full_name: str = "octocat/hello-world", github_id: int = 1296269) -> Dict[str, Any]:
    owner, _, name = full_name.partition("/")
    return {
        "id": github_id,
        "name": name,
        "full_name": full_name,
        "owner": {"login": owner, "id": github_id + 1, "type": "User"},
        "description": "My first repository",
        "html_url": f"https://github.com/{full_name}",
        "stargazers_count": 80,
        "forks_count": 9,
        "language": "Python",
        "open_issues_count": 3,
        "subscribers_count": 12,
        "topics": ["demo"],
    }


def get_sample_pull_requests(count: int = 5, seed: int = 42, base_id: int = 5000) -> List[Dict[str, Any]]:
    """
    Generate deterministic closed pull request payloads.

    Args:
        count: Number of pull requests
        seed: Random seed for author assignment
        base_id: First pull request id

    Returns:
        List of pull request payloads
    """
    rng = random.Random(seed)
    authors = [{"login": f"dev-{i}", "id": 1000 + i} for i in range(3)]

    pulls = []
    for i in range(count):
        pulls.append({
            "id": base_id + i,
            "number": i + 1,
            "title": f" Fix issue {i + 1} ",
            "state": "closed",
            "user": rng.choice(authors),
            "created_at": "2024-01-01T00:00:00Z",
            "closed_at": "2024-01-02T00:00:00Z",
            "merged_at": "2024-01-02T00:00:00Z" if i % 2 == 0 else None,
        })
    return pulls


def get_sample_commit(sha: str = "6dcb09b5b57875f334f61aebed695e2e4193db5e") -> Dict[str, Any]:
    return {
        "sha": sha,
        "commit": {"message": "Fix all the bugs\n", "author": {"name": "Monalisa", "date": "2024-01-01T12:00:00Z"}},
        "author": {"login": "octocat", "id": 1},
        "stats": {"additions": 104, "deletions": 4, "total": 108},
    }


class FakeClock:
    """Fake monotonic clock; usable as a Clock or as a `now` callable."""

    def __init__(self, initial_time: float = 0.0):
        self._current_time = initial_time

    def now(self) -> float:
        return self._current_time

    def __call__(self) -> float:
        return self._current_time

    def advance(self, seconds: float) -> None:
        self._current_time += seconds


class FakeWallClock:
    """Settable UTC datetime source for scheduler tests."""

    def __init__(self, current: datetime):
        self.current = current

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class RecordingSleeper:
    """Async sleep replacement that records requested delays without waiting."""

    def __init__(self, on_sleep: Optional[Any] = None):
        self.delays: List[float] = []
        self._on_sleep = on_sleep

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._on_sleep:
            self._on_sleep(seconds)
