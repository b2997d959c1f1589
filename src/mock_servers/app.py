"""FastAPI mock of the GitHub REST API for local runs and integration tests."""

import asyncio
import hashlib
import os
import random
import time
import zlib
from typing import Dict, Optional, Set

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse


def _stable_id(value: str) -> int:
    return zlib.crc32(value.encode("utf-8")) % 10_000_000 + 1


def _sha(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def create_mock_app(
    name: str = "mock-github",
    random_seed: Optional[int] = None,
    error_rate: float = 0.0,
    extra_latency_ms: int = 0,
    rate_limit: int = 5000,
    reset_after_seconds: int = 3600,
    pull_requests_per_repo: int = 5,
    commits_per_pull: int = 3,
    users: int = 4,
    missing_repositories: Optional[Set[str]] = None,
) -> FastAPI:
    """
    Create a mock GitHub API with configurable failure behavior.

    Args:
        name: Server name reported by /health
        random_seed: Seed for deterministic error injection
        error_rate: Probability of returning 502/503 (0.0-1.0)
        extra_latency_ms: Additional latency per request in milliseconds
        rate_limit: Calls allowed per window; exhausted calls get 429
        reset_after_seconds: Window length used for X-RateLimit-Reset
        pull_requests_per_repo: Closed pull requests generated per repository
        commits_per_pull: Commits generated per pull request
        users: Size of the generated contributor pool
        missing_repositories: owner/repo names that return 404

    Returns:
        FastAPI application
    """
    app = FastAPI(title=f"Mock GitHub API - {name}")
    rng = random.Random(random_seed)
    missing = set(missing_repositories or ())
    quota = {"limit": rate_limit, "remaining": rate_limit, "reset": int(time.time()) + reset_after_seconds}
    app.state.quota = quota
    app.state.request_count = 0

    def rate_headers(resource: str = "core") -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(quota["limit"]),
            "X-RateLimit-Remaining": str(quota["remaining"]),
            "X-RateLimit-Reset": str(quota["reset"]),
            "X-RateLimit-Used": str(quota["limit"] - quota["remaining"]),
            "X-RateLimit-Resource": resource,
        }

    def user_payload(index: int) -> Dict:
        login = f"dev-{index}"
        return {
            "login": login,
            "id": 1000 + index,
            "avatar_url": f"https://avatars.example.com/u/{1000 + index}",
            "html_url": f"https://github.com/{login}",
            "type": "User",
        }

    def repository_payload(owner: str, repo: str) -> Dict:
        full_name = f"{owner}/{repo}"
        repo_id = _stable_id(full_name)
        return {
            "id": repo_id,
            "name": repo,
            "full_name": full_name,
            "owner": {"login": owner, "id": _stable_id(owner), "type": "User"},
            "description": f"Mock repository {full_name}",
            "html_url": f"https://github.com/{full_name}",
            "stargazers_count": repo_id % 5000,
            "forks_count": repo_id % 700,
            "language": "Python",
            "open_issues_count": repo_id % 40,
            "subscribers_count": repo_id % 90,
            "topics": ["ingestion", "mock"],
        }

    def pull_payload(owner: str, repo: str, number: int) -> Dict:
        full_name = f"{owner}/{repo}"
        author = user_payload(number % users)
        merged = number % 2 == 0
        return {
            "id": _stable_id(full_name) * 1000 + number,
            "number": number,
            "title": f"Change #{number} in {repo}",
            "state": "closed",
            "user": author,
            "created_at": "2024-01-01T00:00:00Z",
            "closed_at": "2024-01-02T00:00:00Z",
            "merged_at": "2024-01-02T00:00:00Z" if merged else None,
            "additions": number * 10,
            "deletions": number * 3,
            "changed_files": number,
            "commits": commits_per_pull,
        }

    def commit_payload(owner: str, repo: str, sha: str) -> Dict:
        author = user_payload(int(sha[:4], 16) % users)
        return {
            "sha": sha,
            "commit": {
                "message": f"Commit {sha[:7]}",
                "author": {"name": author["login"], "date": "2024-01-01T12:00:00Z"},
            },
            "author": author,
            "stats": {"additions": int(sha[:2], 16), "deletions": int(sha[2:4], 16), "total": 0},
        }

    def ensure_repository(owner: str, repo: str) -> None:
        if f"{owner}/{repo}" in missing:
            raise HTTPException(status_code=404, detail="Not Found", headers=rate_headers())

    @app.middleware("http")
    async def upstream_behavior(request: Request, call_next):
        """Apply latency, quota accounting and error injection to API routes."""
        if request.url.path == "/health":
            return await call_next(request)

        if extra_latency_ms > 0:
            await asyncio.sleep(extra_latency_ms / 1000.0)

        if request.url.path != "/rate_limit":
            app.state.request_count += 1
            now = int(time.time())
            if now >= quota["reset"]:
                quota["remaining"] = quota["limit"]
                quota["reset"] = now + reset_after_seconds
            if quota["remaining"] <= 0:
                return JSONResponse(
                    status_code=429,
                    content={"message": "API rate limit exceeded"},
                    headers=rate_headers(),
                )
            quota["remaining"] -= 1

            if rng.random() < error_rate:
                return JSONResponse(
                    status_code=rng.choice([502, 503]),
                    content={"message": "Simulated upstream error"},
                    headers=rate_headers(),
                )

        response = await call_next(request)
        for key, value in rate_headers().items():
            response.headers.setdefault(key, value)
        return response

    @app.get("/repos/{owner}/{repo}")
    async def get_repository(owner: str, repo: str):
        ensure_repository(owner, repo)
        return repository_payload(owner, repo)

    @app.get("/repos/{owner}/{repo}/pulls")
    async def list_pulls(owner: str, repo: str, state: str = "open", per_page: int = 30, page: int = 1):
        ensure_repository(owner, repo)
        if state == "open" or page < 1:
            return []
        numbers = list(range(1, pull_requests_per_repo + 1))
        start = (page - 1) * per_page
        return [pull_payload(owner, repo, n) for n in numbers[start:start + per_page]]

    @app.get("/repos/{owner}/{repo}/pulls/{number}")
    async def get_pull(owner: str, repo: str, number: int):
        ensure_repository(owner, repo)
        if number < 1 or number > pull_requests_per_repo:
            raise HTTPException(status_code=404, detail="Not Found")
        return pull_payload(owner, repo, number)

    @app.get("/repos/{owner}/{repo}/pulls/{number}/commits")
    async def list_pull_commits(owner: str, repo: str, number: int, per_page: int = 30):
        ensure_repository(owner, repo)
        if number < 1 or number > pull_requests_per_repo:
            raise HTTPException(status_code=404, detail="Not Found")
        shas = [_sha(f"{owner}/{repo}:{number}:{i}") for i in range(commits_per_pull)]
        return [commit_payload(owner, repo, sha) for sha in shas[:per_page]]

    @app.get("/repos/{owner}/{repo}/commits/{sha}")
    async def get_commit(owner: str, repo: str, sha: str):
        ensure_repository(owner, repo)
        if len(sha) < 7:
            raise HTTPException(status_code=422, detail="Invalid sha")
        return commit_payload(owner, repo, sha)

    @app.get("/users/{username}")
    async def get_user(username: str):
        if username.startswith("dev-") and username[4:].isdigit():
            payload = user_payload(int(username[4:]))
        else:
            payload = {"login": username, "id": _stable_id(username), "type": "User"}
        return {
            **payload,
            "name": username.replace("-", " ").title(),
            "company": "Mock Corp",
            "location": "Internet",
            "bio": None,
            "followers": payload["id"] % 300,
            "public_repos": payload["id"] % 50,
        }

    @app.get("/rate_limit")
    async def rate_limit_status():
        core = {
            "limit": quota["limit"],
            "remaining": quota["remaining"],
            "reset": quota["reset"],
            "used": quota["limit"] - quota["remaining"],
        }
        return {
            "resources": {
                "core": core,
                "search": {"limit": 30, "remaining": 30, "reset": quota["reset"], "used": 0},
                "graphql": {"limit": 5000, "remaining": 5000, "reset": quota["reset"], "used": 0},
            },
            "rate": core,
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "server": name}

    return app


def create_app() -> FastAPI:
    """
    Factory function for uvicorn --factory.

    Reads RANDOM_SEED, ERROR_RATE, EXTRA_LATENCY_MS and RATE_LIMIT from the environment.
    """
    return create_mock_app(
        name=os.getenv("SERVER_NAME", "mock-github"),
        random_seed=int(os.getenv("RANDOM_SEED", 42)),
        error_rate=float(os.getenv("ERROR_RATE", 0.0)),
        extra_latency_ms=int(os.getenv("EXTRA_LATENCY_MS", 0)),
        rate_limit=int(os.getenv("RATE_LIMIT", 5000)),
    )
