"""GitHub REST API facade routed through the resilient client."""

from typing import Any, Dict, List, Optional

from src.client.http_client import AsyncHTTPClient
from src.client.resilient_client import ResilientClient
from src.models.data_models import RequestSignature


class GitHubAPI:
    """Typed GitHub reads; every request goes through ResilientClient.call."""

    def __init__(self, http_client: AsyncHTTPClient, client: ResilientClient):
        self.http_client = http_client
        self.client = client

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, use_cache: bool = True) -> Any:
        signature = RequestSignature.create("GET", path, params)

        async def executor():
            return await self.http_client.get(path, params=params)

        return await self.client.call(signature, executor, use_cache=use_cache)

    async def get_repository(self, owner: str, repo: str) -> Dict[str, Any]:
        return await self._get(f"/repos/{owner}/{repo}")

    async def get_pull_request(self, owner: str, repo: str, number: int) -> Dict[str, Any]:
        return await self._get(f"/repos/{owner}/{repo}/pulls/{number}")

    async def list_pull_requests(
        self,
        owner: str,
        repo: str,
        state: str = "closed",
        per_page: int = 100,
        page: int = 1,
    ) -> List[Dict[str, Any]]:
        params = {"state": state, "per_page": per_page, "page": page, "sort": "updated", "direction": "desc"}
        return await self._get(f"/repos/{owner}/{repo}/pulls", params) or []

    async def list_pull_request_commits(
        self,
        owner: str,
        repo: str,
        number: int,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        return await self._get(f"/repos/{owner}/{repo}/pulls/{number}/commits", {"per_page": per_page}) or []

    async def get_commit(self, owner: str, repo: str, sha: str) -> Dict[str, Any]:
        return await self._get(f"/repos/{owner}/{repo}/commits/{sha}")

    async def get_user(self, username: str) -> Dict[str, Any]:
        return await self._get(f"/users/{username}")

    async def get_rate_limits(self) -> Dict[str, Any]:
        """Fetch current quota for core/search/graphql and refresh the tracker."""
        body = await self._get("/rate_limit", use_cache=False)
        if body:
            self.client.quota.update_from_rate_limit_body(body)
        return {
            category: self.client.quota.snapshot(category).to_dict()
            for category in ("core", "search", "graphql")
        }
