"""Unit tests for the built-in fetch, extract, store and enrich stages."""

import zlib
from typing import Dict, List
from unittest.mock import MagicMock

import pytest

from src.models.data_models import Contributor, PipelineDefinition, PipelineRunContext
from src.models.errors import PermanentUpstreamError
from src.pipeline.stages import (
    EnrichEntitiesStage,
    ExtractEntitiesStage,
    FetchRepositoriesStage,
    StoreEntitiesStage,
)
from src.storage.repositories import EntityStore
from tests.fixtures.sample_data import get_sample_commit, get_sample_pull_requests, get_sample_repository

DEFINITION = PipelineDefinition("github_sync", ("fetch-repositories",))


class FakeGitHubAPI:
    """In-memory stand-in for GitHubAPI with per-repository failures."""

    def __init__(self, failing: tuple = ()):
        self.failing = set(failing)
        self.calls: List[str] = []

    def _check(self, full_name: str) -> None:
        if full_name in self.failing:
            raise PermanentUpstreamError("HTTP 404", status_code=404, endpoint=f"/repos/{full_name}")

    async def get_repository(self, owner: str, repo: str) -> Dict:
        full_name = f"{owner}/{repo}"
        self.calls.append(f"repo:{full_name}")
        self._check(full_name)
        return get_sample_repository(full_name, github_id=zlib.crc32(full_name.encode()) % 10_000)

    async def list_pull_requests(self, owner: str, repo: str, state: str = "closed", per_page: int = 100,
                                 page: int = 1) -> List[Dict]:
        self.calls.append(f"pulls:{owner}/{repo}")
        return get_sample_pull_requests(2, base_id=zlib.crc32(repo.encode()) % 10_000 * 10)

    async def get_pull_request(self, owner: str, repo: str, number: int) -> Dict:
        return {"id": number, "additions": 5, "deletions": 1, "changed_files": 2, "commits": 1}

    async def list_pull_request_commits(self, owner: str, repo: str, number: int, per_page: int = 100) -> List[Dict]:
        return [get_sample_commit(f"{number:040x}")]

    async def get_commit(self, owner: str, repo: str, sha: str) -> Dict:
        return get_sample_commit(sha)

    async def get_user(self, username: str) -> Dict:
        self._check(username)
        return {"login": username, "name": username.upper(), "followers": 3, "public_repos": 1}


class TestFetchRepositoriesStage:

    @pytest.mark.asyncio
    async def test_fetches_configured_repositories(self):
        api = FakeGitHubAPI()
        stage = FetchRepositoriesStage(api, repositories=["a/one", "a/two"], batch_delay_ms=0)

        context = await stage.execute(PipelineRunContext("github_sync"), DEFINITION)

        raw = context.data["raw"]
        assert len(raw["repositories"]) == 2
        assert len(raw["pull_requests"]) == 4
        assert context.stats["repositories_fetched"] == 2
        assert context.stats["fetch_failed"] == 0

    @pytest.mark.asyncio
    async def test_run_params_override_configured_repositories(self):
        api = FakeGitHubAPI()
        stage = FetchRepositoriesStage(api, repositories=["a/one"], batch_delay_ms=0)

        await stage.execute(PipelineRunContext("github_sync", params={"repositories": ["b/other"]}), DEFINITION)

        assert "repo:b/other" in api.calls
        assert "repo:a/one" not in api.calls

    @pytest.mark.asyncio
    async def test_partial_failure_is_counted(self):
        stage = FetchRepositoriesStage(FakeGitHubAPI(failing=("a/two",)), repositories=["a/one", "a/two"],
                                       batch_delay_ms=0)

        context = await stage.execute(PipelineRunContext("github_sync"), DEFINITION)

        assert context.stats["repositories_fetched"] == 1
        assert context.stats["fetch_failed"] == 1

    @pytest.mark.asyncio
    async def test_all_failures_raise(self):
        stage = FetchRepositoriesStage(FakeGitHubAPI(failing=("a/one",)), repositories=["a/one"], batch_delay_ms=0)

        with pytest.raises(PermanentUpstreamError):
            await stage.execute(PipelineRunContext("github_sync"), DEFINITION)

    @pytest.mark.asyncio
    async def test_no_targets_yields_empty_raw_data(self):
        stage = FetchRepositoriesStage(FakeGitHubAPI())

        context = await stage.execute(PipelineRunContext("github_sync"), DEFINITION)

        assert context.data["raw"] == {"repositories": [], "pull_requests": []}


class TestExtractAndStore:

    @pytest.mark.asyncio
    async def test_extract_requires_raw_data(self):
        with pytest.raises(ValueError, match="raw"):
            await ExtractEntitiesStage().execute(PipelineRunContext("github_sync"), DEFINITION)

    @pytest.mark.asyncio
    async def test_extract_then_store(self, database):
        repo = get_sample_repository()
        pulls = get_sample_pull_requests(3)
        context = PipelineRunContext("github_sync").with_data(
            raw={"repositories": [repo], "pull_requests": [(repo["full_name"], pr) for pr in pulls]}
        )

        context = await ExtractEntitiesStage().execute(context, DEFINITION)
        context = await StoreEntitiesStage(EntityStore(database)).execute(context, DEFINITION)

        assert context.stats["extracted_merge_request"] == 3
        assert context.stats["stored_raw"] == 4
        assert context.entity_counts["repository"] == 1
        assert context.entity_counts["merge_request"] == 3
        assert await EntityStore(database).count("merge_request") == 3


class TestEnrichEntitiesStage:

    @pytest.mark.asyncio
    async def test_enriches_each_type_and_stores_commits(self, database):
        store = EntityStore(database)
        repo = get_sample_repository()
        context = PipelineRunContext("github_sync").with_data(
            raw={"repositories": [repo], "pull_requests": [(repo["full_name"], pr) for pr in get_sample_pull_requests(2)]}
        )
        context = await ExtractEntitiesStage().execute(context, DEFINITION)
        await StoreEntitiesStage(store).execute(context, DEFINITION)

        stage = EnrichEntitiesStage(FakeGitHubAPI(), store, batch_delay_ms=0)
        result = await stage.execute(PipelineRunContext("data_enrichment"), DEFINITION)

        assert result.stats["enriched_repository"] == 1
        assert result.stats["enriched_merge_request"] == 2
        assert result.stats["stored_commit"] == 2
        assert result.stats["enriched_commit"] == 2
        assert result.stats["enrich_failed"] == 0
        for entity_type in ("repository", "contributor", "merge_request", "commit"):
            assert await store.count(entity_type, enriched=False) == 0

    @pytest.mark.asyncio
    async def test_second_run_has_nothing_to_do(self, database):
        store = EntityStore(database)
        repo = get_sample_repository()
        context = await ExtractEntitiesStage().execute(
            PipelineRunContext("github_sync").with_data(raw={"repositories": [repo], "pull_requests": []}),
            DEFINITION,
        )
        await StoreEntitiesStage(store).execute(context, DEFINITION)
        stage = EnrichEntitiesStage(FakeGitHubAPI(), store, batch_delay_ms=0)

        await stage.execute(PipelineRunContext("data_enrichment"), DEFINITION)
        again = await stage.execute(PipelineRunContext("data_enrichment"), DEFINITION)

        assert again.stats == {"total_processed": 0}

    @pytest.mark.asyncio
    async def test_failed_lookups_stay_unenriched(self, database):
        store = EntityStore(database)
        repo = get_sample_repository()
        context = await ExtractEntitiesStage().execute(
            PipelineRunContext("github_sync").with_data(raw={"repositories": [repo], "pull_requests": []}),
            DEFINITION,
        )
        await StoreEntitiesStage(store).execute(context, DEFINITION)

        stage = EnrichEntitiesStage(FakeGitHubAPI(failing=("octocat",)), store, entity_types=("contributor",),
                                    batch_delay_ms=0)
        result = await stage.execute(PipelineRunContext("data_enrichment"), DEFINITION)

        assert result.stats["enrich_failed"] == 1
        assert await store.count("contributor", enriched=False) == 1

    @pytest.mark.asyncio
    async def test_failing_rows_do_not_block_the_queue(self, database):
        store = EntityStore(database)
        await store.upsert_contributors([Contributor(github_id=1, login="ghost"), Contributor(github_id=2, login="alive")])
        stage = EnrichEntitiesStage(FakeGitHubAPI(failing=("ghost",)), store, entity_types=("contributor",),
                                    limit=1, batch_delay_ms=0)
        definition = PipelineDefinition("data_enrichment", ("enrich-entities",), max_retries=3)

        runs = [await stage.execute(PipelineRunContext("data_enrichment"), definition) for _ in range(5)]

        assert runs[1].stats["enriched_contributor"] == 1
        assert await store.count("contributor", enriched=False) == 1
        # ghost is dropped after three failed attempts
        assert runs[-1].stats == {"total_processed": 0}
        row = await database.get("SELECT enrichment_attempts FROM contributors WHERE login = 'ghost'")
        assert row["enrichment_attempts"] == 3

    def test_rejects_unknown_entity_type(self):
        with pytest.raises(ValueError, match="Unknown entity types"):
            EnrichEntitiesStage(FakeGitHubAPI(), MagicMock(spec=EntityStore), entity_types=("issue",))
