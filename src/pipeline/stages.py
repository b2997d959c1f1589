"""Built-in pipeline stages: fetch, extract, store and enrich."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from src.client.batch_executor import run_batch
from src.models.data_models import PipelineDefinition, PipelineRunContext
from src.processor.normalizer import (
    ExtractedEntities,
    commit_details,
    extract_entities,
    normalize_commit,
    pull_request_details,
    repository_details,
    user_details,
)

ENTITY_TYPES = ("repository", "contributor", "merge_request", "commit")


class Stage(ABC):
    """
    A named unit of work operating on a PipelineRunContext.

    `execute` must return a context (usually a new one derived from the
    input via its helper methods) rather than mutating its argument.
    """

    name: str = "stage"

    def __init__(self, logger: Optional['StructuredLogger'] = None, **options: Any):
        self.logger = logger
        self.options = options

    def validate_context(self, context: PipelineRunContext, required_keys: Iterable[str]) -> None:
        missing = [key for key in required_keys if key not in context.data]
        if missing:
            raise ValueError(f"{self.name}: context missing required data: {', '.join(missing)}")

    @abstractmethod
    async def execute(self, context: PipelineRunContext, definition: PipelineDefinition) -> PipelineRunContext:
        ...


def _split_full_name(full_name: str) -> Tuple[str, str]:
    owner, _, repo = full_name.partition("/")
    return owner, repo


class FetchRepositoriesStage(Stage):
    """Fetch repository payloads and their most recently closed pull requests."""

    name = "fetch-repositories"

    def __init__(
        self,
        api: 'GitHubAPI',
        repositories: Sequence[str] = (),
        batch_size: int = 10,
        batch_delay_ms: int = 1000,
        pull_request_state: str = "closed",
        per_page: int = 100,
        logger: Optional['StructuredLogger'] = None,
    ):
        super().__init__(logger=logger)
        self.api = api
        self.repositories = list(repositories)
        self.batch_size = batch_size
        self.batch_delay_ms = batch_delay_ms
        self.pull_request_state = pull_request_state
        self.per_page = per_page

    async def _fetch_one(self, full_name: str) -> Tuple[Dict, List[Dict]]:
        owner, repo = _split_full_name(full_name)
        repository = await self.api.get_repository(owner, repo)
        pulls = await self.api.list_pull_requests(
            owner, repo, state=self.pull_request_state, per_page=self.per_page
        )
        return repository, pulls

    async def execute(self, context: PipelineRunContext, definition: PipelineDefinition) -> PipelineRunContext:
        targets = list(context.params.get("repositories") or self.repositories)
        if not targets:
            if self.logger:
                self.logger.warning("no_repositories_configured", run_id=context.run_id)
            return context.with_data(raw={"repositories": [], "pull_requests": []})

        batch = await run_batch(
            [lambda name=name: self._fetch_one(name) for name in targets],
            batch_size=self.batch_size,
            batch_delay_ms=self.batch_delay_ms,
            logger=self.logger,
        )

        if batch.success_count == 0:
            raise batch.errors[0]

        repositories: List[Dict] = []
        pull_requests: List[Tuple[str, Dict]] = []
        for item in batch.results:
            full_name = targets[item.index]
            if not item.ok:
                if self.logger:
                    self.logger.warning("repository_fetch_failed", repository=full_name, error=str(item.error))
                continue
            repository, pulls = item.value
            repositories.append(repository)
            pull_requests.extend((full_name, pr) for pr in pulls)

        return (
            context.with_data(raw={"repositories": repositories, "pull_requests": pull_requests})
            .increment_stat("repositories_fetched", len(repositories))
            .increment_stat("pull_requests_fetched", len(pull_requests))
            .increment_stat("fetch_failed", batch.failure_count)
        )


class ExtractEntitiesStage(Stage):
    """Normalize raw payloads into Repository, Contributor and MergeRequest entities."""

    name = "extract-entities"

    async def execute(self, context: PipelineRunContext, definition: PipelineDefinition) -> PipelineRunContext:
        self.validate_context(context, ["raw"])
        raw = context.data["raw"]
        entities = extract_entities(raw.get("repositories", []), raw.get("pull_requests", []))
        context = context.with_data(entities=entities)
        for entity_type, count in entities.counts().items():
            context = context.increment_stat(f"extracted_{entity_type}", count)
        return context.increment_stat("invalid_payloads", entities.invalid)


class StoreEntitiesStage(Stage):
    """Upsert raw records and extracted entities by natural key."""

    name = "store-entities"

    def __init__(self, store: 'EntityStore', logger: Optional['StructuredLogger'] = None):
        super().__init__(logger=logger)
        self.store = store

    async def execute(self, context: PipelineRunContext, definition: PipelineDefinition) -> PipelineRunContext:
        self.validate_context(context, ["entities"])
        entities: ExtractedEntities = context.data["entities"]

        await self.store.upsert_raw(entities.raw_records)
        written = {
            "repository": await self.store.upsert_repositories(entities.repositories),
            "contributor": await self.store.upsert_contributors(entities.contributors),
            "merge_request": await self.store.upsert_merge_requests(entities.merge_requests),
        }

        context = context.increment_stat("stored_raw", len(entities.raw_records))
        for entity_type, count in written.items():
            context = context.increment_stat(f"stored_{entity_type}", count).add_entity_count(entity_type, count)
        return context


class EnrichEntitiesStage(Stage):
    """
    Fill in detail fields for entities not yet enriched.

    Each entity type is processed in batches through the resilient client;
    a failed lookup is counted and left for the next run. A row is given up
    on after `max_attempts` failed runs (the pipeline's max_retries unless
    set). Enriching a merge request also stores the commits listed for it.
    """

    name = "enrich-entities"

    def __init__(
        self,
        api: 'GitHubAPI',
        store: 'EntityStore',
        entity_types: Sequence[str] = ENTITY_TYPES,
        batch_size: int = 20,
        batch_delay_ms: int = 1000,
        limit: int = 100,
        max_attempts: Optional[int] = None,
        logger: Optional['StructuredLogger'] = None,
    ):
        super().__init__(logger=logger)
        unknown = [t for t in entity_types if t not in ENTITY_TYPES]
        if unknown:
            raise ValueError(f"Unknown entity types: {', '.join(unknown)}")
        self.api = api
        self.store = store
        self.entity_types = list(entity_types)
        self.batch_size = batch_size
        self.batch_delay_ms = batch_delay_ms
        self.limit = limit
        self.max_attempts = max_attempts

    async def _enrich_repository(self, row: Dict) -> Tuple[Dict, list]:
        owner, repo = _split_full_name(row["full_name"])
        payload = await self.api.get_repository(owner, repo)
        return {"github_id": row["github_id"], **repository_details(payload)}, []

    async def _enrich_contributor(self, row: Dict) -> Tuple[Dict, list]:
        payload = await self.api.get_user(row["login"])
        return {"github_id": row["github_id"], **user_details(payload)}, []

    async def _enrich_merge_request(self, row: Dict) -> Tuple[Dict, list]:
        full_name = row["repository_full_name"]
        owner, repo = _split_full_name(full_name)
        payload = await self.api.get_pull_request(owner, repo, row["number"])
        commit_payloads = await self.api.list_pull_request_commits(owner, repo, row["number"])
        commits = [normalize_commit(c, full_name) for c in commit_payloads if c.get("sha")]
        return {"github_id": row["github_id"], **pull_request_details(payload)}, commits

    async def _enrich_commit(self, row: Dict) -> Tuple[Dict, list]:
        owner, repo = _split_full_name(row["repository_full_name"])
        payload = await self.api.get_commit(owner, repo, row["sha"])
        details = {"repository_full_name": row["repository_full_name"], "sha": row["sha"]}
        return {**details, **commit_details(payload)}, []

    async def execute(self, context: PipelineRunContext, definition: PipelineDefinition) -> PipelineRunContext:
        handlers = {
            "repository": self._enrich_repository,
            "contributor": self._enrich_contributor,
            "merge_request": self._enrich_merge_request,
            "commit": self._enrich_commit,
        }

        max_attempts = self.max_attempts or definition.max_retries
        processed = 0
        for entity_type in self.entity_types:
            rows = await self.store.list_unenriched(entity_type, limit=self.limit, max_attempts=max_attempts)
            if not rows:
                continue
            processed += len(rows)

            handler = handlers[entity_type]
            batch = await run_batch(
                [lambda row=row: handler(row) for row in rows],
                batch_size=self.batch_size,
                batch_delay_ms=self.batch_delay_ms,
                logger=self.logger,
            )

            details = [item.value[0] for item in batch.results if item.ok]
            commits = [c for item in batch.results if item.ok for c in item.value[1]]
            if commits:
                stored = await self.store.upsert_commits(commits)
                context = context.increment_stat("stored_commit", stored)

            enriched = await self.store.save_enrichment(entity_type, details)
            failed_rows = [rows[item.index] for item in batch.results if not item.ok]
            if failed_rows:
                await self.store.record_enrichment_failures(entity_type, failed_rows)
            for item in batch.results:
                if not item.ok and self.logger:
                    self.logger.warning("enrich_failed", entity_type=entity_type, error=str(item.error))

            context = (
                context.increment_stat(f"enriched_{entity_type}", enriched)
                .increment_stat("enrich_failed", batch.failure_count)
                .add_entity_count(entity_type, enriched)
            )

        return context.increment_stat("total_processed", processed)
