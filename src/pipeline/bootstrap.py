"""Startup wiring: default stages, default pipelines and the runtime container."""

from typing import Optional

import httpx

from src.client.github_api import GitHubAPI
from src.client.http_client import AsyncHTTPClient
from src.client.resilient_client import ResilientClient
from src.models.config import PipelineConfig
from src.models.data_models import PipelineDefinition
from src.monitoring.logger import StructuredLogger
from src.pipeline.registry import PipelineRegistry
from src.pipeline.runner import PipelineRunner
from src.pipeline.stages import (
    EnrichEntitiesStage,
    ExtractEntitiesStage,
    FetchRepositoriesStage,
    StoreEntitiesStage,
)
from src.storage.database import Database
from src.storage.repositories import EntityStore

GITHUB_SYNC = "github_sync"
DATA_ENRICHMENT = "data_enrichment"


def initialize_pipelines(
    registry: PipelineRegistry,
    api: GitHubAPI,
    store: EntityStore,
    config: PipelineConfig,
    logger: Optional[StructuredLogger] = None,
) -> PipelineRegistry:
    """Register the built-in stages and the github_sync / data_enrichment pipelines."""
    registry.register_stage(
        FetchRepositoriesStage.name,
        lambda **options: FetchRepositoriesStage(
            api,
            repositories=options.pop("repositories", config.repositories),
            batch_size=options.pop("batch_size", config.batch_size),
            batch_delay_ms=options.pop("batch_delay_ms", config.batch_delay_ms),
            logger=logger,
            **options,
        ),
    )
    registry.register_stage(
        ExtractEntitiesStage.name,
        lambda **options: ExtractEntitiesStage(logger=logger, **options),
    )
    registry.register_stage(
        StoreEntitiesStage.name,
        lambda **options: StoreEntitiesStage(store, logger=logger),
    )
    registry.register_stage(
        EnrichEntitiesStage.name,
        lambda **options: EnrichEntitiesStage(
            api,
            store,
            batch_size=options.pop("batch_size", config.enrichment_batch_size),
            batch_delay_ms=options.pop("batch_delay_ms", config.batch_delay_ms),
            limit=options.pop("limit", config.enrichment_limit),
            logger=logger,
            **options,
        ),
    )

    registry.register_pipeline(GITHUB_SYNC, PipelineDefinition(
        pipeline_type=GITHUB_SYNC,
        stages=(FetchRepositoriesStage.name, ExtractEntitiesStage.name, StoreEntitiesStage.name),
        fatal_stages=frozenset({FetchRepositoriesStage.name}),
        description="Fetch repositories and closed pull requests, extract and store entities",
    ))
    registry.register_pipeline(DATA_ENRICHMENT, PipelineDefinition(
        pipeline_type=DATA_ENRICHMENT,
        stages=(EnrichEntitiesStage.name,),
        concurrency=1,
        max_retries=3,
        description="Enrich stored entities with detail fields",
    ))
    return registry


class IngestionRuntime:
    """
    Owns the long-lived collaborators of one process: database, HTTP client,
    resilient client, registry and runner.

    Usage:
        async with IngestionRuntime(config) as runtime:
            context = await runtime.runner.run("github_sync")
    """

    def __init__(
        self,
        config: PipelineConfig,
        logger: Optional[StructuredLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        database: Optional[Database] = None,
    ):
        self.config = config
        self.logger = logger or StructuredLogger(level=config.log_level)
        self.database = database or Database(config.database_url)
        self.http_client = AsyncHTTPClient(
            base_url=config.github_api_url,
            token=config.github_token,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            transport=transport,
        )
        self.client = ResilientClient.from_config(config, logger=self.logger)
        self.api = GitHubAPI(self.http_client, self.client)
        self.store = EntityStore(self.database)
        self.registry = PipelineRegistry(logger=self.logger)
        self.runner = PipelineRunner(self.registry, logger=self.logger)
        initialize_pipelines(self.registry, self.api, self.store, config, logger=self.logger)

    async def __aenter__(self) -> "IngestionRuntime":
        await self.database.create_all()
        await self.http_client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.http_client.__aexit__(exc_type, exc_val, exc_tb)
        await self.database.close()
