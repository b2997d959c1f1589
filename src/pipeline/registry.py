"""Registry of pipeline stages and pipeline definitions."""

from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from src.models.data_models import PipelineDefinition
from src.models.errors import PipelineConfigurationError, PipelineNotFoundError
from src.pipeline.stages import Stage

StageFactory = Callable[..., Stage]


class PipelineRegistry:
    """
    Maps stage names to factories and pipeline types to definitions.

    Pipelines are validated when registered: every referenced stage must
    already be registered, so a typo fails at startup rather than mid-run.
    """

    def __init__(self, logger: Optional['StructuredLogger'] = None):
        self.logger = logger
        self._stages: Dict[str, StageFactory] = {}
        self._pipelines: Dict[str, PipelineDefinition] = {}

    def register_stage(self, name: str, factory: StageFactory) -> None:
        if not name:
            raise PipelineConfigurationError("Stage name must not be empty")
        if not callable(factory):
            raise PipelineConfigurationError(f"Stage factory for '{name}' is not callable")
        if name in self._stages and self.logger:
            self.logger.warning("stage_overwritten", stage=name)
        self._stages[name] = factory

    def register_pipeline(self, pipeline_type: str, definition: PipelineDefinition) -> PipelineDefinition:
        """
        Register an immutable pipeline definition under `pipeline_type`.

        Raises:
            PipelineConfigurationError: empty stage list, unknown stage,
                a fatal stage that is not part of the pipeline, or
                concurrency below 1
        """
        if not definition.stages:
            raise PipelineConfigurationError(f"Pipeline '{pipeline_type}' must have at least one stage")

        unknown = [name for name in definition.stages if name not in self._stages]
        if unknown:
            raise PipelineConfigurationError(
                f"Pipeline '{pipeline_type}' references unregistered stages: {', '.join(unknown)}"
            )

        stray_fatal = sorted(set(definition.fatal_stages) - set(definition.stages))
        if stray_fatal:
            raise PipelineConfigurationError(
                f"Pipeline '{pipeline_type}' marks unknown stages as fatal: {', '.join(stray_fatal)}"
            )

        if definition.concurrency < 1:
            raise PipelineConfigurationError(
                f"Pipeline '{pipeline_type}' concurrency must be at least 1, got: {definition.concurrency}"
            )

        if definition.pipeline_type != pipeline_type:
            definition = replace(definition, pipeline_type=pipeline_type)
        definition = replace(definition, stages=tuple(definition.stages))

        if pipeline_type in self._pipelines and self.logger:
            self.logger.warning("pipeline_overwritten", pipeline_type=pipeline_type)
        self._pipelines[pipeline_type] = definition
        return definition

    def create_stage(self, name: str, **options: Any) -> Stage:
        try:
            factory = self._stages[name]
        except KeyError:
            raise PipelineConfigurationError(f"Stage not registered: {name}") from None
        return factory(**options)

    def get_pipeline(self, pipeline_type: str) -> PipelineDefinition:
        try:
            return self._pipelines[pipeline_type]
        except KeyError:
            raise PipelineNotFoundError(f"Pipeline type not registered: {pipeline_type}") from None

    def has_pipeline(self, pipeline_type: str) -> bool:
        return pipeline_type in self._pipelines

    def registered_stages(self) -> List[str]:
        return sorted(self._stages)

    def registered_pipelines(self) -> List[str]:
        return sorted(self._pipelines)
