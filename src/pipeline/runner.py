"""Sequential pipeline runner."""

import asyncio
import time
from typing import Any, Dict, Optional

from src.models.data_models import PipelineDefinition, PipelineRunContext
from src.models.errors import StageError
from src.pipeline.registry import PipelineRegistry


class PipelineRunner:
    """
    Executes a registered pipeline's stages strictly in order.

    Each stage receives the context returned by the previous one. A stage
    that raises is recorded on the context and the run moves on; only a
    stage listed as fatal in the definition aborts the run, raising
    StageError with the partial context attached.

    At most `definition.concurrency` runs of one pipeline type execute at
    a time; further calls wait for a free slot.
    """

    def __init__(self, registry: PipelineRegistry, logger: Optional['StructuredLogger'] = None):
        self.registry = registry
        self.logger = logger
        self._slots: Dict[str, asyncio.Semaphore] = {}

    async def run(
        self,
        pipeline_type: str,
        params: Optional[Dict[str, Any]] = None,
        context: Optional[PipelineRunContext] = None,
    ) -> PipelineRunContext:
        """
        Run `pipeline_type` and return the final context.

        Raises:
            PipelineNotFoundError: pipeline type not registered
            StageError: a fatal stage failed
        """
        definition = self.registry.get_pipeline(pipeline_type)
        slot = self._slots.get(pipeline_type)
        if slot is None:
            slot = self._slots[pipeline_type] = asyncio.Semaphore(definition.concurrency)

        async with slot:
            return await self._run(definition, params, context)

    async def _run(
        self,
        definition: PipelineDefinition,
        params: Optional[Dict[str, Any]],
        context: Optional[PipelineRunContext],
    ) -> PipelineRunContext:
        pipeline_type = definition.pipeline_type
        if context is None:
            context = PipelineRunContext(pipeline_type=pipeline_type, params=dict(params or {}))
        context = context.mark_running()

        if self.logger:
            self.logger.log("pipeline_start", run_id=context.run_id, pipeline_type=pipeline_type,
                            stages=list(definition.stages))

        for name in definition.stages:
            fatal = definition.is_fatal(name)
            start = time.monotonic()
            if self.logger:
                self.logger.stage_start(context.run_id, name)

            try:
                stage = self.registry.create_stage(name, **definition.options_for(name))
                result = await stage.execute(context, definition)
                if not isinstance(result, PipelineRunContext):
                    raise TypeError(f"Stage '{name}' returned {type(result).__name__}, expected PipelineRunContext")
            except Exception as exc:
                context = context.record_error(name, exc)
                if self.logger:
                    self.logger.stage_error(context.run_id, name, str(exc), fatal)
                if fatal:
                    context = context.mark_failed()
                    raise StageError(name, exc, context) from exc
                continue

            context = result
            if self.logger:
                self.logger.stage_complete(context.run_id, name, round((time.monotonic() - start) * 1000, 2))

        context = context.mark_completed()
        if self.logger:
            self.logger.log("pipeline_complete", run_id=context.run_id, pipeline_type=pipeline_type,
                            errors=len(context.errors), stats=context.stats)
        return context
