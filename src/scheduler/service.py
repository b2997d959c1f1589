"""Scheduler service: persisted cron schedules driving pipeline runs."""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.models.data_models import PipelineRunContext, ScheduleRecord, utc_now
from src.models.errors import ScheduleNotFoundError, ScheduleValidationError, StageError
from src.pipeline.registry import PipelineRegistry
from src.pipeline.runner import PipelineRunner
from src.scheduler.cron import build_trigger, next_fire_time, resolve_timezone
from src.storage.repositories import PipelineHistoryRepository, ScheduleRepository

UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "cron_expression",
    "time_zone",
    "is_active",
    "parameters",
})
RESCHEDULE_FIELDS = frozenset({"cron_expression", "time_zone", "is_active"})


def _timer_fields(record: ScheduleRecord) -> Tuple[str, str, bool]:
    return record.cron_expression, record.time_zone, record.is_active


class SchedulerService:
    """
    Owns schedule records and fires pipeline runs from their cron expressions.

    The database is the source of truth; `_records` mirrors it and
    `_timers` holds one APScheduler job per active schedule. Every mutation
    writes to storage first and only then touches the in-memory maps.

    A pipeline type never runs twice at once: a fire (timer or manual)
    while the same type is running, in this process or flagged as running
    in storage by another one, is skipped and logged, not queued.
    """

    def __init__(
        self,
        runner: PipelineRunner,
        registry: PipelineRegistry,
        schedules: ScheduleRepository,
        history: Optional[PipelineHistoryRepository] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        now: Callable[[], datetime] = utc_now,
        logger: Optional['StructuredLogger'] = None,
    ):
        self.runner = runner
        self.registry = registry
        self.schedules = schedules
        self.history = history
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._now = now
        self.logger = logger
        self._records: Dict[str, ScheduleRecord] = {}
        self._timers: Dict[str, str] = {}
        self._running: Dict[str, str] = {}

    # Lifecycle

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def initialize_from_database(self, recover_stale: bool = False) -> int:
        """
        Rebuild the in-memory records and timers from storage.

        Recomputes next_run_at for active schedules. With `recover_stale`,
        also clears is_running flags left behind by a crashed process; only
        the process that owns the timers should do that, at startup.

        Returns:
            Number of active schedules registered
        """
        for schedule_id in list(self._timers):
            self._cancel_timer(schedule_id)
        self._records.clear()

        registered = 0
        for record in await self.schedules.list():
            if recover_stale and record.is_running:
                record.is_running = False
                await self.schedules.update_fields(record.id, is_running=False)
                if self.logger:
                    self.logger.warning("stale_running_flag_cleared", schedule_id=record.id)

            if record.is_active:
                try:
                    record.next_run_at = self._compute_next_run(record)
                except ScheduleValidationError as exc:
                    if self.logger:
                        self.logger.error("schedule_load_failed", schedule_id=record.id, error=str(exc))
                    continue
                await self.schedules.update_fields(record.id, next_run_at=record.next_run_at)
                self._records[record.id] = record
                self._register_timer(record)
                registered += 1
            else:
                self._records[record.id] = record

        if self.logger:
            self.logger.log("scheduler_initialized", active_schedules=registered, total=len(self._records))
        return registered

    async def refresh_from_database(self) -> int:
        """
        Reconcile records and timers with storage.

        Picks up schedules created, changed or deleted by another process
        (the `schedules` CLI commands) without touching run state.

        Returns:
            Number of timers added, replaced or cancelled
        """
        stored = {record.id: record for record in await self.schedules.list()}
        changed = 0

        for schedule_id in [sid for sid in self._records if sid not in stored]:
            if schedule_id in self._timers:
                self._cancel_timer(schedule_id)
                changed += 1
            del self._records[schedule_id]

        for record in stored.values():
            current = self._records.get(record.id)
            self._records[record.id] = record
            has_timer = record.id in self._timers
            unchanged = current is not None and _timer_fields(current) == _timer_fields(record)
            if unchanged and has_timer == record.is_active:
                continue

            self._cancel_timer(record.id)
            registered = False
            if record.is_active:
                try:
                    self._register_timer(record)
                    registered = True
                except ScheduleValidationError as exc:
                    if self.logger:
                        self.logger.error("schedule_load_failed", schedule_id=record.id, error=str(exc))
            if has_timer or registered:
                changed += 1

        if changed and self.logger:
            self.logger.log("scheduler_refreshed", timers_changed=changed, total=len(self._records))
        return changed

    # Control surface

    async def schedule_job(
        self,
        name: str,
        pipeline_type: str,
        cron_expression: str,
        time_zone: str = "UTC",
        description: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> ScheduleRecord:
        """
        Validate, persist and register a new schedule.

        Raises:
            ScheduleValidationError: unknown pipeline type or bad cron expression
        """
        if not self.registry.has_pipeline(pipeline_type):
            raise ScheduleValidationError(f"Unknown pipeline type: {pipeline_type}")

        _, zone_name = resolve_timezone(time_zone, self.logger)
        record = ScheduleRecord(
            id=str(uuid.uuid4()),
            name=name,
            pipeline_type=pipeline_type,
            cron_expression=cron_expression,
            time_zone=zone_name,
            description=description,
            parameters=dict(parameters or {}),
            is_active=is_active,
        )
        next_run = self._compute_next_run(record)
        record.next_run_at = next_run if is_active else None

        await self.schedules.save(record)
        self._records[record.id] = record
        if record.is_active:
            self._register_timer(record)

        if self.logger:
            self.logger.log("schedule_created", schedule_id=record.id, pipeline_type=pipeline_type,
                            cron_expression=cron_expression, next_run_at=record.next_run_at)
        return record

    async def update_schedule(self, schedule_id: str, **patch: Any) -> ScheduleRecord:
        """
        Apply a partial update; re-registers the timer when the cron
        expression, time zone or active flag changed.

        Raises:
            ScheduleNotFoundError: unknown id
            ScheduleValidationError: unknown field or bad cron expression
        """
        current = self.get_schedule(schedule_id)
        unknown = sorted(set(patch) - UPDATABLE_FIELDS)
        if unknown:
            raise ScheduleValidationError(f"Fields cannot be updated: {', '.join(unknown)}")

        changes = {k: v for k, v in patch.items() if getattr(current, k) != v}
        if not changes:
            if self.logger:
                self.logger.log("schedule_update_noop", schedule_id=schedule_id)
            return current

        if "time_zone" in changes:
            _, changes["time_zone"] = resolve_timezone(changes["time_zone"], self.logger)

        updated = replace(current, **changes, updated_at=utc_now())
        reschedule = bool(RESCHEDULE_FIELDS & set(changes))
        if reschedule:
            next_run = self._compute_next_run(updated)
            updated.next_run_at = next_run if updated.is_active else None

        await self.schedules.save(updated)
        self._records[schedule_id] = updated

        if reschedule:
            self._cancel_timer(schedule_id)
            if updated.is_active:
                self._register_timer(updated)

        if self.logger:
            self.logger.log("schedule_updated", schedule_id=schedule_id, fields=sorted(changes))
        return updated

    async def trigger_job(self, schedule_id: str) -> Optional[PipelineRunContext]:
        """
        Fire a schedule now, bypassing its timer.

        Returns:
            The run context, or None if skipped because the pipeline type
            is already running (or the run failed before producing one)

        Raises:
            ScheduleNotFoundError: unknown id
        """
        record = self.get_schedule(schedule_id)
        return await self._execute(record)

    async def delete_schedule(self, schedule_id: str) -> bool:
        """Remove a schedule; a run already in flight is allowed to finish."""
        if schedule_id not in self._records and await self.schedules.get(schedule_id) is None:
            return False

        deleted = await self.schedules.delete(schedule_id)
        self._cancel_timer(schedule_id)
        self._records.pop(schedule_id, None)

        if self.logger:
            self.logger.log("schedule_deleted", schedule_id=schedule_id)
        return deleted

    def get_schedules(self, pipeline_type: Optional[str] = None) -> List[ScheduleRecord]:
        records = sorted(self._records.values(), key=lambda r: r.created_at)
        if pipeline_type:
            records = [r for r in records if r.pipeline_type == pipeline_type]
        return records

    def get_schedule(self, schedule_id: str) -> ScheduleRecord:
        try:
            return self._records[schedule_id]
        except KeyError:
            raise ScheduleNotFoundError(schedule_id) from None

    def is_running(self, pipeline_type: str) -> bool:
        return pipeline_type in self._running

    def timer_ids(self) -> List[str]:
        return sorted(self._timers)

    # Internals

    def _compute_next_run(self, record: ScheduleRecord) -> Optional[datetime]:
        tz, _ = resolve_timezone(record.time_zone, self.logger)
        trigger = build_trigger(record.cron_expression, tz)
        return next_fire_time(trigger, self._now())

    def _register_timer(self, record: ScheduleRecord) -> None:
        tz, _ = resolve_timezone(record.time_zone, self.logger)
        trigger = build_trigger(record.cron_expression, tz)
        job = self.scheduler.add_job(
            self._on_timer,
            trigger=trigger,
            args=[record.id],
            id=record.id,
            name=record.name,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._timers[record.id] = job.id

    def _cancel_timer(self, schedule_id: str) -> None:
        job_id = self._timers.pop(schedule_id, None)
        if job_id is None:
            return
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            if self.logger:
                self.logger.warning("timer_missing", schedule_id=schedule_id)

    async def _guarded(self, schedule_id: str, operation: str, call: Awaitable[Any]) -> Any:
        """Await a storage call; a failure is logged and yields None."""
        try:
            return await call
        except Exception as exc:
            if self.logger:
                self.logger.error("schedule_storage_failed", schedule_id=schedule_id,
                                  operation=operation, error=str(exc))
            return None

    async def _on_timer(self, schedule_id: str) -> None:
        record = self._records.get(schedule_id)
        if record is None or not record.is_active:
            return
        await self._execute(record)

    async def _execute(self, record: ScheduleRecord) -> Optional[PipelineRunContext]:
        pipeline_type = record.pipeline_type
        flagged = await self._guarded(record.id, "read_running", self.schedules.running(pipeline_type))

        # Check-and-set with no await in between
        if pipeline_type in self._running or flagged:
            if self.logger:
                self.logger.schedule_skipped(record.id, pipeline_type)
            return None
        self._running[pipeline_type] = record.id
        record.is_running = True

        context: Optional[PipelineRunContext] = None
        result: Optional[Dict[str, Any]] = None
        try:
            if self.logger:
                self.logger.schedule_fired(record.id, pipeline_type)
            await self._guarded(record.id, "mark_running", self.schedules.update_fields(record.id, is_running=True))
            history_id = None
            if self.history:
                history_id = await self._guarded(
                    record.id, "history_start", self.history.start(pipeline_type, schedule_id=record.id)
                )

            try:
                context = await self.runner.run(pipeline_type, params=record.parameters)
                result = context.summary()
                status = "completed" if result["success"] else "failed"
                error_message = "; ".join(f"{e.stage}: {e.message}" for e in context.errors) or None
            except Exception as exc:
                if isinstance(exc, StageError) and exc.context is not None:
                    context = exc.context
                if self.logger:
                    self.logger.error("scheduled_run_failed", schedule_id=record.id,
                                      pipeline_type=pipeline_type, error=str(exc))
                result = {"success": False, "error": str(exc), "timestamp": utc_now().isoformat()}
                status = "failed"
                error_message = str(exc)

            if self.history and history_id:
                await self._guarded(record.id, "history_complete", self.history.complete(
                    history_id,
                    status=status,
                    run_id=context.run_id if context else None,
                    items_processed=context.items_processed if context else 0,
                    error_message=error_message,
                ))
        finally:
            del self._running[pipeline_type]
            record.is_running = False
            await self._finish(record.id, result)
        return context

    async def _finish(self, schedule_id: str, result: Optional[Dict[str, Any]]) -> None:
        # An update during the run may have replaced the in-memory record
        live = self._records.get(schedule_id)
        fields: Dict[str, Any] = {"is_running": False}
        if live is not None:
            live.is_running = False
            live.last_run_at = self._now()
            live.next_run_at = self._compute_next_run(live) if live.is_active else None
            fields.update(last_run_at=live.last_run_at, next_run_at=live.next_run_at)
            if result is not None:
                live.last_result = result
                fields["last_result"] = result
        await self._guarded(schedule_id, "finish", self.schedules.update_fields(schedule_id, **fields))
