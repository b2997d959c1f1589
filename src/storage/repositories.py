"""Repositories over the database for schedules, run history and entities."""

import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, select, update

from src.models.data_models import (
    Commit,
    Contributor,
    MergeRequest,
    RawDataRecord,
    Repository,
    ScheduleRecord,
    utc_now,
)
from src.storage.database import Database, as_utc
from src.storage.tables import (
    ENTITY_TABLES,
    NATURAL_KEYS,
    github_raw_data,
    pipeline_history,
    pipeline_schedules,
)


def _record_from_row(row: Dict[str, Any]) -> ScheduleRecord:
    return ScheduleRecord(
        id=row["id"],
        name=row["name"],
        pipeline_type=row["pipeline_type"],
        cron_expression=row["cron_expression"],
        time_zone=row["time_zone"] or "UTC",
        description=row["description"],
        parameters=row["parameters"] or {},
        is_active=bool(row["is_active"]),
        is_running=bool(row["is_running"]),
        last_run_at=as_utc(row["last_run_at"]),
        next_run_at=as_utc(row["next_run_at"]),
        last_result=row["last_result"],
        created_at=as_utc(row["created_at"]) or utc_now(),
        updated_at=as_utc(row["updated_at"]) or utc_now(),
    )


def _row_from_record(record: ScheduleRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "description": record.description,
        "pipeline_type": record.pipeline_type,
        "cron_expression": record.cron_expression,
        "time_zone": record.time_zone,
        "parameters": record.parameters,
        "is_active": record.is_active,
        "is_running": record.is_running,
        "last_run_at": record.last_run_at,
        "next_run_at": record.next_run_at,
        "last_result": record.last_result,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


class ScheduleRepository:
    """Source of truth for schedule records."""

    def __init__(self, db: Database):
        self.db = db

    async def list(self, active_only: bool = False) -> List[ScheduleRecord]:
        query = select(pipeline_schedules).order_by(pipeline_schedules.c.created_at)
        if active_only:
            query = query.where(pipeline_schedules.c.is_active.is_(True))
        return [_record_from_row(row) for row in await self.db.all(query)]

    async def running(self, pipeline_type: str) -> List[ScheduleRecord]:
        """Records of `pipeline_type` currently flagged as running by any process."""
        query = select(pipeline_schedules).where(
            pipeline_schedules.c.pipeline_type == pipeline_type,
            pipeline_schedules.c.is_running.is_(True),
        )
        return [_record_from_row(row) for row in await self.db.all(query)]

    async def get(self, schedule_id: str) -> Optional[ScheduleRecord]:
        row = await self.db.get(select(pipeline_schedules).where(pipeline_schedules.c.id == schedule_id))
        return _record_from_row(row) if row else None

    async def save(self, record: ScheduleRecord) -> None:
        """Insert or fully overwrite the record."""
        record.updated_at = utc_now()
        await self.db.upsert(pipeline_schedules, [_row_from_record(record)], "id")

    async def update_fields(self, schedule_id: str, **fields: Any) -> None:
        fields["updated_at"] = utc_now()
        await self.db.execute(
            update(pipeline_schedules).where(pipeline_schedules.c.id == schedule_id).values(**fields)
        )

    async def delete(self, schedule_id: str) -> bool:
        deleted = await self.db.execute(delete(pipeline_schedules).where(pipeline_schedules.c.id == schedule_id))
        return deleted > 0


class PipelineHistoryRepository:
    """Append-only record of pipeline runs."""

    def __init__(self, db: Database):
        self.db = db

    async def start(self, pipeline_type: str, schedule_id: Optional[str] = None) -> str:
        history_id = str(uuid.uuid4())
        await self.db.upsert(pipeline_history, [{
            "id": history_id,
            "pipeline_type": pipeline_type,
            "schedule_id": schedule_id,
            "started_at": utc_now(),
            "status": "running",
        }], "id")
        return history_id

    async def complete(
        self,
        history_id: str,
        status: str,
        run_id: Optional[str] = None,
        items_processed: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        await self.db.execute(
            update(pipeline_history)
            .where(pipeline_history.c.id == history_id)
            .values(
                status=status,
                run_id=run_id,
                completed_at=utc_now(),
                items_processed=items_processed,
                error_message=error_message,
            )
        )

    async def recent(self, pipeline_type: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        query = select(pipeline_history).order_by(pipeline_history.c.started_at.desc()).limit(limit)
        if pipeline_type:
            query = query.where(pipeline_history.c.pipeline_type == pipeline_type)
        return await self.db.all(query)


class EntityStore:
    """Idempotent writes of extracted entities keyed by their upstream ids."""

    def __init__(self, db: Database):
        self.db = db

    async def upsert_raw(self, records: Iterable[RawDataRecord]) -> int:
        return await self.db.upsert(github_raw_data, [r.to_row() for r in records], NATURAL_KEYS["github_raw_data"])

    async def upsert_repositories(self, entities: Iterable[Repository]) -> int:
        return await self.db.upsert("repositories", [e.to_row() for e in entities])

    async def upsert_contributors(self, entities: Iterable[Contributor]) -> int:
        return await self.db.upsert("contributors", [e.to_row() for e in entities])

    async def upsert_merge_requests(self, entities: Iterable[MergeRequest]) -> int:
        return await self.db.upsert("merge_requests", [e.to_row() for e in entities])

    async def upsert_commits(self, entities: Iterable[Commit]) -> int:
        return await self.db.upsert("commits", [e.to_row() for e in entities])

    async def list_unenriched(
        self,
        entity_type: str,
        limit: int = 100,
        max_attempts: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Rows still waiting for enrichment, least attempted first.

        Rows that already failed `max_attempts` times are left out.
        """
        table = ENTITY_TABLES[entity_type]
        query = (
            select(table)
            .where(table.c.is_enriched.is_(False))
            .order_by(table.c.enrichment_attempts, table.c.id)
            .limit(limit)
        )
        if max_attempts is not None:
            query = query.where(table.c.enrichment_attempts < max_attempts)
        return await self.db.all(query)

    async def record_enrichment_failures(self, entity_type: str, rows: Iterable[Dict[str, Any]]) -> int:
        """Increment enrichment_attempts for rows whose lookup failed."""
        table = ENTITY_TABLES[entity_type]
        keys = NATURAL_KEYS[table.name]
        updated = 0
        for row in rows:
            statement = (
                update(table)
                .where(and_(*(table.c[k] == row[k] for k in keys)))
                .where(table.c.is_enriched.is_(False))
                .values(enrichment_attempts=table.c.enrichment_attempts + 1)
            )
            updated += await self.db.execute(statement)
        return updated

    async def save_enrichment(self, entity_type: str, rows: Iterable[Dict[str, Any]]) -> int:
        """
        Write detail fields and flip is_enriched to true.

        Each row must carry the natural key columns. Rows that are already
        enriched are left untouched, so the flag transitions at most once.
        """
        table = ENTITY_TABLES[entity_type]
        keys = NATURAL_KEYS[table.name]
        now = utc_now()
        updated = 0
        for row in rows:
            details = {k: v for k, v in row.items() if k not in keys}
            statement = (
                update(table)
                .where(and_(*(table.c[k] == row[k] for k in keys)))
                .where(table.c.is_enriched.is_(False))
                .values(**details, is_enriched=True, enriched_at=now, updated_at=now)
            )
            updated += await self.db.execute(statement)
        return updated

    async def count(self, entity_type: str, enriched: Optional[bool] = None) -> int:
        table = ENTITY_TABLES[entity_type]
        query = f"SELECT COUNT(*) AS n FROM {table.name}"
        params: Dict[str, Any] = {}
        if enriched is not None:
            query += " WHERE is_enriched = :enriched"
            params["enriched"] = enriched
        row = await self.db.get(query, params)
        return int(row["n"]) if row else 0
