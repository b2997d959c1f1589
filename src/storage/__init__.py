"""Persistence layer: tables, async database and repositories."""

from .database import Database
from .repositories import EntityStore, PipelineHistoryRepository, ScheduleRepository

__all__ = ["Database", "EntityStore", "PipelineHistoryRepository", "ScheduleRepository"]
