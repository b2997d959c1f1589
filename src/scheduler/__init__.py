"""Cron-driven scheduling of pipeline runs."""

from .cron import build_trigger, is_valid_cron, next_fire_time, resolve_timezone
from .service import SchedulerService

__all__ = ["SchedulerService", "build_trigger", "is_valid_cron", "next_fire_time", "resolve_timezone"]
