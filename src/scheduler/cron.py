"""Cron expression and time zone helpers built on APScheduler triggers."""

from datetime import datetime, timezone, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from src.models.errors import ScheduleValidationError

DEFAULT_TIME_ZONE = "UTC"


def resolve_timezone(name: Optional[str], logger: Optional['StructuredLogger'] = None) -> Tuple[tzinfo, str]:
    """
    Resolve an IANA time zone name.

    Unknown names fall back to UTC with a warning instead of failing,
    so a typo never silently disables a schedule.

    Returns:
        (tzinfo, effective zone name)
    """
    zone_name = name or DEFAULT_TIME_ZONE
    try:
        return ZoneInfo(zone_name), zone_name
    except (ZoneInfoNotFoundError, ValueError):
        if logger:
            logger.warning("invalid_time_zone", time_zone=zone_name, fallback=DEFAULT_TIME_ZONE)
        return ZoneInfo(DEFAULT_TIME_ZONE), DEFAULT_TIME_ZONE


def build_trigger(expression: str, tz: tzinfo) -> CronTrigger:
    """
    Parse a five-field crontab expression.

    Raises:
        ScheduleValidationError: expression cannot be parsed
    """
    if not expression or not expression.strip():
        raise ScheduleValidationError("Cron expression must not be empty")
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone=tz)
    except (ValueError, TypeError) as exc:
        raise ScheduleValidationError(f"Invalid cron expression '{expression}': {exc}") from exc


def is_valid_cron(expression: str) -> bool:
    try:
        build_trigger(expression, timezone.utc)
    except ScheduleValidationError:
        return False
    return True


def next_fire_time(trigger: CronTrigger, now: datetime) -> Optional[datetime]:
    """Next fire time at or after `now`, normalized to UTC."""
    fire_time = trigger.get_next_fire_time(None, now)
    if fire_time is None:
        return None
    return fire_time.astimezone(timezone.utc)
