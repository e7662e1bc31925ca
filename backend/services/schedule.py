"""Next-fire-time evaluation for the three schedule kinds.

``cron``  : 5-field expression, or 6 fields with a leading seconds field,
            evaluated in an optional IANA timezone.
``every`` : fixed interval in milliseconds, optionally phase-locked to an anchor.
``at``    : one absolute timestamp in milliseconds; nothing after it has fired.

All datetimes in and out are naive UTC. Validation and evaluation share
``_cron_next`` so a schedule that validates always yields a fire time and one
that does not never does.
"""
from datetime import datetime, timezone
from typing import Any, List, Optional
import logging

from croniter import croniter, CroniterError
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from utils.clock import to_ms, from_ms

logger = logging.getLogger(__name__)

SCHEDULE_CRON = "cron"
SCHEDULE_EVERY = "every"
SCHEDULE_AT = "at"
SCHEDULE_TYPES = (SCHEDULE_CRON, SCHEDULE_EVERY, SCHEDULE_AT)


def _zone(tz: Optional[str]):
    if not tz:
        return timezone.utc
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _cron_next(expr: Any, from_time: datetime, tz: Optional[str]) -> Optional[datetime]:
    if not isinstance(expr, str):
        return None
    fields = expr.split()
    if len(fields) not in (5, 6):
        return None
    zone = _zone(tz)
    if zone is None:
        return None
    start = from_time.replace(tzinfo=timezone.utc).astimezone(zone)
    try:
        itr = croniter(" ".join(fields), start, second_at_beginning=len(fields) == 6)
        fire = itr.get_next(datetime)
    except (CroniterError, ValueError, KeyError, OverflowError) as e:
        logger.debug(f"Cron expression rejected: {expr!r} ({e})")
        return None
    return fire.astimezone(timezone.utc).replace(tzinfo=None)


def _as_positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value > 0 else None


def _safe_from_ms(value: int) -> Optional[datetime]:
    # Past year 9999 there is no datetime to fire at
    try:
        return from_ms(value)
    except (ValueError, OverflowError, OSError):
        return None


def next_fire_time(
    schedule_type: str,
    value: Any,
    from_time: datetime,
    *,
    tz: Optional[str] = None,
    anchor_ms: Optional[int] = None,
    fired: bool = False,
) -> Optional[datetime]:
    """Next fire time strictly after ``from_time``, or None when there is none."""
    if schedule_type == SCHEDULE_CRON:
        return _cron_next(value, from_time, tz)

    if schedule_type == SCHEDULE_EVERY:
        interval = _as_positive_int(value)
        if interval is None:
            return None
        now_ms = to_ms(from_time)
        if anchor_ms is None:
            return _safe_from_ms(now_ms + interval)
        if now_ms < anchor_ms:
            return _safe_from_ms(anchor_ms)
        steps = (now_ms - anchor_ms) // interval + 1
        return _safe_from_ms(anchor_ms + steps * interval)

    if schedule_type == SCHEDULE_AT:
        if fired:
            return None
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return None
        return _safe_from_ms(value)

    return None


def is_valid_schedule(schedule_type: str, value: Any, tz: Optional[str] = None) -> bool:
    reference = datetime(2000, 1, 1)
    if schedule_type == SCHEDULE_CRON:
        return _cron_next(value, reference, tz) is not None
    if schedule_type in (SCHEDULE_EVERY, SCHEDULE_AT):
        return next_fire_time(schedule_type, value, reference) is not None
    return False


def schedule_value(job) -> Any:
    """The schedule value stored on a Cronjob row for its schedule type."""
    if job.schedule_type == SCHEDULE_CRON:
        return job.schedule_expr
    if job.schedule_type == SCHEDULE_EVERY:
        return job.schedule_interval_ms
    if job.schedule_type == SCHEDULE_AT:
        return job.schedule_at_ms
    return None


def compute_next_run(job, from_time: datetime, fired: bool = False) -> Optional[datetime]:
    if not job.enabled:
        return None
    return next_fire_time(
        job.schedule_type,
        schedule_value(job),
        from_time,
        tz=job.schedule_tz,
        anchor_ms=job.schedule_anchor_ms,
        fired=fired,
    )


def preview_fire_times(
    schedule_type: str,
    value: Any,
    from_time: datetime,
    count: int = 5,
    tz: Optional[str] = None,
    anchor_ms: Optional[int] = None,
) -> List[datetime]:
    """The next ``count`` fire times, for schedule previews."""
    times: List[datetime] = []
    cursor = from_time
    for _ in range(max(count, 0)):
        fire = next_fire_time(schedule_type, value, cursor, tz=tz, anchor_ms=anchor_ms)
        if fire is None:
            break
        times.append(fire)
        if schedule_type == SCHEDULE_AT:
            break
        cursor = fire
    return times
