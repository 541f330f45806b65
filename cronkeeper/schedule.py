"""
Schedule evaluation: next run time for at / every / cron schedules.

Cron expressions have five fields (minute hour day-of-month month
day-of-week). Day-of-month and day-of-week must BOTH match; this differs
from Vixie cron, which ORs them when both are restricted.

The search steps through wall-clock minutes, so only the first pass of a
repeated fall-back hour can match. When ``after`` lies in the second pass,
the rest of that hour is skipped and a frequent expression such as
``*/5 * * * *`` can stay silent for up to an hour. Minutes inside a
spring-forward gap never match.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, tzinfo
from typing import List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cronkeeper.models import KIND_AT, KIND_CRON, KIND_EVERY, Schedule

CRON_FIELD_COUNT = 5
SEARCH_HORIZON = timedelta(days=366)
INT_RE = re.compile(r"^[0-9]+$")

MINUTE_BOUNDS = (0, 59)
HOUR_BOUNDS = (0, 23)
DAY_OF_MONTH_BOUNDS = (1, 31)
MONTH_BOUNDS = (1, 12)
DAY_OF_WEEK_BOUNDS = (0, 6)


def parse_field(field: str, minimum: int, maximum: int) -> Optional[Set[int]]:
    """Expand one cron field into the set of values it allows.

    Supports ``*``, ``*/N``, ``N``, ``lo-hi`` and comma-separated lists of
    those. Returns None when any part is malformed. Integers outside
    ``minimum..maximum`` are kept and simply never match.
    """
    values: Set[int] = set()
    for raw_part in field.split(","):
        part = raw_part.strip()

        if part.startswith("*/"):
            step_text = part[2:]
            if not INT_RE.match(step_text) or int(step_text) <= 0:
                return None
            values.update(range(minimum, maximum + 1, int(step_text)))
            continue

        if part == "*":
            values.update(range(minimum, maximum + 1))
            continue

        if "-" in part:
            left, right = part.split("-", 1)
            if not INT_RE.match(left) or not INT_RE.match(right):
                return None
            start = int(left)
            end = int(right)
            if start > end:
                return None
            values.update(range(start, end + 1))
            continue

        if not INT_RE.match(part):
            return None
        values.add(int(part))

    if not values:
        return None
    return values


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """ZoneInfo for ``name``, or None meaning the process local zone."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None


def _cron_weekday(candidate: datetime) -> int:
    # datetime.weekday() is Monday=0; cron is Sunday=0.
    return (candidate.weekday() + 1) % 7


def _is_nonexistent_local(local_dt: datetime) -> bool:
    naive = local_dt.replace(tzinfo=None)
    roundtrip = datetime.fromtimestamp(local_dt.timestamp(), tz=local_dt.tzinfo)
    return roundtrip.replace(tzinfo=None) != naive


def _has_value_in(values: Set[int], bounds: Tuple[int, int]) -> bool:
    return any(bounds[0] <= value <= bounds[1] for value in values)


def _first_of_next_month(candidate: datetime) -> datetime:
    if candidate.month == 12:
        return candidate.replace(year=candidate.year + 1, month=1, day=1, hour=0, minute=0)
    return candidate.replace(month=candidate.month + 1, day=1, hour=0, minute=0)


def next_cron_time(expr: str, after: datetime) -> Optional[datetime]:
    """First minute strictly after ``after`` matching ``expr``, in after's zone.

    ``after`` may be naive (process local time) or aware; arithmetic is done
    on wall-clock values. Returns None for an invalid expression or when
    nothing matches within 366 days.
    """
    fields = expr.split()
    if len(fields) != CRON_FIELD_COUNT:
        return None

    minutes = parse_field(fields[0], *MINUTE_BOUNDS)
    hours = parse_field(fields[1], *HOUR_BOUNDS)
    days_of_month = parse_field(fields[2], *DAY_OF_MONTH_BOUNDS)
    months = parse_field(fields[3], *MONTH_BOUNDS)
    days_of_week = parse_field(fields[4], *DAY_OF_WEEK_BOUNDS)
    if minutes is None or hours is None or days_of_month is None or months is None or days_of_week is None:
        return None
    if not (
        _has_value_in(minutes, MINUTE_BOUNDS)
        and _has_value_in(hours, HOUR_BOUNDS)
        and _has_value_in(days_of_month, DAY_OF_MONTH_BOUNDS)
        and _has_value_in(months, MONTH_BOUNDS)
        and _has_value_in(days_of_week, DAY_OF_WEEK_BOUNDS)
    ):
        return None

    after_ts = after.timestamp()
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = after + SEARCH_HORIZON
    while candidate < limit:
        if candidate.month not in months:
            candidate = _first_of_next_month(candidate)
            continue
        if candidate.day not in days_of_month or _cron_weekday(candidate) not in days_of_week:
            candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
            continue
        if candidate.hour not in hours:
            candidate = candidate.replace(minute=0) + timedelta(hours=1)
            continue
        # Wall-clock stepping drops fold, so inside a repeated hour a
        # candidate can map to an instant before ``after``.
        if (
            candidate.minute in minutes
            and candidate.timestamp() > after_ts
            and not _is_nonexistent_local(candidate)
        ):
            return candidate
        candidate += timedelta(minutes=1)
    return None


def compute_next_run(schedule: Schedule, now_ms: int) -> Optional[int]:
    """Next run time in epoch milliseconds, or None if the schedule can't fire."""
    if schedule.kind == KIND_AT:
        if schedule.at_ms is not None and schedule.at_ms > now_ms:
            return schedule.at_ms
        return None

    if schedule.kind == KIND_EVERY:
        if schedule.every_ms is None or schedule.every_ms <= 0:
            return None
        return now_ms + schedule.every_ms

    if schedule.kind == KIND_CRON and schedule.expr:
        zone = resolve_timezone(schedule.tz)
        now = datetime.fromtimestamp(now_ms / 1000.0, tz=zone)
        nxt = next_cron_time(schedule.expr, now)
        if nxt is None:
            return None
        return int(nxt.timestamp()) * 1000

    return None


def next_run_times(schedule: Schedule, count: int, now_ms: int) -> List[int]:
    runs: List[int] = []
    cursor = now_ms
    while len(runs) < count:
        nxt = compute_next_run(schedule, cursor)
        if nxt is None or (runs and nxt <= runs[-1]):
            break
        runs.append(nxt)
        cursor = nxt
    return runs
