"""Pure attendance rules: geofence, lateness, breaks, worked minutes."""

import math
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.services.state_machine import PunchType

EARTH_RADIUS_METERS = 6371000.0
DEFAULT_TIME_ZONE = "America/Sao_Paulo"
DEFAULT_SCHEDULED_START = "08:00"
DEFAULT_PLANNED_MINUTES = 480


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


def get_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIME_ZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIME_ZONE)


def parse_hhmm(value: Optional[str], default: str = DEFAULT_SCHEDULED_START) -> tuple[int, int]:
    for candidate in (value, default):
        if not candidate:
            continue
        parts = str(candidate).strip().split(":")
        if len(parts) < 2:
            continue
        try:
            hours, minutes = int(parts[0]), int(parts[1])
        except ValueError:
            continue
        if 0 <= hours <= 23 and 0 <= minutes <= 59:
            return hours, minutes
    return 8, 0


def _zone_offset(instant_utc: datetime, zone: ZoneInfo) -> timedelta:
    return instant_utc.astimezone(zone).utcoffset() or timedelta(0)


def zoned_local_to_utc(day: date, hours: int, minutes: int, time_zone: Optional[str]) -> datetime:
    """UTC instant of a wall-clock time in ``time_zone``.

    Treat the wall time as UTC, measure the zone offset at that guess, shift,
    then measure again at the shifted instant so DST edges settle correctly.
    """
    zone = get_zone(time_zone)
    naive_guess = datetime(day.year, day.month, day.day, hours, minutes, tzinfo=timezone.utc)
    first = naive_guess - _zone_offset(naive_guess, zone)
    second = naive_guess - _zone_offset(first, zone)
    return second


def local_date_for(instant: datetime, time_zone: Optional[str]) -> date:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(get_zone(time_zone)).date()


def lateness_minutes(
    punch_at: datetime,
    scheduled_start_hhmm: Optional[str],
    time_zone: Optional[str],
) -> int:
    """Whole minutes after the scheduled start on the punch's local day (0 when early)."""
    if punch_at.tzinfo is None:
        punch_at = punch_at.replace(tzinfo=timezone.utc)
    day = local_date_for(punch_at, time_zone)
    hours, minutes = parse_hhmm(scheduled_start_hhmm)
    scheduled = zoned_local_to_utc(day, hours, minutes, time_zone)
    delta = (punch_at - scheduled).total_seconds() / 60
    return max(0, int(math.floor(delta)))


def is_late(lateness: int, tolerance_minutes: int) -> bool:
    return lateness > max(0, tolerance_minutes)


def has_complete_break(punch_types: Iterable[str]) -> bool:
    seen_start = False
    for punch_type in punch_types:
        if punch_type == PunchType.BREAK_START.value:
            seen_start = True
        elif punch_type == PunchType.BREAK_END.value and seen_start:
            return True
    return False


def _minutes_between(start: datetime, end: datetime) -> int:
    return max(0, round((end - start).total_seconds() / 60))


def compute_worked_minutes(
    entry: datetime,
    exit_at: datetime,
    break_start: Optional[datetime] = None,
    break_end: Optional[datetime] = None,
) -> int:
    if break_start is not None and break_end is not None:
        return _minutes_between(entry, break_start) + _minutes_between(break_end, exit_at)
    return _minutes_between(entry, exit_at)


def worked_minutes_from_punches(punches: Iterable[tuple[str, datetime]]) -> Optional[int]:
    """Worked minutes for a day given ``(type, timestamp)`` pairs, None without ENTRY and EXIT."""
    ordered = sorted(punches, key=lambda item: item[1])
    entry = next((ts for kind, ts in ordered if kind == PunchType.ENTRY.value), None)
    exit_at = next((ts for kind, ts in reversed(ordered) if kind == PunchType.EXIT.value), None)
    if entry is None or exit_at is None:
        return None
    break_start = next((ts for kind, ts in ordered if kind == PunchType.BREAK_START.value), None)
    break_end = None
    if break_start is not None:
        break_end = next(
            (ts for kind, ts in ordered if kind == PunchType.BREAK_END.value and ts >= break_start),
            None,
        )
    return compute_worked_minutes(entry, exit_at, break_start, break_end)
