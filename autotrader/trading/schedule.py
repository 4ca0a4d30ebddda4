# autotrader/trading/schedule.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from autotrader.trading.models import ScheduleState

logger = logging.getLogger(__name__)

# Fixed UTC+3 civil calendar, no DST
CIVIL_TZ = timezone(timedelta(hours=3))


def parse_daily_time(value: str) -> Optional[Tuple[int, int]]:
    try:
        hh, mm = map(int, value.strip().split(":"))
    except (AttributeError, ValueError):
        return None
    if not (0 <= hh <= 23 and 0 <= mm <= 59):
        return None
    return hh, mm


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def is_due(state: ScheduleState, now: datetime) -> bool:
    """Whether an account's cycle should run at ``now`` (UTC)."""
    now = _as_utc(now)
    last = _as_utc(state.last_run_at) if state.last_run_at else None

    if state.schedule_type == "interval":
        if last is None:
            return True
        elapsed_minutes = int((now - last).total_seconds() // 60)
        return elapsed_minutes >= state.interval_minutes

    if state.schedule_type == "daily":
        target = parse_daily_time(state.daily_time)
        if target is None:
            logger.warning(f"Malformed daily time {state.daily_time!r}, skipping")
            return False
        civil_now = now.astimezone(CIVIL_TZ)
        if last is not None and last.astimezone(CIVIL_TZ).date() == civil_now.date():
            return False
        return (civil_now.hour, civil_now.minute) >= target

    logger.warning(f"Unknown schedule type {state.schedule_type!r}, skipping")
    return False
