"""
执行时间窗口判断。

不在允许时间内的规则视为不匹配，而不是执行失败，也不影响规则的连续失败计数。
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from .models import BlackoutPeriod, ScheduleRestriction

UTC = timezone.utc

logger = logging.getLogger(__name__)


def _weekday_sunday_zero(moment: datetime) -> int:
    # datetime.weekday() 以周一为 0
    return (moment.weekday() + 1) % 7


def _within_hours(hour: int, start: int, end: int) -> bool:
    if start < end:
        return start <= hour < end
    # 跨越午夜，例如 22 → 6
    return hour >= start or hour < end


def _in_blackout(period: BlackoutPeriod, local_now: datetime) -> bool:
    if period.start.tzinfo is None:
        # 未带时区的时间按规则时区解释
        start = period.start.replace(tzinfo=local_now.tzinfo)
        end = period.end.replace(tzinfo=local_now.tzinfo)
    else:
        start, end = period.start, period.end
    return start <= local_now < end


def is_within_schedule(schedule: Optional[ScheduleRestriction], now: Optional[datetime] = None) -> bool:
    """判断当前时间是否允许执行。schedule 为空或未启用时始终允许。"""
    if schedule is None or not schedule.enabled:
        return True
    now = now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    local_now = now.astimezone(schedule.tz)

    if _weekday_sunday_zero(local_now) not in schedule.allowed_days:
        logger.debug("Schedule gate: day %s not allowed", local_now.strftime("%A"))
        return False

    hours = schedule.allowed_hours
    if hours is not None and not _within_hours(local_now.hour, hours.start, hours.end):
        logger.debug("Schedule gate: hour %d outside %d-%d", local_now.hour, hours.start, hours.end)
        return False

    for period in schedule.blackout_periods:
        if _in_blackout(period, local_now):
            logger.debug("Schedule gate: inside blackout %s", period.reason or period.start.isoformat())
            return False
    return True
