"""Read-side helpers answering "what is on today / this week" from the cache."""

from __future__ import annotations

from datetime import datetime, tzinfo

from calhub.context import CalendarContext
from calhub.models import DEFAULT_TIMEZONE, CalendarEvent, TimeRange, day_window, resolve_timezone, utc_now

WEEK_DAYS = 7


def today_range(now: datetime, tz: tzinfo) -> TimeRange:
    return day_window(now, tz, days=1)


def week_range(now: datetime, tz: tzinfo) -> TimeRange:
    return day_window(now, tz, days=WEEK_DAYS)


async def get_events_in_range(ctx: CalendarContext, time_range: TimeRange) -> list[CalendarEvent]:
    return await ctx.event_cache.find_by_range(time_range)


async def get_events_for_today(
    ctx: CalendarContext,
    *,
    now: datetime | None = None,
    timezone_name: str = DEFAULT_TIMEZONE,
) -> list[CalendarEvent]:
    return await get_events_in_range(ctx, today_range(now or utc_now(), resolve_timezone(timezone_name)))


async def get_events_for_week(
    ctx: CalendarContext,
    *,
    now: datetime | None = None,
    timezone_name: str = DEFAULT_TIMEZONE,
) -> list[CalendarEvent]:
    return await get_events_in_range(ctx, week_range(now or utc_now(), resolve_timezone(timezone_name)))
