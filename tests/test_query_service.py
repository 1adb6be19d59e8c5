import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

from calhub.context import create_calendar_context
from calhub.crypto import AesGcmCipher
from calhub.database import Database
from calhub.models import CalendarEvent, EventSource
from calhub.query_service import get_events_for_today, get_events_for_week, today_range, week_range

TOKYO = ZoneInfo("Asia/Tokyo")
# 10:00 on Tuesday Jan 27 in Tokyo
NOW = datetime(2026, 1, 27, 1, 0, tzinfo=timezone.utc)


def _local(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, day, hour, minute, tzinfo=TOKYO)


class QueryRangeTests(unittest.TestCase):
    def test_today_range_is_local_calendar_day(self) -> None:
        window = today_range(NOW, TOKYO)
        self.assertEqual(window.start, _local(27, 0))
        self.assertEqual(window.end, _local(28, 0) - timedelta(microseconds=1))

    def test_week_range_covers_seven_days(self) -> None:
        window = week_range(NOW, TOKYO)
        self.assertEqual(window.start, _local(27, 0))
        self.assertEqual(window.end, datetime(2026, 2, 3, tzinfo=TOKYO) - timedelta(microseconds=1))


class QueryServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        db = Database(Path(self.temp_dir.name) / "calhub.db")
        await db.init_schema()
        self.ctx = create_calendar_context(db, "user-1", AesGcmCipher(os.urandom(32)))
        await self.ctx.event_cache.ensure_calendar_record("cal", "Cal", "ical", "{}", True)

        def event(event_id: str, start: datetime, end: datetime) -> CalendarEvent:
            return CalendarEvent(
                id=event_id,
                calendar_id="cal",
                title=event_id,
                start=start,
                end=end,
                source=EventSource(type="ical", calendar_name="Cal"),
            )

        await self.ctx.event_cache.save_many(
            [
                event("yesterday", _local(26, 9), _local(26, 10)),
                event("overnight-in", _local(26, 22), _local(27, 1)),
                event("morning", _local(27, 9), _local(27, 10)),
                event("overnight-out", _local(27, 23), _local(28, 2)),
                event("tomorrow", _local(28, 9), _local(28, 10)),
                event("next-week", _local(30, 9), _local(30, 10)),
                event("too-far", datetime(2026, 2, 3, 0, 0, tzinfo=TOKYO), datetime(2026, 2, 3, 1, 0, tzinfo=TOKYO)),
            ]
        )

    async def asyncTearDown(self) -> None:
        self.temp_dir.cleanup()

    async def test_today_includes_events_straddling_midnight(self) -> None:
        events = await get_events_for_today(self.ctx, now=NOW, timezone_name="Asia/Tokyo")
        self.assertEqual([item.id for item in events], ["overnight-in", "morning", "overnight-out"])

    async def test_week_stops_before_eighth_day(self) -> None:
        events = await get_events_for_week(self.ctx, now=NOW, timezone_name="Asia/Tokyo")
        self.assertEqual(
            [item.id for item in events],
            ["overnight-in", "morning", "overnight-out", "tomorrow", "next-week"],
        )

    async def test_timezone_changes_the_day(self) -> None:
        events = await get_events_for_today(self.ctx, now=NOW, timezone_name="UTC")
        self.assertNotIn("yesterday", [item.id for item in events])
        self.assertIn("overnight-out", [item.id for item in events])


if __name__ == "__main__":
    unittest.main()
