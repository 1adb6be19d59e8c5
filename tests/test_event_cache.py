import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from calhub.database import Database
from calhub.errors import EventCacheError
from calhub.event_cache import EventCache
from calhub.models import CalendarEvent, EventSource, TimeRange

BASE = datetime(2026, 1, 27, 0, 0, tzinfo=timezone.utc)


def _event(event_id: str, calendar_id: str, start_hours: float, end_hours: float, title: str = "") -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        calendar_id=calendar_id,
        title=title or event_id,
        start=BASE + timedelta(hours=start_hours),
        end=BASE + timedelta(hours=end_hours),
        source=EventSource(type="ical", calendar_name="Feed"),
    )


class EventCacheTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db = Database(Path(self.temp_dir.name) / "calhub.db")
        await self.db.init_schema()
        self.cache = EventCache(self.db, "user-1")
        await self.cache.ensure_calendar_record("cal-a", "A", "ical", "{}", True)
        await self.cache.ensure_calendar_record("cal-b", "B", "ical", "{}", True)

    async def asyncTearDown(self) -> None:
        self.temp_dir.cleanup()

    async def test_range_query_uses_overlap(self) -> None:
        await self.cache.save_many(
            [
                _event("before", "cal-a", -5, -1),
                _event("touch-start", "cal-a", -2, 0),
                _event("inside", "cal-a", 2, 3),
                _event("spanning", "cal-b", -24, 48),
                _event("touch-end", "cal-b", 24, 25),
                _event("after", "cal-b", 25, 26),
            ]
        )
        window = TimeRange(start=BASE, end=BASE + timedelta(hours=24))
        found = await self.cache.find_by_range(window)
        self.assertEqual([event.id for event in found], ["spanning", "touch-start", "inside", "touch-end"])

    async def test_save_many_upserts_on_composite_key(self) -> None:
        await self.cache.save_many([_event("e1", "cal-a", 1, 2, title="Old")])
        await self.cache.save_many([_event("e1", "cal-a", 1, 2, title="New"), _event("e1", "cal-b", 1, 2)])
        by_a = await self.cache.find_by_calendar_id("cal-a")
        self.assertEqual([(event.id, event.title) for event in by_a], [("e1", "New")])
        self.assertEqual(len(await self.cache.find_by_calendar_id("cal-b")), 1)

    async def test_save_many_empty_is_noop(self) -> None:
        await self.cache.save_many([])
        self.assertEqual(await self.cache.find_by_calendar_id("cal-a"), [])

    async def test_events_need_a_calendar_record(self) -> None:
        with self.assertRaises(EventCacheError):
            await self.cache.save_many([_event("e1", "unregistered", 1, 2)])

    async def test_users_are_isolated(self) -> None:
        await self.cache.save_many([_event("e1", "cal-a", 1, 2)])
        other = EventCache(self.db, "user-2")
        window = TimeRange(start=BASE - timedelta(days=1), end=BASE + timedelta(days=1))
        self.assertEqual(await other.find_by_range(window), [])
        self.assertIsNone(await other.get_calendar_record("cal-a"))

    async def test_delete_by_calendar_keeps_other_calendars(self) -> None:
        await self.cache.save_many([_event("e1", "cal-a", 1, 2), _event("e2", "cal-b", 1, 2)])
        await self.cache.delete_by_calendar("cal-a")
        self.assertEqual(await self.cache.find_by_calendar_id("cal-a"), [])
        self.assertEqual([event.id for event in await self.cache.find_by_calendar_id("cal-b")], ["e2"])
        self.assertIsNotNone(await self.cache.get_calendar_record("cal-a"))

    async def test_sync_state_round_trip(self) -> None:
        self.assertIsNone(await self.cache.get_last_sync_time("cal-a"))
        self.assertIsNone(await self.cache.get_latest_sync_time())
        first = BASE + timedelta(minutes=5)
        second = BASE + timedelta(minutes=10)
        await self.cache.update_last_sync_time("cal-a", first)
        await self.cache.update_last_sync_time("cal-b", second)
        await self.cache.update_last_sync_time("cal-a", first + timedelta(microseconds=1))
        self.assertEqual(await self.cache.get_last_sync_time("cal-a"), first + timedelta(microseconds=1))
        self.assertEqual(await self.cache.get_latest_sync_time(), second)

    async def test_calendar_record_is_insert_if_absent(self) -> None:
        await self.cache.ensure_calendar_record("cal-a", "Renamed", "google", '{"x": 1}', False)
        record = await self.cache.get_calendar_record("cal-a")
        self.assertEqual(record["name"], "A")
        self.assertTrue(record["is_active"])

    async def test_delete_calendar_record_removes_events_and_state(self) -> None:
        await self.cache.save_many([_event("e1", "cal-a", 1, 2)])
        await self.cache.update_last_sync_time("cal-a", BASE)
        await self.cache.delete_calendar_record("cal-a")
        self.assertIsNone(await self.cache.get_calendar_record("cal-a"))
        self.assertEqual(await self.cache.find_by_calendar_id("cal-a"), [])
        self.assertIsNone(await self.cache.get_last_sync_time("cal-a"))


if __name__ == "__main__":
    unittest.main()
