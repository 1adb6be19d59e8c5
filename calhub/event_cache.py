from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

import aiosqlite

from calhub.database import Database
from calhub.errors import EventCacheError
from calhub.models import (
    CalendarEvent,
    EventSource,
    TimeRange,
    parse_iso_datetime,
    to_storage_time,
    utc_now,
)

_EVENT_COLUMNS = """
    id, calendar_id, user_id, title, start_time, end_time, is_all_day,
    location, description, source_type, source_calendar_name, source_account_email
"""


def _row_to_event(row: aiosqlite.Row) -> CalendarEvent:
    return CalendarEvent(
        id=str(row["id"]),
        calendar_id=str(row["calendar_id"]),
        title=str(row["title"]),
        start=parse_iso_datetime(row["start_time"]),
        end=parse_iso_datetime(row["end_time"]),
        all_day=bool(row["is_all_day"]),
        location=row["location"],
        description=row["description"],
        source=EventSource(
            type=str(row["source_type"]),
            calendar_name=str(row["source_calendar_name"]),
            account_email=row["source_account_email"],
        ),
    )


def _event_params(user_id: str, event: CalendarEvent, updated_at: str) -> tuple[Any, ...]:
    return (
        event.id,
        event.calendar_id,
        user_id,
        event.title,
        to_storage_time(event.start),
        to_storage_time(event.end),
        1 if event.all_day else 0,
        event.location,
        event.description,
        event.source.type,
        event.source.calendar_name,
        event.source.account_email,
        updated_at,
    )


class EventCache:
    """Cached events, calendar records and sync state for one user."""

    def __init__(self, db: Database, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    async def find_by_range(self, time_range: TimeRange) -> list[CalendarEvent]:
        # Overlap, not containment: multi-day events crossing either edge are included.
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    f"""
                    SELECT {_EVENT_COLUMNS}
                    FROM calendar_events
                    WHERE user_id = ? AND start_time <= ? AND end_time >= ?
                    ORDER BY start_time ASC, id ASC
                    """,
                    (self.user_id, to_storage_time(time_range.end), to_storage_time(time_range.start)),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise EventCacheError(f"Failed to query events by range: {exc}") from exc
        return [_row_to_event(row) for row in rows]

    async def find_by_calendar_id(self, calendar_id: str) -> list[CalendarEvent]:
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    f"""
                    SELECT {_EVENT_COLUMNS}
                    FROM calendar_events
                    WHERE user_id = ? AND calendar_id = ?
                    ORDER BY start_time ASC, id ASC
                    """,
                    (self.user_id, calendar_id),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise EventCacheError(f"Failed to query events for calendar {calendar_id}: {exc}") from exc
        return [_row_to_event(row) for row in rows]

    async def save_many(self, events: Iterable[CalendarEvent]) -> None:
        items = list(events)
        if not items:
            return
        updated_at = to_storage_time(utc_now())
        try:
            async with self.db.connect() as conn:
                await conn.executemany(
                    """
                    INSERT INTO calendar_events(
                        id, calendar_id, user_id, title, start_time, end_time, is_all_day,
                        location, description, source_type, source_calendar_name,
                        source_account_email, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id, calendar_id, user_id) DO UPDATE SET
                        title = excluded.title,
                        start_time = excluded.start_time,
                        end_time = excluded.end_time,
                        is_all_day = excluded.is_all_day,
                        location = excluded.location,
                        description = excluded.description,
                        source_type = excluded.source_type,
                        source_calendar_name = excluded.source_calendar_name,
                        source_account_email = excluded.source_account_email,
                        updated_at = excluded.updated_at
                    """,
                    [_event_params(self.user_id, event, updated_at) for event in items],
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise EventCacheError(f"Failed to save {len(items)} events: {exc}") from exc

    async def delete_by_calendar(self, calendar_id: str) -> None:
        try:
            async with self.db.connect() as conn:
                await conn.execute(
                    "DELETE FROM calendar_events WHERE user_id = ? AND calendar_id = ?",
                    (self.user_id, calendar_id),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise EventCacheError(f"Failed to delete events for calendar {calendar_id}: {exc}") from exc

    async def get_last_sync_time(self, calendar_id: str) -> datetime | None:
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    """
                    SELECT last_sync_time
                    FROM calendar_sync_state
                    WHERE user_id = ? AND calendar_id = ?
                    """,
                    (self.user_id, calendar_id),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise EventCacheError(f"Failed to read sync state for calendar {calendar_id}: {exc}") from exc
        if row is None:
            return None
        return parse_iso_datetime(row["last_sync_time"])

    async def get_latest_sync_time(self) -> datetime | None:
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    "SELECT MAX(last_sync_time) AS last_sync_time FROM calendar_sync_state WHERE user_id = ?",
                    (self.user_id,),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise EventCacheError(f"Failed to read sync state: {exc}") from exc
        if row is None or row["last_sync_time"] is None:
            return None
        return parse_iso_datetime(row["last_sync_time"])

    async def update_last_sync_time(self, calendar_id: str, timestamp: datetime) -> None:
        try:
            async with self.db.connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO calendar_sync_state(calendar_id, user_id, last_sync_time, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(calendar_id, user_id) DO UPDATE SET
                        last_sync_time = excluded.last_sync_time,
                        updated_at = excluded.updated_at
                    """,
                    (calendar_id, self.user_id, to_storage_time(timestamp), to_storage_time(utc_now())),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise EventCacheError(f"Failed to update sync state for calendar {calendar_id}: {exc}") from exc

    async def ensure_calendar_record(
        self,
        calendar_id: str,
        name: str,
        calendar_type: str,
        config_blob: str,
        is_active: bool,
    ) -> None:
        # Insert-if-absent only: an existing record is never overwritten.
        try:
            async with self.db.connect() as conn:
                await conn.execute(
                    """
                    INSERT OR IGNORE INTO calendars(id, user_id, name, type, config, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        calendar_id,
                        self.user_id,
                        name,
                        calendar_type,
                        config_blob,
                        1 if is_active else 0,
                        to_storage_time(utc_now()),
                    ),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise EventCacheError(f"Failed to register calendar {calendar_id}: {exc}") from exc

    async def get_calendar_record(self, calendar_id: str) -> dict[str, Any] | None:
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    """
                    SELECT id, name, type, config, is_active, created_at
                    FROM calendars
                    WHERE user_id = ? AND id = ?
                    """,
                    (self.user_id, calendar_id),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise EventCacheError(f"Failed to read calendar {calendar_id}: {exc}") from exc
        if row is None:
            return None
        item = dict(row)
        item["is_active"] = bool(item["is_active"])
        return item

    async def delete_calendar_record(self, calendar_id: str) -> None:
        """Remove a calendar together with its cached events and sync state."""
        try:
            async with self.db.connect() as conn:
                await conn.execute(
                    "DELETE FROM calendar_events WHERE user_id = ? AND calendar_id = ?",
                    (self.user_id, calendar_id),
                )
                await conn.execute(
                    "DELETE FROM calendar_sync_state WHERE user_id = ? AND calendar_id = ?",
                    (self.user_id, calendar_id),
                )
                await conn.execute(
                    "DELETE FROM calendars WHERE user_id = ? AND id = ?",
                    (self.user_id, calendar_id),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise EventCacheError(f"Failed to delete calendar {calendar_id}: {exc}") from exc
