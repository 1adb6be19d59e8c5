from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

BUSY_TIMEOUT_SECONDS = 30.0

SCHEMA_SQL = """
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS calendars (
    id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    config TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    PRIMARY KEY (id, user_id)
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    is_all_day INTEGER NOT NULL DEFAULT 0,
    location TEXT,
    description TEXT,
    source_type TEXT NOT NULL,
    source_calendar_name TEXT NOT NULL,
    source_account_email TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (id, calendar_id, user_id),
    FOREIGN KEY (calendar_id, user_id) REFERENCES calendars(id, user_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_calendar_events_user_range
    ON calendar_events(user_id, start_time, end_time);

CREATE TABLE IF NOT EXISTS calendar_sync_state (
    calendar_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    last_sync_time TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (calendar_id, user_id),
    FOREIGN KEY (calendar_id, user_id) REFERENCES calendars(id, user_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS user_settings (
    user_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, key)
);

CREATE TABLE IF NOT EXISTS calendar_configs (
    user_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    config_json TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, calendar_id)
);

CREATE TABLE IF NOT EXISTS credentials (
    user_id TEXT NOT NULL,
    key TEXT NOT NULL,
    encrypted_value TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, key)
);
"""


class Database:
    """SQLite file shared by the event cache, config store and secret store."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(str(self.db_path), timeout=BUSY_TIMEOUT_SECONDS)
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            await conn.close()

    async def init_schema(self) -> None:
        async with self.connect() as conn:
            await conn.executescript(SCHEMA_SQL)
            await conn.commit()
