from __future__ import annotations

import logging

import aiosqlite
from pydantic import TypeAdapter, ValidationError

from calhub.database import Database
from calhub.errors import ConfigParseError, ConfigStoreError
from calhub.models import CalendarConfig, to_storage_time, utc_now

logger = logging.getLogger(__name__)

LEGACY_CALENDARS_KEY = "calendars"

_calendar_list_adapter = TypeAdapter(list[CalendarConfig])


def parse_calendar_config(raw: str) -> CalendarConfig:
    try:
        return CalendarConfig.model_validate_json(raw)
    except ValidationError as exc:
        raise ConfigParseError(f"Invalid calendar configuration: {exc}") from exc


def parse_calendar_list(raw: str) -> list[CalendarConfig]:
    try:
        return _calendar_list_adapter.validate_json(raw)
    except ValidationError as exc:
        raise ConfigParseError(f"Invalid calendar list: {exc}") from exc


def _row_to_config(calendar_id: str, raw: str) -> CalendarConfig:
    try:
        return parse_calendar_config(raw)
    except ConfigParseError as exc:
        logger.warning("Stored calendar config %s is unreadable: %s", calendar_id, exc)
        return CalendarConfig.unreadable(calendar_id, raw, str(exc))


class ConfigStore:
    """Per-user settings plus one row per registered calendar.

    Calendar configs live in their own rows so that toggling or deleting one
    calendar never rewrites the others.
    """

    def __init__(self, db: Database, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    # Generic settings

    async def get_setting(self, key: str) -> str | None:
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    "SELECT value FROM user_settings WHERE user_id = ? AND key = ?",
                    (self.user_id, key),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise ConfigStoreError(f"Failed to read setting {key}: {exc}") from exc
        return None if row is None else str(row["value"])

    async def get_settings(self) -> dict[str, str]:
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    "SELECT key, value FROM user_settings WHERE user_id = ? ORDER BY key",
                    (self.user_id,),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise ConfigStoreError(f"Failed to read settings: {exc}") from exc
        return {str(row["key"]): str(row["value"]) for row in rows}

    async def set_setting(self, key: str, value: str) -> None:
        try:
            async with self.db.connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO user_settings(user_id, key, value, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (self.user_id, key, str(value), to_storage_time(utc_now())),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise ConfigStoreError(f"Failed to write setting {key}: {exc}") from exc

    async def delete_setting(self, key: str) -> None:
        try:
            async with self.db.connect() as conn:
                await conn.execute(
                    "DELETE FROM user_settings WHERE user_id = ? AND key = ?",
                    (self.user_id, key),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise ConfigStoreError(f"Failed to delete setting {key}: {exc}") from exc

    # Calendar configurations

    async def list_calendars(self) -> list[CalendarConfig]:
        await self.migrate_legacy_calendar_list()
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    """
                    SELECT calendar_id, config_json
                    FROM calendar_configs
                    WHERE user_id = ?
                    ORDER BY rowid ASC
                    """,
                    (self.user_id,),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise ConfigStoreError(f"Failed to read calendar configs: {exc}") from exc
        return [_row_to_config(str(row["calendar_id"]), str(row["config_json"])) for row in rows]

    async def get_calendar(self, calendar_id: str) -> CalendarConfig | None:
        await self.migrate_legacy_calendar_list()
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    "SELECT config_json FROM calendar_configs WHERE user_id = ? AND calendar_id = ?",
                    (self.user_id, calendar_id),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise ConfigStoreError(f"Failed to read calendar config {calendar_id}: {exc}") from exc
        if row is None:
            return None
        return _row_to_config(calendar_id, str(row["config_json"]))

    async def save_calendar(self, config: CalendarConfig) -> None:
        if config.parse_error is not None:
            raise ConfigParseError(f"Calendar {config.id} has an unreadable stored config; delete and re-add it")
        try:
            async with self.db.connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO calendar_configs(user_id, calendar_id, config_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, calendar_id) DO UPDATE SET
                        config_json = excluded.config_json,
                        updated_at = excluded.updated_at
                    """,
                    (self.user_id, config.id, config.to_json(), to_storage_time(utc_now())),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise ConfigStoreError(f"Failed to save calendar config {config.id}: {exc}") from exc

    async def set_calendar_enabled(self, calendar_id: str, enabled: bool) -> CalendarConfig | None:
        current = await self.get_calendar(calendar_id)
        if current is None:
            return None
        if current.parse_error is not None:
            raise ConfigParseError(f"Calendar {calendar_id} has an unreadable stored config; delete and re-add it")
        updated = current.model_copy(update={"enabled": bool(enabled)})
        await self.save_calendar(updated)
        return updated

    async def delete_calendar(self, calendar_id: str) -> bool:
        await self.migrate_legacy_calendar_list()
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    "DELETE FROM calendar_configs WHERE user_id = ? AND calendar_id = ?",
                    (self.user_id, calendar_id),
                )
                await conn.commit()
                deleted = cursor.rowcount
        except aiosqlite.Error as exc:
            raise ConfigStoreError(f"Failed to delete calendar config {calendar_id}: {exc}") from exc
        return deleted > 0

    async def migrate_legacy_calendar_list(self) -> int:
        """Move the old single-blob calendar list into per-calendar rows."""
        raw = await self.get_setting(LEGACY_CALENDARS_KEY)
        if raw is None:
            return 0
        calendars = parse_calendar_list(raw)
        now = to_storage_time(utc_now())
        try:
            async with self.db.connect() as conn:
                await conn.executemany(
                    """
                    INSERT OR IGNORE INTO calendar_configs(user_id, calendar_id, config_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [(self.user_id, item.id, item.to_json(), now) for item in calendars],
                )
                await conn.execute(
                    "DELETE FROM user_settings WHERE user_id = ? AND key = ?",
                    (self.user_id, LEGACY_CALENDARS_KEY),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise ConfigStoreError(f"Failed to migrate legacy calendar list: {exc}") from exc
        logger.info("Migrated %d legacy calendar configs for user %s", len(calendars), self.user_id)
        return len(calendars)
