from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, Union
from zoneinfo import ZoneInfo

import httpx

from calhub import oauth
from calhub.context import CalendarContext
from calhub.diagnostics import CALENDAR_CACHE_CLEANUP_FAILED, SYNC_STATE_UPDATE_FAILED, emit_warning
from calhub.errors import (
    SYNC_CALENDAR_NOT_FOUND,
    SYNC_CONFIG_ERROR,
    SYNC_DB_ERROR,
    SYNC_PROVIDER_ERROR,
    SYNC_TOKEN_NOT_FOUND,
    AuthExpiredError,
    ConfigIncompleteError,
    ConfigParseError,
    CryptoError,
    ProviderError,
    StorageError,
    SyncError,
)
from calhub.google_provider import GoogleCalendarProvider
from calhub.ical_provider import ICalProvider
from calhub.models import (
    AppConfig,
    CalendarConfig,
    CalendarEvent,
    ErrorCalendarInfo,
    EventSource,
    SyncAllResult,
    SyncResult,
    TimeRange,
    default_app_config,
    resolve_timezone,
    sync_window,
    utc_now,
)

logger = logging.getLogger(__name__)


class SyncStage(str, Enum):
    LOADING_CONFIG = "loading_config"
    CREATING_PROVIDER = "creating_provider"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    UPDATING_SYNC_STATE = "updating_sync_state"
    DONE = "done"
    FAILED = "failed"


class CalendarProvider(Protocol):
    type: str

    async def get_events(self, calendar_id: str, time_range: TimeRange) -> list[CalendarEvent]:
        ...


ProviderFactory = Callable[
    [CalendarContext, CalendarConfig, httpx.AsyncClient],
    Union[CalendarProvider, Awaitable[CalendarProvider]],
]


def _provider_calendar_id(config: CalendarConfig) -> str:
    if config.type == "google":
        return str(config.google_calendar_id)
    return config.id


class SyncEngine:
    """Fetches every enabled calendar of one user into the event cache.

    Calendars are synced concurrently up to ``sync.max_concurrency``; one
    calendar failing never stops the others, and every calendar persisted in a
    run shares the same sync timestamp.
    """

    def __init__(
        self,
        settings: AppConfig | None = None,
        *,
        provider_factory: ProviderFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or default_app_config()
        self._provider_factory = provider_factory or self.create_provider
        self._http_client = http_client
        self._clock = clock or utc_now

    @property
    def timezone(self) -> ZoneInfo:
        return resolve_timezone(self.settings.sync.timezone)

    def sync_window(self, now: datetime) -> TimeRange:
        return sync_window(
            now,
            self.settings.sync.lookback_days,
            self.settings.sync.lookahead_days,
            self.timezone,
        )

    async def sync_all(self, ctx: CalendarContext) -> SyncAllResult:
        started_at = self._clock()
        self._log_stage(ctx, None, SyncStage.LOADING_CONFIG)
        configs = await self._load_calendars(ctx)
        enabled = [config for config in configs if config.enabled]
        if not enabled:
            return SyncAllResult(success_count=0, total_count=0, synced_at=started_at)

        window = self.sync_window(started_at)
        semaphore = asyncio.Semaphore(max(1, self.settings.sync.max_concurrency))

        async with self._client() as http_client:

            async def guarded(config: CalendarConfig) -> SyncResult | ErrorCalendarInfo:
                async with semaphore:
                    return await self._settle(ctx, config, window, started_at, http_client)

            outcomes = await asyncio.gather(*(guarded(config) for config in enabled))

        errors = [item for item in outcomes if isinstance(item, ErrorCalendarInfo)]
        success_count = len(outcomes) - len(errors)
        duration_ms = int((self._clock() - started_at).total_seconds() * 1000)
        logger.info(
            "Synced %d/%d calendars for user %s in %dms",
            success_count,
            len(enabled),
            ctx.user_id,
            duration_ms,
        )
        return SyncAllResult(
            success_count=success_count,
            total_count=len(enabled),
            synced_at=started_at,
            error_calendars=errors,
        )

    async def sync_calendar(self, ctx: CalendarContext, calendar_id: str) -> SyncResult:
        started_at = self._clock()
        self._log_stage(ctx, calendar_id, SyncStage.LOADING_CONFIG)
        configs = await self._load_calendars(ctx)
        config = next((item for item in configs if item.id == calendar_id), None)
        if config is None:
            raise SyncError(
                SYNC_CALENDAR_NOT_FOUND,
                f"Calendar {calendar_id} is not registered",
                calendar_id=calendar_id,
            )
        async with self._client() as http_client:
            return await self._sync_one(ctx, config, self.sync_window(started_at), started_at, http_client)

    async def create_provider(
        self,
        ctx: CalendarContext,
        config: CalendarConfig,
        http_client: httpx.AsyncClient,
    ) -> CalendarProvider:
        if not config.is_complete():
            missing = config.missing_fields()
            raise ConfigIncompleteError(
                f"Calendar {config.id} ({config.type or 'unknown type'}) is missing {', '.join(missing)}",
                missing=missing,
            )
        if config.type == "ical":
            return ICalProvider(
                str(config.ical_url),
                http_client=http_client,
                calendar_name=config.name,
                tz=self.timezone,
            )

        account_email = str(config.google_account_email)
        try:
            tokens = await oauth.load_tokens(ctx.secret_store, account_email)
        except (CryptoError, StorageError, AuthExpiredError) as exc:
            raise SyncError(
                SYNC_TOKEN_NOT_FOUND,
                f"Stored tokens for {account_email} could not be read: {exc}",
                calendar_id=config.id,
                cause=exc,
            ) from exc
        if tokens is None:
            raise SyncError(
                SYNC_TOKEN_NOT_FOUND,
                f"No Google account linked for {account_email}",
                calendar_id=config.id,
            )
        return GoogleCalendarProvider(
            account_email,
            tokens,
            self.settings.google,
            http_client=http_client,
            secret_store=ctx.secret_store,
            refresh_buffer=self.settings.sync.token_refresh_buffer,
            tz=self.timezone,
            clock=self._clock,
        )

    async def _settle(
        self,
        ctx: CalendarContext,
        config: CalendarConfig,
        window: TimeRange,
        sync_time: datetime,
        http_client: httpx.AsyncClient,
    ) -> SyncResult | ErrorCalendarInfo:
        try:
            return await self._sync_one(ctx, config, window, sync_time, http_client)
        except SyncError as exc:
            self._log_stage(ctx, config.id, SyncStage.FAILED)
            logger.warning("Calendar %s failed to sync: [%s] %s", config.id, exc.code, exc.message)
            return ErrorCalendarInfo(calendar_id=config.id, name=config.name, error=exc)
        except Exception as exc:
            logger.exception("Unexpected error while syncing calendar %s", config.id)
            self._log_stage(ctx, config.id, SyncStage.FAILED)
            return ErrorCalendarInfo(
                calendar_id=config.id,
                name=config.name,
                error=SyncError(
                    SYNC_PROVIDER_ERROR,
                    f"Unexpected error: {exc}",
                    calendar_id=config.id,
                    cause=exc,
                    kind="unknown",
                ),
            )

    async def _sync_one(
        self,
        ctx: CalendarContext,
        config: CalendarConfig,
        window: TimeRange,
        sync_time: datetime,
        http_client: httpx.AsyncClient,
    ) -> SyncResult:
        self._log_stage(ctx, config.id, SyncStage.CREATING_PROVIDER)
        try:
            if config.parse_error is not None:
                raise ConfigIncompleteError(
                    f"Calendar {config.id} has an unreadable stored config: {config.parse_error}",
                    missing=config.missing_fields(),
                )
            provider = self._provider_factory(ctx, config, http_client)
            if inspect.isawaitable(provider):
                provider = await provider
        except ProviderError as exc:
            raise SyncError(SYNC_PROVIDER_ERROR, str(exc), calendar_id=config.id, cause=exc) from exc

        self._log_stage(ctx, config.id, SyncStage.FETCHING)
        try:
            fetched = await provider.get_events(_provider_calendar_id(config), window)
        except ProviderError as exc:
            raise SyncError(SYNC_PROVIDER_ERROR, str(exc), calendar_id=config.id, cause=exc) from exc

        events = [self._attribute(event, config) for event in fetched]

        self._log_stage(ctx, config.id, SyncStage.PERSISTING)
        try:
            await ctx.event_cache.ensure_calendar_record(
                config.id,
                config.name,
                config.type,
                config.to_json(),
                config.enabled,
            )
            await ctx.event_cache.save_many(events)
        except StorageError as exc:
            raise SyncError(
                SYNC_DB_ERROR,
                f"Failed to store events for {config.id}: {exc}",
                calendar_id=config.id,
                cause=exc,
            ) from exc

        self._log_stage(ctx, config.id, SyncStage.UPDATING_SYNC_STATE)
        try:
            await ctx.event_cache.update_last_sync_time(config.id, sync_time)
        except StorageError as exc:
            emit_warning(
                SYNC_STATE_UPDATE_FAILED,
                "Events were stored but the sync timestamp could not be recorded",
                user_id=ctx.user_id,
                calendar_id=config.id,
                error=str(exc),
            )

        self._log_stage(ctx, config.id, SyncStage.DONE)
        return SyncResult(calendar_id=config.id, event_count=len(events), synced_at=sync_time)

    async def _load_calendars(self, ctx: CalendarContext) -> list[CalendarConfig]:
        try:
            return await ctx.config_store.list_calendars()
        except (StorageError, ConfigParseError) as exc:
            raise SyncError(SYNC_CONFIG_ERROR, f"Failed to load calendar configuration: {exc}", cause=exc) from exc

    def _attribute(self, event: CalendarEvent, config: CalendarConfig) -> CalendarEvent:
        return event.with_updates(
            calendar_id=config.id,
            source=EventSource(
                type=config.type,
                calendar_name=config.name,
                account_email=event.source.account_email,
            ),
        )

    def _client(self) -> Any:
        if self._http_client is not None:
            return _Borrowed(self._http_client)
        return httpx.AsyncClient(timeout=httpx.Timeout(self.settings.sync.http_timeout_seconds))

    def _log_stage(self, ctx: CalendarContext, calendar_id: str | None, stage: SyncStage) -> None:
        logger.debug("user=%s calendar=%s stage=%s", ctx.user_id, calendar_id or "*", stage.value)


class _Borrowed:
    """Async context wrapper that leaves an injected client open."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def __aenter__(self) -> httpx.AsyncClient:
        return self.client

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


async def remove_calendar(ctx: CalendarContext, calendar_id: str) -> bool:
    """Drop a calendar's configuration, then its cached events and sync state."""
    deleted = await ctx.config_store.delete_calendar(calendar_id)
    try:
        await ctx.event_cache.delete_calendar_record(calendar_id)
    except StorageError as exc:
        emit_warning(
            CALENDAR_CACHE_CLEANUP_FAILED,
            "Calendar configuration removed but cached events remain",
            user_id=ctx.user_id,
            calendar_id=calendar_id,
            error=str(exc),
        )
    return deleted


async def sync_all_calendars(ctx: CalendarContext, settings: AppConfig | None = None) -> SyncAllResult:
    return await SyncEngine(settings).sync_all(ctx)


async def sync_calendar(ctx: CalendarContext, calendar_id: str, settings: AppConfig | None = None) -> SyncResult:
    return await SyncEngine(settings).sync_calendar(ctx, calendar_id)
