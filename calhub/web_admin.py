from __future__ import annotations

import asyncio
import logging
import os
import uuid
from datetime import timedelta
from typing import Any, Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from calhub import oauth
from calhub.config_manager import ConfigManager
from calhub.context import CalendarContext, create_calendar_context
from calhub.crypto import AesGcmCipher
from calhub.database import Database
from calhub.diagnostics import setup_logging
from calhub.errors import (
    SYNC_CALENDAR_NOT_FOUND,
    SYNC_CONFIG_ERROR,
    SYNC_TOKEN_NOT_FOUND,
    AuthExpiredError,
    CalHubError,
    ConfigIncompleteError,
    ConfigParseError,
    ProviderError,
    SyncError,
)
from calhub.ical_provider import normalize_feed_url
from calhub.models import AppConfig, CalendarConfig, OAuthTokens, parse_iso_datetime, serialize_datetime, utc_now
from calhub.query_service import get_events_for_today, get_events_for_week
from calhub.secret_store import google_oauth_key
from calhub.sync_engine import SyncEngine, remove_calendar

logger = logging.getLogger(__name__)


class ICalCalendarCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1)
    color: str | None = None


class CalendarUpdateRequest(BaseModel):
    enabled: bool


class GoogleCalendarSelection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    google_calendar_id: str = Field(min_length=1, alias="googleCalendarId")
    name: str = ""
    color: str | None = None


class GoogleLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_email: str = Field(min_length=3, alias="accountEmail")
    access_token: str = Field(min_length=1, alias="accessToken")
    refresh_token: str = Field(min_length=1, alias="refreshToken")
    expires_at: str | None = Field(default=None, alias="expiresAt")
    expires_in: int | None = Field(default=None, alias="expiresIn")
    calendars: list[GoogleCalendarSelection] = Field(default_factory=list)


class AppContext:
    def __init__(self, config_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.settings: AppConfig = self.config_manager.load()
        self.database = Database(self.settings.storage.database_path)
        self.sync_engine = SyncEngine(self.settings)
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if not self._schema_ready:
                await self.database.init_schema()
                self._schema_ready = True

    async def calendar_context(self, user_id: str) -> CalendarContext:
        await self.ensure_schema()
        cipher = AesGcmCipher.from_base64_key(self.settings.security.encryption_key)
        return create_calendar_context(self.database, user_id, cipher)


def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Authenticated user id as forwarded by the upstream auth layer."""
    user_id = str(x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="authentication required")
    return user_id


async def calendar_context(request: Request, user_id: str = Depends(current_user_id)) -> CalendarContext:
    return await request.app.state.context.calendar_context(user_id)


def _status_for(exc: CalHubError) -> int:
    if isinstance(exc, SyncError):
        if exc.code == SYNC_CALENDAR_NOT_FOUND:
            return 404
        if exc.code == SYNC_TOKEN_NOT_FOUND or exc.kind == "authentication":
            return 401
        if exc.code == SYNC_CONFIG_ERROR or exc.kind == "configuration":
            return 422
        if exc.kind in ("storage", "cryptographic", "unknown"):
            return 500
        return 502
    if isinstance(exc, AuthExpiredError):
        return 401
    if isinstance(exc, (ConfigIncompleteError, ConfigParseError)):
        return 422
    if isinstance(exc, ProviderError):
        return 502
    return 500


def _error_payload(exc: CalHubError) -> dict[str, Any]:
    if isinstance(exc, SyncError):
        return {"detail": exc.message, **exc.to_dict()}
    return {"detail": str(exc), "kind": str(getattr(exc, "kind", "unknown"))}


def create_app(config_path: str | None = None) -> FastAPI:
    config_path = config_path or os.getenv("CALHUB_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path)
    setup_logging(context.settings.logging.level)

    app = FastAPI(title="CalHub", version="0.1.0")
    app.state.context = context

    @app.exception_handler(CalHubError)
    async def _calhub_error_handler(request: Request, exc: CalHubError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content=_error_payload(exc))

    @app.on_event("startup")
    async def _startup() -> None:
        await app.state.context.ensure_schema()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/events")
    async def list_events(
        range_name: Literal["today", "week"] = Query(default="today", alias="range"),
        ctx: CalendarContext = Depends(calendar_context),
    ) -> dict[str, Any]:
        timezone_name = app.state.context.settings.sync.timezone
        if range_name == "week":
            events = await get_events_for_week(ctx, timezone_name=timezone_name)
        else:
            events = await get_events_for_today(ctx, timezone_name=timezone_name)
        last_sync = await ctx.event_cache.get_latest_sync_time()
        return {
            "events": [event.to_dict() for event in events],
            "lastSync": serialize_datetime(last_sync),
        }

    @app.get("/api/calendars")
    async def list_calendars(ctx: CalendarContext = Depends(calendar_context)) -> dict[str, Any]:
        items = []
        for config in await ctx.config_store.list_calendars():
            last_sync = await ctx.event_cache.get_last_sync_time(config.id)
            items.append({**config.to_dict(), "lastSync": serialize_datetime(last_sync)})
        return {"calendars": items}

    @app.post("/api/calendars/ical", status_code=201)
    async def add_ical_calendar(
        request: ICalCalendarCreateRequest,
        ctx: CalendarContext = Depends(calendar_context),
    ) -> dict[str, Any]:
        config = CalendarConfig(
            id=f"ical-{uuid.uuid4().hex}",
            type="ical",
            name=request.name,
            color=request.color,
            ical_url=normalize_feed_url(request.url),
        )
        await ctx.config_store.save_calendar(config)
        return {"calendar": config.to_dict()}

    @app.patch("/api/calendars/{calendar_id}")
    async def update_calendar(
        calendar_id: str,
        request: CalendarUpdateRequest,
        ctx: CalendarContext = Depends(calendar_context),
    ) -> dict[str, Any]:
        updated = await ctx.config_store.set_calendar_enabled(calendar_id, request.enabled)
        if updated is None:
            raise HTTPException(status_code=404, detail="calendar not found")
        return {"calendar": updated.to_dict()}

    @app.delete("/api/calendars/{calendar_id}")
    async def delete_calendar(
        calendar_id: str,
        ctx: CalendarContext = Depends(calendar_context),
    ) -> dict[str, str]:
        if not await remove_calendar(ctx, calendar_id):
            raise HTTPException(status_code=404, detail="calendar not found")
        return {"message": "calendar deleted"}

    @app.post("/api/calendars/sync")
    async def sync_all(ctx: CalendarContext = Depends(calendar_context)) -> dict[str, Any]:
        result = await app.state.context.sync_engine.sync_all(ctx)
        return result.to_dict()

    @app.post("/api/calendars/{calendar_id}/sync")
    async def sync_one(
        calendar_id: str,
        ctx: CalendarContext = Depends(calendar_context),
    ) -> dict[str, Any]:
        result = await app.state.context.sync_engine.sync_calendar(ctx, calendar_id)
        return result.to_dict()

    @app.post("/api/calendars/google/link", status_code=201)
    async def link_google_account(
        request: GoogleLinkRequest,
        ctx: CalendarContext = Depends(calendar_context),
    ) -> dict[str, Any]:
        account_email = request.account_email.strip().lower()
        try:
            expires_at = parse_iso_datetime(request.expires_at)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid expiresAt datetime") from exc
        if expires_at is None:
            expires_at = utc_now() + timedelta(seconds=request.expires_in or oauth.DEFAULT_EXPIRES_IN_SECONDS)
        tokens = OAuthTokens(
            access_token=request.access_token,
            refresh_token=request.refresh_token,
            expires_at=expires_at,
        )
        await oauth.save_tokens(ctx.secret_store, account_email, tokens)

        registered = []
        for selection in request.calendars:
            config = CalendarConfig(
                id=f"google-{uuid.uuid4().hex}",
                type="google",
                name=selection.name or selection.google_calendar_id,
                color=selection.color,
                google_account_email=account_email,
                google_calendar_id=selection.google_calendar_id,
            )
            await ctx.config_store.save_calendar(config)
            registered.append(config.to_dict())
        logger.info("Linked Google account for user %s with %d calendars", ctx.user_id, len(registered))
        return {"accountEmail": account_email, "calendars": registered}

    @app.delete("/api/calendars/google/accounts/{account_email}")
    async def unlink_google_account(
        account_email: str,
        ctx: CalendarContext = Depends(calendar_context),
    ) -> dict[str, Any]:
        account_email = account_email.strip().lower()
        removed: list[str] = []
        for config in await ctx.config_store.list_calendars():
            if config.type == "google" and config.google_account_email == account_email:
                await remove_calendar(ctx, config.id)
                removed.append(config.id)
        linked = await ctx.secret_store.exists(google_oauth_key(account_email))
        if not linked and not removed:
            raise HTTPException(status_code=404, detail="google account not linked")
        await oauth.delete_tokens(ctx.secret_store, account_email)
        logger.info("Unlinked Google account for user %s and removed %d calendars", ctx.user_id, len(removed))
        return {"accountEmail": account_email, "removedCalendars": removed}

    return app
