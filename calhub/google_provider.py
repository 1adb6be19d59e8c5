from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Callable
from urllib.parse import quote

import httpx

from calhub import oauth
from calhub.diagnostics import PAGINATION_TRUNCATED, TOKEN_PERSIST_FAILED, emit_warning
from calhub.errors import ApiError, AuthExpiredError, CalHubError, NetworkError
from calhub.models import (
    CalendarEvent,
    EventSource,
    GoogleConfig,
    OAuthTokens,
    ProviderCalendar,
    TimeRange,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)
from calhub.secret_store import SecretStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)
MAX_PAGES = 50
UNTITLED_EVENT = "(No title)"


def _parse_google_time(value: dict[str, Any] | None, tz: tzinfo, is_end: bool) -> tuple[datetime | None, bool]:
    """Return ``(instant, all_day)`` for a Google ``start``/``end`` object."""
    if not isinstance(value, dict):
        return None, False
    raw_datetime = value.get("dateTime")
    if isinstance(raw_datetime, str) and raw_datetime.strip():
        return parse_iso_datetime(raw_datetime), False
    raw_date = value.get("date")
    if isinstance(raw_date, str) and raw_date.strip():
        day = date.fromisoformat(raw_date.strip())
        if is_end:
            # All-day end dates are exclusive upstream; store the last instant of the final day.
            return datetime.combine(day - timedelta(days=1), time.max, tzinfo=tz), True
        return datetime.combine(day, time.min, tzinfo=tz), True
    return None, False


class GoogleCalendarProvider:
    type = "google"

    def __init__(
        self,
        account_email: str,
        tokens: OAuthTokens,
        google: GoogleConfig,
        *,
        http_client: httpx.AsyncClient,
        secret_store: SecretStore | None = None,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.account_email = account_email
        self._tokens = tokens
        self._google = google
        self._http_client = http_client
        self._secret_store = secret_store
        self._refresh_buffer = refresh_buffer
        self._tz = tz
        self._clock = clock

    @property
    def tokens(self) -> OAuthTokens:
        return self._tokens

    async def list_calendars(self) -> list[ProviderCalendar]:
        calendars: list[ProviderCalendar] = []
        for item in await self._get_items(f"{self._google.api_base_url}/users/me/calendarList", {}):
            calendar_id = str(item.get("id") or "").strip()
            if not calendar_id:
                continue
            calendars.append(
                ProviderCalendar(
                    id=calendar_id,
                    name=str(item.get("summary") or "Unknown"),
                    primary=bool(item.get("primary", False)),
                    color=item.get("backgroundColor"),
                )
            )
        return calendars

    async def get_events(self, calendar_id: str, time_range: TimeRange) -> list[CalendarEvent]:
        params = {
            "timeMin": serialize_datetime(time_range.start),
            "timeMax": serialize_datetime(time_range.end),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        url = f"{self._google.api_base_url}/calendars/{quote(calendar_id, safe='')}/events"
        events: list[CalendarEvent] = []
        for item in await self._get_items(url, params):
            event = self._convert_event(item, calendar_id)
            if event is not None:
                events.append(event)
        return events

    async def ensure_valid_token(self) -> None:
        if not self._tokens.is_expired(self._clock(), self._refresh_buffer):
            return
        logger.debug("Refreshing access token for %s", self.account_email)
        self._tokens = await oauth.refresh_access_token(
            self._http_client,
            self._google,
            self.account_email,
            self._tokens.refresh_token,
            now=self._clock(),
        )
        if self._secret_store is None:
            return
        try:
            await oauth.save_tokens(self._secret_store, self.account_email, self._tokens)
        except CalHubError as exc:
            emit_warning(
                TOKEN_PERSIST_FAILED,
                "Refreshed token could not be stored; the next sync will refresh again",
                account_email=self.account_email,
                error=str(exc),
            )

    async def _get_items(self, url: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_params = dict(params)
        next_page = None
        for _ in range(MAX_PAGES):
            payload = await self._get_json(url, page_params)
            raw_items = payload.get("items") or []
            items.extend(item for item in raw_items if isinstance(item, dict))
            next_page = payload.get("nextPageToken")
            if not next_page:
                break
            page_params = {**params, "pageToken": next_page}
        if next_page:
            emit_warning(
                PAGINATION_TRUNCATED,
                f"Stopped after {MAX_PAGES} pages; remaining results were not fetched",
                account_email=self.account_email,
                url=url,
                item_count=len(items),
            )
        return items

    async def _get_json(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        await self.ensure_valid_token()
        try:
            response = await self._http_client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {self._tokens.access_token}"},
            )
        except httpx.TimeoutException as exc:
            raise NetworkError("Google Calendar API request timed out", exc) from exc
        except httpx.HTTPError as exc:
            raise NetworkError("Google Calendar API request failed", exc) from exc

        if response.status_code in (401, 403):
            raise AuthExpiredError(self.account_email, "Google rejected the access token")
        if response.status_code < 200 or response.status_code >= 300:
            raise ApiError(response.status_code, response.text or response.reason_phrase)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiError(response.status_code, "Google Calendar API returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ApiError(response.status_code, "Google Calendar API returned an unexpected payload")
        return payload

    def _convert_event(self, item: dict[str, Any], calendar_id: str) -> CalendarEvent | None:
        event_id = str(item.get("id") or "").strip()
        if not event_id or item.get("status") == "cancelled":
            return None
        start, all_day = _parse_google_time(item.get("start"), self._tz, is_end=False)
        end, _ = _parse_google_time(item.get("end"), self._tz, is_end=True)
        if start is None:
            logger.debug("Skipping Google event %s without a start time", event_id)
            return None
        if end is None or end < start:
            end = start
        return CalendarEvent(
            id=event_id,
            calendar_id=calendar_id,
            title=str(item.get("summary") or UNTITLED_EVENT),
            start=start,
            end=end,
            all_day=all_day,
            location=item.get("location") or None,
            description=item.get("description") or None,
            source=EventSource(type="google", calendar_name="", account_email=self.account_email),
        )
