from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any

import httpx
import recurring_ical_events
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from calhub.errors import ApiError, ConfigIncompleteError, NetworkError
from calhub.models import CalendarEvent, EventSource, ProviderCalendar, TimeRange, date_to_datetime

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "(No title)"
MAX_REDIRECTS = 5


def normalize_feed_url(url: str) -> str:
    """Map ``webcal://`` to ``https://`` and reject any other non-TLS scheme."""
    text = str(url or "").strip()
    if text.lower().startswith("webcal://"):
        text = "https://" + text[len("webcal://"):]
    if not text.lower().startswith("https://"):
        raise ConfigIncompleteError("iCal feed URL must use https", missing=["ical_url"])
    return text


def _data_hash(*parts: str) -> str:
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()  # nosec B324


def _decode_property(component: ICEvent, name: str) -> Any:
    if component.get(name) is None:
        return None
    return component.decoded(name)


def _coerce_datetime(value: Any, tz: tzinfo, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        # Floating times are read in the display timezone.
        if value.tzinfo is None:
            return value.replace(tzinfo=tz)
        return value
    if isinstance(value, date):
        return date_to_datetime(value, is_end=is_end, tz=tz)
    return None


def _occurrence_suffix(value: Any) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%Y%m%dT%H%M%SZ")
    if isinstance(value, date):
        return value.strftime("%Y%m%d")
    return ""


def _text(component: ICEvent, name: str) -> str:
    return str(component.get(name, "") or "").strip()


def _recurring_uids(calendar: ICalendar) -> set[str]:
    """UIDs whose expansion yields several instances sharing one UID."""
    uids: set[str] = set()
    for component in calendar.walk("VEVENT"):
        if any(component.get(name) is not None for name in ("RRULE", "RDATE", "RECURRENCE-ID")):
            uid = _text(component, "UID")
            if uid:
                uids.add(uid)
    return uids


class ICalProvider:
    type = "ical"

    def __init__(
        self,
        url: str,
        *,
        http_client: httpx.AsyncClient,
        calendar_name: str = "",
        tz: tzinfo = timezone.utc,
    ) -> None:
        self.url = normalize_feed_url(url)
        self.calendar_name = calendar_name
        self._http_client = http_client
        self._tz = tz

    async def list_calendars(self) -> list[ProviderCalendar]:
        calendar = await self._fetch_calendar()
        name = str(calendar.get("X-WR-CALNAME", "") or "").strip() or self.calendar_name or self.url
        return [ProviderCalendar(id=self.url, name=name, primary=True)]

    async def get_events(self, calendar_id: str, time_range: TimeRange) -> list[CalendarEvent]:
        calendar = await self._fetch_calendar()
        try:
            components = recurring_ical_events.of(calendar).between(time_range.start, time_range.end)
        except Exception as exc:
            raise ApiError(0, f"Failed to expand iCal recurrences: {exc}") from exc

        recurring_uids = _recurring_uids(calendar)
        events: list[CalendarEvent] = []
        for component in components:
            event = self._convert_component(component, calendar_id, recurring_uids)
            if event is None:
                continue
            if time_range.overlaps(event.start, event.end):
                events.append(event)
        return events

    async def _fetch_calendar(self) -> ICalendar:
        try:
            response = await self._http_client.get(
                self.url,
                headers={"Accept": "text/calendar"},
                follow_redirects=False,
            )
            for _ in range(MAX_REDIRECTS):
                next_request = response.next_request
                if next_request is None:
                    break
                if next_request.url.scheme != "https":
                    raise ApiError(
                        response.status_code,
                        f"Refusing to follow iCal feed redirect to a non-https URL ({next_request.url.scheme})",
                    )
                response = await self._http_client.send(next_request, follow_redirects=False)
            if response.next_request is not None:
                raise ApiError(response.status_code, f"iCal feed redirected more than {MAX_REDIRECTS} times")
        except httpx.TimeoutException as exc:
            raise NetworkError("iCal feed request timed out", exc) from exc
        except httpx.HTTPError as exc:
            raise NetworkError("iCal feed request failed", exc) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ApiError(response.status_code, response.text or response.reason_phrase)
        try:
            return ICalendar.from_ical(response.content)
        except Exception as exc:
            raise ApiError(0, f"Failed to parse iCal feed: {exc}") from exc

    def _convert_component(
        self, component: ICEvent, calendar_id: str, recurring_uids: set[str]
    ) -> CalendarEvent | None:
        if _text(component, "STATUS").upper() == "CANCELLED":
            return None
        dtstart_raw = _decode_property(component, "DTSTART")
        start = _coerce_datetime(dtstart_raw, self._tz)
        if start is None:
            logger.debug("Skipping VEVENT %s without DTSTART", _text(component, "UID") or "?")
            return None
        all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)

        dtend_raw = _decode_property(component, "DTEND")
        duration = _decode_property(component, "DURATION")
        if isinstance(dtend_raw, date) and not isinstance(dtend_raw, datetime):
            # DTEND on a date is exclusive.
            last_day = max(dtend_raw - timedelta(days=1), dtstart_raw if all_day else dtend_raw)
            end = _coerce_datetime(last_day, self._tz, is_end=True)
        elif dtend_raw is not None:
            end = _coerce_datetime(dtend_raw, self._tz, is_end=True)
        elif isinstance(duration, timedelta):
            end = start + duration
            if all_day and duration > timedelta(0):
                end -= timedelta(microseconds=1)
        elif all_day:
            end = _coerce_datetime(dtstart_raw, self._tz, is_end=True)
        else:
            end = start
        if end is None or end < start:
            end = start

        title = _text(component, "SUMMARY") or UNTITLED_EVENT
        uid = _text(component, "UID") or _data_hash(title, start.isoformat())
        recurring = uid in recurring_uids or component.get("RECURRENCE-ID") is not None
        event_id = f"{uid}_{_occurrence_suffix(dtstart_raw)}" if recurring else uid

        return CalendarEvent(
            id=event_id,
            calendar_id=calendar_id,
            title=title,
            start=start,
            end=end,
            all_day=all_day,
            location=_text(component, "LOCATION") or None,
            description=_text(component, "DESCRIPTION") or None,
            source=EventSource(type="ical", calendar_name=self.calendar_name),
        )
