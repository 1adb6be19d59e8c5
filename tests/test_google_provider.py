import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock
from urllib.parse import parse_qs

import httpx

from calhub.diagnostics import DIAGNOSTICS_LOGGER, PAGINATION_TRUNCATED, TOKEN_PERSIST_FAILED
from calhub.errors import ApiError, AuthExpiredError, NetworkError, SecretStorageError
from calhub.google_provider import GoogleCalendarProvider
from calhub.models import GoogleConfig, OAuthTokens, TimeRange

NOW = datetime(2026, 1, 27, 0, 0, tzinfo=timezone.utc)
TOKEN_URL = "https://oauth2.example.test/token"
API_BASE = "https://calendar.example.test/v3"
WINDOW = TimeRange(start=NOW - timedelta(days=1), end=NOW + timedelta(days=7))


def _google() -> GoogleConfig:
    return GoogleConfig(client_id="cid", client_secret="secret", token_url=TOKEN_URL, api_base_url=API_BASE)


class GoogleCalendarProviderTests(unittest.IsolatedAsyncioTestCase):
    def _provider(self, handler, expires_in: timedelta = timedelta(hours=1), secret_store=None) -> GoogleCalendarProvider:
        self.http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return GoogleCalendarProvider(
            "me@example.com",
            OAuthTokens("old-access", "old-refresh", NOW + expires_in),
            _google(),
            http_client=self.http_client,
            secret_store=secret_store,
            clock=lambda: NOW,
        )

    async def asyncTearDown(self) -> None:
        if getattr(self, "http_client", None) is not None:
            await self.http_client.aclose()

    async def test_fresh_token_fetches_all_pages_without_refresh(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.params.get("pageToken") == "p2":
                return httpx.Response(
                    200,
                    json={
                        "items": [
                            {"id": "allday", "summary": "Holiday", "start": {"date": "2026-01-28"}, "end": {"date": "2026-01-29"}},
                            {"id": "gone", "status": "cancelled"},
                        ]
                    },
                )
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": "timed",
                            "summary": "Standup",
                            "location": "Room 1",
                            "start": {"dateTime": "2026-01-27T09:00:00+09:00"},
                            "end": {"dateTime": "2026-01-27T09:30:00+09:00"},
                        },
                        {"id": "untitled", "start": {"dateTime": "2026-01-27T10:00:00Z"}, "end": {"dateTime": "2026-01-27T11:00:00Z"}},
                    ],
                    "nextPageToken": "p2",
                },
            )

        provider = self._provider(handler)
        events = await provider.get_events("primary", WINDOW)

        self.assertEqual([event.id for event in events], ["timed", "untitled", "allday"])
        self.assertEqual(len(requests), 2)
        self.assertTrue(all(str(req.url).startswith(f"{API_BASE}/calendars/primary/events") for req in requests))
        self.assertEqual(requests[0].headers["Authorization"], "Bearer old-access")
        self.assertEqual(requests[0].url.params["singleEvents"], "true")
        self.assertEqual(requests[1].url.params["pageToken"], "p2")

        timed = events[0]
        self.assertEqual(timed.start, datetime(2026, 1, 27, 0, 0, tzinfo=timezone.utc))
        self.assertEqual(timed.location, "Room 1")
        self.assertEqual(timed.source.account_email, "me@example.com")
        self.assertEqual(events[1].title, "(No title)")
        allday = events[2]
        self.assertTrue(allday.all_day)
        self.assertEqual(allday.start, datetime(2026, 1, 28, tzinfo=timezone.utc))
        self.assertEqual(allday.end, datetime(2026, 1, 28, 23, 59, 59, 999999, tzinfo=timezone.utc))

    async def test_page_cap_warns_when_more_results_remain(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            page = len(requests)
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": f"event-{page}",
                            "start": {"dateTime": "2026-01-27T10:00:00Z"},
                            "end": {"dateTime": "2026-01-27T11:00:00Z"},
                        }
                    ],
                    "nextPageToken": f"p{page + 1}",
                },
            )

        provider = self._provider(handler)
        with mock.patch("calhub.google_provider.MAX_PAGES", 2):
            with self.assertLogs(DIAGNOSTICS_LOGGER, level="WARNING") as captured:
                events = await provider.get_events("primary", WINDOW)

        self.assertEqual([event.id for event in events], ["event-1", "event-2"])
        self.assertEqual(len(requests), 2)
        self.assertEqual(captured.records[0].diagnostic_code, PAGINATION_TRUNCATED)
        self.assertEqual(captured.records[0].diagnostic_fields["item_count"], 2)

    async def test_token_inside_buffer_is_refreshed_and_persisted(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if str(request.url) == TOKEN_URL:
                return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600})
            return httpx.Response(200, json={"items": []})

        secret_store = mock.AsyncMock()
        provider = self._provider(handler, expires_in=timedelta(minutes=4), secret_store=secret_store)
        await provider.get_events("primary", WINDOW)

        self.assertEqual(str(requests[0].url), TOKEN_URL)
        form = parse_qs(requests[0].content.decode("utf-8"))
        self.assertEqual(form["grant_type"], ["refresh_token"])
        self.assertEqual(form["refresh_token"], ["old-refresh"])
        self.assertEqual(requests[1].headers["Authorization"], "Bearer new-access")
        self.assertEqual(provider.tokens.refresh_token, "old-refresh")
        self.assertEqual(provider.tokens.expires_at, NOW + timedelta(hours=1))

        secret_store.set.assert_awaited_once()
        key, payload = secret_store.set.await_args.args
        self.assertEqual(key, "google_oauth:me@example.com")
        self.assertIn("new-access", payload)

    async def test_persist_failure_warns_but_fetch_succeeds(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == TOKEN_URL:
                return httpx.Response(200, json={"access_token": "new-access", "refresh_token": "new-refresh"})
            return httpx.Response(
                200,
                json={"items": [{"id": "e1", "start": {"dateTime": "2026-01-27T10:00:00Z"}, "end": {"dateTime": "2026-01-27T11:00:00Z"}}]},
            )

        secret_store = mock.AsyncMock()
        secret_store.set.side_effect = SecretStorageError("disk full")
        provider = self._provider(handler, expires_in=timedelta(seconds=-10), secret_store=secret_store)

        with self.assertLogs(DIAGNOSTICS_LOGGER, level="WARNING") as captured:
            events = await provider.get_events("primary", WINDOW)

        self.assertEqual(len(events), 1)
        self.assertEqual(captured.records[0].diagnostic_code, TOKEN_PERSIST_FAILED)
        self.assertEqual(captured.records[0].diagnostic_fields["account_email"], "me@example.com")
        self.assertEqual(provider.tokens.refresh_token, "new-refresh")

    async def test_rejected_access_token_means_reauthentication(self) -> None:
        for status in (401, 403):
            provider = self._provider(lambda request, status=status: httpx.Response(status, json={"error": "nope"}))
            with self.assertRaises(AuthExpiredError):
                await provider.get_events("primary", WINDOW)
            await self.http_client.aclose()

    async def test_rejected_refresh_means_reauthentication(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been revoked"})

        provider = self._provider(handler, expires_in=timedelta(0))
        with self.assertRaises(AuthExpiredError):
            await provider.get_events("primary", WINDOW)

    async def test_other_statuses_are_api_errors(self) -> None:
        provider = self._provider(lambda request: httpx.Response(500, text="backend error"))
        with self.assertRaises(ApiError) as ctx:
            await provider.get_events("primary", WINDOW)
        self.assertEqual(ctx.exception.status, 500)
        self.assertEqual(ctx.exception.body, "backend error")

    async def test_transport_failures_are_network_errors(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = self._provider(handler)
        with self.assertRaises(NetworkError):
            await provider.get_events("primary", WINDOW)

    async def test_list_calendars(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/v3/users/me/calendarList")
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "primary-id", "summary": "Me", "primary": True, "backgroundColor": "#fff"},
                        {"id": "team", "summary": "Team"},
                    ]
                },
            )

        calendars = await self._provider(handler).list_calendars()
        self.assertEqual([(item.id, item.primary) for item in calendars], [("primary-id", True), ("team", False)])
        self.assertEqual(calendars[0].color, "#fff")


if __name__ == "__main__":
    unittest.main()
