import unittest
from unittest import mock

import requests

from calhook.errors import GoogleCalendarNotConfiguredError, GoogleCalendarRequestError, SyncProtocolError
from calhook.google_client import GoogleCalendarClient
from calhook.models import GoogleConfig


def _response(status_code: int, payload: dict | None = None) -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    response.text = str(payload)
    return response


class GoogleCalendarClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.client = GoogleCalendarClient(
            GoogleConfig(base_url="https://calendar.example.com/v3/", access_token="tok", timeout_seconds=7),
            session=self.session,
        )

    def test_watch_posts_web_hook_channel(self) -> None:
        self.session.request.return_value = _response(
            200, {"id": "chan-1", "resourceId": "res-1", "expiration": "1800000000000"}
        )

        watch = self.client.watch("team@group.calendar.google.com", "chan-1", "https://hooks.example.com/gcal")

        self.assertEqual(watch.channel_resource_id, "res-1")
        self.assertEqual(watch.expiration, 1_800_000_000_000)
        args, kwargs = self.session.request.call_args
        self.assertEqual(args[0], "POST")
        self.assertEqual(
            args[1], "https://calendar.example.com/v3/calendars/team%40group.calendar.google.com/events/watch"
        )
        self.assertEqual(
            kwargs["json"], {"id": "chan-1", "type": "web_hook", "address": "https://hooks.example.com/gcal"}
        )
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")
        self.assertEqual(kwargs["timeout"], 7)

    def test_stop_returns_status_code_without_raising(self) -> None:
        self.session.request.return_value = _response(404, {"error": {"message": "not found"}})
        self.assertEqual(self.client.stop("chan-1", "res-1"), 404)

    def test_list_events_reports_invalidated_token_as_data(self) -> None:
        self.session.request.return_value = _response(410, {"error": {"message": "gone"}})
        page = self.client.list_events("cal-1", sync_token="old")
        self.assertEqual(page.status_code, 410)
        self.assertEqual(page.items, [])
        self.assertEqual(self.session.request.call_args.kwargs["params"], {"syncToken": "old"})

    def test_list_events_raises_on_other_failures(self) -> None:
        self.session.request.return_value = _response(500, {"error": {"message": "backend error"}})
        with self.assertRaises(GoogleCalendarRequestError) as ctx:
            self.client.list_events("cal-1", sync_token="old", page_token="p2")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertIn("backend error", str(ctx.exception))

    def test_transport_errors_are_wrapped(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(GoogleCalendarRequestError):
            self.client.list_events("cal-1")

    def test_full_sync_follows_pages_to_the_sync_token(self) -> None:
        self.session.request.side_effect = [
            _response(200, {"items": [{"id": "a"}], "nextPageToken": "p2"}),
            _response(200, {"items": [{"id": "b"}], "nextSyncToken": "baseline"}),
        ]
        self.assertEqual(self.client.full_sync("cal-1"), "baseline")
        second_params = self.session.request.call_args_list[1].kwargs["params"]
        self.assertEqual(second_params, {"pageToken": "p2"})

    def test_full_sync_without_token_is_protocol_error(self) -> None:
        self.session.request.return_value = _response(200, {"items": []})
        with self.assertRaises(SyncProtocolError):
            self.client.full_sync("cal-1")

    def test_list_calendars(self) -> None:
        self.session.request.return_value = _response(
            200,
            {"items": [{"id": "primary@example.com", "summary": "Me", "primary": True}, {"summary": "no id"}]},
        )
        calendars = self.client.list_calendars()
        self.assertEqual(len(calendars), 1)
        self.assertTrue(calendars[0].primary)

    def test_unconfigured_client_refuses_requests(self) -> None:
        client = GoogleCalendarClient(GoogleConfig(access_token=""), session=self.session)
        with self.assertRaises(GoogleCalendarNotConfiguredError):
            client.stop("chan", "res")
        self.session.request.assert_not_called()


if __name__ == "__main__":
    unittest.main()
