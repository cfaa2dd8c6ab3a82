import tempfile
import unittest
from pathlib import Path

from calhook.errors import GoogleCalendarRequestError, SyncProtocolError
from calhook.models import EventPage
from calhook.paginator import DeltaSyncPaginator
from calhook.state_store import StateStore


class _FakeFeedClient:
    """Serves pages keyed by page token and records every call."""

    def __init__(self, pages: dict, full_sync_token: str = "fresh-token") -> None:
        self.pages = pages
        self.full_sync_token = full_sync_token
        self.list_calls: list[tuple[str, str | None, str | None]] = []
        self.full_sync_calls: list[str] = []

    def list_events(self, calendar_id: str, sync_token: str | None = None, page_token: str | None = None):
        self.list_calls.append((calendar_id, sync_token, page_token))
        page = self.pages[page_token]
        if isinstance(page, Exception):
            raise page
        return page

    def full_sync(self, calendar_id: str) -> str:
        self.full_sync_calls.append(calendar_id)
        return self.full_sync_token


class DeltaSyncPaginatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.store.save_watch(
            resource_id="cal-1",
            channel_id="chan-1",
            channel_resource_id="res-1",
            expiration=1_800_000_000_000,
            sync_token="old-token",
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _token(self) -> str | None:
        record = self.store.get_resource("cal-1")
        assert record is not None
        return record.sync_token

    def test_walks_all_pages_and_persists_final_token(self) -> None:
        client = _FakeFeedClient(
            {
                None: EventPage(items=[{"id": "a"}, {"id": "b"}], next_page_token="p2"),
                "p2": EventPage(items=[{"id": "c"}], next_page_token="p3"),
                "p3": EventPage(items=[{"id": "d"}], next_sync_token="new-token"),
            }
        )
        items = list(DeltaSyncPaginator(client, self.store).fetch_changes("cal-1"))

        self.assertEqual([item["id"] for item in items], ["a", "b", "c", "d"])
        self.assertEqual(
            client.list_calls,
            [("cal-1", "old-token", None), ("cal-1", "old-token", "p2"), ("cal-1", "old-token", "p3")],
        )
        self.assertEqual(self._token(), "new-token")
        self.assertEqual(client.full_sync_calls, [])

    def test_token_not_persisted_before_last_page(self) -> None:
        client = _FakeFeedClient(
            {
                None: EventPage(items=[{"id": "a"}], next_page_token="p2"),
                "p2": EventPage(items=[{"id": "b"}], next_sync_token="new-token"),
            }
        )
        changes = DeltaSyncPaginator(client, self.store).fetch_changes("cal-1")
        self.assertEqual(next(changes)["id"], "a")
        self.assertEqual(self._token(), "old-token")
        self.assertEqual(list(changes), [{"id": "b"}])
        self.assertEqual(self._token(), "new-token")

    def test_invalidation_mid_feed_stops_and_rebaselines(self) -> None:
        client = _FakeFeedClient(
            {
                None: EventPage(items=[{"id": "a"}, {"id": "b"}], next_page_token="p2"),
                "p2": EventPage(status_code=410),
                "p3": EventPage(items=[{"id": "never"}], next_sync_token="unused"),
            }
        )
        items = list(DeltaSyncPaginator(client, self.store).fetch_changes("cal-1"))

        self.assertEqual([item["id"] for item in items], ["a", "b"])
        self.assertEqual(client.full_sync_calls, ["cal-1"])
        self.assertNotIn(("cal-1", "old-token", "p3"), client.list_calls)
        self.assertEqual(len(client.list_calls), 2)
        self.assertEqual(self._token(), "fresh-token")
        actions = [event["action"] for event in self.store.recent_audit_events()]
        self.assertIn("sync_rebaselined", actions)

    def test_missing_token_performs_full_resync_without_items(self) -> None:
        self.store.update_sync_token("cal-2", None, expected_version=0)
        client = _FakeFeedClient({})
        items = list(DeltaSyncPaginator(client, self.store).fetch_changes("cal-2"))
        self.assertEqual(items, [])
        self.assertEqual(client.full_sync_calls, ["cal-2"])
        record = self.store.get_resource("cal-2")
        assert record is not None
        self.assertEqual(record.sync_token, "fresh-token")

    def test_transient_failure_propagates_and_keeps_old_token(self) -> None:
        client = _FakeFeedClient(
            {
                None: EventPage(items=[{"id": "a"}], next_page_token="p2"),
                "p2": GoogleCalendarRequestError("boom", status_code=503),
            }
        )
        changes = DeltaSyncPaginator(client, self.store).fetch_changes("cal-1")
        self.assertEqual(next(changes)["id"], "a")
        with self.assertRaises(GoogleCalendarRequestError):
            next(changes)
        self.assertEqual(self._token(), "old-token")
        self.assertEqual(client.full_sync_calls, [])

    def test_final_page_without_sync_token_is_a_protocol_error(self) -> None:
        client = _FakeFeedClient({None: EventPage(items=[])})
        with self.assertRaises(SyncProtocolError):
            list(DeltaSyncPaginator(client, self.store).fetch_changes("cal-1"))
        self.assertEqual(self._token(), "old-token")

    def test_concurrent_write_wins_over_stale_cycle(self) -> None:
        client = _FakeFeedClient(
            {
                None: EventPage(items=[{"id": "a"}], next_page_token="p2"),
                "p2": EventPage(items=[], next_sync_token="stale-token"),
            }
        )
        changes = DeltaSyncPaginator(client, self.store).fetch_changes("cal-1")
        next(changes)
        record = self.store.get_resource("cal-1")
        assert record is not None
        self.store.update_sync_token("cal-1", "concurrent-token", expected_version=record.version)

        self.assertEqual(list(changes), [])
        self.assertEqual(self._token(), "concurrent-token")
        actions = [event["action"] for event in self.store.recent_audit_events()]
        self.assertIn("sync_token_conflict", actions)


if __name__ == "__main__":
    unittest.main()
