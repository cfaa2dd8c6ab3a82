from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

from calhook.errors import SyncProtocolError
from calhook.google_client import SYNC_TOKEN_INVALID_STATUS, GoogleCalendarClient
from calhook.state_store import StateStore


logger = logging.getLogger(__name__)


class DeltaSyncPaginator:
    """Walks the incremental change feed of one calendar.

    Items are yielded page by page, in the order received. The new sync
    token is persisted only once the final page has been consumed. When the
    stored token is rejected as invalid, nothing further is yielded: the
    calendar is re-baselined with a full sync and the cycle ends, trading
    at most one cycle of changes for never emitting twice.
    """

    def __init__(self, client: GoogleCalendarClient, state_store: StateStore) -> None:
        self.client = client
        self.state_store = state_store

    def fetch_changes(self, resource_id: str) -> Iterator[dict[str, Any]]:
        resource = self.state_store.get_resource(resource_id)
        version = resource.version if resource is not None else 0
        sync_token = resource.sync_token if resource is not None else None

        if not sync_token:
            logger.info("no sync token stored for %s, performing full resync", resource_id)
            self._rebaseline(resource_id, version, reason="missing_token")
            return

        page_token: str | None = None
        while True:
            page = self.client.list_events(resource_id, sync_token=sync_token, page_token=page_token)
            if page.status_code == SYNC_TOKEN_INVALID_STATUS:
                logger.info("sync token for %s invalid, resyncing", resource_id)
                self._rebaseline(resource_id, version, reason="token_invalidated")
                return

            yield from page.items

            if page.next_page_token:
                page_token = page.next_page_token
                continue
            if not page.next_sync_token:
                raise SyncProtocolError(f"change feed for {resource_id} ended without a sync token")
            self._store_token(resource_id, page.next_sync_token, version)
            return

    def _rebaseline(self, resource_id: str, version: int, *, reason: str) -> None:
        fresh_token = self.client.full_sync(resource_id)
        self.state_store.record_audit_event(
            resource_id=resource_id,
            action="sync_rebaselined",
            details={"reason": reason},
        )
        self._store_token(resource_id, fresh_token, version)

    def _store_token(self, resource_id: str, sync_token: str, version: int) -> None:
        if self.state_store.update_sync_token(resource_id, sync_token, expected_version=version):
            return
        logger.warning(
            "sync state for %s changed concurrently (expected version %d); keeping the newer record",
            resource_id,
            version,
        )
        self.state_store.record_audit_event(
            resource_id=resource_id,
            action="sync_token_conflict",
            details={"expected_version": version},
        )
