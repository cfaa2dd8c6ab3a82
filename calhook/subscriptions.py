from __future__ import annotations

import logging
import uuid
from typing import Callable

from calhook.google_client import STOP_SUCCESS_STATUS, GoogleCalendarClient
from calhook.models import WatchedResource, now_millis
from calhook.state_store import StateStore


logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Creates, renews and stops push-notification channels for watched calendars."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        state_store: StateStore,
        *,
        clock: Callable[[], int] = now_millis,
        channel_id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.client = client
        self.state_store = state_store
        self.clock = clock
        self.channel_id_factory = channel_id_factory

    def establish_watch(self, resource_id: str, callback_url: str) -> WatchedResource:
        """Register a fresh channel and baseline the sync token.

        Nothing is persisted until both remote calls succeed, so a failed
        attempt can simply be repeated; the remote side supersedes the
        orphaned channel once it expires.
        """
        channel_id = self.channel_id_factory()
        watch = self.client.watch(resource_id, channel_id, callback_url)
        sync_token = self.client.full_sync(resource_id)
        resource = self.state_store.save_watch(
            resource_id=resource_id,
            channel_id=watch.channel_id,
            channel_resource_id=watch.channel_resource_id,
            expiration=watch.expiration,
            sync_token=sync_token,
        )
        logger.info(
            "watch established for %s (channel=%s, expiration=%s)",
            resource_id,
            resource.channel_id,
            resource.expiration,
        )
        self.state_store.record_audit_event(
            resource_id=resource_id,
            action="watch_established",
            details={"channel_id": resource.channel_id, "expiration": resource.expiration},
        )
        return resource

    def teardown_watch(self, resource_id: str) -> bool:
        resource = self.state_store.get_resource(resource_id)
        if resource is None or not resource.has_channel:
            logger.debug("no channel recorded for %s, nothing to stop", resource_id)
            return False
        if not self._stop(resource_id, resource.channel_id, resource.channel_resource_id):
            return False
        self.state_store.clear_resource(resource_id, channel_id=resource.channel_id)
        return True

    def teardown_channel(self, resource_id: str, channel_id: str, channel_resource_id: str) -> bool:
        """Stop a superseded channel without touching the current record."""
        return self._stop(resource_id, channel_id, channel_resource_id)

    def _stop(self, resource_id: str, channel_id: str | None, channel_resource_id: str | None) -> bool:
        status = self.client.stop(str(channel_id), str(channel_resource_id))
        if status == STOP_SUCCESS_STATUS:
            logger.info("channel %s for %s deactivated", channel_id, resource_id)
            self.state_store.record_audit_event(
                resource_id=resource_id,
                action="channel_stopped",
                details={"channel_id": channel_id},
            )
            return True
        logger.warning(
            "problem deactivating channel %s for %s (HTTP %s); it will lapse at expiration",
            channel_id,
            resource_id,
            status,
        )
        self.state_store.record_audit_event(
            resource_id=resource_id,
            action="teardown_failed",
            details={"channel_id": channel_id, "status": status},
        )
        return False

    def renew_if_expiring_soon(
        self,
        resource_id: str,
        lookahead_millis: int,
        callback_url: str,
        now: int | None = None,
    ) -> bool:
        current = self.state_store.get_resource(resource_id)
        if current is None or not current.has_channel:
            logger.debug("no active channel for %s, skipping renewal", resource_id)
            return False
        expiration = current.expiration
        now = self.clock() if now is None else now
        if expiration is not None and now + lookahead_millis <= expiration:
            return False

        logger.info("renewing watch for %s (expiration=%s, now=%s)", resource_id, expiration, now)
        self.establish_watch(resource_id, callback_url)
        self.teardown_channel(resource_id, str(current.channel_id), str(current.channel_resource_id))
        return True
