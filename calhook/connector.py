from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Union

from calhook.config_manager import ConfigManager
from calhook.errors import GoogleCalendarNotConfiguredError
from calhook.google_client import GoogleCalendarClient
from calhook.models import (
    AppConfig,
    PushNotification,
    RunResult,
    TimerTick,
    WatchedResource,
    WatchSnapshot,
)
from calhook.notifications import NotificationDecision, NotificationValidator
from calhook.paginator import DeltaSyncPaginator
from calhook.projector import EventProjector
from calhook.sinks import CompositeSink, EventSink, StoreEventSink, WebhookForwardSink
from calhook.state_store import StateStore
from calhook.subscriptions import SubscriptionManager


logger = logging.getLogger(__name__)

Signal = Union[TimerTick, PushNotification]


class CalendarSourceConnector:
    """Top-level handler wiring subscriptions, validation, pagination and emission.

    The watch list is read once per invocation into a ``WatchSnapshot``.
    Work on a single calendar is serialized through a per-calendar lock, so
    a renewal tick and a push notification never interleave their writes
    for the same calendar inside this process.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        sink: EventSink | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._sink_override = sink
        self.validator = NotificationValidator()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _resource_lock(self, resource_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(resource_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[resource_id] = lock
            return lock

    def _client(self, config: AppConfig) -> GoogleCalendarClient:
        client = GoogleCalendarClient(config.google)
        if not client.is_configured():
            raise GoogleCalendarNotConfiguredError("Google Calendar config missing base_url/access_token.")
        return client

    def _sink(self, config: AppConfig, resource_id: str) -> EventSink:
        if self._sink_override is not None:
            return self._sink_override
        store_sink = StoreEventSink(self.state_store, resource_id)
        if config.sink.forward_url:
            return CompositeSink(store_sink, WebhookForwardSink(config.sink))
        return store_sink

    def activate(self) -> list[WatchedResource]:
        config = self.config_manager.load()
        snapshot = WatchSnapshot.from_config(config)
        subscriptions = SubscriptionManager(self._client(config), self.state_store)
        resources: list[WatchedResource] = []
        for calendar_id in snapshot.calendar_ids:
            with self._resource_lock(calendar_id):
                resources.append(subscriptions.establish_watch(calendar_id, snapshot.callback_url))
        return resources

    def deactivate(self) -> dict[str, bool]:
        config = self.config_manager.load()
        snapshot = WatchSnapshot.from_config(config)
        subscriptions = SubscriptionManager(self._client(config), self.state_store)
        outcome: dict[str, bool] = {}
        for calendar_id in snapshot.calendar_ids:
            with self._resource_lock(calendar_id):
                outcome[calendar_id] = subscriptions.teardown_watch(calendar_id)
        return outcome

    def known_channel_ids(self, snapshot: WatchSnapshot) -> list[str]:
        channel_ids: list[str] = []
        for calendar_id in snapshot.calendar_ids:
            resource = self.state_store.get_resource(calendar_id)
            if resource is not None and resource.channel_id:
                channel_ids.append(resource.channel_id)
        return channel_ids

    def run(self, signal: Signal) -> RunResult:
        trigger = "timer" if isinstance(signal, TimerTick) else "notification"
        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_sync_run(trigger=trigger)
        result = RunResult(trigger=trigger)
        try:
            config = self.config_manager.load()
            snapshot = WatchSnapshot.from_config(config)
            if isinstance(signal, TimerTick):
                self._renew(config, snapshot, signal, result)
            else:
                self._handle_notification(config, snapshot, signal, result, run_id)
        except Exception as exc:
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=f"{type(exc).__name__}: {exc}",
                duration_ms=_elapsed_ms(started_at),
                emitted=result.emitted,
                skipped=result.skipped,
            )
            raise
        self.state_store.finish_sync_run(
            run_id=run_id,
            status="success",
            message=result.decision or "ok",
            duration_ms=_elapsed_ms(started_at),
            emitted=result.emitted,
            skipped=result.skipped,
        )
        return result

    def _renew(self, config: AppConfig, snapshot: WatchSnapshot, tick: TimerTick, result: RunResult) -> None:
        subscriptions = SubscriptionManager(self._client(config), self.state_store)
        result.decision = "renewal_check"
        for calendar_id in snapshot.calendar_ids:
            with self._resource_lock(calendar_id):
                renewed = subscriptions.renew_if_expiring_soon(
                    calendar_id,
                    tick.interval_millis,
                    snapshot.callback_url,
                )
            if renewed:
                result.renewed.append(calendar_id)
        self.state_store.set("last_renewal_check", datetime.now(timezone.utc).isoformat())

    def _handle_notification(
        self,
        config: AppConfig,
        snapshot: WatchSnapshot,
        notification: PushNotification,
        result: RunResult,
        run_id: int,
    ) -> None:
        decision = self.validator.classify(notification, self.known_channel_ids(snapshot))
        result.decision = decision.value
        self.state_store.set("last_notification_at", datetime.now(timezone.utc).isoformat())
        if not decision.should_fetch:
            if decision in {NotificationDecision.UNKNOWN_CHANNEL, NotificationDecision.UNRECOGNIZED_STATE}:
                self.state_store.record_audit_event(
                    resource_id=notification.channel_id or "unknown",
                    action=f"notification_{decision.value}",
                    details={"resource_state": notification.resource_state},
                    run_id=run_id,
                )
            return

        client = self._client(config)
        paginator = DeltaSyncPaginator(client, self.state_store)
        projector = EventProjector(snapshot.new_event_threshold_ms)
        for calendar_id in snapshot.calendar_ids:
            sink = self._sink(config, calendar_id)
            with self._resource_lock(calendar_id):
                for item in paginator.fetch_changes(calendar_id):
                    event = projector.project(item, snapshot.new_only)
                    if event is None:
                        result.skipped += 1
                        continue
                    sink.emit(event.payload, event.metadata)
                    result.emitted += 1
        logger.info(
            "notification processed: emitted=%d skipped=%d",
            result.emitted,
            result.skipped,
        )


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
