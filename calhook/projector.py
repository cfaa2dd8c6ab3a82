from __future__ import annotations

from typing import Any

from calhook.models import DEFAULT_NEW_EVENT_THRESHOLD_MS, EmittedEvent, EventMeta, to_millis


CANCELLED_STATUS = "cancelled"

# The Calendar API has no "created" flag on change items, so an item whose
# creation and last update are this close together is treated as new.
NEW_EVENT_MAX_DIFF_MS = DEFAULT_NEW_EVENT_THRESHOLD_MS


class EventProjector:
    def __init__(self, new_event_threshold_ms: int = NEW_EVENT_MAX_DIFF_MS) -> None:
        self.new_event_threshold_ms = new_event_threshold_ms

    def is_new_event(self, item: dict[str, Any]) -> bool:
        created = to_millis(item.get("created"))
        updated = to_millis(item.get("updated"))
        if created is None or updated is None:
            return False
        return abs(updated - created) <= self.new_event_threshold_ms

    def is_relevant(self, item: dict[str, Any], new_only: bool) -> bool:
        return not new_only or self.is_new_event(item)

    @staticmethod
    def generate_meta(item: dict[str, Any]) -> EventMeta:
        ts = to_millis(item.get("updated"))
        if ts is None:
            ts = 0
        return EventMeta(
            dedupe_id=f"{item.get('id', '')}-{ts}",
            summary=str(item.get("summary", "") or ""),
            ts=ts,
        )

    def project(self, item: dict[str, Any], new_only: bool = False) -> EmittedEvent | None:
        if item.get("status") == CANCELLED_STATUS:
            return None
        if not self.is_relevant(item, new_only):
            return None
        return EmittedEvent(payload=item, metadata=self.generate_meta(item))
