from __future__ import annotations

import logging
from typing import Any, Protocol

import requests

from calhook.models import EventMeta, SinkConfig
from calhook.state_store import StateStore


logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def emit(self, payload: dict[str, Any], metadata: EventMeta) -> None: ...


class StoreEventSink:
    """Persists emitted events, dropping repeats of an already-seen dedupe id."""

    def __init__(self, state_store: StateStore, resource_id: str = "") -> None:
        self.state_store = state_store
        self.resource_id = resource_id

    def emit(self, payload: dict[str, Any], metadata: EventMeta) -> None:
        inserted = self.state_store.insert_emitted_event(
            dedupe_id=metadata.dedupe_id,
            resource_id=self.resource_id,
            summary=metadata.summary,
            ts=metadata.ts,
            payload=payload,
        )
        if not inserted:
            logger.debug("duplicate event %s dropped", metadata.dedupe_id)


class WebhookForwardSink:
    def __init__(self, config: SinkConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self._session = session or requests.Session()

    def emit(self, payload: dict[str, Any], metadata: EventMeta) -> None:
        if not self.config.forward_url:
            return
        response = self._session.post(
            self.config.forward_url,
            json={"payload": payload, "metadata": metadata.to_dict()},
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()


class CompositeSink:
    def __init__(self, *sinks: EventSink) -> None:
        self.sinks = list(sinks)

    def emit(self, payload: dict[str, Any], metadata: EventMeta) -> None:
        for sink in self.sinks:
            sink.emit(payload, metadata)
