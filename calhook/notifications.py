from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum

from calhook.models import PushNotification


logger = logging.getLogger(__name__)


class NotificationDecision(str, Enum):
    UNKNOWN_CHANNEL = "unknown_channel"
    SYNC_HANDSHAKE = "sync_handshake"
    RESOURCE_ABSENT = "resource_absent"
    FETCH = "fetch"
    UNRECOGNIZED_STATE = "unrecognized_state"

    @property
    def should_fetch(self) -> bool:
        return self is NotificationDecision.FETCH


_STATE_DECISIONS = {
    "exists": NotificationDecision.FETCH,
    "not_exists": NotificationDecision.RESOURCE_ABSENT,
    "sync": NotificationDecision.SYNC_HANDSHAKE,
}


class NotificationValidator:
    """Decides whether an inbound push callback warrants a fetch.

    Handshake (``sync``) and heartbeat callbacks have the same shape as real
    change notifications; only the resource-state header tells them apart.
    """

    def classify(
        self,
        notification: PushNotification,
        known_channel_ids: Iterable[str | None],
    ) -> NotificationDecision:
        known = {channel_id for channel_id in known_channel_ids if channel_id}
        channel_id = notification.channel_id
        if not channel_id or channel_id not in known:
            logger.warning(
                "unexpected channel id %r; an older subscription is probably still active",
                channel_id,
            )
            return NotificationDecision.UNKNOWN_CHANNEL

        state = notification.resource_state
        decision = _STATE_DECISIONS.get(state, NotificationDecision.UNRECOGNIZED_STATE)
        if decision is NotificationDecision.UNRECOGNIZED_STATE:
            logger.warning("unknown resource state %r on channel %s", state, channel_id)
        elif decision is NotificationDecision.SYNC_HANDSHAKE:
            logger.info("new channel %s confirmed", channel_id)
        elif decision is NotificationDecision.RESOURCE_ABSENT:
            logger.info("resource for channel %s does not exist", channel_id)
        return decision
