import unittest

from calhook.models import PushNotification
from calhook.notifications import NotificationDecision, NotificationValidator


def _notification(channel_id: str | None, state: str | None) -> PushNotification:
    headers = {}
    if channel_id is not None:
        headers["X-Goog-Channel-ID"] = channel_id
    if state is not None:
        headers["X-Goog-Resource-State"] = state
    return PushNotification(headers=headers)


class NotificationValidatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.validator = NotificationValidator()
        self.known = ["chan-a", "chan-b"]

    def test_unknown_channel_is_ignored_regardless_of_state(self) -> None:
        decision = self.validator.classify(_notification("chan-old", "exists"), self.known)
        self.assertEqual(decision, NotificationDecision.UNKNOWN_CHANNEL)
        self.assertFalse(decision.should_fetch)

    def test_missing_channel_header_is_unknown(self) -> None:
        decision = self.validator.classify(_notification(None, "exists"), self.known)
        self.assertEqual(decision, NotificationDecision.UNKNOWN_CHANNEL)

    def test_cleared_channels_never_match(self) -> None:
        decision = self.validator.classify(_notification("", "exists"), [None, ""])
        self.assertEqual(decision, NotificationDecision.UNKNOWN_CHANNEL)

    def test_state_transitions(self) -> None:
        cases = {
            "exists": NotificationDecision.FETCH,
            "not_exists": NotificationDecision.RESOURCE_ABSENT,
            "sync": NotificationDecision.SYNC_HANDSHAKE,
            "weird": NotificationDecision.UNRECOGNIZED_STATE,
            "": NotificationDecision.UNRECOGNIZED_STATE,
        }
        for state, expected in cases.items():
            with self.subTest(state=state):
                self.assertEqual(self.validator.classify(_notification("chan-b", state), self.known), expected)

    def test_only_exists_fetches(self) -> None:
        fetching = [decision for decision in NotificationDecision if decision.should_fetch]
        self.assertEqual(fetching, [NotificationDecision.FETCH])

    def test_header_lookup_is_case_insensitive(self) -> None:
        notification = PushNotification(
            headers={"x-goog-channel-id": "chan-a", "X-GOOG-RESOURCE-STATE": "exists"}
        )
        self.assertEqual(notification.channel_id, "chan-a")
        self.assertEqual(self.validator.classify(notification, self.known), NotificationDecision.FETCH)


if __name__ == "__main__":
    unittest.main()
