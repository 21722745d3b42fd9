from unittest.mock import patch

from django.test import TestCase

from chat.tests import UserFactory
from .models import Notification
from .services import notify

MOCK_PUSH = "notification.services.push_notification"


class NotifyTest(TestCase):
    def setUp(self):
        self.recipient = UserFactory()
        self.sender = UserFactory()

    def test_persists_notification(self):
        with patch(MOCK_PUSH):
            noti = notify(self.recipient.id, "message", "New message", sender_id=self.sender.id)
        stored = Notification.objects.get(pk=noti.pk)
        self.assertEqual(stored.recipient_id, self.recipient.id)
        self.assertEqual(stored.sender_id, self.sender.id)
        self.assertFalse(stored.is_read)

    def test_pushes_to_recipient_after_commit(self):
        with patch(MOCK_PUSH) as mock_push:
            with self.captureOnCommitCallbacks(execute=True):
                noti = notify(self.recipient.id, "chat_join", "Someone joined")
        mock_push.assert_called_once()
        user_id, data = mock_push.call_args.args
        self.assertEqual(user_id, self.recipient.id)
        self.assertEqual(data["id"], noti.id)
        self.assertEqual(data["type"], "chat_join")
        self.assertIsNone(data["sender_id"])

    def test_nothing_pushed_before_commit(self):
        with patch(MOCK_PUSH) as mock_push:
            with self.captureOnCommitCallbacks(execute=False) as callbacks:
                notify(self.recipient.id, "message", "New message")
        mock_push.assert_not_called()
        self.assertEqual(len(callbacks), 1)
