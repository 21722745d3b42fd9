from datetime import timedelta
from unittest.mock import patch

from django.db import OperationalError
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework.authtoken.models import Token
from rest_framework.test import APIClient

from chat.errors import InvalidArgument, NotFound, Transient
from chat.membership import mark_interested, toggle_interest
from chat.models import Chat, ChatParticipant
from chat.tests import EventPostFactory, UserFactory

from .services import add_interest, remove_interest


class InterestServiceTest(TestCase):
    def setUp(self):
        self.post = EventPostFactory(is_event=False)
        self.user = UserFactory()

    def test_add_is_idempotent(self):
        self.assertTrue(add_interest(self.post, self.user.id))
        self.assertFalse(add_interest(self.post, self.user.id))
        self.post.refresh_from_db()
        self.assertEqual(self.post.interested_count, 1)

    def test_remove_missing_user_is_noop(self):
        self.assertFalse(remove_interest(self.post, self.user.id))
        self.post.refresh_from_db()
        self.assertEqual(self.post.interested_count, 0)


class ToggleInterestTest(TestCase):
    def setUp(self):
        self.event = EventPostFactory()
        self.user = UserFactory()

    def test_interest_in_event_joins_chat(self):
        post, interested = toggle_interest(self.user.id, self.event.id)
        self.assertTrue(interested)
        self.assertEqual(post.interested_count, 1)
        chat = Chat.objects.get(post=self.event)
        self.assertTrue(chat.participants.filter(pk=self.user.id).exists())

    def test_removing_interest_keeps_chat_membership(self):
        toggle_interest(self.user.id, self.event.id)
        post, interested = toggle_interest(self.user.id, self.event.id)
        self.assertFalse(interested)
        self.assertEqual(post.interested_count, 0)
        self.assertFalse(self.event.interested_users.filter(pk=self.user.id).exists())
        self.assertTrue(
            ChatParticipant.objects.filter(chat__post=self.event, user=self.user).exists()
        )

    def test_interest_in_plain_post_has_no_chat(self):
        post = EventPostFactory(is_event=False, event_date_time=None)
        _, interested = toggle_interest(self.user.id, post.id)
        self.assertTrue(interested)
        self.assertFalse(Chat.objects.filter(post=post).exists())

    def test_interest_closed_after_event_starts(self):
        started = EventPostFactory(event_date_time=timezone.now() - timedelta(hours=1))
        with self.assertRaises(InvalidArgument):
            toggle_interest(self.user.id, started.id)
        self.assertFalse(started.interested_users.exists())

    def test_missing_post_not_found(self):
        with self.assertRaises(NotFound):
            toggle_interest(self.user.id, 99999)


class MarkInterestedTest(TestCase):
    def setUp(self):
        self.event = EventPostFactory()
        self.user = UserFactory()

    def test_joins_chat_and_records_interest(self):
        chat, post = mark_interested(self.user.id, self.event.id)
        self.assertEqual(chat.post_id, self.event.id)
        self.assertEqual(post.interested_count, 1)
        self.assertTrue(post.interested_users.filter(pk=self.user.id).exists())

    def test_repeat_is_noop(self):
        mark_interested(self.user.id, self.event.id)
        chat, post = mark_interested(self.user.id, self.event.id)
        self.assertEqual(post.interested_count, 1)
        self.assertEqual(chat.memberships.filter(user=self.user).count(), 1)

    def test_failed_interest_write_rolls_back_chat_join(self):
        with patch("chat.membership.add_interest", side_effect=OperationalError("disk I/O error")):
            with self.assertRaises(Transient):
                mark_interested(self.user.id, self.event.id)
        self.assertFalse(Chat.objects.filter(post=self.event).exists())
        self.assertFalse(ChatParticipant.objects.filter(user=self.user).exists())


class InterestApiTest(TestCase):
    def setUp(self):
        self.user = UserFactory()
        self.event = EventPostFactory()
        self.client = APIClient()
        token = Token.objects.create(user=self.user)
        self.client.credentials(HTTP_AUTHORIZATION=f"Token {token.key}")
        self.url = reverse("post_interest", kwargs={"post_id": self.event.id})

    def test_toggle_on_and_off(self):
        first = self.client.put(self.url)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["msg"], "Interest added")
        self.assertTrue(first.json()["interested"])
        self.assertEqual(first.json()["post"]["interested_count"], 1)

        second = self.client.put(self.url)
        self.assertEqual(second.json()["msg"], "Interest removed")
        self.assertFalse(second.json()["interested"])

    def test_started_event_returns_400(self):
        self.event.event_date_time = timezone.now() - timedelta(minutes=5)
        self.event.save()
        resp = self.client.put(self.url)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"msg": "Cannot mark interest after event starts."})

    def test_requires_authentication(self):
        self.client.credentials()
        self.assertEqual(self.client.put(self.url).status_code, 401)
