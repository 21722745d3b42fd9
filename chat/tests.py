import threading
import time
from datetime import timedelta
from unittest.mock import patch

import factory
from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured
from django.db import IntegrityError, OperationalError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from channels.db import database_sync_to_async
from channels.layers import get_channel_layer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from faker import Faker
from rest_framework.authtoken.models import Token
from rest_framework.test import APIClient

from notification.models import Notification
from people.auth import TokenAuthMiddlewareStack
from post.models import Post

from . import realtime, services
from .errors import Forbidden, InvalidArgument, NotFound, Transient
from .models import Chat, ChatParticipant, Message
from .realtime import chat_room, user_room
from .urls import websocket_urlpatterns

User = get_user_model()
fake = Faker()

MOCK_BROADCAST = "chat.services.realtime.broadcast_message"
MOCK_SUBSCRIBE = "chat.services.realtime.subscribe_user"
MOCK_PUSH = "notification.services.push_notification"


# ── Factories ──────────────────────────────────────────────────────────────


class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = User

    username = factory.LazyFunction(lambda: fake.unique.user_name())
    email = factory.LazyFunction(lambda: fake.unique.email())
    password = factory.PostGenerationMethodCall("set_password", "testpass123")


class EventPostFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Post

    author = factory.SubFactory(UserFactory)
    title = factory.LazyFunction(lambda: fake.sentence(nb_words=4)[:100])
    description = factory.LazyFunction(fake.paragraph)
    is_event = True
    event_date_time = factory.LazyFunction(lambda: timezone.now() + timedelta(days=7))
    location = factory.LazyFunction(fake.city)


def private_chat(a, b):
    chat, _ = services.start_private_chat(a.id, b.id)
    return chat


# ── Model Tests ────────────────────────────────────────────────────────────


class ChatModelTest(TestCase):
    def test_duplicate_participant_raises_integrity_error(self):
        chat = Chat.objects.create(is_group_chat=True, group_name="crew")
        user = UserFactory()
        ChatParticipant.objects.create(chat=chat, user=user)
        with self.assertRaises(IntegrityError):
            ChatParticipant.objects.create(chat=chat, user=user)

    def test_second_chat_for_same_post_raises_integrity_error(self):
        post = EventPostFactory()
        Chat.objects.create(is_group_chat=True, post=post)
        with self.assertRaises(IntegrityError):
            Chat.objects.create(is_group_chat=True, post=post)

    def test_private_key_ignores_argument_order(self):
        self.assertEqual(Chat.private_key_for(7, 3), Chat.private_key_for(3, 7))
        self.assertEqual(Chat.private_key_for("3", 7), "3:7")

    def test_duplicate_sequence_in_chat_raises_integrity_error(self):
        chat = Chat.objects.create(is_group_chat=True, group_name="crew")
        sender = UserFactory()
        Message.objects.create(chat=chat, sender=sender, content="a", seq=1)
        with self.assertRaises(IntegrityError):
            Message.objects.create(chat=chat, sender=sender, content="b", seq=1)


# ── Chat directory ─────────────────────────────────────────────────────────


class StartPrivateChatTest(TestCase):
    def setUp(self):
        self.alice = UserFactory()
        self.bob = UserFactory()

    def test_repeated_start_returns_same_chat(self):
        first, created = services.start_private_chat(self.alice.id, self.bob.id)
        second, created_again = services.start_private_chat(self.alice.id, self.bob.id)
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, second.id)
        self.assertEqual(Chat.objects.count(), 1)

    def test_start_from_either_side_returns_same_chat(self):
        first = private_chat(self.alice, self.bob)
        second = private_chat(self.bob, self.alice)
        self.assertEqual(first.id, second.id)

    def test_chat_has_exactly_both_participants(self):
        chat = private_chat(self.alice, self.bob)
        self.assertFalse(chat.is_group_chat)
        self.assertEqual(
            {u.id for u in chat.participants.all()},
            {self.alice.id, self.bob.id},
        )

    def test_string_recipient_id_matches_existing_chat(self):
        chat = private_chat(self.alice, self.bob)
        again, created = services.start_private_chat(str(self.alice.id), str(self.bob.id))
        self.assertFalse(created)
        self.assertEqual(again.id, chat.id)

    def test_missing_recipient_is_invalid(self):
        with self.assertRaises(InvalidArgument):
            services.start_private_chat(self.alice.id, None)

    def test_self_chat_is_invalid(self):
        with self.assertRaises(InvalidArgument):
            services.start_private_chat(self.alice.id, str(self.alice.id))
        self.assertEqual(Chat.objects.count(), 0)

    def test_unknown_recipient_not_found(self):
        with self.assertRaises(NotFound):
            services.start_private_chat(self.alice.id, 99999)

    def test_existing_group_chat_does_not_count_as_private(self):
        services.create_group_chat(self.alice.id, [self.alice.id, self.bob.id], "two of us")
        _, created = services.start_private_chat(self.alice.id, self.bob.id)
        self.assertTrue(created)


class CreateGroupChatTest(TestCase):
    def setUp(self):
        self.owner = UserFactory()
        self.members = UserFactory.create_batch(2)

    def test_caller_is_added_to_participants(self):
        chat = services.create_group_chat(self.owner.id, [m.id for m in self.members], "Hikers")
        self.assertTrue(chat.is_group_chat)
        self.assertEqual(chat.group_name, "Hikers")
        self.assertEqual(
            {u.id for u in chat.participants.all()},
            {self.owner.id, *(m.id for m in self.members)},
        )

    def test_duplicate_ids_count_once(self):
        member = self.members[0]
        with self.assertRaises(InvalidArgument):
            services.create_group_chat(self.owner.id, [member.id, str(member.id)], "Pair")

    def test_blank_group_name_is_invalid(self):
        with self.assertRaises(InvalidArgument):
            services.create_group_chat(self.owner.id, [m.id for m in self.members], "   ")

    def test_non_list_participants_is_invalid(self):
        with self.assertRaises(InvalidArgument):
            services.create_group_chat(self.owner.id, self.members[0].id, "Hikers")

    def test_unknown_participant_not_found_and_nothing_created(self):
        with self.assertRaises(NotFound):
            services.create_group_chat(self.owner.id, [self.members[0].id, 99999], "Hikers")
        self.assertEqual(Chat.objects.count(), 0)

    def test_group_name_is_trimmed(self):
        chat = services.create_group_chat(self.owner.id, [m.id for m in self.members], "  Hikers ")
        self.assertEqual(chat.group_name, "Hikers")


class JoinOrCreatePostChatTest(TestCase):
    def setUp(self):
        self.post = EventPostFactory()
        self.author = self.post.author
        self.x = UserFactory()
        self.y = UserFactory()

    def test_first_join_creates_chat_with_author_and_caller(self):
        chat = services.join_or_create_post_chat(self.x.id, self.post.id)
        self.assertTrue(chat.is_group_chat)
        self.assertEqual(chat.post_id, self.post.id)
        self.assertEqual(chat.group_name, self.post.title)
        self.assertEqual(
            {u.id for u in chat.participants.all()},
            {self.author.id, self.x.id},
        )

    def test_second_user_joins_same_chat(self):
        first = services.join_or_create_post_chat(self.x.id, self.post.id)
        second = services.join_or_create_post_chat(self.y.id, self.post.id)
        self.assertEqual(first.id, second.id)
        self.assertEqual(Chat.objects.filter(post=self.post).count(), 1)
        participant_ids = {u.id for u in second.participants.all()}
        self.assertTrue({self.author.id, self.x.id, self.y.id} <= participant_ids)

    def test_repeated_join_is_noop(self):
        services.join_or_create_post_chat(self.x.id, self.post.id)
        chat = services.join_or_create_post_chat(self.x.id, self.post.id)
        self.assertEqual(chat.memberships.count(), 2)
        self.assertEqual(ChatParticipant.objects.filter(chat=chat, user=self.x).count(), 1)

    def test_author_join_creates_chat_with_only_author(self):
        chat = services.join_or_create_post_chat(self.author.id, self.post.id)
        self.assertEqual([u.id for u in chat.participants.all()], [self.author.id])

    def test_non_event_post_not_found(self):
        post = EventPostFactory(is_event=False)
        with self.assertRaises(NotFound):
            services.join_or_create_post_chat(self.x.id, post.id)
        self.assertFalse(Chat.objects.exists())

    def test_missing_post_not_found(self):
        with self.assertRaises(NotFound):
            services.join_or_create_post_chat(self.x.id, 99999)

    def test_lost_creation_race_joins_existing_chat(self):
        real_create = services._create_post_chat

        def racing_create(post):
            real_create(post)         # the concurrent request wins
            return real_create(post)  # ours trips the one-chat-per-post constraint

        with patch("chat.services._create_post_chat", side_effect=racing_create):
            services.join_or_create_post_chat(self.x.id, self.post.id)
        services.join_or_create_post_chat(self.x.id, self.post.id)

        self.assertEqual(Chat.objects.filter(post=self.post).count(), 1)
        self.assertEqual(
            ChatParticipant.objects.filter(chat__post=self.post, user=self.x).count(), 1
        )

    def test_caller_connections_subscribed_after_commit(self):
        with patch(MOCK_SUBSCRIBE) as mock_subscribe, patch(MOCK_PUSH):
            with self.captureOnCommitCallbacks(execute=True):
                chat = services.join_or_create_post_chat(self.x.id, self.post.id)
        mock_subscribe.assert_called_once_with(self.x.id, chat.id)

    def test_author_notified_when_someone_joins(self):
        chat = services.join_or_create_post_chat(self.x.id, self.post.id)
        services.join_or_create_post_chat(self.x.id, self.post.id)
        notes = Notification.objects.filter(recipient=self.author, notification_type="chat_join")
        self.assertEqual(notes.count(), 1)
        self.assertEqual(notes.get().chat_id, chat.id)
        self.assertIn(self.x.username, notes.get().content)


class GetUserChatsTest(TestCase):
    def setUp(self):
        self.me = UserFactory()
        self.older = private_chat(self.me, UserFactory())
        self.newer = private_chat(self.me, UserFactory())

    def test_most_recently_active_first(self):
        services.send_message(self.me.id, self.older.id, "bump", "text")
        chats = services.get_user_chats(self.me.id)
        self.assertEqual([c.id for c in chats], [self.older.id, self.newer.id])

    def test_last_message_and_sender_resolved(self):
        services.send_message(self.me.id, self.older.id, "hello", "text")
        chat = services.get_user_chats(self.me.id)[0]
        self.assertEqual(chat.last_message.content, "hello")
        self.assertEqual(chat.last_message.sender.username, self.me.username)

    def test_excludes_other_users_chats(self):
        private_chat(UserFactory(), UserFactory())
        self.assertEqual(len(services.get_user_chats(self.me.id)), 2)

    def test_store_failure_retried_once(self):
        real_queryset = services.chat_queryset()
        with patch(
            "chat.services.chat_queryset",
            side_effect=[OperationalError("database is locked"), real_queryset],
        ):
            chats = services.get_user_chats(self.me.id)
        self.assertEqual(len(chats), 2)

    def test_store_failure_after_retry_is_transient(self):
        with patch("chat.services.chat_queryset", side_effect=OperationalError("database is locked")) as mock_qs:
            with self.assertRaises(Transient):
                services.get_user_chats(self.me.id)
        self.assertEqual(mock_qs.call_count, 2)


class GetChatByPostTest(TestCase):
    def setUp(self):
        self.post = EventPostFactory()
        self.member = UserFactory()

    def test_no_chat_for_post_not_found(self):
        with self.assertRaises(NotFound):
            services.get_chat_by_post(self.member.id, self.post.id)

    def test_participant_gets_chat(self):
        chat = services.join_or_create_post_chat(self.member.id, self.post.id)
        self.assertEqual(services.get_chat_by_post(self.member.id, self.post.id).id, chat.id)

    def test_outsider_forbidden(self):
        services.join_or_create_post_chat(self.member.id, self.post.id)
        with self.assertRaises(Forbidden):
            services.get_chat_by_post(UserFactory().id, self.post.id)


# ── Messages ───────────────────────────────────────────────────────────────


class SendMessageTest(TestCase):
    def setUp(self):
        self.alice = UserFactory()
        self.bob = UserFactory()
        self.chat = private_chat(self.alice, self.bob)

    def test_hi_scenario(self):
        services.send_message(self.alice.id, self.chat.id, "hi", "text")
        messages = services.list_messages(self.bob.id, self.chat.id)
        self.assertEqual(len(messages), 1)
        self.assertEqual(messages[0].content, "hi")
        self.assertEqual(messages[0].sender_id, self.alice.id)
        self.assertEqual([u.id for u in messages[0].read_by.all()], [self.alice.id])

    def test_messages_listed_in_send_order(self):
        sent = [
            services.send_message(self.alice.id, self.chat.id, "m1", "text"),
            services.send_message(self.bob.id, self.chat.id, "m2", "text"),
            services.send_message(self.alice.id, self.chat.id, "m3", "text"),
        ]
        listed = services.list_messages(self.alice.id, self.chat.id)
        self.assertEqual([m.id for m in listed], [m.id for m in sent])
        self.assertEqual([m.seq for m in listed], [1, 2, 3])
        self.chat.refresh_from_db()
        self.assertEqual(self.chat.last_message_id, sent[2].id)

    def test_identical_timestamps_fall_back_to_sequence(self):
        frozen = timezone.now()
        with patch("chat.services.timezone.now", return_value=frozen):
            for text in ["m1", "m2", "m3"]:
                services.send_message(self.alice.id, self.chat.id, text, "text")
        listed = services.list_messages(self.alice.id, self.chat.id)
        self.assertEqual([m.content for m in listed], ["m1", "m2", "m3"])

    def test_blank_text_rejected_without_mutation(self):
        services.send_message(self.alice.id, self.chat.id, "first", "text")
        self.chat.refresh_from_db()
        before_last, before_seq = self.chat.last_message_id, self.chat.message_seq

        with self.assertRaises(InvalidArgument):
            services.send_message(self.alice.id, self.chat.id, "   ", "text")

        self.chat.refresh_from_db()
        self.assertEqual(Message.objects.count(), 1)
        self.assertEqual(self.chat.last_message_id, before_last)
        self.assertEqual(self.chat.message_seq, before_seq)

    def test_content_is_trimmed(self):
        message = services.send_message(self.alice.id, self.chat.id, "  hi there  ", "text")
        self.assertEqual(message.content, "hi there")

    def test_media_message_without_content_allowed(self):
        message = services.send_message(self.alice.id, self.chat.id, "", "image")
        self.assertEqual(message.type, Message.Type.IMAGE)

    def test_unknown_type_is_invalid(self):
        with self.assertRaises(InvalidArgument):
            services.send_message(self.alice.id, self.chat.id, "hi", "sticker")

    def test_outsider_forbidden(self):
        with self.assertRaises(Forbidden):
            services.send_message(UserFactory().id, self.chat.id, "hi", "text")
        self.assertFalse(Message.objects.exists())

    def test_unknown_chat_not_found(self):
        with self.assertRaises(NotFound):
            services.send_message(self.alice.id, 99999, "hi", "text")

    def test_malformed_chat_id_is_invalid(self):
        with self.assertRaises(InvalidArgument):
            services.send_message(self.alice.id, "not-an-id", "hi", "text")

    def test_broadcast_after_commit(self):
        with patch(MOCK_BROADCAST) as mock_broadcast, patch(MOCK_PUSH):
            with self.captureOnCommitCallbacks(execute=True):
                message = services.send_message(self.alice.id, self.chat.id, "hi", "text")
        chat_id, payload = mock_broadcast.call_args.args
        self.assertEqual(chat_id, self.chat.id)
        self.assertEqual(payload["id"], message.id)
        self.assertEqual(payload["content"], "hi")
        self.assertEqual(payload["sender"]["username"], self.alice.username)
        self.assertEqual(payload["read_by"], [self.alice.id])

    def test_no_broadcast_when_rejected(self):
        with patch(MOCK_BROADCAST) as mock_broadcast:
            with self.captureOnCommitCallbacks(execute=True):
                with self.assertRaises(InvalidArgument):
                    services.send_message(self.alice.id, self.chat.id, "", "text")
        mock_broadcast.assert_not_called()

    def test_private_message_notifies_recipient(self):
        services.send_message(self.alice.id, self.chat.id, "hi", "text")
        note = Notification.objects.get()
        self.assertEqual(note.recipient_id, self.bob.id)
        self.assertEqual(note.sender_id, self.alice.id)
        self.assertEqual(note.notification_type, "message")

    def test_group_message_does_not_notify(self):
        group = services.create_group_chat(self.alice.id, [self.bob.id, UserFactory().id], "Trio")
        services.send_message(self.alice.id, group.id, "hi all", "text")
        self.assertFalse(Notification.objects.exists())

    def test_store_failure_is_transient_and_not_retried(self):
        with patch.object(Chat.objects, "select_for_update", side_effect=OperationalError("disk I/O error")) as mock_lock:
            with self.assertRaises(Transient):
                services.send_message(self.alice.id, self.chat.id, "hi", "text")
        self.assertEqual(mock_lock.call_count, 1)
        self.assertFalse(Message.objects.exists())


class MessageAuthorizationTest(TestCase):
    def setUp(self):
        self.alice = UserFactory()
        self.bob = UserFactory()
        self.outsider = UserFactory()
        self.chat = private_chat(self.alice, self.bob)
        self.message = services.send_message(self.alice.id, self.chat.id, "secret", "text")

    def test_outsider_cannot_list_messages(self):
        with self.assertRaises(Forbidden):
            services.list_messages(self.outsider.id, self.chat.id)

    def test_outsider_cannot_mark_read(self):
        with self.assertRaises(Forbidden):
            services.mark_message_read(self.outsider.id, self.message.id)

    def test_unknown_chat_not_found(self):
        with self.assertRaises(NotFound):
            services.list_messages(self.alice.id, 99999)

    def test_string_user_id_is_recognised_as_participant(self):
        self.assertTrue(services.is_participant(self.chat.id, str(self.bob.id)))
        self.assertTrue(services.is_participant(self.chat.id, self.bob.id))
        self.assertFalse(services.is_participant(self.chat.id, str(self.outsider.id)))
        listed = services.list_messages(str(self.bob.id), str(self.chat.id))
        self.assertEqual([m.id for m in listed], [self.message.id])


class MarkMessageReadTest(TestCase):
    def setUp(self):
        self.alice = UserFactory()
        self.bob = UserFactory()
        self.chat = private_chat(self.alice, self.bob)
        self.message = services.send_message(self.alice.id, self.chat.id, "hi", "text")

    def test_recipient_added_to_read_by(self):
        services.mark_message_read(self.bob.id, self.message.id)
        self.assertEqual(
            {u.id for u in self.message.read_by.all()},
            {self.alice.id, self.bob.id},
        )

    def test_marking_twice_is_idempotent(self):
        services.mark_message_read(self.bob.id, self.message.id)
        services.mark_message_read(self.bob.id, self.message.id)
        self.assertEqual(self.message.read_by.count(), 2)

    def test_unknown_message_not_found(self):
        with self.assertRaises(NotFound):
            services.mark_message_read(self.bob.id, 99999)


# ── REST API ───────────────────────────────────────────────────────────────


class ChatApiTest(TestCase):
    def setUp(self):
        self.alice = UserFactory()
        self.bob = UserFactory()
        self.client = APIClient()
        self.authenticate(self.alice)

    def authenticate(self, user):
        token, _ = Token.objects.get_or_create(user=user)
        self.client.credentials(HTTP_AUTHORIZATION=f"Token {token.key}")

    def test_unauthenticated_returns_401_envelope(self):
        self.client.credentials()
        resp = self.client.get(reverse("chats"))
        self.assertEqual(resp.status_code, 401)
        self.assertIn("msg", resp.json())

    def test_invalid_token_returns_401(self):
        self.client.credentials(HTTP_AUTHORIZATION="Token not-a-real-token")
        resp = self.client.get(reverse("chats"))
        self.assertEqual(resp.status_code, 401)

    def test_start_private_chat_created_then_reused(self):
        first = self.client.post(reverse("private_chat"), {"recipientId": self.bob.id}, format="json")
        second = self.client.post(reverse("private_chat"), {"recipientId": self.bob.id}, format="json")
        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(first.json()["id"], second.json()["id"])
        self.assertEqual(
            {p["id"] for p in first.json()["participants"]},
            {self.alice.id, self.bob.id},
        )

    def test_participants_are_display_safe(self):
        resp = self.client.post(reverse("private_chat"), {"recipientId": self.bob.id}, format="json")
        participant = resp.json()["participants"][0]
        self.assertEqual(set(participant), {"id", "username", "profile_image_url"})

    def test_self_chat_returns_400_envelope(self):
        resp = self.client.post(reverse("private_chat"), {"recipientId": self.alice.id}, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"msg": "Cannot start a chat with yourself."})

    def test_create_group_chat(self):
        carol = UserFactory()
        resp = self.client.post(
            reverse("group_chat"),
            {"participantIds": [self.bob.id, carol.id], "groupName": "Book club"},
            format="json",
        )
        self.assertEqual(resp.status_code, 201)
        self.assertTrue(resp.json()["is_group_chat"])
        self.assertEqual(len(resp.json()["participants"]), 3)

    def test_send_and_list_messages(self):
        chat = private_chat(self.alice, self.bob)
        url = reverse("chat_messages", kwargs={"chat_id": chat.id})
        sent = self.client.post(url, {"content": "hi", "type": "text"}, format="json")
        self.assertEqual(sent.status_code, 201)
        self.assertEqual(sent.json()["sender"]["id"], self.alice.id)

        self.client.post(url, {"content": "again"}, format="json")
        listed = self.client.get(url)
        self.assertEqual(listed.status_code, 200)
        self.assertEqual([m["content"] for m in listed.json()], ["hi", "again"])

    def test_blank_message_returns_400(self):
        chat = private_chat(self.alice, self.bob)
        url = reverse("chat_messages", kwargs={"chat_id": chat.id})
        resp = self.client.post(url, {"content": " ", "type": "text"}, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"msg": "Message content is required."})

    def test_outsider_gets_403(self):
        chat = private_chat(self.bob, UserFactory())
        resp = self.client.get(reverse("chat_messages", kwargs={"chat_id": chat.id}))
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json(), {"msg": "Unauthorized access to chat."})

    def test_missing_chat_gets_404(self):
        resp = self.client.get(reverse("chat_messages", kwargs={"chat_id": 99999}))
        self.assertEqual(resp.status_code, 404)

    def test_list_chats(self):
        private_chat(self.alice, self.bob)
        resp = self.client.get(reverse("chats"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()), 1)

    def test_mark_read(self):
        chat = private_chat(self.alice, self.bob)
        message = services.send_message(self.bob.id, chat.id, "yo", "text")
        url = reverse("message_read", kwargs={"message_id": message.id})
        self.assertEqual(self.client.put(url).status_code, 200)
        self.assertEqual(self.client.put(url).status_code, 200)
        self.assertEqual(message.read_by.count(), 2)

    def test_join_post_chat_also_records_interest(self):
        post = EventPostFactory()
        resp = self.client.post(reverse("join_post_chat", kwargs={"post_id": post.id}))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["msg"], "Joined interest group")
        self.assertEqual(resp.json()["chat"]["post"], post.id)
        self.assertTrue(post.interested_users.filter(pk=self.alice.id).exists())

    def test_join_non_event_post_404(self):
        post = EventPostFactory(is_event=False)
        resp = self.client.post(reverse("join_post_chat", kwargs={"post_id": post.id}))
        self.assertEqual(resp.status_code, 404)
        self.assertFalse(post.interested_users.exists())

    def test_get_chat_by_post(self):
        post = EventPostFactory()
        url = reverse("post_chat", kwargs={"post_id": post.id})
        self.assertEqual(self.client.get(url).status_code, 404)
        services.join_or_create_post_chat(self.bob.id, post.id)
        self.assertEqual(self.client.get(url).status_code, 403)
        services.join_or_create_post_chat(self.alice.id, post.id)
        self.assertEqual(self.client.get(url).status_code, 200)


# ── Websocket gateway ──────────────────────────────────────────────────────


TEST_CHANNEL_LAYERS = {"default": {"BACKEND": "channels.layers.InMemoryChannelLayer"}}


@override_settings(CHANNEL_LAYERS=TEST_CHANNEL_LAYERS)
class ChatConsumerTest(TransactionTestCase):
    def setUp(self):
        self.application = TokenAuthMiddlewareStack(URLRouter(websocket_urlpatterns))
        self.alice = UserFactory()
        self.bob = UserFactory()
        self.carol = UserFactory()
        self.tokens = {
            user.id: Token.objects.create(user=user).key
            for user in (self.alice, self.bob, self.carol)
        }
        self.chat = private_chat(self.alice, self.bob)

    async def connect(self, user):
        ws = WebsocketCommunicator(self.application, f"/ws/chat/?token={self.tokens[user.id]}")
        connected, _ = await ws.connect()
        self.assertTrue(connected)
        return ws

    def frame(self, content, chat_id=None, message_type="text"):
        return {
            "event": "sendMessage",
            "data": {"chatId": chat_id or self.chat.id, "content": content, "type": message_type},
        }

    async def test_rejects_missing_token(self):
        ws = WebsocketCommunicator(self.application, "/ws/chat/")
        connected, code = await ws.connect()
        self.assertFalse(connected)
        self.assertEqual(code, 4401)

    async def test_rejects_unknown_token(self):
        ws = WebsocketCommunicator(self.application, "/ws/chat/?token=not-a-real-token")
        connected, code = await ws.connect()
        self.assertFalse(connected)
        self.assertEqual(code, 4401)

    async def test_accepts_authorization_header(self):
        ws = WebsocketCommunicator(
            self.application,
            "/ws/chat/",
            headers=[(b"authorization", f"Bearer {self.tokens[self.alice.id]}".encode())],
        )
        connected, _ = await ws.connect()
        self.assertTrue(connected)
        await ws.disconnect()

    async def test_message_delivered_to_every_participant(self):
        alice_ws = await self.connect(self.alice)
        bob_ws = await self.connect(self.bob)

        await alice_ws.send_json_to(self.frame("hi"))

        for ws in (alice_ws, bob_ws):
            frame = await ws.receive_json_from(timeout=2)
            self.assertEqual(frame["event"], "receiveMessage")
            self.assertEqual(frame["data"]["content"], "hi")
            self.assertEqual(frame["data"]["sender"]["id"], self.alice.id)
            self.assertEqual(frame["data"]["read_by"], [self.alice.id])

        notification = await bob_ws.receive_json_from(timeout=2)
        self.assertEqual(notification["event"], "newNotification")
        self.assertEqual(notification["data"]["type"], "message")

        message = await database_sync_to_async(Message.objects.get)()
        self.assertEqual(message.chat_id, self.chat.id)

        await alice_ws.disconnect()
        await bob_ws.disconnect()

    async def test_invalid_message_reported_to_sender_only(self):
        alice_ws = await self.connect(self.alice)
        bob_ws = await self.connect(self.bob)

        await alice_ws.send_json_to(self.frame("   "))

        error = await alice_ws.receive_json_from(timeout=2)
        self.assertEqual(error, {
            "event": "sendMessageError",
            "data": {"reason": "Message content is required."},
        })
        self.assertTrue(await bob_ws.receive_nothing(timeout=0.2))
        self.assertFalse(await database_sync_to_async(Message.objects.exists)())

        await alice_ws.disconnect()
        await bob_ws.disconnect()

    async def test_outsider_cannot_send(self):
        carol_ws = await self.connect(self.carol)
        bob_ws = await self.connect(self.bob)

        await carol_ws.send_json_to(self.frame("let me in"))

        error = await carol_ws.receive_json_from(timeout=2)
        self.assertEqual(error["event"], "sendMessageError")
        self.assertEqual(error["data"]["reason"], "Unauthorized to send message.")
        self.assertTrue(await bob_ws.receive_nothing(timeout=0.2))

        await carol_ws.disconnect()
        await bob_ws.disconnect()

    async def test_unknown_chat_reported(self):
        alice_ws = await self.connect(self.alice)
        await alice_ws.send_json_to(self.frame("hi", chat_id=99999))
        error = await alice_ws.receive_json_from(timeout=2)
        self.assertEqual(error["data"]["reason"], "Chat room not found.")
        await alice_ws.disconnect()

    async def test_malformed_frame_keeps_connection_open(self):
        alice_ws = await self.connect(self.alice)

        await alice_ws.send_to(text_data="not json")
        error = await alice_ws.receive_json_from(timeout=2)
        self.assertEqual(error["data"]["reason"], "Malformed message.")

        await alice_ws.send_json_to(self.frame("still here"))
        frame = await alice_ws.receive_json_from(timeout=2)
        self.assertEqual(frame["event"], "receiveMessage")

        await alice_ws.disconnect()

    async def test_rest_message_reaches_websocket(self):
        bob_ws = await self.connect(self.bob)

        await database_sync_to_async(services.send_message)(self.alice.id, self.chat.id, "from rest", "text")

        frame = await bob_ws.receive_json_from(timeout=2)
        self.assertEqual(frame["event"], "receiveMessage")
        self.assertEqual(frame["data"]["content"], "from rest")
        await bob_ws.disconnect()

    async def test_joining_event_chat_subscribes_open_connection(self):
        post = await database_sync_to_async(EventPostFactory)()
        carol_ws = await self.connect(self.carol)

        chat = await database_sync_to_async(services.join_or_create_post_chat)(self.carol.id, post.id)
        # let the consumer handle the subscription before anything is sent
        self.assertTrue(await carol_ws.receive_nothing(timeout=0.2))

        await database_sync_to_async(services.send_message)(post.author_id, chat.id, "welcome", "text")

        frame = await carol_ws.receive_json_from(timeout=2)
        self.assertEqual(frame["event"], "receiveMessage")
        self.assertEqual(frame["data"]["chat"], chat.id)
        await carol_ws.disconnect()

    async def test_timeout_reports_error_but_message_still_lands(self):
        real_send = services.send_message

        def slow_send(*args):
            time.sleep(0.3)
            return real_send(*args)

        alice_ws = await self.connect(self.alice)
        with self.settings(CHAT_STORE_TIMEOUT=0.05):
            with patch("chat.services.send_message", new=slow_send):
                await alice_ws.send_json_to(self.frame("slow"))
                error = await alice_ws.receive_json_from(timeout=2)
                delivered = await alice_ws.receive_json_from(timeout=2)

        self.assertEqual(error["event"], "sendMessageError")
        self.assertEqual(delivered["event"], "receiveMessage")
        self.assertEqual(delivered["data"]["content"], "slow")
        await alice_ws.disconnect()

    async def test_chat_joined_while_connecting_is_delivered(self):
        post = await database_sync_to_async(EventPostFactory)()
        real_chat_ids = services.get_user_chat_ids

        def chat_ids_then_join(user_id):
            chat_ids = real_chat_ids(user_id)
            services.join_or_create_post_chat(user_id, post.id)
            return chat_ids

        with patch("chat.services.get_user_chat_ids", new=chat_ids_then_join):
            carol_ws = await self.connect(self.carol)
        self.assertTrue(await carol_ws.receive_nothing(timeout=0.2))

        chat = await database_sync_to_async(Chat.objects.get)(post=post)
        await database_sync_to_async(services.send_message)(post.author_id, chat.id, "welcome", "text")

        frame = await carol_ws.receive_json_from(timeout=2)
        self.assertEqual(frame["event"], "receiveMessage")
        self.assertEqual(frame["data"]["content"], "welcome")
        await carol_ws.disconnect()

    async def test_slow_write_does_not_delay_other_chats(self):
        dave = await database_sync_to_async(UserFactory)()
        other_chat = await database_sync_to_async(private_chat)(self.carol, dave)
        real_send = services.send_message

        def slow_in_first_chat(caller_id, chat_id, *args):
            if services.canonical_id(chat_id) == self.chat.id:
                time.sleep(1.5)
            return real_send(caller_id, chat_id, *args)

        alice_ws = await self.connect(self.alice)
        carol_ws = await self.connect(self.carol)
        with patch("chat.services.send_message", new=slow_in_first_chat):
            await alice_ws.send_json_to(self.frame("slow"))
            await carol_ws.send_json_to(self.frame("quick", chat_id=other_chat.id))
            quick = await carol_ws.receive_json_from(timeout=1)
            slow = await alice_ws.receive_json_from(timeout=3)

        self.assertEqual(quick["data"]["content"], "quick")
        self.assertEqual(slow["data"]["content"], "slow")
        await alice_ws.disconnect()
        await carol_ws.disconnect()

    async def test_disconnect_leaves_all_rooms(self):
        alice_ws = await self.connect(self.alice)
        layer = get_channel_layer()
        self.assertTrue(layer.groups.get(chat_room(self.chat.id)))
        self.assertTrue(layer.groups.get(user_room(self.alice.id)))

        await alice_ws.disconnect()

        self.assertFalse(layer.groups.get(chat_room(self.chat.id)))
        self.assertFalse(layer.groups.get(user_room(self.alice.id)))


# ── Concurrent writers ─────────────────────────────────────────────────────


def run_together(calls):
    """Start every call on its own thread at the same moment; return results or exceptions."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def worker(index, call):
        try:
            barrier.wait()
            results[index] = call()
        except Exception as exc:
            results[index] = exc
        finally:
            connection.close()

    threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results


@override_settings(CHANNEL_LAYERS=TEST_CHANNEL_LAYERS)
class ConcurrentWriteTest(TransactionTestCase):
    def setUp(self):
        self.alice = UserFactory()
        self.bob = UserFactory()
        self.chat = private_chat(self.alice, self.bob)

    def send_as(self, user, text):
        return lambda: services.send_message(user.id, self.chat.id, text, "text")

    def test_concurrent_sends_all_persist_in_sequence(self):
        with patch(MOCK_BROADCAST), patch(MOCK_PUSH):
            results = run_together([self.send_as(self.alice, f"m{i}") for i in range(6)])

        for result in results:
            self.assertIsInstance(result, Message)
        self.assertEqual(sorted(m.seq for m in results), [1, 2, 3, 4, 5, 6])
        self.chat.refresh_from_db()
        self.assertEqual(self.chat.message_seq, 6)
        self.assertEqual(self.chat.last_message.seq, 6)
        listed = services.list_messages(self.alice.id, self.chat.id)
        self.assertEqual([m.seq for m in listed], [1, 2, 3, 4, 5, 6])

    def test_concurrent_broadcasts_follow_sequence(self):
        with patch(MOCK_BROADCAST) as mock_broadcast, patch(MOCK_PUSH):
            run_together([
                self.send_as(self.alice if i % 2 else self.bob, f"m{i}") for i in range(6)
            ])
        broadcast_seqs = [c.args[1]["seq"] for c in mock_broadcast.call_args_list]
        self.assertEqual(broadcast_seqs, [1, 2, 3, 4, 5, 6])

    def test_rest_and_direct_sends_interleave(self):
        token = Token.objects.create(user=self.alice).key
        url = reverse("chat_messages", kwargs={"chat_id": self.chat.id})

        def over_rest(text):
            def call():
                client = APIClient()
                client.credentials(HTTP_AUTHORIZATION=f"Token {token}")
                resp = client.post(url, {"content": text, "type": "text"}, format="json")
                return resp.status_code, resp.json().get("seq")
            return call

        def direct(text):
            return lambda: (201, services.send_message(self.bob.id, self.chat.id, text, "text").seq)

        with patch(MOCK_BROADCAST), patch(MOCK_PUSH):
            results = run_together(
                [over_rest(f"rest {i}") for i in range(3)] + [direct(f"socket {i}") for i in range(3)]
            )

        self.assertEqual([status for status, _ in results], [201] * 6)
        self.assertEqual(sorted(seq for _, seq in results), [1, 2, 3, 4, 5, 6])
        self.assertEqual(Message.objects.filter(chat=self.chat).count(), 6)

    def test_concurrent_joins_create_one_chat(self):
        post = EventPostFactory()
        joiner = UserFactory()
        with patch(MOCK_SUBSCRIBE), patch(MOCK_PUSH):
            results = run_together(
                [lambda: services.join_or_create_post_chat(joiner.id, post.id)] * 4
            )

        for result in results:
            self.assertIsInstance(result, Chat)
        self.assertEqual(len({chat.id for chat in results}), 1)
        self.assertEqual(Chat.objects.filter(post=post).count(), 1)
        self.assertEqual(
            ChatParticipant.objects.filter(chat__post=post, user=joiner).count(), 1
        )

    def test_concurrent_joins_by_different_users(self):
        post = EventPostFactory()
        joiners = UserFactory.create_batch(4)
        with patch(MOCK_SUBSCRIBE), patch(MOCK_PUSH):
            results = run_together([
                (lambda user=user: services.join_or_create_post_chat(user.id, post.id))
                for user in joiners
            ])

        for result in results:
            self.assertIsInstance(result, Chat)
        chat = Chat.objects.get(post=post)
        self.assertEqual(
            {u.id for u in chat.participants.all()},
            {post.author_id, *(u.id for u in joiners)},
        )


class RealtimeConfigTest(SimpleTestCase):
    @override_settings(CHANNEL_LAYERS={})
    def test_missing_channel_layer_is_a_configuration_error(self):
        with self.assertRaises(ImproperlyConfigured):
            realtime.broadcast_message(1, {"id": 1})
