"""
Chat directory and message operations.

Every entry point takes the caller's user id first and is shared by the REST
views and the websocket consumer. Mutations of a chat's participants,
sequence counter or last-message pointer happen inside ``transaction.atomic``
with the chat row locked; realtime side effects are queued with
``transaction.on_commit``.
"""
import functools
import logging

from django.contrib.auth import get_user_model
from django.db import IntegrityError, OperationalError, transaction
from django.utils import timezone

from notification.services import notify
from post.models import Post
from . import realtime
from .errors import Conflict, Forbidden, InvalidArgument, NotFound, Transient
from .models import Chat, ChatParticipant, Message
from .serializers import MessageSerializer


logger = logging.getLogger(__name__)

User = get_user_model()


def canonical_id(value, label="ID"):
    """
    Normalize an identifier to the integer primary key.

    Ids arrive as ints from the ORM and URL kwargs, as strings or numbers from
    JSON, and as model instances from callers; all compare equal once
    normalized. Raises ``InvalidArgument`` for anything else.
    """
    if hasattr(value, "pk"):
        value = value.pk
    if value is None or isinstance(value, bool):
        raise InvalidArgument(f"Invalid {label}.")
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid {label}.")


def read_operation(func):
    """Retry a read once on a store failure before surfacing ``Transient``."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except OperationalError as exc:
            logger.warning("%s failed (%s), retrying once", func.__name__, exc)
        try:
            return func(*args, **kwargs)
        except OperationalError as exc:
            logger.error("%s failed after retry: %s", func.__name__, exc)
            raise Transient() from exc
    return wrapper


def write_operation(func):
    """Surface a store failure during a write as ``Transient``; never retried."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except OperationalError as exc:
            logger.error("%s failed: %s", func.__name__, exc)
            raise Transient() from exc
    return wrapper


def chat_queryset():
    return Chat.objects.select_related(
        "last_message__sender",
    ).prefetch_related(
        "participants",
        "last_message__read_by",
    )


def is_participant(chat_id, user_id) -> bool:
    return ChatParticipant.objects.filter(
        chat_id=chat_id,
        user_id=canonical_id(user_id, "user ID"),
    ).exists()


def _add_participant(chat, user_id) -> bool:
    """Idempotent add; the caller holds the chat row lock."""
    _, created = ChatParticipant.objects.get_or_create(chat=chat, user_id=user_id)
    if created:
        chat.save(update_fields=["updated_at"])
    return created


# ============== Chat directory ===================

@write_operation
def start_private_chat(caller_id, recipient_id):
    """
    Find or create the private chat between the caller and ``recipient_id``.

    Returns ``(chat, created)``.
    """
    caller_id = canonical_id(caller_id, "user ID")
    if recipient_id is None or recipient_id == "":
        raise InvalidArgument("Recipient ID is required.")
    recipient_id = canonical_id(recipient_id, "recipient ID")
    if recipient_id == caller_id:
        raise InvalidArgument("Cannot start a chat with yourself.")
    if not User.objects.filter(pk=recipient_id).exists():
        raise NotFound("Recipient not found.")

    key = Chat.private_key_for(caller_id, recipient_id)
    chat = Chat.objects.filter(private_key=key).first()
    if chat is not None:
        return chat_queryset().get(pk=chat.pk), False

    try:
        with transaction.atomic():
            chat = Chat.objects.create(is_group_chat=False, private_key=key)
            ChatParticipant.objects.bulk_create([
                ChatParticipant(chat=chat, user_id=caller_id),
                ChatParticipant(chat=chat, user_id=recipient_id),
            ])
    except IntegrityError:
        # another request created the pair first
        chat = Chat.objects.filter(private_key=key).first()
        if chat is None:
            raise Conflict()
        return chat_queryset().get(pk=chat.pk), False

    logger.info("Created private chat %s for users %s", chat.pk, key)
    return chat_queryset().get(pk=chat.pk), True


@write_operation
def create_group_chat(caller_id, participant_ids, group_name):
    caller_id = canonical_id(caller_id, "user ID")
    if not isinstance(participant_ids, (list, tuple)):
        raise InvalidArgument("At least two participant IDs are required.")

    ids = []
    for raw in participant_ids:
        pid = canonical_id(raw, "participant ID")
        if pid not in ids:
            ids.append(pid)
    if len(ids) < 2:
        raise InvalidArgument("At least two participant IDs are required.")

    name = group_name.strip() if isinstance(group_name, str) else ""
    if not name:
        raise InvalidArgument("Group name is required.")
    if len(name) > Chat._meta.get_field("group_name").max_length:
        raise InvalidArgument("Group name is too long.")

    if caller_id not in ids:
        ids.append(caller_id)

    found = User.objects.filter(pk__in=ids).count()
    if found != len(ids):
        raise NotFound("One or more participant IDs are invalid.")

    with transaction.atomic():
        chat = Chat.objects.create(is_group_chat=True, group_name=name)
        ChatParticipant.objects.bulk_create(
            [ChatParticipant(chat=chat, user_id=pid) for pid in ids]
        )

    logger.info("User %s created group chat %s with %d participants", caller_id, chat.pk, len(ids))
    return chat_queryset().get(pk=chat.pk)


def _create_post_chat(post):
    try:
        with transaction.atomic():
            chat = Chat.objects.create(is_group_chat=True, post=post, group_name=post.title)
            ChatParticipant.objects.create(chat=chat, user_id=post.author_id)
    except IntegrityError:
        return None
    logger.info("Created event chat %s for post %s", chat.pk, post.pk)
    return chat


@write_operation
def join_or_create_post_chat(caller_id, post_id):
    """
    Make the caller a participant of the event chat of ``post_id``,
    creating the chat (author + caller, named after the post) on first join.
    The caller's live connections are subscribed to the room after commit.
    """
    caller_id = canonical_id(caller_id, "user ID")
    post_id = canonical_id(post_id, "post ID")

    post = Post.objects.filter(pk=post_id).first()
    if post is None or not post.accepts_event_chat:
        raise NotFound("Event post not found or is not an event.")

    with transaction.atomic():
        chat = Chat.objects.select_for_update().filter(post=post).first()
        if chat is None:
            chat = _create_post_chat(post)
        if chat is None:
            # lost the creation race; join the winner's chat
            chat = Chat.objects.select_for_update().filter(post=post).first()
            if chat is None:
                raise Conflict()

        joined = _add_participant(chat, caller_id)
        if joined and caller_id != post.author_id:
            username = User.objects.filter(pk=caller_id).values_list("username", flat=True).first()
            notify(
                recipient_id=post.author_id,
                sender_id=caller_id,
                notification_type="chat_join",
                content=f"{username} joined the chat for '{post.title}'.",
                chat=chat,
            )

        chat_id = chat.pk
        transaction.on_commit(lambda: realtime.subscribe_user(caller_id, chat_id), robust=True)

    if joined:
        logger.info("User %s joined event chat %s", caller_id, chat_id)
    return chat_queryset().get(pk=chat_id)


@read_operation
def get_user_chats(caller_id):
    caller_id = canonical_id(caller_id, "user ID")
    return list(
        chat_queryset()
        .filter(memberships__user_id=caller_id)
        .order_by("-updated_at", "-id")
    )


@read_operation
def get_user_chat_ids(caller_id):
    caller_id = canonical_id(caller_id, "user ID")
    return list(
        ChatParticipant.objects.filter(user_id=caller_id).values_list("chat_id", flat=True)
    )


@read_operation
def get_chat_by_post(caller_id, post_id):
    post_id = canonical_id(post_id, "post ID")
    chat = chat_queryset().filter(post_id=post_id).first()
    if chat is None:
        raise NotFound("No chat exists for this post.")
    if not is_participant(chat.pk, caller_id):
        raise Forbidden("Unauthorized access to chat.")
    return chat


# ============== Messages ===================

@read_operation
def list_messages(caller_id, chat_id):
    chat_id = canonical_id(chat_id, "chat ID")
    chat = Chat.objects.filter(pk=chat_id).first()
    if chat is None:
        raise NotFound("Chat room not found.")
    if not is_participant(chat.pk, caller_id):
        raise Forbidden("Unauthorized access to chat.")

    return list(
        chat.messages  # type: ignore
        .select_related("sender")
        .prefetch_related("read_by")
        .order_by("created_at", "seq")
    )


@write_operation
def send_message(caller_id, chat_id, content, message_type=Message.Type.TEXT):
    """
    Append a message to a chat and move the chat's last-message pointer.

    Message, sequence number and pointer are written in one transaction under
    the chat row lock. After commit the serialized message is broadcast to
    the chat room and, for private chats, the other participant is notified.
    Broadcasts of one chat leave this process in sequence order.
    """
    caller_id = canonical_id(caller_id, "user ID")
    chat_id = canonical_id(chat_id, "chat ID")

    message_type = message_type or Message.Type.TEXT
    if message_type not in Message.Type.values:
        raise InvalidArgument("Unsupported message type.")
    if content is None:
        content = ""
    if not isinstance(content, str):
        raise InvalidArgument("Message content must be a string.")
    content = content.strip()
    if message_type == Message.Type.TEXT and not content:
        raise InvalidArgument("Message content is required.")

    # on_commit callbacks run as the atomic block exits, still under the lock
    with realtime.delivery_lock(chat_id), transaction.atomic():
        chat = Chat.objects.select_for_update().filter(pk=chat_id).first()
        if chat is None:
            raise NotFound("Chat room not found.")
        if not is_participant(chat.pk, caller_id):
            raise Forbidden("Unauthorized to send message.")

        chat.message_seq += 1
        message = Message.objects.create(
            chat=chat,
            sender_id=caller_id,
            content=content,
            type=message_type,
            seq=chat.message_seq,
            created_at=timezone.now(),
        )
        message.read_by.add(caller_id)

        chat.last_message = message
        chat.save(update_fields=["message_seq", "last_message", "updated_at"])

        message = (
            Message.objects
            .select_related("sender")
            .prefetch_related("read_by")
            .get(pk=message.pk)
        )
        payload = dict(MessageSerializer(message).data)
        transaction.on_commit(lambda: realtime.broadcast_message(chat_id, payload), robust=True)

        if not chat.is_group_chat:
            recipients = chat.memberships.exclude(user_id=caller_id).values_list("user_id", flat=True)  # type: ignore
            for recipient_id in recipients:
                notify(
                    recipient_id=recipient_id,
                    sender_id=caller_id,
                    notification_type="message",
                    content=f"New message from {message.sender.username}",
                    chat=chat,
                )

    logger.debug("User %s sent message %s (seq %s) to chat %s", caller_id, message.pk, message.seq, chat_id)
    return message


@write_operation
def mark_message_read(caller_id, message_id):
    caller_id = canonical_id(caller_id, "user ID")
    message_id = canonical_id(message_id, "message ID")

    message = Message.objects.filter(pk=message_id).first()
    if message is None:
        raise NotFound("Message not found.")
    if not is_participant(message.chat_id, caller_id):
        raise Forbidden("Unauthorized to mark read.")

    # m2m add skips existing rows, re-marking is a no-op
    message.read_by.add(caller_id)
    return message
