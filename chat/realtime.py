"""
Sync-side entry points into the websocket gateway.

Rooms are channel-layer groups: ``chat_<id>`` for every chat and
``user_<id>`` for a user's own connections. Everything here is called from
``transaction.on_commit`` so subscribers never see uncommitted state.
"""
import logging
import threading

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.core.exceptions import ImproperlyConfigured


logger = logging.getLogger(__name__)

_delivery_locks = {}
_delivery_locks_guard = threading.Lock()


def chat_room(chat_id) -> str:
    return f"chat_{chat_id}"


def user_room(user_id) -> str:
    return f"user_{user_id}"


def delivery_lock(chat_id) -> threading.Lock:
    """
    Per-chat lock held from the write through its after-commit broadcast,
    so one process hands messages of a chat to the layer in sequence order.
    """
    with _delivery_locks_guard:
        return _delivery_locks.setdefault(chat_id, threading.Lock())


def _group_send(group: str, event: dict):
    channel_layer = get_channel_layer()
    if channel_layer is None:
        raise ImproperlyConfigured("CHANNEL_LAYERS has no default layer.")
    async_to_sync(channel_layer.group_send)(group, event)


def broadcast_message(chat_id, message: dict):
    _group_send(chat_room(chat_id), {
        "type": "chat_message",
        "message": message,
    })
    logger.debug("Broadcast message %s to %s", message.get("id"), chat_room(chat_id))


def subscribe_user(user_id, chat_id):
    """Ask every live connection of ``user_id`` to join the chat room."""
    _group_send(user_room(user_id), {
        "type": "chat_subscribe",
        "chat_id": chat_id,
    })


def push_notification(user_id, data: dict):
    _group_send(user_room(user_id), {
        "type": "send_notification",
        "data": data,
    })
