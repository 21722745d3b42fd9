import asyncio
import json
import logging

from django.conf import settings

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer

from . import services
from .errors import ChatError
from .realtime import chat_room, user_room


logger = logging.getLogger(__name__)

# close code sent when the handshake credential is missing or invalid
AUTHENTICATION_ERROR = 4401


class ChatConsumer(AsyncWebsocketConsumer):
    """
    One connection per client session.

    On connect the socket joins its user room and the room of every chat the
    user belongs to at that moment; rooms joined later arrive as
    ``chat_subscribe`` events on the user room.
    """

    async def connect(self):
        self.rooms = set()
        user = self.scope.get("user")  # type: ignore
        if user is None or not user.is_authenticated:
            logger.info("Rejected websocket connection: authentication error")
            await self.close(code=AUTHENTICATION_ERROR)
            return

        self.user_id = user.id
        # join the user room before the snapshot so no chat_subscribe is missed
        await self.join_room(user_room(self.user_id))
        try:
            chat_ids = await self.store(services.get_user_chat_ids, self.user_id)
        except (ChatError, asyncio.TimeoutError):
            logger.exception("Could not load chats for user %s", self.user_id)
            await self.leave_rooms()
            await self.close()
            return

        for chat_id in chat_ids:
            await self.join_room(chat_room(chat_id))
        await self.accept()
        logger.info("User %s connected (%s), %d chat rooms", self.user_id, self.channel_name, len(chat_ids))

    async def disconnect(self, code):
        await self.leave_rooms()
        if hasattr(self, "user_id"):
            logger.info("User %s disconnected (%s)", self.user_id, code)

    async def store(self, func, *args):
        """
        Run a blocking service call off the event loop.

        Calls run on the shared worker pool, so a slow write in one chat does
        not hold up others. The call is shielded: a timeout or a dropped
        connection abandons the wait, not the write, so an accepted message is
        still persisted and broadcast to the room.
        """
        return await asyncio.wait_for(
            asyncio.shield(database_sync_to_async(func, thread_sensitive=False)(*args)),
            timeout=settings.CHAT_STORE_TIMEOUT,
        )

    async def join_room(self, room):
        if room in self.rooms:
            return
        await self.channel_layer.group_add(room, self.channel_name)
        self.rooms.add(room)

    async def leave_rooms(self):
        for room in list(getattr(self, "rooms", ())):
            await self.channel_layer.group_discard(room, self.channel_name)
        self.rooms = set()

    async def receive(self, text_data=None, bytes_data=None):
        try:
            frame = json.loads(text_data or "{}")
        except ValueError:
            await self.send_error("Malformed message.")
            return

        if not isinstance(frame, dict) or frame.get("event") != "sendMessage":
            await self.send_error("Unsupported event.")
            return

        data = frame.get("data")
        if not isinstance(data, dict):
            await self.send_error("Message payload is required.")
            return

        try:
            # the broadcast to the room, this socket included, is queued by the service
            await self.store(
                services.send_message,
                self.user_id,
                data.get("chatId"),
                data.get("content"),
                data.get("type") or "text",
            )
        except ChatError as exc:
            await self.send_error(str(exc.detail))
        except asyncio.TimeoutError:
            logger.warning("Timed out saving message from user %s to chat %s", self.user_id, data.get("chatId"))
            await self.send_error("Timed out while saving the message.")
        except Exception:
            logger.exception("Failed to send message from user %s", self.user_id)
            await self.send_error("Failed to send message.")

    async def send_error(self, reason):
        await self.send(text_data=json.dumps({
            "event": "sendMessageError",
            "data": {"reason": reason},
        }))

    async def chat_message(self, event):
        await self.send(
            text_data=json.dumps({
                "event": "receiveMessage",
                "data": event["message"],
            })
        )

    async def chat_subscribe(self, event):
        await self.join_room(chat_room(event["chat_id"]))

    async def send_notification(self, event):
        await self.send(
            text_data=json.dumps({
                "event": "newNotification",
                "data": event["data"],
            })
        )
