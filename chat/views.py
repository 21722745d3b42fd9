from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from drf_yasg.utils import swagger_auto_schema

from . import services
from .membership import mark_interested
from .serializers import (
    ChatSerializer,
    GroupChatRequestSerializer,
    JoinPostChatResponseSerializer,
    MessageSerializer,
    PrivateChatRequestSerializer,
    SendMessageRequestSerializer,
)


# =============== chats ==========================

class PrivateChatView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        request_body=PrivateChatRequestSerializer,
        responses={200: ChatSerializer, 201: ChatSerializer},
        operation_description="Start a private chat, or return the existing one.",
    )
    def post(self, request):
        chat, created = services.start_private_chat(request.user.id, request.data.get("recipientId"))
        return Response(
            ChatSerializer(chat).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


class GroupChatView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(request_body=GroupChatRequestSerializer, responses={201: ChatSerializer})
    def post(self, request):
        chat = services.create_group_chat(
            request.user.id,
            request.data.get("participantIds"),
            request.data.get("groupName"),
        )
        return Response(ChatSerializer(chat).data, status=status.HTTP_201_CREATED)


class JoinPostChatView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(request_body=None, responses={200: JoinPostChatResponseSerializer})
    def post(self, request, post_id: int):
        chat, _ = mark_interested(request.user.id, post_id)
        return Response({
            "msg": "Joined interest group",
            "chat": ChatSerializer(chat).data,
        })


class PostChatView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(responses={200: ChatSerializer})
    def get(self, request, post_id: int):
        chat = services.get_chat_by_post(request.user.id, post_id)
        return Response(ChatSerializer(chat).data)


class ChatListView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        responses={200: ChatSerializer(many=True)},
        operation_description="Chats of the current user, most recently active first.",
    )
    def get(self, request):
        chats = services.get_user_chats(request.user.id)
        return Response(ChatSerializer(chats, many=True).data)


# =============== messages ==========================

class ChatMessagesView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(
        responses={200: MessageSerializer(many=True)},
        operation_description="Messages of a chat in chronological order.",
    )
    def get(self, request, chat_id: int):
        messages = services.list_messages(request.user.id, chat_id)
        return Response(MessageSerializer(messages, many=True).data)

    @swagger_auto_schema(
        request_body=SendMessageRequestSerializer,
        responses={201: MessageSerializer},
        operation_description="Send a message over REST; realtime clients use the websocket.",
    )
    def post(self, request, chat_id: int):
        message = services.send_message(
            request.user.id,
            chat_id,
            request.data.get("content"),
            request.data.get("type") or "text",
        )
        return Response(MessageSerializer(message).data, status=status.HTTP_201_CREATED)


class MessageReadView(APIView):
    permission_classes = [IsAuthenticated]

    @swagger_auto_schema(request_body=None)
    def put(self, request, message_id: int):
        services.mark_message_read(request.user.id, message_id)
        return Response({"msg": "Message marked as read."})
