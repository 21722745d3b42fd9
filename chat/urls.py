from django.urls import path

from .views import (
    PrivateChatView,
    GroupChatView,
    JoinPostChatView,
    PostChatView,
    ChatListView,
    ChatMessagesView,
    MessageReadView,
)
from .consumers import ChatConsumer

urlpatterns = [
    path("chats", ChatListView.as_view(), name="chats"),
    path("chats/private", PrivateChatView.as_view(), name="private_chat"),
    path("chats/group", GroupChatView.as_view(), name="group_chat"),
    path("chats/join/<int:post_id>", JoinPostChatView.as_view(), name="join_post_chat"),
    path("chats/post/<int:post_id>", PostChatView.as_view(), name="post_chat"),
    path("chats/<int:chat_id>/messages", ChatMessagesView.as_view(), name="chat_messages"),
    path("messages/<int:message_id>/read", MessageReadView.as_view(), name="message_read"),
]

websocket_urlpatterns = [
    path('ws/chat/', ChatConsumer.as_asgi(), name='chat'), # type: ignore
]
