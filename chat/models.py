from django.db import models
from django.conf import settings
from django.utils import timezone


class Chat(models.Model):
    participants = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        through="ChatParticipant",
        related_name="chats",
    )
    is_group_chat = models.BooleanField(default=False)
    group_name = models.CharField(max_length=100, null=True, blank=True)
    post = models.OneToOneField(
        "post.Post",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="chat",
    )
    # "<low id>:<high id>" for private chats, null for group chats
    private_key = models.CharField(max_length=64, null=True, blank=True, unique=True, editable=False)
    last_message = models.ForeignKey(
        "Message",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    message_seq = models.PositiveBigIntegerField(default=0, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.group_name or f"Chat {self.pk}"

    @staticmethod
    def private_key_for(user_a: int, user_b: int) -> str:
        low, high = sorted((int(user_a), int(user_b)))
        return f"{low}:{high}"


class ChatParticipant(models.Model):
    chat = models.ForeignKey(
        Chat,
        on_delete=models.CASCADE,
        related_name="memberships"
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="chat_memberships"
    )
    joined_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("chat", "user")


class Message(models.Model):
    class Type(models.TextChoices):
        TEXT = "text", "Text"
        IMAGE = "image", "Image"
        VIDEO = "video", "Video"

    chat = models.ForeignKey(
        Chat,
        on_delete=models.CASCADE,
        related_name="messages"
    )
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="sent_messages",
    )
    content = models.TextField(blank=True, default="")
    type = models.CharField(max_length=10, choices=Type.choices, default=Type.TEXT)
    read_by = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        related_name="read_messages",
        blank=True,
    )
    # position in the chat, assigned under the chat row lock
    seq = models.PositiveBigIntegerField()
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "seq"]
        unique_together = ("chat", "seq")

    def __str__(self):
        return f"{self.sender_id}: {self.content[:30]}"
