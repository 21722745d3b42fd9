from django.db import models


class Notification(models.Model):
    NOTIFICATION_TYPES = [
        ("message", "Message"),
        ("chat_join", "Chat join"),
    ]
    recipient = models.ForeignKey(
        "people.User",
        on_delete=models.CASCADE,
        related_name="notifications"
    )
    sender = models.ForeignKey(
        "people.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="sent_notifications"
    )
    chat = models.ForeignKey(
        "chat.Chat",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="notifications"
    )
    content = models.TextField()
    notification_type = models.CharField(max_length=20, choices=NOTIFICATION_TYPES)

    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
