from django.conf import settings
from django.db import models
from django.utils import timezone


class Post(models.Model):
    author = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="posts"
    )
    title = models.CharField(max_length=100)
    description = models.TextField(max_length=1000)

    is_event = models.BooleanField(default=False)
    event_date_time = models.DateTimeField(null=True, blank=True)
    event_end_date_time = models.DateTimeField(null=True, blank=True)
    location = models.CharField(max_length=255, null=True, blank=True)

    interested_users = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        related_name="interested_posts",
        blank=True,
    )
    interested_count = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["is_event", "event_end_date_time"], name="post_event_window_idx"),
        ]

    def __str__(self):
        return self.title

    @property
    def accepts_event_chat(self):
        """Only event posts get a group chat."""
        return self.is_event

    def interest_open(self, now=None):
        if self.event_date_time is None:
            return True
        return (now or timezone.now()) < self.event_date_time
