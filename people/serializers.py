from rest_framework import serializers
from django.contrib.auth import get_user_model

User = get_user_model()


class UserSummarySerializer(serializers.ModelSerializer):
    """Display-safe view of a user, embedded in chats and messages."""

    class Meta:
        model = User
        fields = ['id', 'username', 'profile_image_url']
        read_only_fields = fields
