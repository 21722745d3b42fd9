from rest_framework import serializers

from people.serializers import UserSummarySerializer
from .models import Post


class PostSerializer(serializers.ModelSerializer):
    author = UserSummarySerializer(read_only=True)

    class Meta:
        model = Post
        fields = [
            'id',
            'author',
            'title',
            'description',
            'is_event',
            'event_date_time',
            'event_end_date_time',
            'location',
            'interested_count',
            'created_at',
            'updated_at',
        ]
