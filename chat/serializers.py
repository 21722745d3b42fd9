from rest_framework import serializers

from people.serializers import UserSummarySerializer
from .models import Chat, Message


class MessageSerializer(serializers.ModelSerializer):
    sender = UserSummarySerializer(read_only=True)
    read_by = serializers.PrimaryKeyRelatedField(many=True, read_only=True)

    class Meta:
        model = Message
        fields = [
            'id',
            'chat',
            'sender',
            'content',
            'type',
            'read_by',
            'seq',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class ChatSerializer(serializers.ModelSerializer):
    participants = UserSummarySerializer(many=True, read_only=True)
    last_message = MessageSerializer(read_only=True)

    class Meta:
        model = Chat
        fields = [
            'id',
            'participants',
            'is_group_chat',
            'group_name',
            'post',
            'last_message',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


# Request bodies, documented for swagger; validation lives in chat.services
class PrivateChatRequestSerializer(serializers.Serializer):
    recipientId = serializers.IntegerField()


class GroupChatRequestSerializer(serializers.Serializer):
    participantIds = serializers.ListField(child=serializers.IntegerField(), min_length=2)
    groupName = serializers.CharField()


class SendMessageRequestSerializer(serializers.Serializer):
    content = serializers.CharField(required=False, allow_blank=True)
    type = serializers.ChoiceField(choices=Message.Type.choices, default=Message.Type.TEXT)


class JoinPostChatResponseSerializer(serializers.Serializer):
    msg = serializers.CharField()
    chat = ChatSerializer()
