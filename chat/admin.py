from django.contrib import admin

from .models import Chat, ChatParticipant, Message


class ChatParticipantInline(admin.TabularInline):
    model = ChatParticipant
    extra = 0
    raw_id_fields = ["user"]


@admin.register(Chat)
class ChatAdmin(admin.ModelAdmin):
    list_display = ["__str__", "is_group_chat", "post", "message_seq", "updated_at"]
    list_filter = ["is_group_chat"]
    search_fields = ["group_name", "post__title"]
    readonly_fields = ["private_key", "last_message", "message_seq", "created_at", "updated_at"]
    inlines = [ChatParticipantInline]


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ["chat", "sender", "type", "seq", "created_at"]
    list_filter = ["type"]
    search_fields = ["content", "sender__username"]
    readonly_fields = ["chat", "sender", "seq", "created_at", "updated_at"]
    date_hierarchy = "created_at"
