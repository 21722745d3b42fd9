from django.contrib import admin

from .models import Post


@admin.register(Post)
class PostAdmin(admin.ModelAdmin):
    list_display = ["title", "author", "is_event", "event_date_time", "interested_count", "created_at"]
    list_filter = ["is_event", "event_date_time"]
    search_fields = ["title", "description", "author__username"]
    date_hierarchy = "created_at"
    filter_horizontal = ["interested_users"]
    fieldsets = [
        (None, {"fields": ["author", "title", "description"]}),
        ("Event", {"fields": ["is_event", "event_date_time", "event_end_date_time", "location"]}),
        ("Interest", {"fields": ["interested_users", "interested_count"]}),
    ]
