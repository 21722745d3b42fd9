from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ["username", "email", "is_staff", "is_active", "date_joined"]
    list_filter = ["is_staff", "is_active"]
    search_fields = ["username", "email", "first_name", "last_name"]
    fieldsets = BaseUserAdmin.fieldsets + (
        ("Profile", {"fields": ("profile_image_url", "bio")}),
    ) # type: ignore
    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ("Profile", {"fields": ("profile_image_url", "bio")}),
    )
