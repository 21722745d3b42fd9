"""
URL configuration for eventsocial project.

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/6.0/topics/http/urls/
"""
from django.contrib import admin
from django.urls import path, include

from rest_framework.authentication import SessionAuthentication, TokenAuthentication
from rest_framework.permissions import AllowAny

from drf_yasg import openapi
from drf_yasg.views import get_schema_view as get_swagger_schema_view

schema_view = get_swagger_schema_view(
    openapi.Info(
        title="Event Social API",
        default_version="1.0.0",
        description="API documentation for event chats, messages and interest"
    ),
    public=True,
    permission_classes=[AllowAny],
    authentication_classes=[
        TokenAuthentication,
        SessionAuthentication,
    ]
)


urlpatterns = [
    path('admin/', admin.site.urls),
    path("api/", include("chat.urls")),
    path("api/", include("post.urls")),
    path("docs/", schema_view.with_ui("swagger", cache_timeout=10), name="docs"),
]
