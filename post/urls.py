from django.urls import path

from .views import InterestView

urlpatterns = [
    path("posts/<int:post_id>/interest", InterestView.as_view(), name="post_interest"),
]
