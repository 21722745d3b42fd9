from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    profile_image_url = models.URLField(max_length=500, blank=True, null=True)
    bio = models.CharField(max_length=200, blank=True, default="")
