"""
Couples interest in event posts to chat membership.

Chat participants live in the chat tables and the interested list lives on
the post; they are written in that order inside one transaction, with the
post row locked before the chat row on every path.
"""
import logging

from django.db import transaction

from post.models import Post
from post.services import add_interest, remove_interest
from .errors import InvalidArgument, NotFound
from .services import canonical_id, join_or_create_post_chat, write_operation


logger = logging.getLogger(__name__)


def _lock_post(post_id):
    post = Post.objects.select_for_update().filter(pk=post_id).first()
    if post is None:
        raise NotFound("Post not found.")
    return post


@write_operation
def mark_interested(user_id, post_id):
    """
    Join the event chat of ``post_id`` and record the interest.

    Returns ``(chat, post)``. Either both writes land or neither does.
    """
    user_id = canonical_id(user_id, "user ID")
    post_id = canonical_id(post_id, "post ID")

    with transaction.atomic():
        post = _lock_post(post_id)
        chat = join_or_create_post_chat(user_id, post_id)
        if add_interest(post, user_id):
            logger.info("User %s marked interest in post %s", user_id, post_id)
    return chat, post


@write_operation
def toggle_interest(user_id, post_id):
    """
    Flip the caller's interest in a post. Returns ``(post, interested)``.

    Adding interest in an event post also joins its chat. Removing interest
    leaves chat membership untouched so the history stays readable.
    """
    user_id = canonical_id(user_id, "user ID")
    post_id = canonical_id(post_id, "post ID")

    with transaction.atomic():
        post = _lock_post(post_id)
        if not post.interest_open():
            raise InvalidArgument("Cannot mark interest after event starts.")

        if post.interested_users.filter(pk=user_id).exists():
            remove_interest(post, user_id)
            interested = False
        elif post.accepts_event_chat:
            _, post = mark_interested(user_id, post_id)
            interested = True
        else:
            add_interest(post, user_id)
            interested = True

    logger.info("User %s %s interest in post %s", user_id, "added" if interested else "removed", post_id)
    return post, interested
