def add_interest(post, user_id) -> bool:
    """Add ``user_id`` to the interested list. The caller holds the post row lock."""
    if post.interested_users.filter(pk=user_id).exists():
        return False
    post.interested_users.add(user_id)
    post.interested_count += 1
    post.save(update_fields=["interested_count", "updated_at"])
    return True


def remove_interest(post, user_id) -> bool:
    if not post.interested_users.filter(pk=user_id).exists():
        return False
    post.interested_users.remove(user_id)
    post.interested_count = max(post.interested_count - 1, 0)
    post.save(update_fields=["interested_count", "updated_at"])
    return True
