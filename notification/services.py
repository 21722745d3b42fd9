import logging

from django.db import transaction

from chat.realtime import push_notification
from .models import Notification


logger = logging.getLogger(__name__)


def notify(recipient_id, notification_type, content, sender_id=None, chat=None):
    """
    Persist a notification and push it to the recipient's personal room
    once the surrounding transaction commits.
    """
    noti = Notification.objects.create(
        recipient_id=recipient_id,
        sender_id=sender_id,
        chat=chat,
        content=content,
        notification_type=notification_type,
    )
    data = {
        "id": noti.id,
        "type": noti.notification_type,
        "content": noti.content,
        "chat_id": noti.chat_id,
        "sender_id": noti.sender_id,
        "created_at": noti.created_at.isoformat(),
    }
    transaction.on_commit(lambda: push_notification(recipient_id, data), robust=True)
    logger.debug("Queued %s notification %s for user %s", notification_type, noti.id, recipient_id)
    return noti
