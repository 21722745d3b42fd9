import logging
from urllib.parse import parse_qs

from django.contrib.auth.models import AnonymousUser
from channels.auth import AuthMiddlewareStack
from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from rest_framework.authtoken.models import Token


logger = logging.getLogger(__name__)

AUTH_KEYWORDS = ("token", "bearer")


def token_from_scope(scope):
    """Read the handshake credential from ``?token=`` or the Authorization header."""
    query = parse_qs(scope.get("query_string", b"").decode("latin1"))
    if query.get("token"):
        return query["token"][0]

    for name, value in scope.get("headers", []):
        if name.lower() != b"authorization":
            continue
        parts = value.decode("latin1").split()
        if len(parts) == 2 and parts[0].lower() in AUTH_KEYWORDS:
            return parts[1]
    return None


@database_sync_to_async
def get_token_user(key):
    try:
        token = Token.objects.select_related("user").get(key=key)
    except Token.DoesNotExist:
        logger.info("Rejected websocket credential: unknown token")
        return AnonymousUser()

    if not token.user.is_active:
        logger.info("Rejected websocket credential: user %s is inactive", token.user_id)
        return AnonymousUser()
    return token.user


class TokenAuthMiddleware(BaseMiddleware):
    """
    Resolves ``scope["user"]`` from a DRF token presented at handshake.

    A presented token always wins over the session user; an invalid token
    yields ``AnonymousUser`` so the consumer rejects the connection.
    """

    async def __call__(self, scope, receive, send):
        scope = dict(scope)
        key = token_from_scope(scope)
        if key is not None:
            scope["user"] = await get_token_user(key)
        elif "user" not in scope:
            scope["user"] = AnonymousUser()
        return await super().__call__(scope, receive, send)


def TokenAuthMiddlewareStack(inner):
    return AuthMiddlewareStack(TokenAuthMiddleware(inner))
