from rest_framework import status
from rest_framework.exceptions import APIException


class ChatError(APIException):
    """Base class for chat failures. ``detail`` is safe to show to the caller."""


class InvalidArgument(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request."
    default_code = "invalid_argument"


class Forbidden(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Unauthorized access to chat."
    default_code = "forbidden"


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found."
    default_code = "not_found"


class Conflict(ChatError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "The chat was modified concurrently, try again."
    default_code = "conflict"


class Transient(ChatError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "The chat store is temporarily unavailable."
    default_code = "transient"
