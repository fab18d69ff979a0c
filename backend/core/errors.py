# backend/core/errors.py

from __future__ import annotations


class ChatError(Exception):
    """
    Base class for every error a chat action reports to its caller.

    The message is user-facing and ends up verbatim in the
    ``{"error": message}`` response body.
    """

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgument(ChatError):
    status_code = 400


class Unauthorized(ChatError):
    status_code = 401


class Forbidden(ChatError):
    status_code = 403


class NotFound(ChatError):
    status_code = 404


class Conflict(ChatError):
    status_code = 409


class TooManyRequests(ChatError):
    status_code = 429


class Internal(ChatError):
    status_code = 500
