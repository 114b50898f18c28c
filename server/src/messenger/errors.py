from __future__ import annotations


class MessengerError(Exception):
    """Base class for failures reported back to the originating connection."""

    code = "error"
    status = 400
    default_message = "request rejected"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class NotAuthenticated(MessengerError):
    code = "not_authenticated"
    status = 401
    default_message = "not authenticated"


class AlreadyAuthenticated(MessengerError):
    code = "already_authenticated"
    status = 409
    default_message = "connection already authenticated"


class UnknownConnection(MessengerError):
    code = "unknown_connection"
    status = 404
    default_message = "unknown connection"


class Forbidden(MessengerError):
    code = "forbidden"
    status = 403
    default_message = "sender does not match authenticated user"


class EmptyContent(MessengerError):
    code = "empty_content"
    default_message = "message content must not be empty"


class InvalidCredential(MessengerError):
    code = "invalid_credential"
    status = 401
    default_message = "invalid or expired credential"


class PersistenceFailure(MessengerError):
    code = "persistence_failure"
    status = 500
    default_message = "storage failure"


class NotFound(MessengerError):
    code = "not_found"
    status = 404
    default_message = "not found"


class AlreadyFriends(MessengerError):
    code = "already_friends"
    status = 409
    default_message = "already friends"


class PhoneTaken(MessengerError):
    code = "phone_taken"
    status = 409
    default_message = "phone number already registered"


class InvalidRequest(MessengerError):
    code = "invalid_request"
    default_message = "invalid request"
