"""Error kinds raised by the reminder core and mapped to HTTP responses in server.py."""


class ReminderError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReminderError):
    """A required field is missing or malformed."""
    status_code = 400


class NotFoundError(ReminderError):
    """A referenced id, link code or dose time does not exist."""
    status_code = 404


class ConflictError(ReminderError):
    status_code = 409


class AlreadyLinkedError(ConflictError):
    def __init__(self, message: str = "Users are already linked"):
        super().__init__(message)


class ExternalServiceError(ReminderError):
    """Image storage or telephony provider failed."""
    status_code = 502


class InternalError(ReminderError):
    status_code = 500
