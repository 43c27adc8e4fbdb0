"""Domain errors raised by the split and settlement engine.

Each error carries the HTTP status the API layer answers with, so handlers
never have to translate by hand.
"""


class BilloError(Exception):
    status_code = 500

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailed(BilloError):
    status_code = 400


class NotFound(BilloError):
    # Also used for rows the caller may not see, so existence is not leaked
    status_code = 404


class StateConflict(BilloError):
    status_code = 409


class PersistenceFailed(BilloError):
    status_code = 500
