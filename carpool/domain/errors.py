"""
Carpool error hierarchy.

Every error carries a human-readable ``message`` suitable for direct
display and the HTTP status the API layer answers with.
"""


class CarpoolError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(CarpoolError):
    """Unknown booking, group or invite id."""

    status_code = 404


class InvalidStateError(CarpoolError):
    """Wrong booking / invite / group status for the requested transition."""

    status_code = 409


class ValidationFailedError(CarpoolError):
    """A precondition of the operation does not hold."""

    status_code = 400


class InviteExpiredError(ValidationFailedError):
    pass


class ConflictError(CarpoolError):
    status_code = 409


class InternalError(CarpoolError):
    """Persistence or transaction failure."""

    status_code = 500
