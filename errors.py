"""Error taxonomy shared by the library core, the auth gate and the API.

Each error carries the HTTP status the API answers with, so the handlers in
``api.py`` can translate any of them into a ``{"success": false, "message": ...}``
payload without knowing where it came from.
"""


class LibraryError(Exception):
    """Base class for expected, user-facing failures."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(LibraryError, ValueError):
    """Missing or malformed input."""

    status_code = 400


class AuthenticationError(LibraryError):
    """Missing, invalid or expired credentials."""

    status_code = 401


class NotFoundError(LibraryError, LookupError):
    """No such book, student, borrow record or token."""

    status_code = 404


class ConflictError(LibraryError, ValueError):
    """The request clashes with the current state (duplicate, already returned, no copies)."""

    status_code = 409
