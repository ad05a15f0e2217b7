"""Exception types raised by the session core."""
from typing import Optional


class CodementorError(Exception):
    """Base class for all session-core errors."""


class ApiError(CodementorError):
    """A call to the tutoring REST API failed.

    Raised for transport failures, non-2xx responses and responses whose
    envelope carries ``"status": "error"``.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (HTTP {self.status_code} {self.endpoint or ''})".rstrip()
        return base


class SessionOwnershipError(CodementorError):
    """The session's recorded owner does not match the authenticated user."""

    def __init__(self, session_user_id: str, token_user_id: str):
        super().__init__(
            f"Session belongs to user {session_user_id!r}, token is for {token_user_id!r}"
        )
        self.session_user_id = session_user_id
        self.token_user_id = token_user_id


class InvalidSessionIdError(CodementorError, ValueError):
    """A numeric session id could not be parsed."""
