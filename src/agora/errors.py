"""Error taxonomy for agora.

Domain functions raise these; the API layer maps them to a status code and
a ``{"detail": ...}`` body, the same shape FastAPI uses for HTTPException.
"""

from __future__ import annotations


class AgoraError(Exception):
    """Base class for errors surfaced to the caller."""

    status_code = 500
    default_detail = "Internal error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class Unauthenticated(AgoraError):
    """No credential, or the credential could not be validated."""

    status_code = 401
    default_detail = "Unauthorized"


class Forbidden(AgoraError):
    """Authenticated but not allowed (not a member, wrong role)."""

    status_code = 403
    default_detail = "Forbidden"


class NotFound(AgoraError):
    """Entity is absent, or hidden from the caller."""

    status_code = 404
    default_detail = "Not found"


class InvalidInput(AgoraError):
    status_code = 400
    default_detail = "Bad request"


class Conflict(AgoraError):
    status_code = 409
    default_detail = "Conflict"


class Gone(AgoraError):
    """Resource expired or exhausted."""

    status_code = 410
    default_detail = "Gone"


class Internal(AgoraError):
    status_code = 500
    default_detail = "Internal error"
