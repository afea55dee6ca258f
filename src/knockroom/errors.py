"""Error taxonomy for knockroom.

Server-side errors carry the HTTP status they map to and a short machine
readable code. The API layer turns them into JSON responses; the client
turns error responses back into the same types.
"""

from __future__ import annotations


class KnockroomError(Exception):
    """Base class for all knockroom errors."""

    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, detail: str | None = None, *, error: str | None = None):
        if error is not None:
            self.error = error
        self.detail = detail or self.error
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"error": self.error, "detail": self.detail}


class InvalidInput(KnockroomError):
    """Malformed request (bad room hash, missing payload)."""

    status_code = 400
    error = "invalid_input"


class Unauthenticated(KnockroomError):
    """No participant token was presented."""

    status_code = 401
    error = "missing_token"


class Unauthorized(KnockroomError):
    """A participant token was presented but is not valid for the room."""

    status_code = 403
    error = "invalid_token"


class RoomNotFound(KnockroomError):
    """The room does not exist (never created, or disbanded)."""

    status_code = 404
    error = "room_not_found"


# Client-side errors. These never cross the wire.


class InvalidSecret(KnockroomError):
    """A room secret could not be decoded into 32 bytes."""

    error = "invalid_secret"


class AuthenticationFailure(KnockroomError):
    """AEAD tag mismatch: wrong key, wrong context, or tampered payload."""

    error = "authentication_failure"


_BY_STATUS: dict[int, type[KnockroomError]] = {
    400: InvalidInput,
    401: Unauthenticated,
    403: Unauthorized,
    404: RoomNotFound,
}


def error_for_status(status_code: int, error: str | None, detail: str | None) -> KnockroomError:
    """Rebuild a typed error from an HTTP error response."""
    cls = _BY_STATUS.get(status_code, KnockroomError)
    exc = cls(detail, error=error)
    if cls is KnockroomError:
        exc.status_code = status_code
    return exc
