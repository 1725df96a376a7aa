"""Error taxonomy shared by the relay and the client."""
from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    INVALID_IDENTIFIER = "invalid_identifier"
    DUPLICATE_IDENTIFIER = "duplicate_identifier"
    RECIPIENT_ABSENT = "recipient_absent"
    DEVICE_UNAVAILABLE = "device_unavailable"
    NEGOTIATION_FAILURE = "negotiation_failure"


class MeetroomError(RuntimeError):
    """Base class for meeting room failures."""

    kind: ErrorKind | None = None

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or (self.kind.value if self.kind else "meeting room error"))


class InvalidIdentifierError(MeetroomError):
    """Raised when a participant identifier is empty or malformed."""

    kind = ErrorKind.INVALID_IDENTIFIER


class DuplicateIdentifierError(MeetroomError):
    """Raised when a participant identifier is already present in the room."""

    kind = ErrorKind.DUPLICATE_IDENTIFIER


class RecipientAbsentError(MeetroomError):
    """Raised when a relay target is not registered."""

    kind = ErrorKind.RECIPIENT_ABSENT


class DeviceUnavailableError(MeetroomError):
    """Raised when the camera or microphone cannot be acquired."""

    kind = ErrorKind.DEVICE_UNAVAILABLE


class NegotiationFailureError(MeetroomError):
    """Raised when a description cannot be created or applied."""

    kind = ErrorKind.NEGOTIATION_FAILURE


_BY_KIND: dict[ErrorKind, type[MeetroomError]] = {
    cls.kind: cls
    for cls in (
        InvalidIdentifierError,
        DuplicateIdentifierError,
        RecipientAbsentError,
        DeviceUnavailableError,
        NegotiationFailureError,
    )
}


def error_for(code: str | None, message: str | None = None) -> MeetroomError:
    """Rebuild the exception matching an error code received over the wire."""

    try:
        kind = ErrorKind(code or "")
    except ValueError:
        return MeetroomError(message)
    return _BY_KIND[kind](message)
