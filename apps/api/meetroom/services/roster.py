"""In-memory roster of the participants present in one meeting room."""
from __future__ import annotations

from typing import Dict, Generic, Optional, TypeVar

from ..core.errors import DuplicateIdentifierError, InvalidIdentifierError

HandleT = TypeVar("HandleT")


def normalise_identifier(identifier: object) -> str:
    """Return a trimmed identifier, or an empty string for unusable input."""

    if not isinstance(identifier, str):
        return ""
    return identifier.strip()


class RosterRegistry(Generic[HandleT]):
    """Map participant identifiers to connection handles.

    An identifier maps to at most one handle and a handle to at most one
    identifier. Lookups by handle use object identity.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, HandleT] = {}
        self._identities: Dict[int, str] = {}

    def register(self, identifier: str, handle: HandleT) -> None:
        if not identifier:
            raise InvalidIdentifierError("Roll number is required")
        if identifier in self._handles:
            raise DuplicateIdentifierError(f"Roll number {identifier!r} already exists")
        if id(handle) in self._identities:
            raise DuplicateIdentifierError("Connection already joined the room")

        self._handles[identifier] = handle
        self._identities[id(handle)] = identifier

    def unregister(self, handle: HandleT) -> Optional[str]:
        """Drop whichever identifier maps to ``handle`` and return it."""

        identifier = self._identities.pop(id(handle), None)
        if identifier is not None:
            self._handles.pop(identifier, None)
        return identifier

    def resolve(self, identifier: str) -> Optional[HandleT]:
        return self._handles.get(identifier)

    def identity_of(self, handle: HandleT) -> Optional[str]:
        return self._identities.get(id(handle))

    def snapshot(self) -> list[str]:
        """Identifiers currently registered, in join order."""

        return list(self._handles)

    def handles(self) -> list[HandleT]:
        return list(self._handles.values())

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._handles

    def __len__(self) -> int:
        return len(self._handles)
