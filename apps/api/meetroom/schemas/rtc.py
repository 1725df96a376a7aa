"""Data contracts for the signaling channel and room endpoints."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class JoinRequest(BaseModel):
    type: Literal["join-room"] = "join-room"
    identifier: str = Field(..., description="Participant identifier, e.g. a roll number")


class JoinResult(BaseModel):
    type: Literal["join-result"] = "join-result"
    success: bool
    error: str | None = None
    code: str | None = Field(default=None, description="ErrorKind value when the join failed")


class MembershipSnapshot(BaseModel):
    type: Literal["update-participants"] = "update-participants"
    participants: list[str] = Field(default_factory=list)


class NewcomerNotice(BaseModel):
    type: Literal["new-user"] = "new-user"
    identifier: str


class OutboundSignal(BaseModel):
    """Negotiation envelope as sent by a participant."""

    type: Literal["offer", "answer", "ice-candidate"]
    to: str
    payload: Any = None


class InboundSignal(BaseModel):
    """Negotiation envelope as delivered by the relay."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["offer", "answer", "ice-candidate"]
    sender: str = Field(..., alias="from")
    payload: Any = None


class ChatMessage(BaseModel):
    type: Literal["chat-message"] = "chat-message"
    sender: str
    text: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ParticipantsResponse(BaseModel):
    room: str
    participants: list[str] = Field(default_factory=list, description="Current membership snapshot")
