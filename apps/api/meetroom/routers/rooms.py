"""Read-only room endpoints: membership snapshot and attendance export."""
from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response

from ..schemas.rtc import ParticipantsResponse
from ..services import attendance
from ..services.signaling import manager as room_directory

router = APIRouter()


def _participants(room: str) -> list[str]:
    meeting = room_directory.get(room)
    return meeting.participants() if meeting else []


@router.get("/{room}/participants", response_model=ParticipantsResponse)
async def list_participants(room: str) -> ParticipantsResponse:
    """Return the current membership snapshot; unknown rooms are empty."""

    return ParticipantsResponse(room=room, participants=_participants(room))


@router.get("/{room}/attendance")
async def download_attendance(room: str) -> Response:
    """Render the room's current roster as a PDF attendance list."""

    document = attendance.build_attendance_pdf(_participants(room))
    headers = {"Content-Disposition": f'attachment; filename="attendance-{room}.pdf"'}
    return Response(content=document, media_type=attendance.MEDIA_TYPE, headers=headers)
