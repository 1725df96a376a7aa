"""Attendance export: render a roster snapshot as a PDF document."""
from __future__ import annotations

from io import BytesIO
from typing import Iterable

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

TITLE = "Attendance List"
MEDIA_TYPE = "application/pdf"

_LEFT_MARGIN = 36
_TOP_MARGIN = 48
_LINE_HEIGHT = 18


def attendance_lines(identifiers: Iterable[str]) -> list[str]:
    """Numbered attendance lines in the order given."""

    return [f"{index}. {identifier}" for index, identifier in enumerate(identifiers, start=1)]


def build_attendance_pdf(identifiers: Iterable[str], *, title: str = TITLE) -> bytes:
    """Return a PDF listing ``identifiers``, continuing onto new pages as needed."""

    buffer = BytesIO()
    width, height = A4
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(title)

    pdf.setFont("Helvetica-Bold", 18)
    pdf.drawString(_LEFT_MARGIN, height - _TOP_MARGIN, title)
    y = height - _TOP_MARGIN - 2 * _LINE_HEIGHT

    pdf.setFont("Helvetica", 12)
    for line in attendance_lines(identifiers):
        if y < _TOP_MARGIN:
            pdf.showPage()
            pdf.setFont("Helvetica", 12)
            y = height - _TOP_MARGIN
        pdf.drawString(_LEFT_MARGIN, y, line)
        y -= _LINE_HEIGHT

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
