"""FastAPI application for the mesh meeting room relay."""
from __future__ import annotations

import base64

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, PlainTextResponse, Response

from .core.config import settings
from .core.logging import configure_logging
from .routers import rooms, rtc

configure_logging(settings.log_level)

app = FastAPI(title="Meeting Room Signaling API", version="0.1.0")

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(rtc.router, prefix="/api/rtc", tags=["rtc"])
app.include_router(rooms.router, prefix="/api/rooms", tags=["rooms"])

HTML_PAGE = """<!DOCTYPE html>
<html lang=\"en\">
<head>
    <meta charset=\"UTF-8\" />
    <title>Meeting Room Signaling</title>
</head>
<body>
    <h1>Meeting Room Signaling</h1>
    <p>Connect a client to <code>/api/rtc/signaling/{room}</code> and send
    <code>{"type": "join-room", "identifier": "..."}</code> to take part.</p>
    <p>The current roster is at <code>/api/rooms/{room}/participants</code> and an
    attendance PDF at <code>/api/rooms/{room}/attendance</code>.</p>
</body>
</html>
"""

FAVICON_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR4nGMAAQAABQABDQottAAAAABJRU5ErkJggg=="
)


@app.get("/", response_class=HTMLResponse, tags=["meta"])
async def index() -> HTMLResponse:
    """Serve a short landing page describing the signaling endpoints."""

    return HTMLResponse(content=HTML_PAGE)


@app.head("/", tags=["meta"])
async def index_head() -> Response:
    """Fast health checks issue HEAD /; answer with 200 to avoid noisy 405s."""

    return Response(status_code=200)


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Simple liveness probe."""

    return {"status": "ok"}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)


@app.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
async def robots() -> PlainTextResponse:
    """Serve a minimal robots.txt to avoid 404 noise."""

    return PlainTextResponse("User-agent: *\nDisallow:")


@app.get("/favicon.ico", include_in_schema=False)
async def favicon() -> Response:
    """Return a tiny placeholder favicon."""

    return Response(content=FAVICON_BYTES, media_type="image/png")
