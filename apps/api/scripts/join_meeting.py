"""Join a meeting room as a headless participant and log what happens."""
from __future__ import annotations

import argparse
import asyncio
import logging

from meetroom.client.media import DeviceCaptureProvider
from meetroom.client.session import MeetingSession
from meetroom.core.config import settings
from meetroom.core.logging import configure_logging

logger = logging.getLogger("meetroom.join")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("identifier", help="Roll number to join with")
    parser.add_argument("--room", default=settings.default_room)
    parser.add_argument("--url", default=settings.signaling_url)
    parser.add_argument("--device", default=settings.capture_device, help="MediaPlayer input, e.g. /dev/video0")
    parser.add_argument("--format", default=settings.capture_format, help="MediaPlayer format, e.g. v4l2")
    return parser.parse_args()


async def main() -> None:
    args = _parse_args()
    session = MeetingSession(
        args.identifier,
        room=args.room,
        url=args.url,
        capture=DeviceCaptureProvider(args.device, args.format),
        on_chat=lambda message: logger.info("%s: %s", message.sender, message.text),
    )
    await session.join()
    try:
        await asyncio.Event().wait()
    finally:
        await session.leave()


if __name__ == "__main__":
    configure_logging(settings.log_level)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
