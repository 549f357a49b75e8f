"""Message framing over the vsock connection between host and guest agents."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

DELIMITER = b"<<EOF>>"
_CHUNK_SIZE = 1024


@dataclass
class VsockConnection:
    """A stream connection carrying messages terminated by ``<<EOF>>``."""

    conn: Any

    def write_events(self, event: str) -> None:
        """Send one message; failures are logged, not raised."""
        payload = event.strip().encode("utf-8") + DELIMITER
        try:
            self.conn.sendall(payload)
        except OSError as exc:
            logger.warning("%s", exc)

    def read_events(self, on_data: Callable[[str], None]) -> None:
        """Call ``on_data`` with each complete message until the stream ends."""
        buffer = b""
        while True:
            try:
                chunk = self.conn.recv(_CHUNK_SIZE)
            except OSError as exc:
                logger.error("Error reading data: %s", exc)
                return
            if not chunk:
                logger.error("Error reading data: EOF")
                return
            buffer += chunk
            *messages, buffer = buffer.split(DELIMITER)
            for message in messages:
                on_data(message.decode("utf-8", errors="replace"))