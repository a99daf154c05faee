"""
Newline-delimited JSON framing.

Each message is one complete JSON document terminated by a single ``\\n``.
There is no length prefix; ``json.dumps`` escapes any newline inside
strings, so an encoded frame never contains a literal newline.
"""

import json
from typing import Any, List

from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)

DELIMITER = b"\n"


def encode_message(message: Any) -> bytes:
    """Serialize one message to a wire frame."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8") + DELIMITER


class LineFramer:
    """
    Incremental decoder for newline-delimited JSON.

    Bytes are buffered until a delimiter arrives. Blank lines are skipped.
    Lines that are not valid JSON are dropped and counted rather than
    failing the stream.
    """

    def __init__(self, label: str = "stream"):
        self.label = label
        self.dropped_frames = 0
        self._buffer = bytearray()

    def feed(self, data: bytes) -> List[Any]:
        """Add received bytes; return every message completed by them."""
        self._buffer.extend(data)
        messages = []

        while True:
            index = self._buffer.find(DELIMITER)
            if index < 0:
                break

            line = bytes(self._buffer[:index])
            del self._buffer[:index + 1]

            if not line.strip():
                continue

            try:
                messages.append(json.loads(line))
            except (UnicodeDecodeError, ValueError):
                self.dropped_frames += 1
                logger.debug(
                    f"[{self.label}] dropped unparseable frame "
                    f"({len(line)} bytes, {self.dropped_frames} dropped so far)"
                )

        return messages

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()
