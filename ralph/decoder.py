"""Incremental line decoder for the agent's stream protocol.

Chunks from a pipe can end anywhere, including in the middle of a line or of a
multi-byte UTF-8 sequence. LineDecoder buffers both cases, so splitting the
same byte stream at different boundaries yields the same events.
"""

import codecs
import logging

from ralph.events import StreamEvent, UnrecognizedLine, parse_event_line

logger = logging.getLogger(__name__)


class LineDecoder:
    """Turns raw stdout bytes into validated stream events.

    Unrecognized lines are dropped and counted in ``dropped`` so protocol
    drift stays observable at debug level without failing the run.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.dropped = 0
        self.decoded = 0

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Consume a chunk and return events for every completed line."""
        self._buffer += self._decoder.decode(chunk)
        events: list[StreamEvent] = []
        while True:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1 :]
            event = self._accept(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[StreamEvent]:
        """Decode whatever partial line remains at end of input."""
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        if not remaining.strip():
            return []
        event = self._accept(remaining)
        return [event] if event is not None else []

    def _accept(self, line: str) -> StreamEvent | None:
        parsed = parse_event_line(line)
        if isinstance(parsed, UnrecognizedLine):
            # Blank lines are framing, not drift
            if parsed.reason != "blank":
                self.dropped += 1
                logger.debug(
                    "Dropped %s line from agent stream (%d dropped so far): %.120s",
                    parsed.reason,
                    self.dropped,
                    parsed.raw,
                )
            return None
        self.decoded += 1
        return parsed

