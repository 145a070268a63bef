"""Frame decoding: bytes in, complete protocol frames out.

Two framings share one running text buffer:

* ``sse``   - blocks separated by a blank line; a block's frame is its
  ``data:`` values (trimmed) joined by ``\\n``.  Empty blocks and ``[DONE]``
  blocks are never emitted, and ``[DONE]`` ends the stream.
* ``lines`` - every non-empty line is a frame, verbatim.

Bytes are decoded incrementally, so a multi-byte character split across
reads is carried over rather than corrupted.  A trailing partial frame is
kept until its delimiter arrives or ``flush()`` is called at end of stream.
"""

from __future__ import annotations

import codecs
import re

from open_completions.config import Framing
from open_completions.utils.stream_parsers import is_done_token, parse_sse_line

_BLOCK_SPLIT = re.compile(r"\r?\n\r?\n")
_LINE_SPLIT = re.compile(r"\r?\n")


def parse_sse_block(block: str) -> str | None:
    """Join the ``data:`` values of one event-stream block.

    Returns ``None`` when the block carries no data lines.
    """
    data_lines = [
        payload.rstrip()
        for payload in map(parse_sse_line, _LINE_SPLIT.split(block))
        if payload is not None
    ]
    if not data_lines:
        return None
    return "\n".join(data_lines)


class FrameDecoder:
    """Incremental splitter for one response body."""

    def __init__(self, framing: Framing = "sse") -> None:
        if framing not in ("sse", "lines"):
            raise ValueError(f"Unknown framing: {framing!r}")
        self.framing = framing
        self.done = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Text received but not yet emitted as a frame."""
        return self._buffer

    def feed(self, data: bytes) -> list[str]:
        """Decode one network read and return the frames it completed."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(data)
        return self._drain(final=False)

    def flush(self) -> list[str]:
        """End of stream: treat whatever is buffered as complete."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        return self._drain(final=True)

    def _drain(self, final: bool) -> list[str]:
        splitter = _BLOCK_SPLIT if self.framing == "sse" else _LINE_SPLIT
        segments = splitter.split(self._buffer)
        if final:
            self._buffer = ""
        else:
            self._buffer = segments.pop()

        if self.framing == "lines":
            return [s for s in segments if s]

        frames: list[str] = []
        for segment in segments:
            data = parse_sse_block(segment)
            if not data:
                continue
            if is_done_token(data):
                self.done = True
                self._buffer = ""
                break
            frames.append(data)
        return frames
