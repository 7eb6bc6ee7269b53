# analyst_core/frame_decoder.py

import json
import logging
from typing import List, Optional

from pydantic import ValidationError

from analyst_core.entities import CompleteFrame, ErrorFrame, ProgressFrame, StreamFrame
from analyst_core.errors import MalformedFrameError

logger = logging.getLogger("analyst_stream")

EVENT_PREFIX = "data: "
LINE_TERMINATOR = "\n"


def parse_frame(payload_text: str) -> StreamFrame:
    """
    Turn the JSON remainder of a `data: ` line into a frame.

    Shapes:
      {"error": "..."}                                  -> ErrorFrame
      {"complete": true, "markdown": ..., ...}          -> CompleteFrame
      {"progress": 0-100, "stage": "..."}               -> ProgressFrame
    Anything else raises MalformedFrameError.
    """
    try:
        data = json.loads(payload_text)
    except json.JSONDecodeError as e:
        raise MalformedFrameError(f"invalid JSON payload: {e}", line=payload_text) from e

    if not isinstance(data, dict):
        raise MalformedFrameError("payload is not a JSON object", line=payload_text)

    try:
        if "error" in data:
            return ErrorFrame(message=str(data["error"]))
        if data.get("complete") is True:
            payload = {k: v for k, v in data.items() if k != "complete"}
            return CompleteFrame(payload=payload)
        if "progress" in data:
            return ProgressFrame(percent=data["progress"], stage=data.get("stage"))
    except ValidationError as e:
        raise MalformedFrameError(f"invalid frame fields: {e}", line=payload_text) from e

    raise MalformedFrameError("payload matches no known frame shape", line=payload_text)


class FrameDecoder:
    """
    Reassembles text chunks from one chunked response into frames.

    Only the text after the last line terminator is carried between feeds,
    so a frame split across chunks is emitted exactly once, when its line
    completes.
    """

    def __init__(self, prefix: str = EVENT_PREFIX):
        self.prefix = prefix
        self._buffer = ""
        self._closed = False
        self.malformed_count = 0

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> List[StreamFrame]:
        if self._closed:
            raise RuntimeError("FrameDecoder.feed() called after close()")
        if not chunk:
            return []

        self._buffer += chunk
        lines = self._buffer.split(LINE_TERMINATOR)
        self._buffer = lines.pop()

        frames: List[StreamFrame] = []
        for line in lines:
            frame = self._decode_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def close(self) -> List[StreamFrame]:
        """
        End of input. A buffered partial line has no terminator and is dropped.
        """
        if self._buffer:
            logger.debug("Discarding unterminated line at end of stream: %r", self._buffer[:200])
        self._buffer = ""
        self._closed = True
        return []

    def _decode_line(self, line: str) -> Optional[StreamFrame]:
        # tolerate CRLF transports
        if line.endswith("\r"):
            line = line[:-1]
        if not line.startswith(self.prefix):
            return None
        try:
            return parse_frame(line[len(self.prefix):])
        except MalformedFrameError as e:
            self.malformed_count += 1
            logger.warning("Skipping malformed frame (%s): %r", e, line[:200])
            return None
