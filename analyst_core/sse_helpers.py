# analyst_core/sse_helpers.py
"""
Producer side of the event stream: one `data: <json>` line per frame,
followed by a blank separator line.
"""

import asyncio
import json
from typing import Any, Dict

SSE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    # disable nginx buffering
    "X-Accel-Buffering": "no",
}
SSE_MEDIA_TYPE = "text/event-stream"


def format_frame(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


def format_progress(progress: int, stage: str | None = None) -> str:
    data: Dict[str, Any] = {"progress": int(progress)}
    if stage:
        data["stage"] = stage
    return format_frame(data)


def format_complete(result: Dict[str, Any]) -> str:
    return format_frame({"complete": True, **result})


def format_error(message: str) -> str:
    return format_frame({"error": message})


def format_keepalive() -> str:
    return ": keep-alive\n\n"


async def delay(seconds: float) -> None:
    if seconds > 0:
        await asyncio.sleep(seconds)
