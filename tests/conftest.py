"""Shared helpers for the analyst engine tests."""
import asyncio
import json
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import httpx
import pytest

from analyst_core.config import Settings
from analyst_core.pipeline import AnalystPipeline

BASE_URL = "http://analyst.test"

# a tick period no test ever waits for; tests drive tick() by hand
NEVER_TICK = 3600.0


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        base_url=BASE_URL,
        tick_seconds=NEVER_TICK,
        completion_dwell_seconds=0.0,
        producer_dwell_seconds=0.0,
        keepalive_seconds=0.0,
        max_stream_seconds=0.0,
        voice_enabled=True,
    )
    values.update(overrides)
    return Settings(**values)


def data_line(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def chunk_stream(chunks: Iterable[str], gate: Optional[asyncio.Event] = None, gate_after: int = -1) -> AsyncIterator[bytes]:
    """Yield text chunks as bytes; optionally park on `gate` after chunk index `gate_after`."""
    for i, chunk in enumerate(chunks):
        yield chunk.encode("utf-8")
        await asyncio.sleep(0)
        if gate is not None and i == gate_after:
            await gate.wait()


def sse_response(chunks: Iterable[str], status_code: int = 200, **kwargs: Any) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers={"Content-Type": "text/event-stream"},
        content=chunk_stream(list(chunks), **kwargs),
    )


class Router:
    """
    httpx.MockTransport handler keyed by path. Values are callables taking
    the request and returning an httpx.Response (sync or async).
    """

    def __init__(self, routes: Optional[Dict[str, Callable[[httpx.Request], Any]]] = None):
        self.routes = dict(routes or {})
        self.requests: List[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        response = handler(request)
        if asyncio.iscoroutine(response):
            response = await response
        return response

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), base_url=BASE_URL)


class FakePipeline(AnalystPipeline):
    """Deterministic pipeline standing in for the AI backend."""

    def __init__(self, fail: Optional[str] = None):
        self.fail = fail
        self.chat_histories: List[list] = []

    async def chat(self, project_id, history, message):
        self.chat_histories.append(list(history))
        if self.fail == "chat":
            raise RuntimeError("model unavailable")
        return f"echo: {message}"

    async def polish(self, text):
        return f"  {text.capitalize()}.  "

    async def extract(self, project_id, report):
        await report(10, "Reading transcript")
        await report(60, "Structuring requirements")
        if self.fail == "extract":
            raise RuntimeError("extractor crashed")
        await report(90, "Rendering documents")
        return {
            "requirements": {"primaryGoal": f"goal for {project_id}"},
            "markdown": "# Requirements",
            "mermaid": "flowchart TD; A-->B",
        }

    async def generate_stories(self, requirements, report):
        await report(50, "Writing stories")
        return {"markdown": f"# Stories for {requirements['primaryGoal']}", "userStories": [{"title": "S1"}]}

    async def generate_stories_full(self, project_id):
        return {"markdown": "# Stories (full)", "userStories": []}

    async def generate_flowchart(self, requirements, report):
        await report(40, "Drawing")
        return {"markdown": "# Flow", "mermaid": "flowchart LR; X-->Y"}

    async def generate_flowchart_full(self, project_id):
        return {"markdown": "# Flow (full)", "mermaid": "flowchart LR; F-->G"}

    async def summarize_spreadsheet(self, project_id, filename, content):
        return f"Spreadsheet {filename}: {len(content)} bytes"

    async def describe_image(self, project_id, filename, content):
        return f"Image {filename}"


@pytest.fixture
def settings() -> Settings:
    return make_settings()
