import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from analyst_core.config import Settings, configure_logging, load_settings
from analyst_core.entities import ChatRequest, GenerationRequest, PolishRequest, ProjectRequest
from analyst_core.pipeline import AnalystPipeline, ProgressReporter, load_pipeline
from analyst_core.sse_helpers import (
    SSE_HEADERS,
    SSE_MEDIA_TYPE,
    delay,
    format_complete,
    format_error,
    format_keepalive,
    format_progress,
)
from analyst_core.transcript_cache import TranscriptCache

logger = logging.getLogger("analyst_server")

SPREADSHEET_TYPES = {
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}
IMAGE_TYPES = {"image/png", "image/jpeg", "image/jpg", "image/gif", "image/webp"}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

# the pipeline result carries its own "complete"-free fields
StreamJob = Callable[[ProgressReporter], Awaitable[Dict[str, Any]]]


def create_app(pipeline: AnalystPipeline, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    history = TranscriptCache(
        ttl_seconds=settings.history_ttl_seconds,
        max_tokens=settings.history_max_tokens,
    )

    app = FastAPI()
    app.state.pipeline = pipeline
    app.state.settings = settings
    app.state.history = history

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_auth(request: Request) -> None:
        if not settings.api_token:
            return
        if request.headers.get("Authorization") != f"Bearer {settings.api_token}":
            raise HTTPException(status_code=401, detail="Authentication required")

    def event_stream(job: StreamJob, label: str) -> StreamingResponse:
        return StreamingResponse(
            _run_stream_job(job, label, settings.producer_dwell_seconds, settings.keepalive_seconds),
            media_type=SSE_MEDIA_TYPE,
            headers=SSE_HEADERS,
        )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/analyst/chat", dependencies=[Depends(require_auth)])
    async def chat(body: ChatRequest):
        if not body.projectId or not body.message.strip():
            raise HTTPException(status_code=400, detail="projectId and message required")
        history.sweep_expired()
        try:
            reply = await pipeline.chat(body.projectId, history.snapshot(body.projectId), body.message)
        except Exception as e:
            logger.info("Error in chat: %s", e)
            raise HTTPException(status_code=500, detail="Chat failed")
        history.append_turn(body.projectId, body.message, reply)
        return {"reply": reply}

    @app.post("/analyst/polish", dependencies=[Depends(require_auth)])
    async def polish(body: PolishRequest):
        if not body.text.strip():
            raise HTTPException(status_code=400, detail="text cannot be empty")
        try:
            polished = await pipeline.polish(body.text)
        except Exception as e:
            logger.info("Error polishing text: %s", e)
            raise HTTPException(status_code=500, detail="Polishing failed")
        return {"original": body.text, "polished": polished.strip()}

    @app.post("/analyst/extract-stream", dependencies=[Depends(require_auth)])
    async def extract_stream(body: ProjectRequest):
        if not body.projectId:
            raise HTTPException(status_code=400, detail="projectId required")
        return event_stream(lambda report: pipeline.extract(body.projectId, report), "Extraction")

    @app.post("/analyst/generate-stories-stream", dependencies=[Depends(require_auth)])
    async def generate_stories_stream(body: GenerationRequest):
        return event_stream(lambda report: pipeline.generate_stories(body.requirements, report), "User story generation")

    @app.post("/analyst/generate-flowchart-stream", dependencies=[Depends(require_auth)])
    async def generate_flowchart_stream(body: GenerationRequest):
        return event_stream(lambda report: pipeline.generate_flowchart(body.requirements, report), "Flowchart generation")

    @app.post("/analyst/generate-stories", dependencies=[Depends(require_auth)])
    async def generate_stories(body: ProjectRequest):
        try:
            return await pipeline.generate_stories_full(body.projectId)
        except Exception as e:
            logger.info("Error generating user stories: %s", e)
            raise HTTPException(status_code=500, detail="User story generation failed")

    @app.post("/analyst/generate-flowchart", dependencies=[Depends(require_auth)])
    async def generate_flowchart(body: ProjectRequest):
        try:
            return await pipeline.generate_flowchart_full(body.projectId)
        except Exception as e:
            logger.info("Error generating flowchart: %s", e)
            raise HTTPException(status_code=500, detail="Flowchart generation failed")

    @app.post("/analyst/upload-excel", dependencies=[Depends(require_auth)])
    async def upload_excel(file: UploadFile = File(...), projectId: str = Form("")):
        content = await _read_upload(file, projectId, SPREADSHEET_TYPES, "Only Excel files (.xls, .xlsx) are allowed")
        try:
            summary = await pipeline.summarize_spreadsheet(projectId, file.filename, content)
        except Exception as e:
            logger.info("Error processing Excel file: %s", e)
            raise HTTPException(status_code=500, detail="Failed to process Excel file")
        history.append_turn(projectId, f"[Uploaded spreadsheet: {file.filename}]", summary)
        return {"filename": file.filename, "summary": summary}

    @app.post("/analyst/upload-image", dependencies=[Depends(require_auth)])
    async def upload_image(file: UploadFile = File(...), projectId: str = Form("")):
        content = await _read_upload(file, projectId, IMAGE_TYPES, "Only image files (PNG, JPG, GIF, WebP) are allowed")
        try:
            summary = await pipeline.describe_image(projectId, file.filename, content)
        except Exception as e:
            logger.info("Error processing image file: %s", e)
            raise HTTPException(status_code=500, detail="Failed to process image file")
        history.append_turn(projectId, f"[Uploaded image: {file.filename}]", summary)
        return {"filename": file.filename, "summary": summary}

    return app


async def _read_upload(file: UploadFile, project_id: str, allowed: set, type_error: str) -> bytes:
    if not project_id:
        raise HTTPException(status_code=400, detail="projectId is required")
    if file.content_type not in allowed:
        raise HTTPException(status_code=400, detail=type_error)
    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File exceeds the 10MB limit")
    return content


async def _run_stream_job(
    job: StreamJob, label: str, producer_dwell: float, keepalive: float = 0
) -> AsyncIterator[str]:
    """
    Runs the pipeline job in its own task and relays its progress reports as
    frames. A keep-alive comment goes out whenever the job is silent for
    `keepalive` seconds (0 disables). Ends with exactly one complete or error
    frame.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def report(progress: int, stage: str = "") -> None:
        await queue.put(format_progress(progress, stage))

    async def runner() -> Dict[str, Any]:
        try:
            return await job(report)
        finally:
            await queue.put(None)

    task = asyncio.create_task(runner())
    try:
        while True:
            if keepalive > 0:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield format_keepalive()
                    continue
            else:
                item = await queue.get()
            if item is None:
                break
            yield item

        try:
            result = task.result()
        except Exception as e:
            logger.info("%s failed: %s", label, e)
            yield format_error(f"{label} failed")
            return

        await delay(producer_dwell)
        yield format_complete(result or {})
    finally:
        if not task.done():
            task.cancel()


def main() -> None:
    settings = load_settings()
    configure_logging(settings)
    if not settings.pipeline:
        raise RuntimeError("ANALYST_PIPELINE env var is required to run the server")

    import uvicorn
    app = create_app(load_pipeline(settings.pipeline), settings)
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
