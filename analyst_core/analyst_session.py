# analyst_core/analyst_session.py
from __future__ import annotations

import logging
import mimetypes
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import httpx

from analyst_core.config import Settings, load_settings
from analyst_core.entities import FailureKind, OperationKind, ProgressState
from analyst_core.errors import (
    AnalystError,
    ReadOnlySessionError,
    StreamFailure,
    VoiceUnavailableError,
)
from analyst_core.extraction_cache import ExtractionCache, ProjectContext
from analyst_core.operation_lock import OperationLease, OperationLock, derive_affordances
from analyst_core.progress_animator import ProgressAnimator
from analyst_core.stream_orchestrator import StreamOrchestrator, StreamOutcome, request_json
from analyst_core.transcript_cache import TranscriptCache, message_role

logger = logging.getLogger("analyst_stream")

GENERIC_FAILURE_MESSAGE = "Sorry, I encountered an error. Please try again."

_FAILURE_MESSAGES = {
    FailureKind.SESSION_EXPIRED: "Your session has expired. Please log in again.",
    FailureKind.REQUEST_FAILED: GENERIC_FAILURE_MESSAGE,
    FailureKind.TRANSPORT_ERROR: GENERIC_FAILURE_MESSAGE,
    FailureKind.MISSING_TERMINAL_FRAME: "The analysis ended before producing a result. Please try again.",
    FailureKind.WATCHDOG_TIMEOUT: "The analysis is taking too long and was stopped. Please try again.",
}

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def make_client(settings: Settings, **kwargs: Any) -> httpx.AsyncClient:
    """
    Client for the analyst backend. Plain requests are bounded by
    request_timeout_seconds; streams override the read timeout themselves.
    """
    return httpx.AsyncClient(
        base_url=settings.base_url,
        timeout=httpx.Timeout(settings.request_timeout_seconds),
        **kwargs,
    )


class VoiceRecorder:
    """
    Platform voice capture. start() begins recording; stop() ends it and
    returns the transcribed text.
    """

    def start(self) -> None:
        raise NotImplementedError

    def stop(self) -> str:
        raise NotImplementedError


class ProgressView:
    """
    One open progress presentation with its own state and animator.
    """

    def __init__(self, name: str, lease: Optional[OperationLease], tick_seconds: float, margin: int):
        self.name = name
        self.lease = lease
        self.state = ProgressState()
        self.animator = ProgressAnimator(self.state, tick_seconds=tick_seconds, margin=margin)
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.animator.close()
        if self.lease is not None:
            self.lease.release()


class AnalystSession:
    """
    Client side of one analyst conversation.

    Every long-running action goes through the OperationLock; streaming
    actions get a ProgressView and a StreamOrchestrator. Actions answer with
    {"status", "message", "data", "failure_kind"} dicts.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        recorder: Optional[VoiceRecorder] = None,
        read_only: bool = False,
        on_session_expired: Optional[Callable[[], None]] = None,
    ):
        self.settings = settings or load_settings()
        self._owns_client = client is None
        self.client = client or make_client(self.settings)
        self.read_only = read_only
        self.on_session_expired = on_session_expired
        self.authenticated = True

        # capability is decided once here; nothing probes the recorder later
        self.voice_supported = bool(self.settings.voice_enabled and recorder is not None)
        self.recorder = recorder if self.voice_supported else None
        self._voice_lease: Optional[OperationLease] = None
        self.draft = ""

        self.project = ProjectContext()
        self.cache = ExtractionCache(self.project)
        self.lock = OperationLock(has_target=lambda: self.project.has_project)
        self.lock.set_voice_stopper(self._stop_recorder)
        self.transcript = TranscriptCache(
            ttl_seconds=self.settings.history_ttl_seconds,
            max_tokens=self.settings.history_max_tokens,
        )
        self.views: List[ProgressView] = []
        self.on_view_opened: Optional[Callable[[ProgressView], None]] = None
        self.project.on_switch(self._on_project_switch)

    @classmethod
    def reviewer(
        cls,
        project_id: str,
        history: Iterable[Mapping[str, str]],
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ) -> "AnalystSession":
        """
        Read-only session over prior conversation history. Only extraction is allowed.
        """
        session = cls(client=client, settings=settings, read_only=True)
        session.open_project(project_id)
        session.transcript.load(project_id, history)
        return session

    # -----------------------
    # Project navigation
    # -----------------------

    def open_project(self, project_id: str) -> None:
        # opening a project happens after a (re-)login
        self.authenticated = True
        self.project.open(project_id)

    def close_project(self) -> None:
        self.project.close()

    def _on_project_switch(self, old_id: Optional[str], new_id: Optional[str]) -> None:
        logger.debug("Project switch %s -> %s", old_id, new_id)
        for view in list(self.views):
            self.close_view(view)
        if self._voice_lease is not None:
            self._stop_recorder()
        self.draft = ""
        self.transcript.sweep_expired()

    # -----------------------
    # Presentation state
    # -----------------------

    def affordances(self) -> Dict[str, bool]:
        return derive_affordances(self.lock.active, read_only=self.read_only, voice_supported=self.voice_supported)

    def messages(self) -> List[Dict[str, str]]:
        pid = self.project.project_id
        if pid is None:
            return []
        return [{"role": message_role(m), "content": str(m.content)} for m in self.transcript.snapshot(pid)]

    def close_view(self, view: ProgressView) -> None:
        view.close()
        if view in self.views:
            self.views.remove(view)

    # -----------------------
    # Actions
    # -----------------------

    async def send_chat(self, message: str) -> Dict[str, Any]:
        if self.read_only:
            return self._refuse("chat")
        text = (message or "").strip()
        if not text:
            return self._error("Message is empty")
        try:
            lease = self.lock.acquire(OperationKind.CHAT)
        except AnalystError as e:
            return self._error(str(e))

        pid = self.project.project_id
        try:
            self.transcript.append_user(pid, text)
            self.draft = ""
            data = await request_json(
                self.client,
                "POST",
                "/analyst/chat",
                headers=self._headers(),
                json={"projectId": pid, "message": text},
            )
            reply = str(data.get("reply") or "")
            if self.project.project_id != pid:
                return self._cancelled()
            self.transcript.append_assistant(pid, reply)
            return self._success({"reply": reply})
        except StreamFailure as e:
            return self._failed(e.kind, str(e))
        finally:
            lease.release()

    async def polish(self, text: str) -> Dict[str, Any]:
        if self.read_only:
            return self._refuse("polish")
        if not text or not text.strip():
            return self._error("Text cannot be empty")
        try:
            lease = self.lock.acquire(OperationKind.POLISH)
        except AnalystError as e:
            return self._error(str(e))

        try:
            data = await request_json(
                self.client,
                "POST",
                "/analyst/polish",
                headers=self._headers(),
                json={"text": text},
            )
            polished = str(data.get("polished") or "")
            self.draft = polished
            return self._success({"original": text, "polished": polished})
        except StreamFailure as e:
            return self._failed(e.kind, str(e))
        finally:
            lease.release()

    async def extract(self) -> Dict[str, Any]:
        try:
            lease = self.lock.acquire(OperationKind.EXTRACT)
        except AnalystError as e:
            return self._error(str(e))

        pid = self.project.project_id
        outcome = await self._stream("extract", lease, "/analyst/extract-stream", {"projectId": pid})
        refused = self._unusable_outcome(outcome, pid)
        if refused is not None:
            return refused

        payload = outcome.payload or {}
        requirements = payload.get("requirements")
        if isinstance(requirements, dict):
            self.cache.set(pid, requirements, markdown=payload.get("markdown"), mermaid=payload.get("mermaid"))
        else:
            logger.info("Extraction for %s returned no structured requirements; nothing cached", pid)
        self.transcript.append_assistant(pid, "Requirements extracted! You can now download the documents below.")
        return self._success(payload)

    async def generate_stories(self) -> Dict[str, Any]:
        return await self._generate("stories", "/analyst/generate-stories-stream", "/analyst/generate-stories")

    async def generate_flowchart(self) -> Dict[str, Any]:
        return await self._generate("flowchart", "/analyst/generate-flowchart-stream", "/analyst/generate-flowchart")

    async def upload_excel(self, filename: str, content: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
        return await self._upload(
            OperationKind.UPLOAD_EXCEL,
            "/analyst/upload-excel",
            filename,
            content,
            content_type or mimetypes.guess_type(filename)[0] or XLSX_CONTENT_TYPE,
        )

    async def upload_image(self, filename: str, content: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
        return await self._upload(
            OperationKind.UPLOAD_IMAGE,
            "/analyst/upload-image",
            filename,
            content,
            content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream",
        )

    # -----------------------
    # Voice
    # -----------------------

    @property
    def recording(self) -> bool:
        return self._voice_lease is not None

    def start_voice(self) -> Dict[str, Any]:
        if self.read_only:
            return self._refuse("voice")
        if not self.voice_supported:
            return self._error(str(VoiceUnavailableError()))
        try:
            lease = self.lock.acquire(OperationKind.VOICE)
        except AnalystError as e:
            return self._error(str(e))
        self._voice_lease = lease
        try:
            self.recorder.start()
        except Exception as e:
            self._voice_lease = None
            lease.release()
            logger.info("Voice capture failed to start: %s", e)
            return self._error("Voice capture could not be started")
        return self._success({"recording": True})

    def stop_voice(self) -> Dict[str, Any]:
        if self._voice_lease is None:
            return self._error("Voice capture is not running")
        text = self._stop_recorder()
        return self._success({"recording": False, "transcript": text})

    def toggle_voice(self) -> Dict[str, Any]:
        if self.recording:
            return self.stop_voice()
        return self.start_voice()

    def _stop_recorder(self) -> str:
        lease, self._voice_lease = self._voice_lease, None
        if lease is None:
            return ""
        text = ""
        try:
            if self.recorder is not None:
                text = self.recorder.stop() or ""
        finally:
            lease.release()
        if text:
            self.draft = f"{self.draft} {text}".strip()
        return text

    # -----------------------
    # Internals
    # -----------------------

    async def _generate(self, name: str, stream_path: str, fallback_path: str) -> Dict[str, Any]:
        # story / flowchart generation shares the extract slot of the lock
        try:
            lease = self.lock.acquire(OperationKind.EXTRACT)
        except AnalystError as e:
            return self._error(str(e))

        pid = self.project.project_id
        cached = self.cache.get()
        if cached is not None:
            logger.debug("Generating %s from cached extraction (%s)", name, pid)
            outcome = await self._stream(
                name,
                lease,
                stream_path,
                {"projectId": pid, "requirements": cached.structured_data},
            )
            refused = self._unusable_outcome(outcome, pid)
            if refused is not None:
                return refused
            return self._success({**(outcome.payload or {}), "fromCache": True})

        logger.debug("No cached extraction for %s; using full %s generation", pid, name)
        try:
            data = await request_json(
                self.client,
                "POST",
                fallback_path,
                headers=self._headers(),
                json={"projectId": pid},
            )
        except StreamFailure as e:
            return self._failed(e.kind, str(e))
        finally:
            lease.release()
        if self.project.project_id != pid:
            return self._cancelled()
        return self._success({**data, "fromCache": False})

    async def _upload(
        self,
        kind: OperationKind,
        path: str,
        filename: str,
        content: bytes,
        content_type: str,
    ) -> Dict[str, Any]:
        if self.read_only:
            return self._refuse(kind.value)
        try:
            lease = self.lock.acquire(kind)
        except AnalystError as e:
            return self._error(str(e))

        pid = self.project.project_id
        try:
            data = await request_json(
                self.client,
                "POST",
                path,
                headers=self._headers(),
                data={"projectId": pid},
                files={"file": (filename, content, content_type)},
            )
        except StreamFailure as e:
            return self._failed(e.kind, str(e))
        finally:
            lease.release()

        if self.project.project_id != pid:
            return self._cancelled()
        summary = data.get("summary")
        if summary:
            self.transcript.append_assistant(pid, str(summary))
        return self._success(data)

    async def _stream(self, name: str, lease: OperationLease, path: str, body: Dict[str, Any]) -> StreamOutcome:
        view = ProgressView(name, lease, self.settings.tick_seconds, self.settings.progress_margin)
        self.views.append(view)
        if self.on_view_opened is not None:
            self.on_view_opened(view)
        try:
            orchestrator = StreamOrchestrator(
                self.client,
                view.animator,
                lease=lease,
                completion_dwell=self.settings.completion_dwell_seconds,
                max_duration=self.settings.watchdog_seconds,
                headers=self._headers(),
            )
            outcome = await orchestrator.run(path, body)
        finally:
            self.close_view(view)
        return outcome

    def _headers(self) -> Dict[str, str]:
        if self.settings.api_token:
            return {"Authorization": f"Bearer {self.settings.api_token}"}
        return {}

    def _expire_session(self) -> None:
        logger.info("Session expired; returning to login")
        self.authenticated = False
        self.close_project()
        if self.on_session_expired is not None:
            self.on_session_expired()

    def _success(self, data: Any = None, message: str = "") -> Dict[str, Any]:
        return {"status": "success", "message": message, "data": data, "failure_kind": None}

    def _error(self, message: str, failure_kind: Optional[FailureKind] = None) -> Dict[str, Any]:
        return {
            "status": "error",
            "message": message,
            "data": None,
            "failure_kind": failure_kind.value if failure_kind else None,
        }

    def _cancelled(self) -> Dict[str, Any]:
        return {"status": "cancelled", "message": "Result discarded: the view was closed", "data": None, "failure_kind": None}

    def _refuse(self, action: str) -> Dict[str, Any]:
        return self._error(str(ReadOnlySessionError(action)))

    def _failed(self, kind: FailureKind, message: str) -> Dict[str, Any]:
        if kind is FailureKind.SESSION_EXPIRED:
            self._expire_session()
        if kind is FailureKind.STREAM_REPORTED_ERROR:
            user_message = message
        else:
            user_message = _FAILURE_MESSAGES.get(kind, GENERIC_FAILURE_MESSAGE)
        logger.info("Operation failed (%s): %s", kind.value, message)
        return self._error(user_message, failure_kind=kind)

    def _outcome_error(self, outcome: StreamOutcome) -> Dict[str, Any]:
        return self._failed(outcome.failure_kind, outcome.message)

    def _unusable_outcome(self, outcome: StreamOutcome, pid: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Response for an outcome the caller must not use, or None when the
        payload can be applied. An expired session always logs out, even
        for a closed view; any other late result is discarded silently.
        """
        if outcome.failure_kind is FailureKind.SESSION_EXPIRED:
            return self._outcome_error(outcome)
        if outcome.discarded or self.project.project_id != pid:
            return self._cancelled()
        if not outcome.ok:
            return self._outcome_error(outcome)
        return None

    async def aclose(self) -> None:
        for view in list(self.views):
            self.close_view(view)
        if self._voice_lease is not None:
            self._stop_recorder()
        if self._owns_client:
            await self.client.aclose()
