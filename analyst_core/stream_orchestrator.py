# analyst_core/stream_orchestrator.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from analyst_core.entities import (
    CompleteFrame,
    ErrorFrame,
    FailureKind,
    OrchestratorState,
    ProgressFrame,
    StreamFrame,
)
from analyst_core.errors import (
    RequestFailedError,
    SessionExpiredError,
    TransportError,
    failure_for,
)
from analyst_core.frame_decoder import FrameDecoder
from analyst_core.operation_lock import OperationLease
from analyst_core.progress_animator import ProgressAnimator

logger = logging.getLogger("analyst_stream")

DEFAULT_COMPLETION_DWELL_SECONDS = 0.3
AUTH_FAILURE_STATUSES = (401,)

_TERMINAL_STATES = (OrchestratorState.DONE, OrchestratorState.FAILED)


@dataclass
class StreamOutcome:
    state: OrchestratorState
    payload: Optional[Dict[str, Any]] = None
    failure_kind: Optional[FailureKind] = None
    message: str = ""
    status_code: Optional[int] = None
    # the hosting view was closed before the outcome arrived
    discarded: bool = False
    frames: List[StreamFrame] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is OrchestratorState.DONE

    def raise_for_failure(self) -> None:
        if self.failure_kind is not None:
            raise failure_for(self.failure_kind, self.message, status_code=self.status_code)


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        for key in ("error", "detail", "message"):
            if body.get(key):
                return str(body[key])
    return default


class StreamOrchestrator:
    """
    Drives one streaming request end to end.

    Idle -> Opening -> Streaming -> Finalizing -> Done | Failed

    The Complete frame is held as pending until the transport ends; an Error
    frame fails the run immediately. Whatever the exit path, the ticker is
    stopped and the lease (when given) is released before run() returns.
    One orchestrator instance serves one run.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        animator: ProgressAnimator,
        lease: Optional[OperationLease] = None,
        completion_dwell: float = DEFAULT_COMPLETION_DWELL_SECONDS,
        max_duration: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.client = client
        self.animator = animator
        self.lease = lease
        self.completion_dwell = completion_dwell
        self.max_duration = max_duration
        self.headers = dict(headers or {})
        self.decoder = FrameDecoder()
        self.state = OrchestratorState.IDLE
        self.transitions: List[OrchestratorState] = [OrchestratorState.IDLE]
        self._pending: Optional[CompleteFrame] = None
        self._frames: List[StreamFrame] = []

    async def run(self, url: str, body: Dict[str, Any]) -> StreamOutcome:
        if self.state is not OrchestratorState.IDLE:
            raise RuntimeError(f"StreamOrchestrator already used (state={self.state.value})")

        self.animator.reset()
        try:
            if self.max_duration:
                outcome = await asyncio.wait_for(self._drive(url, body), timeout=self.max_duration)
            else:
                outcome = await self._drive(url, body)
        except asyncio.TimeoutError:
            outcome = self._fail(
                FailureKind.WATCHDOG_TIMEOUT,
                f"Stream did not finish within {self.max_duration:g}s",
            )
        finally:
            self.animator.stop()
            if self.lease is not None:
                self.lease.release()

        outcome.discarded = self.animator.closed
        outcome.frames = list(self._frames)
        return outcome

    # -----------------------
    # States
    # -----------------------

    async def _drive(self, url: str, body: Dict[str, Any]) -> StreamOutcome:
        self._transition(OrchestratorState.OPENING)
        try:
            async with self.client.stream(
                "POST", url, json=body, headers=self.headers, timeout=self._stream_timeout()
            ) as response:
                if response.status_code in AUTH_FAILURE_STATUSES:
                    return self._fail(
                        FailureKind.SESSION_EXPIRED,
                        "Session expired, please log in again",
                        response.status_code,
                    )
                if not response.is_success:
                    await response.aread()
                    return self._fail(
                        FailureKind.REQUEST_FAILED,
                        _error_message(response, f"Request failed with status {response.status_code}"),
                        response.status_code,
                    )

                self._transition(OrchestratorState.STREAMING)
                async for chunk in response.aiter_text():
                    for frame in self.decoder.feed(chunk):
                        failed = self._route(frame)
                        if failed is not None:
                            return failed
                self.decoder.close()
        except httpx.HTTPError as e:
            return self._fail(FailureKind.TRANSPORT_ERROR, f"{type(e).__name__}: {e}")

        return await self._finalize()

    def _route(self, frame: StreamFrame) -> Optional[StreamOutcome]:
        self._frames.append(frame)
        if isinstance(frame, ProgressFrame):
            self.animator.report(frame.percent, frame.stage)
        elif isinstance(frame, CompleteFrame):
            if self._pending is None:
                self._pending = frame
            else:
                logger.warning("Ignoring extra complete frame after the first one")
        elif isinstance(frame, ErrorFrame):
            return self._fail(FailureKind.STREAM_REPORTED_ERROR, frame.message)
        return None

    async def _finalize(self) -> StreamOutcome:
        self._transition(OrchestratorState.FINALIZING)
        if self._pending is None:
            return self._fail(FailureKind.MISSING_TERMINAL_FRAME, "No terminal frame received")

        self.animator.complete()
        if self.completion_dwell > 0 and not self.animator.closed:
            await asyncio.sleep(self.completion_dwell)
        self.animator.stop()

        self._transition(OrchestratorState.DONE)
        return StreamOutcome(OrchestratorState.DONE, payload=dict(self._pending.payload))

    def _fail(self, kind: FailureKind, message: str, status_code: Optional[int] = None) -> StreamOutcome:
        self._transition(OrchestratorState.FAILED)
        logger.info("Stream failed (%s): %s", kind.value, message)
        return StreamOutcome(
            OrchestratorState.FAILED,
            failure_kind=kind,
            message=message,
            status_code=status_code,
        )

    def _stream_timeout(self) -> httpx.Timeout:
        # gaps between frames are unbounded; the watchdog bounds the whole stream
        return httpx.Timeout(self.client.timeout.connect, read=None)

    def _transition(self, state: OrchestratorState) -> None:
        if self.state in _TERMINAL_STATES:
            return
        logger.debug("Stream %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: Any = httpx.USE_CLIENT_DEFAULT,
    **kwargs: Any,
) -> Dict[str, Any]:
    """
    Non-streaming request with the same failure mapping as the stream path.
    Uses the client timeout unless `timeout` is given.
    Raises SessionExpiredError, RequestFailedError or TransportError.
    """
    try:
        response = await client.request(method, url, headers=headers, timeout=timeout, **kwargs)
    except httpx.HTTPError as e:
        raise TransportError(f"{type(e).__name__}: {e}") from e

    if response.status_code in AUTH_FAILURE_STATUSES:
        raise SessionExpiredError("Session expired, please log in again", status_code=response.status_code)
    if not response.is_success:
        raise RequestFailedError(
            _error_message(response, f"Request failed with status {response.status_code}"),
            status_code=response.status_code,
        )
    try:
        data = response.json()
    except ValueError as e:
        raise RequestFailedError("Response was not valid JSON", status_code=response.status_code) from e
    if not isinstance(data, dict):
        raise RequestFailedError("Response was not a JSON object", status_code=response.status_code)
    return data
