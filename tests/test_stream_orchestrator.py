"""Tests for analyst_core.stream_orchestrator."""
import asyncio

import httpx
import pytest

from analyst_core.entities import FailureKind, OperationKind, OrchestratorState, ProgressState
from analyst_core.errors import (
    MissingTerminalFrameError,
    RequestFailedError,
    SessionExpiredError,
    TransportError,
)
from analyst_core.operation_lock import OperationLock
from analyst_core.progress_animator import ProgressAnimator
from analyst_core.stream_orchestrator import StreamOrchestrator, request_json

from tests.conftest import NEVER_TICK, Router, data_line, sse_response

PATH = "/analyst/extract-stream"


def _orchestrator(client, lock=None, **kwargs):
    lock = lock or OperationLock()
    lease = lock.acquire(OperationKind.EXTRACT)
    animator = ProgressAnimator(ProgressState(), tick_seconds=NEVER_TICK)
    kwargs.setdefault("completion_dwell", 0)
    return StreamOrchestrator(client, animator, lease=lease, **kwargs), lock


async def _run(chunks, **kwargs):
    router = Router({PATH: lambda request: sse_response(chunks)})
    async with router.client() as client:
        orchestrator, lock = _orchestrator(client, **kwargs)
        outcome = await orchestrator.run(PATH, {"projectId": "p1"})
    return outcome, orchestrator, lock


class TestSuccess:
    @pytest.mark.asyncio
    async def test_done_with_payload(self):
        outcome, orchestrator, lock = await _run([
            data_line({"progress": 20, "stage": "Reading"}),
            data_line({"progress": 70}),
            data_line({"complete": True, "markdown": "# R", "requirements": {"a": 1}}),
        ])
        assert outcome.ok
        assert outcome.payload == {"markdown": "# R", "requirements": {"a": 1}}
        assert orchestrator.transitions == [
            OrchestratorState.IDLE,
            OrchestratorState.OPENING,
            OrchestratorState.STREAMING,
            OrchestratorState.FINALIZING,
            OrchestratorState.DONE,
        ]
        assert orchestrator.animator.state.displayed == 100
        assert not orchestrator.animator.state.ticker_active
        assert lock.active is None

    @pytest.mark.asyncio
    async def test_malformed_line_then_complete(self):
        outcome, _, lock = await _run([
            "data: {this is not json}\n\n",
            data_line({"complete": True, "markdown": "X"}),
        ])
        assert outcome.ok
        assert outcome.payload["markdown"] == "X"
        assert lock.active is None

    @pytest.mark.asyncio
    async def test_reading_continues_after_complete(self):
        outcome, orchestrator, _ = await _run([
            data_line({"complete": True, "markdown": "X"}),
            ": keep-alive\n\n",
            data_line({"complete": True, "markdown": "second"}),
        ])
        assert outcome.ok
        assert outcome.payload["markdown"] == "X"
        assert len(outcome.frames) == 2

    @pytest.mark.asyncio
    async def test_frame_split_across_chunks(self):
        outcome, _, _ = await _run([
            'data: {"progress":10',
            ',"stage":"scan"}\n\ndata: {"complete": tr',
            'ue, "markdown": "done"}\n\n',
        ])
        assert outcome.ok
        assert [type(f).__name__ for f in outcome.frames] == ["ProgressFrame", "CompleteFrame"]

    @pytest.mark.asyncio
    async def test_completion_dwell_is_held(self):
        loop = asyncio.get_running_loop()
        started = loop.time()
        outcome, _, _ = await _run([data_line({"complete": True, "markdown": "X"})], completion_dwell=0.05)
        assert outcome.ok
        assert loop.time() - started >= 0.05


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_terminal_frame(self):
        outcome, orchestrator, lock = await _run([
            data_line({"progress": 20}),
            data_line({"progress": 55}),
        ])
        assert outcome.state is OrchestratorState.FAILED
        assert outcome.failure_kind is FailureKind.MISSING_TERMINAL_FRAME
        assert orchestrator.animator.state.displayed == 55
        assert lock.active is None
        with pytest.raises(MissingTerminalFrameError):
            outcome.raise_for_failure()

    @pytest.mark.asyncio
    async def test_partial_complete_at_end_is_not_success(self):
        outcome, _, _ = await _run([data_line({"progress": 20}), 'data: {"complete": true, "markdown": "X"}'])
        assert outcome.failure_kind is FailureKind.MISSING_TERMINAL_FRAME

    @pytest.mark.asyncio
    async def test_error_frame_fails_immediately(self):
        outcome, orchestrator, lock = await _run([
            data_line({"progress": 30}),
            data_line({"error": "Extraction failed"}),
            data_line({"complete": True, "markdown": "never"}),
        ])
        assert outcome.failure_kind is FailureKind.STREAM_REPORTED_ERROR
        assert outcome.message == "Extraction failed"
        assert orchestrator.state is OrchestratorState.FAILED
        assert OrchestratorState.FINALIZING not in orchestrator.transitions
        assert lock.active is None

    @pytest.mark.asyncio
    async def test_auth_failure_is_session_expired(self):
        router = Router({PATH: lambda request: httpx.Response(401, json={"error": "Unauthorized"})})
        async with router.client() as client:
            orchestrator, lock = _orchestrator(client)
            outcome = await orchestrator.run(PATH, {})
        assert outcome.failure_kind is FailureKind.SESSION_EXPIRED
        assert outcome.status_code == 401
        assert orchestrator.transitions[-1] is OrchestratorState.FAILED
        assert OrchestratorState.STREAMING not in orchestrator.transitions
        assert lock.active is None

    @pytest.mark.asyncio
    async def test_other_status_is_request_failed(self):
        router = Router({PATH: lambda request: httpx.Response(500, json={"error": "Extraction failed"})})
        async with router.client() as client:
            orchestrator, lock = _orchestrator(client)
            outcome = await orchestrator.run(PATH, {})
        assert outcome.failure_kind is FailureKind.REQUEST_FAILED
        assert outcome.message == "Extraction failed"
        assert lock.active is None

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with Router({PATH: boom}).client() as client:
            orchestrator, lock = _orchestrator(client)
            outcome = await orchestrator.run(PATH, {})
        assert outcome.failure_kind is FailureKind.TRANSPORT_ERROR
        assert lock.active is None

    @pytest.mark.asyncio
    async def test_watchdog_releases_lock(self):
        gate = asyncio.Event()
        router = Router({PATH: lambda request: sse_response([data_line({"progress": 10})], gate=gate, gate_after=0)})
        async with router.client() as client:
            orchestrator, lock = _orchestrator(client, max_duration=0.05)
            outcome = await orchestrator.run(PATH, {})
        assert outcome.failure_kind is FailureKind.WATCHDOG_TIMEOUT
        assert lock.active is None
        assert not orchestrator.animator.state.ticker_active

    @pytest.mark.asyncio
    async def test_orchestrator_is_single_use(self):
        outcome, orchestrator, _ = await _run([data_line({"complete": True})])
        assert outcome.ok
        with pytest.raises(RuntimeError):
            await orchestrator.run(PATH, {})

    @pytest.mark.asyncio
    async def test_retry_from_scratch_after_failure(self):
        lock = OperationLock()
        responses = iter([
            sse_response([data_line({"progress": 40})]),
            sse_response([data_line({"progress": 40}), data_line({"complete": True, "markdown": "ok"})]),
        ])
        async with Router({PATH: lambda request: next(responses)}).client() as client:
            first, _ = _orchestrator(client, lock=lock)
            assert (await first.run(PATH, {})).failure_kind is FailureKind.MISSING_TERMINAL_FRAME
            second, _ = _orchestrator(client, lock=lock)
            assert (await second.run(PATH, {})).ok
        assert lock.active is None


class TestClosedView:
    @pytest.mark.asyncio
    async def test_late_frames_discarded_after_close(self):
        gate = asyncio.Event()
        chunks = [
            data_line({"progress": 30}),
            data_line({"progress": 80}),
            data_line({"complete": True, "markdown": "late"}),
        ]
        router = Router({PATH: lambda request: sse_response(chunks, gate=gate, gate_after=0)})
        async with router.client() as client:
            orchestrator, lock = _orchestrator(client)
            task = asyncio.create_task(orchestrator.run(PATH, {}))
            while orchestrator.animator.state.displayed < 30:
                await asyncio.sleep(0)
            orchestrator.animator.close()
            orchestrator.lease.release()
            assert lock.active is None
            other = lock.acquire(OperationKind.CHAT)
            gate.set()
            outcome = await task
        assert outcome.ok
        assert outcome.discarded
        assert orchestrator.animator.state.displayed == 30
        assert lock.active is OperationKind.CHAT
        other.release()


class TestRequestJson:
    @pytest.mark.asyncio
    async def test_success(self):
        router = Router({"/analyst/polish": lambda request: httpx.Response(200, json={"polished": "Hi."})})
        async with router.client() as client:
            assert await request_json(client, "POST", "/analyst/polish", json={"text": "hi"}) == {"polished": "Hi."}

    @pytest.mark.asyncio
    async def test_failure_mapping(self):
        router = Router({
            "/expired": lambda request: httpx.Response(401),
            "/broken": lambda request: httpx.Response(500, json={"error": "Chat failed"}),
            "/text": lambda request: httpx.Response(200, text="not json"),
        })
        async with router.client() as client:
            with pytest.raises(SessionExpiredError):
                await request_json(client, "POST", "/expired")
            with pytest.raises(RequestFailedError, match="Chat failed"):
                await request_json(client, "POST", "/broken")
            with pytest.raises(RequestFailedError):
                await request_json(client, "POST", "/text")

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def boom(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with Router({"/slow": boom}).client() as client:
            with pytest.raises(TransportError):
                await request_json(client, "GET", "/slow")
