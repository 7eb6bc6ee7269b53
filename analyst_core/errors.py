# analyst_core/errors.py
"""
Exception hierarchy for the analyst streaming engine.

Lock / session errors are raised at the call site that tried the action.
Stream failures are normally carried inside a StreamOutcome and only become
exceptions through StreamOutcome.raise_for_failure().
"""

from analyst_core.entities import FailureKind, OperationKind


class AnalystError(Exception):
    """Base exception for all analyst engine errors."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ConfigurationError(AnalystError):
    """Missing or invalid configuration value."""

    def __init__(self, message: str, config_key: str = ""):
        super().__init__(message)
        self.config_key = config_key


# -----------------------
# Operation lock / session
# -----------------------

class OperationBusyError(AnalystError):
    def __init__(self, requested: OperationKind, active: OperationKind):
        super().__init__(
            f"Cannot start '{requested.value}' while '{active.value}' is in progress",
            retryable=True,
        )
        self.requested = requested
        self.active = active


class NoTargetSelectedError(AnalystError):
    def __init__(self, requested: OperationKind):
        super().__init__(f"Cannot start '{requested.value}': no project is open")
        self.requested = requested


class ReadOnlySessionError(AnalystError):
    def __init__(self, action: str):
        super().__init__(f"'{action}' is not available in a read-only session")
        self.action = action


class VoiceUnavailableError(AnalystError):
    def __init__(self):
        super().__init__("Voice capture is not supported in this environment")


# -----------------------
# Streaming
# -----------------------

class MalformedFrameError(AnalystError):
    """A prefixed line whose payload could not be parsed into a frame."""

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class StreamFailure(AnalystError):
    kind: FailureKind = FailureKind.REQUEST_FAILED

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(StreamFailure):
    kind = FailureKind.TRANSPORT_ERROR


class SessionExpiredError(StreamFailure):
    kind = FailureKind.SESSION_EXPIRED


class RequestFailedError(StreamFailure):
    kind = FailureKind.REQUEST_FAILED


class StreamReportedError(StreamFailure):
    kind = FailureKind.STREAM_REPORTED_ERROR


class MissingTerminalFrameError(StreamFailure):
    kind = FailureKind.MISSING_TERMINAL_FRAME


class WatchdogTimeoutError(StreamFailure):
    kind = FailureKind.WATCHDOG_TIMEOUT


_FAILURES_BY_KIND = {
    cls.kind: cls
    for cls in (
        TransportError,
        SessionExpiredError,
        RequestFailedError,
        StreamReportedError,
        MissingTerminalFrameError,
        WatchdogTimeoutError,
    )
}


def failure_for(kind: FailureKind, message: str, status_code: int | None = None) -> StreamFailure:
    return _FAILURES_BY_KIND[kind](message, status_code=status_code)
