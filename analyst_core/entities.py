# analyst_core/entities.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, field_validator


class OperationKind(str, Enum):
    CHAT = "chat"
    POLISH = "polish"
    EXTRACT = "extract"
    VOICE = "voice"
    UPLOAD_EXCEL = "uploadExcel"
    UPLOAD_IMAGE = "uploadImage"


class FailureKind(str, Enum):
    SESSION_EXPIRED = "SessionExpired"
    REQUEST_FAILED = "RequestFailed"
    TRANSPORT_ERROR = "TransportError"
    STREAM_REPORTED_ERROR = "StreamReportedError"
    MISSING_TERMINAL_FRAME = "MissingTerminalFrame"
    WATCHDOG_TIMEOUT = "WatchdogTimeout"


class OrchestratorState(str, Enum):
    IDLE = "Idle"
    OPENING = "Opening"
    STREAMING = "Streaming"
    FINALIZING = "Finalizing"
    DONE = "Done"
    FAILED = "Failed"


# -----------------------
# Stream frames
# -----------------------

class ProgressFrame(BaseModel):
    percent: int
    stage: Optional[str] = None

    @field_validator("percent", mode="before")
    @classmethod
    def _clamp_percent(cls, value: Any) -> int:
        # bools are ints in Python; a `true` progress value is not a percentage
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"progress must be a number, got {value!r}")
        return max(0, min(100, int(value)))


class CompleteFrame(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def markdown(self) -> Optional[str]:
        return self.payload.get("markdown")

    @property
    def mermaid(self) -> Optional[str]:
        return self.payload.get("mermaid")

    @property
    def requirements(self) -> Optional[Dict[str, Any]]:
        return self.payload.get("requirements")


class ErrorFrame(BaseModel):
    message: str


StreamFrame = Union[ProgressFrame, CompleteFrame, ErrorFrame]


# -----------------------
# Client-side state
# -----------------------

@dataclass
class ProgressState:
    """
    Display state of one progress presentation.
    One instance per task; never shared between concurrently open views.
    """
    displayed: int = 0
    milestone: int = 0
    ticker_active: bool = False
    stage: Optional[str] = None
    completed: bool = False


@dataclass
class ExtractionResult:
    owner_project_id: str
    structured_data: Dict[str, Any]
    markdown: Optional[str] = None
    mermaid: Optional[str] = None
    captured_at: float = field(default_factory=time.time)


# -----------------------
# Request bodies (producer side)
# -----------------------

class ChatRequest(BaseModel):
    projectId: str
    message: str


class PolishRequest(BaseModel):
    text: str


class ProjectRequest(BaseModel):
    projectId: str


class GenerationRequest(BaseModel):
    projectId: Optional[str] = None
    requirements: Dict[str, Any]
