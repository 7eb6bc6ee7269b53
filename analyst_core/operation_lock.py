# analyst_core/operation_lock.py
from __future__ import annotations

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

from analyst_core.entities import OperationKind
from analyst_core.errors import NoTargetSelectedError, OperationBusyError

logger = logging.getLogger("analyst_stream")

# Controls on the shared input surface.
TEXT_ENTRY = "text_entry"
VOICE_TOGGLE = "voice_toggle"
SEND = "send"
POLISH = "polish"
EXTRACT = "extract"
UPLOAD_EXCEL = "upload_excel"
UPLOAD_IMAGE = "upload_image"
GENERATE_STORIES = "generate_stories"
GENERATE_FLOWCHART = "generate_flowchart"

CONTROLS = (
    TEXT_ENTRY,
    VOICE_TOGGLE,
    SEND,
    POLISH,
    EXTRACT,
    UPLOAD_EXCEL,
    UPLOAD_IMAGE,
    GENERATE_STORIES,
    GENERATE_FLOWCHART,
)

LockListener = Callable[[Optional[OperationKind]], None]


class OperationLease:
    """
    Proof of one successful acquire. release() is idempotent and only frees
    the lock while this lease is still the holder.
    """

    def __init__(self, lock: "OperationLock", kind: OperationKind, token: int):
        self.lock = lock
        self.kind = kind
        self.token = token
        self.acquired_at = time.monotonic()
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released and self.lock.holder_token == self.token

    def release(self) -> bool:
        if self._released:
            return False
        self._released = True
        return self.lock._release_token(self.token)

    def __enter__(self) -> "OperationLease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class OperationLock:
    """
    Process-wide guard over the shared input surface.
    At most one OperationKind is active; None means idle.

    Voice capture is the soft holder: acquiring any other kind while voice is
    active force-stops the recorder (through the registered voice stopper)
    and takes the lock over.
    """

    def __init__(self, has_target: Optional[Callable[[], bool]] = None):
        self._has_target = has_target or (lambda: True)
        self._guard = threading.Lock()
        self._active: Optional[OperationKind] = None
        self._holder_token: Optional[int] = None
        self._tokens = itertools.count(1)
        self._voice_stopper: Optional[Callable[[], None]] = None
        self._listeners: List[LockListener] = []

    @property
    def active(self) -> Optional[OperationKind]:
        return self._active

    @property
    def holder_token(self) -> Optional[int]:
        return self._holder_token

    @property
    def busy(self) -> bool:
        return self._active is not None

    def set_voice_stopper(self, stopper: Optional[Callable[[], None]]) -> None:
        self._voice_stopper = stopper

    def subscribe(self, listener: LockListener) -> None:
        self._listeners.append(listener)

    def acquire(self, kind: OperationKind) -> OperationLease:
        if not self._has_target():
            logger.info("Refused %s: no project selected", kind.value)
            raise NoTargetSelectedError(kind)

        if kind is not OperationKind.VOICE and self._active is OperationKind.VOICE:
            self._force_stop_voice()

        with self._guard:
            if self._active is not None:
                logger.info("Refused %s: %s is active", kind.value, self._active.value)
                raise OperationBusyError(kind, self._active)
            token = next(self._tokens)
            self._active = kind
            self._holder_token = token

        logger.debug("OperationLock acquired: %s (token=%d)", kind.value, token)
        self._notify()
        return OperationLease(self, kind, token)

    def try_acquire(self, kind: OperationKind) -> Optional[OperationLease]:
        try:
            return self.acquire(kind)
        except (OperationBusyError, NoTargetSelectedError):
            return None

    def release(self) -> None:
        with self._guard:
            previous = self._active
            self._active = None
            self._holder_token = None
        if previous is not None:
            logger.debug("OperationLock released: %s", previous.value)
        self._notify()

    @contextmanager
    def hold(self, kind: OperationKind) -> Iterator[OperationLease]:
        lease = self.acquire(kind)
        try:
            yield lease
        finally:
            lease.release()

    def _release_token(self, token: int) -> bool:
        with self._guard:
            if self._holder_token != token:
                return False
        self.release()
        return True

    def _force_stop_voice(self) -> None:
        logger.debug("Force-stopping voice capture")
        stopper = self._voice_stopper
        if stopper is not None:
            stopper()
        # the stopper normally releases through its own lease; make sure
        if self._active is OperationKind.VOICE:
            self.release()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._active)


def derive_affordances(
    active: Optional[OperationKind],
    read_only: bool = False,
    voice_supported: bool = True,
) -> Dict[str, bool]:
    """
    Enabled/disabled state of every control, computed from the lock state alone.
    """
    if active is not None and active is not OperationKind.VOICE:
        return {control: False for control in CONTROLS}

    if read_only:
        enabled = {control: False for control in CONTROLS}
        enabled[EXTRACT] = active is None
        return enabled

    enabled = {control: True for control in CONTROLS}
    enabled[VOICE_TOGGLE] = voice_supported
    return enabled
