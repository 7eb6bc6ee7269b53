# analyst_core/progress_animator.py
from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from analyst_core.entities import ProgressState

logger = logging.getLogger("analyst_stream")

DEFAULT_MARGIN = 4
DEFAULT_TICK_SECONDS = 1.0

# Milestones and filler ticks stop here; only complete() shows 100.
PRE_COMPLETION_CEILING = 99

ProgressListener = Callable[[ProgressState], None]


class ProgressAnimator:
    """
    Smooths coarse backend milestones into a live-looking percentage.

    - report(m) snaps the display up to m at once, then makes sure a ticker is running.
    - each tick adds 1 while displayed < min(milestone + margin, 99).
    - complete() is the only way to show 100.

    The animator owns exactly one ProgressState and at most one ticker task.
    """

    def __init__(
        self,
        state: Optional[ProgressState] = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        margin: int = DEFAULT_MARGIN,
    ):
        self.state = state if state is not None else ProgressState()
        self.tick_seconds = tick_seconds
        self.margin = margin
        self._ticker: Optional[asyncio.Task] = None
        self._listeners: List[ProgressListener] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def reset(self) -> None:
        self.stop()
        self.state.displayed = 0
        self.state.milestone = 0
        self.state.stage = None
        self.state.completed = False
        self._closed = False
        self._notify()

    def report(self, percent: int, stage: Optional[str] = None) -> None:
        if self._closed or self.state.completed:
            return

        milestone = max(0, min(100, int(percent)))
        self.state.milestone = max(self.state.milestone, milestone)
        if stage:
            self.state.stage = stage

        target = min(self.state.milestone, PRE_COMPLETION_CEILING)
        if target > self.state.displayed:
            self.state.displayed = target
        self._notify()

        if self.state.displayed < 100:
            self.start()

    def tick(self) -> bool:
        """
        One filler step. Returns True when the displayed value moved.
        """
        if self._closed or self.state.completed:
            return False
        ceiling = min(self.state.milestone + self.margin, PRE_COMPLETION_CEILING)
        if self.state.displayed >= ceiling:
            return False
        self.state.displayed += 1
        self._notify()
        return True

    def start(self) -> Optional[asyncio.Task]:
        """
        Start the ticker if it is not running. Returns the running ticker task.
        """
        if self._closed or self.state.displayed >= 100:
            return None
        if self._ticker is not None and not self._ticker.done():
            return self._ticker
        self._ticker = asyncio.get_running_loop().create_task(self._run_ticker())
        self.state.ticker_active = True
        return self._ticker

    def stop(self) -> None:
        ticker = self._ticker
        self._ticker = None
        self.state.ticker_active = False
        if ticker is not None and not ticker.done():
            ticker.cancel()

    def complete(self) -> None:
        if self._closed:
            return
        self.stop()
        self.state.displayed = 100
        self.state.milestone = 100
        self.state.completed = True
        self._notify()

    def close(self) -> None:
        """
        The hosting view went away: stop ticking and ignore anything reported later.
        """
        self.stop()
        self._closed = True

    async def _run_ticker(self) -> None:
        try:
            while self.state.displayed < 100 and not self._closed:
                await asyncio.sleep(self.tick_seconds)
                self.tick()
        finally:
            if self._ticker is asyncio.current_task():
                self._ticker = None
                self.state.ticker_active = False

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception as e:
                logger.warning("Progress listener failed: %s", e)
