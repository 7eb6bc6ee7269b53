# analyst_core/extraction_cache.py

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from analyst_core.entities import ExtractionResult

logger = logging.getLogger("analyst_stream")

ProjectListener = Callable[[Optional[str], Optional[str]], None]


class ProjectContext:
    """
    Which project is open. Every open/close is a switch, including
    reopening the project that was already open.
    """

    def __init__(self) -> None:
        self._project_id: Optional[str] = None
        self._listeners: List[ProjectListener] = []

    @property
    def project_id(self) -> Optional[str]:
        return self._project_id

    @property
    def has_project(self) -> bool:
        return self._project_id is not None

    def on_switch(self, listener: ProjectListener) -> None:
        self._listeners.append(listener)

    def open(self, project_id: str) -> None:
        self._switch(str(project_id))

    def close(self) -> None:
        self._switch(None)

    def _switch(self, new_id: Optional[str]) -> None:
        old_id = self._project_id
        self._project_id = new_id
        for listener in list(self._listeners):
            listener(old_id, new_id)


class ExtractionCache:
    """
    Most recent extraction result for the open project.

    - get() only answers for the project that owns the entry.
    - any project switch clears the entry, so returning to a project never
      brings an old extraction back.
    """

    def __init__(self, context: ProjectContext):
        self.context = context
        self._lock = threading.Lock()
        self._result: Optional[ExtractionResult] = None
        context.on_switch(self._on_project_switch)

    def set(
        self,
        project_id: str,
        data: Dict[str, Any],
        markdown: Optional[str] = None,
        mermaid: Optional[str] = None,
    ) -> Optional[ExtractionResult]:
        pid = str(project_id)
        if pid != self.context.project_id:
            logger.info("Not caching extraction for %s: open project is %s", pid, self.context.project_id)
            return None
        result = ExtractionResult(
            owner_project_id=pid,
            structured_data=data,
            markdown=markdown,
            mermaid=mermaid,
        )
        with self._lock:
            self._result = result
        return result

    def get(self) -> Optional[ExtractionResult]:
        with self._lock:
            result = self._result
        if result is None:
            return None
        if result.owner_project_id != self.context.project_id:
            return None
        return result

    def invalidate(self) -> None:
        with self._lock:
            had_entry = self._result is not None
            self._result = None
        if had_entry:
            logger.debug("Extraction cache invalidated")

    def _on_project_switch(self, old_id: Optional[str], new_id: Optional[str]) -> None:
        self.invalidate()
