# session_main.py
"""
Command-line driver for one analyst session.

Runs, against a live server (ANALYST_BASE_URL):
  1. requirement extraction for the given project (streamed, cached on success)
  2. user-story generation      (reuses the cached extraction)
  3. flowchart generation       (reuses the cached extraction)

Progress is logged as it moves; results are written to the output directory:
  requirements.md, workflow.mmd, user_stories.md, flowchart.md, flowchart.mmd

Usage:
    python session_main.py <project_id> [output_dir]
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from analyst_core.analyst_session import AnalystSession
from analyst_core.config import configure_logging, load_settings
from analyst_core.entities import ProgressState

logger = logging.getLogger("analyst_stream")


def _log_progress(label: str):
    last = {"value": -1}

    def listener(state: ProgressState) -> None:
        if state.displayed == last["value"]:
            return
        last["value"] = state.displayed
        stage = f" ({state.stage})" if state.stage else ""
        logger.info("%s: %d%%%s", label, state.displayed, stage)

    return listener


def _write(out_dir: Path, name: str, content: Optional[str]) -> None:
    if not content:
        return
    path = out_dir / name
    path.write_text(content, encoding="utf-8")
    logger.info("Wrote %s", path)


async def run_session(project_id: str, out_dir: Path) -> int:
    settings = load_settings()
    session = AnalystSession(settings=settings)

    session.on_view_opened = lambda view: view.animator.subscribe(_log_progress(view.name))

    session.open_project(project_id)
    try:
        steps = [
            ("extract", session.extract, {"markdown": "requirements.md", "mermaid": "workflow.mmd"}),
            ("stories", session.generate_stories, {"markdown": "user_stories.md"}),
            ("flowchart", session.generate_flowchart, {"markdown": "flowchart.md", "mermaid": "flowchart.mmd"}),
        ]
        for label, action, outputs in steps:
            result: Dict[str, Any] = await action()
            if result["status"] != "success":
                logger.info("%s failed: %s", label, result["message"])
                return 1
            data = result["data"] or {}
            for key, filename in outputs.items():
                _write(out_dir, filename, data.get(key))
        return 0
    finally:
        await session.aclose()


def main() -> None:
    if len(sys.argv) < 2:
        raise SystemExit("usage: session_main.py <project_id> [output_dir]")

    settings = load_settings()
    configure_logging(settings)

    out_dir = Path(sys.argv[2]) if len(sys.argv) > 2 else Path("output")
    out_dir.mkdir(parents=True, exist_ok=True)
    raise SystemExit(asyncio.run(run_session(sys.argv[1], out_dir)))


if __name__ == "__main__":
    main()
