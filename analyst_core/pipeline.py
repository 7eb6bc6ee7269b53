# analyst_core/pipeline.py
"""
Interface the HTTP producer delegates AI work to.

The concrete implementation (prompts, model calls) lives outside this
repository and is named by ANALYST_PIPELINE as "package.module:attribute".
Streaming methods receive `report(progress, stage)` and must call it with
non-decreasing percentages.
"""

import importlib
from typing import Any, Awaitable, Callable, Dict, List

from langchain_core.messages import BaseMessage

from analyst_core.errors import ConfigurationError

ProgressReporter = Callable[[int, str], Awaitable[None]]


class AnalystPipeline:
    async def chat(self, project_id: str, history: List[BaseMessage], message: str) -> str:
        raise NotImplementedError

    async def polish(self, text: str) -> str:
        raise NotImplementedError

    async def extract(self, project_id: str, report: ProgressReporter) -> Dict[str, Any]:
        """Returns {"requirements": {...}, "markdown": str, "mermaid": str}."""
        raise NotImplementedError

    async def generate_stories(self, requirements: Dict[str, Any], report: ProgressReporter) -> Dict[str, Any]:
        """Returns {"markdown": str, "userStories": [...]}."""
        raise NotImplementedError

    async def generate_stories_full(self, project_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def generate_flowchart(self, requirements: Dict[str, Any], report: ProgressReporter) -> Dict[str, Any]:
        """Returns {"markdown": str, "mermaid": str}."""
        raise NotImplementedError

    async def generate_flowchart_full(self, project_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def summarize_spreadsheet(self, project_id: str, filename: str, content: bytes) -> str:
        raise NotImplementedError

    async def describe_image(self, project_id: str, filename: str, content: bytes) -> str:
        raise NotImplementedError


def load_pipeline(target: str) -> AnalystPipeline:
    """
    Resolve "module:attribute". A class is instantiated with no arguments.
    """
    module_name, sep, attr = (target or "").partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(
            f"ANALYST_PIPELINE must look like 'module:attribute', got {target!r}",
            config_key="ANALYST_PIPELINE",
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import pipeline module '{module_name}': {e}", config_key="ANALYST_PIPELINE") from e

    obj = getattr(module, attr, None)
    if obj is None:
        raise ConfigurationError(f"'{module_name}' has no attribute '{attr}'", config_key="ANALYST_PIPELINE")
    if isinstance(obj, type):
        obj = obj()
    return obj
