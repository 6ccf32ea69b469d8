"""
Tool executor base class
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from agent_engine.models import ToolKind, ToolRequest, ToolResult


class ToolExecutor(ABC):
    """
    Browser tool contract

    One executor instance serves exactly one run, so its browser, context,
    page and working directory are never shared between runs.
    """

    @abstractmethod
    async def invoke(self, kind: ToolKind, request: ToolRequest) -> ToolResult:
        """
        Run the tool.

        Args:
            kind: full drives the browser toward the step goal, observe snapshots the current page
            request: run/step identity and prompt

        Returns:
            ToolResult: ok/error plus snapshot id, url, log count and extracted items
        """
        ...

    async def context_summary(self) -> Optional[Dict[str, Any]]:
        """Latest page state for planner calls; None before the first snapshot."""
        return None

    async def close(self) -> None:
        """Release browser resources; must be safe to call more than once."""
        return None
