"""
FormPilot - Tool Registry
Maps action-kind identifiers to their BrowserTool.
"""

import logging
from typing import Dict, List, Optional

from formpilot.browser.tools.base import BrowserTool
from formpilot.browser.tools.form import CheckboxTool, FillFieldTool, SelectTool
from formpilot.browser.tools.interaction import (
    ClickTool,
    NavigateTool,
    ScrollTool,
    UploadTool,
    WaitTool,
)
from formpilot.browser.tools.intervention import HumanInterventionTool
from formpilot.models.actions import normalize_kind

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Lookup table from action kind to tool handler."""

    def __init__(self):
        self._tools: Dict[str, BrowserTool] = {}

    def register(self, tool: BrowserTool) -> None:
        if tool.name in self._tools:
            logger.warning(f"[ToolRegistry] Replacing tool '{tool.name}'")
        self._tools[tool.name] = tool

    def get(self, kind: str) -> Optional[BrowserTool]:
        return self._tools.get(normalize_kind(kind))

    def __contains__(self, kind: str) -> bool:
        return self.get(kind) is not None

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def describe(self) -> str:
        """One line per tool, for decision-source prompts."""
        return "\n".join(f"- {tool.name}: {tool.description}" for tool in self._tools.values())


def build_default_registry(confirm_submissions: bool = True) -> ToolRegistry:
    """Registry with every built-in tool."""
    registry = ToolRegistry()
    for tool in (
        FillFieldTool(),
        ClickTool(confirm_submissions=confirm_submissions),
        SelectTool(),
        CheckboxTool(),
        UploadTool(),
        WaitTool(),
        ScrollTool(),
        NavigateTool(),
        HumanInterventionTool(),
    ):
        registry.register(tool)
    return registry
