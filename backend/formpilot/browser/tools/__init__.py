"""
FormPilot - Browser Tools
One tool per action kind, collected in a ToolRegistry.
"""

from formpilot.browser.tools.base import BrowserTool, ToolParams, TargetParams
from formpilot.browser.tools.registry import ToolRegistry, build_default_registry

__all__ = [
    "BrowserTool",
    "ToolParams",
    "TargetParams",
    "ToolRegistry",
    "build_default_registry",
]
