"""
FormPilot - Agents Package
Components that act on a live browser.

Agents:
- BrowserAgent (Executor): Playwright implementation of ExecutionBackend
"""

from formpilot.agents.executor import BrowserAgent

__all__ = [
    "BrowserAgent",
]
