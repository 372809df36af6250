"""
FormPilot - Execution Backend Protocol
The browser primitives tool handlers are written against.

The Playwright implementation lives in formpilot.agents.executor.BrowserAgent;
tests substitute an in-memory fake. Primitives raise ElementNotFoundError or
ActionTimeoutError (formpilot.core.errors) when the target can't be acted on.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Union, runtime_checkable

from formpilot.browser.snapshot import PageSnapshot


@dataclass(frozen=True)
class Target:
    """
    How to find an element on the page.

    Resolution order: ref (snapshot key), then selector, then label, then
    role + text.
    """
    ref: Optional[str] = None
    selector: Optional[str] = None
    label: Optional[str] = None
    text: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.ref or self.selector or self.label or self.text)

    def describe(self) -> str:
        if self.ref:
            return f"ref={self.ref}"
        if self.selector:
            return f"selector={self.selector}"
        if self.label:
            return f'label="{self.label}"'
        if self.text:
            return f'{self.role or "text"}="{self.text}"'
        return "<no target>"

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@runtime_checkable
class ExecutionBackend(Protocol):
    """Browser operations available to tool handlers."""

    async def capture_snapshot(self) -> PageSnapshot:
        ...

    async def fill(self, target: Target, value: str) -> None:
        ...

    async def click(self, target: Target) -> None:
        ...

    async def select_option(
        self,
        target: Target,
        value: Optional[str] = None,
        label: Optional[str] = None,
        index: Optional[int] = None,
    ) -> str:
        """Select an option and return the value that ended up selected."""
        ...

    async def set_checked(self, target: Target, checked: bool) -> None:
        ...

    async def upload(self, target: Target, file_path: str) -> None:
        ...

    async def navigate(self, url: str) -> str:
        """Load url and return the final URL after redirects."""
        ...

    async def scroll(self, direction: str = "down", amount: int = 500,
                     target: Optional[Target] = None) -> None:
        ...

    async def wait(self, timeout_ms: Union[int, float] = 1000,
                   target: Optional[Target] = None) -> None:
        ...
