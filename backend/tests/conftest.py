"""
Shared test helpers: an in-memory page that implements ExecutionBackend, and
small factories for requests and loops.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from formpilot.browser.backend import Target
from formpilot.browser.snapshot import ElementState, PageSnapshot
from formpilot.browser.tools.registry import build_default_registry
from formpilot.core.errors import ElementNotFoundError, NavigationError
from formpilot.models.actions import ActionRequest
from formpilot.services.events import EventBus


class FakeBackend:
    """
    A page made of (role, name) elements.

    Keys follow the snapshot convention "<role>:<name>#<n>", so decision
    scripts can target elements with the same refs a real snapshot would give.
    """

    def __init__(self, url: str = "https://jobs.example.com/apply", title: str = "Apply"):
        self.url = url
        self.title = title
        self.elements: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self.click_handlers: Dict[str, Callable[["FakeBackend"], None]] = {}
        self.missing: set = set()
        self.fail_once: set = set()
        self.delay: float = 0.0
        self.snapshot_error: Optional[Exception] = None
        self.navigate_error: Optional[Exception] = None
        self.closed = False

    # -- page building -------------------------------------------------------

    def add(self, role: str, name: str = "", **attrs: Any) -> str:
        index = sum(
            1 for el in self.elements.values() if el["role"] == role and el["name"] == name
        )
        key = f"{role}:{name}#{index}"
        self.elements[key] = {"role": role, "name": name, **attrs}
        return key

    def remove(self, key: str) -> None:
        self.elements.pop(key, None)

    def on_click(self, key: str, handler: Callable[["FakeBackend"], None]) -> None:
        self.click_handlers[key] = handler

    def value(self, key: str) -> Any:
        return self.elements[key].get("value")

    # -- ExecutionBackend ----------------------------------------------------

    async def capture_snapshot(self) -> PageSnapshot:
        self.calls.append(("snapshot",))
        if self.snapshot_error is not None:
            raise self.snapshot_error
        elements = {
            key: ElementState(
                key=key,
                role=attrs["role"],
                name=attrs["name"],
                value=attrs.get("value"),
                checked=attrs.get("checked"),
                disabled=attrs.get("disabled", False),
                required=attrs.get("required", False),
            )
            for key, attrs in self.elements.items()
        }
        return PageSnapshot(url=self.url, title=self.title, elements=elements)

    def _resolve(self, target: Target) -> str:
        key = None
        if target.ref:
            key = target.ref if target.ref in self.elements else None
        elif target.label or target.text:
            wanted = target.label or target.text
            key = next((k for k, el in self.elements.items() if el["name"] == wanted), None)
        if key is None or key in self.missing:
            raise ElementNotFoundError(f"Element not found: {target.describe()}")
        if key in self.fail_once:
            self.fail_once.discard(key)
            raise ElementNotFoundError(f"Element detached: {target.describe()}")
        return key

    async def _act(self, *call: Any) -> None:
        self.calls.append(call)
        if self.delay:
            await asyncio.sleep(self.delay)

    async def fill(self, target: Target, value: str) -> None:
        await self._act("fill", target, value)
        self.elements[self._resolve(target)]["value"] = value

    async def click(self, target: Target) -> None:
        await self._act("click", target)
        key = self._resolve(target)
        handler = self.click_handlers.get(key)
        if handler:
            handler(self)

    async def select_option(self, target: Target, value=None, label=None, index=None) -> str:
        await self._act("select", target, value, label, index)
        key = self._resolve(target)
        options = self.elements[key].get("options", [])
        if index is not None:
            selected = options[index]
        else:
            selected = value if value is not None else label
        self.elements[key]["value"] = selected
        return selected

    async def set_checked(self, target: Target, checked: bool) -> None:
        await self._act("checkbox", target, checked)
        self.elements[self._resolve(target)]["checked"] = checked

    async def upload(self, target: Target, file_path: str) -> None:
        await self._act("upload", target, file_path)
        self.elements[self._resolve(target)]["value"] = file_path

    async def navigate(self, url: str) -> str:
        await self._act("navigate", url)
        if self.navigate_error is not None:
            raise self.navigate_error
        self.url = url
        return url

    async def scroll(self, direction: str = "down", amount: int = 500, target=None) -> None:
        await self._act("scroll", direction, amount, target)

    async def wait(self, timeout_ms=1000, target=None) -> None:
        await self._act("wait", timeout_ms, target)
        if target is not None:
            self._resolve(target)

    async def close(self) -> None:
        self.closed = True

    def operations(self) -> List[str]:
        """Names of the page operations performed, without snapshots."""
        return [call[0] for call in self.calls if call[0] != "snapshot"]


def application_form() -> FakeBackend:
    """A one-page application form whose submit button leads to a thank-you page."""
    backend = FakeBackend()
    backend.add("heading", "Apply for Backend Engineer", level=1)
    backend.add("textbox", "Full name", required=True)
    backend.add("textbox", "Email", required=True)
    submit = backend.add("button", "Submit application")

    def submitted(page: FakeBackend) -> None:
        page.url = "https://jobs.example.com/apply/thanks"
        page.title = "Application received"
        page.elements.clear()
        page.add("heading", "Thank you for applying")

    backend.on_click(submit, submitted)
    return backend


def fill(ref: str, value: str, **params: Any) -> ActionRequest:
    return ActionRequest.create("fill_field", {"ref": ref, "value": value, **params})


def click(ref: str, text: Optional[str] = None) -> ActionRequest:
    params = {"ref": ref}
    if text:
        params["text"] = text
    return ActionRequest.create("click", params)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate from inside an event loop."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def backend() -> FakeBackend:
    return application_form()


@pytest.fixture
def registry():
    return build_default_registry(confirm_submissions=False)


@pytest.fixture
def gated_registry():
    return build_default_registry(confirm_submissions=True)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()
