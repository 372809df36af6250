"""
FormPilot - Page Interaction Tools
click, upload, navigate, scroll and wait.
"""

import os
from typing import Any, ClassVar, Literal, Mapping, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator

from formpilot.browser.backend import ExecutionBackend, Target
from formpilot.browser.snapshot import parse_key
from formpilot.browser.tools.base import BrowserTool, TargetParams, ToolParams
from formpilot.models.actions import ToolResult

# Click targets whose text contains one of these need operator approval
CONFIRM_KEYWORDS = ("submit", "delete", "remove", "confirm", "apply", "send")


class ClickParams(TargetParams):
    target_fields: ClassVar[tuple] = ("ref", "selector", "text")


class ClickTool(BrowserTool):
    name = "click"
    description = "Click a button, link, or other element"
    params_model = ClickParams

    def __init__(self, confirm_submissions: bool = True):
        self.confirm_submissions = confirm_submissions

    def requires_confirmation(self, params: Mapping[str, Any]) -> bool:
        if not self.confirm_submissions:
            return False
        words = [
            str(params.get(key) or "")
            for key in ("description", "text", "element", "label", "selector")
        ]
        parsed = parse_key(str(params.get("ref") or ""))
        if parsed:
            words.append(parsed[1])
        text = " ".join(words).lower()
        return any(keyword in text for keyword in CONFIRM_KEYWORDS)

    async def run(self, params: ClickParams, backend: ExecutionBackend) -> ToolResult:
        await backend.click(params.target())
        return ToolResult.ok(f"Clicked {params.element_description()}")


class UploadParams(TargetParams):
    target_fields: ClassVar[tuple] = ("ref", "selector", "label")

    file_path: str = Field(..., alias="filePath", min_length=1)

    @field_validator("file_path")
    @classmethod
    def file_exists(cls, v: str) -> str:
        if not os.path.isfile(v):
            raise ValueError(f"File not found: {v}")
        return v


class UploadTool(BrowserTool):
    name = "upload"
    description = "Attach a file to a file input"
    params_model = UploadParams

    async def run(self, params: UploadParams, backend: ExecutionBackend) -> ToolResult:
        await backend.upload(params.target(), params.file_path)
        return ToolResult.ok(
            f"Uploaded {os.path.basename(params.file_path)} to {params.element_description()}",
            file=params.file_path,
        )


class NavigateParams(ToolParams):
    url: str

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https", "file") or not (parsed.netloc or parsed.path):
            raise ValueError(f"Unsupported URL: {v}")
        return v


class NavigateTool(BrowserTool):
    name = "navigate"
    description = "Load a URL in the current tab"
    params_model = NavigateParams

    async def run(self, params: NavigateParams, backend: ExecutionBackend) -> ToolResult:
        final_url = await backend.navigate(params.url)
        return ToolResult.ok(f"Navigated to {final_url}", url=params.url, final_url=final_url)


class ScrollParams(ToolParams):
    direction: Literal["up", "down", "top", "bottom"] = "down"
    amount: int = Field(500, ge=0)
    ref: Optional[str] = None
    selector: Optional[str] = None


class ScrollTool(BrowserTool):
    name = "scroll"
    description = "Scroll the page or bring an element into view"
    params_model = ScrollParams

    async def run(self, params: ScrollParams, backend: ExecutionBackend) -> ToolResult:
        target = None
        if params.ref or params.selector:
            target = Target(ref=params.ref, selector=params.selector)
        await backend.scroll(params.direction, params.amount, target=target)
        return ToolResult.ok(f"Scrolled {params.direction}", direction=params.direction)


class WaitParams(ToolParams):
    timeout_ms: Optional[int] = Field(None, alias="timeoutMs", ge=0, le=60000)
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds", ge=0, le=60)
    ref: Optional[str] = None
    selector: Optional[str] = None

    @model_validator(mode="after")
    def default_timeout(self):
        if self.timeout_ms is None:
            seconds = self.timeout_seconds if self.timeout_seconds is not None else 3
            self.timeout_ms = int(seconds * 1000)
        return self


class WaitTool(BrowserTool):
    name = "wait"
    description = "Wait for a fixed time or until an element appears"
    params_model = WaitParams

    async def run(self, params: WaitParams, backend: ExecutionBackend) -> ToolResult:
        target = None
        if params.ref or params.selector:
            target = Target(ref=params.ref, selector=params.selector)
        await backend.wait(params.timeout_ms, target=target)
        if target:
            return ToolResult.ok(f"Waited for {target.describe()}", timeout_ms=params.timeout_ms)
        return ToolResult.ok(f"Waited {params.timeout_ms}ms", timeout_ms=params.timeout_ms)
