"""
FormPilot - Form Field Tools
fill_field, select and checkbox: the actions that change a field's value
without (usually) restructuring the page.
"""

from typing import Any, Optional

from pydantic import field_validator, model_validator

from formpilot.browser.backend import ExecutionBackend
from formpilot.browser.tools.base import BrowserTool, TargetParams
from formpilot.models.actions import ToolResult


class FillFieldParams(TargetParams):
    value: str
    field_type: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def stringify_numbers(cls, v: Any) -> Any:
        # Decision sources send numbers for zip codes, years of experience, etc.
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class FillFieldTool(BrowserTool):
    name = "fill_field"
    description = "Fill a text input or textarea with a value"
    params_model = FillFieldParams

    async def run(self, params: FillFieldParams, backend: ExecutionBackend) -> ToolResult:
        await backend.fill(params.target(), params.value)
        return ToolResult.ok(
            f"Filled {params.element_description()}",
            value_length=len(params.value),
        )


class SelectParams(TargetParams):
    value: Optional[str] = None
    option_text: Optional[str] = None
    index: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def option_text_alias(cls, data: Any) -> Any:
        # `text` names the option here, not the element
        if isinstance(data, dict) and "text" in data and "option_text" not in data:
            data = dict(data)
            data["option_text"] = data.pop("text")
        return data

    @model_validator(mode="after")
    def require_option(self):
        if self.value is None and self.option_text is None and self.index is None:
            raise ValueError("One of value, text, or index is required")
        if self.index is not None and self.index < 0:
            raise ValueError("index must be >= 0")
        return self


class SelectTool(BrowserTool):
    name = "select"
    description = "Select an option in a dropdown"
    params_model = SelectParams

    async def run(self, params: SelectParams, backend: ExecutionBackend) -> ToolResult:
        selected = await backend.select_option(
            params.target(),
            value=params.value,
            label=params.option_text,
            index=params.index,
        )
        return ToolResult.ok(
            f"Selected {selected!r} in {params.element_description()}",
            selected=selected,
        )


class CheckboxParams(TargetParams):
    checked: bool


class CheckboxTool(BrowserTool):
    name = "checkbox"
    description = "Check or uncheck a checkbox"
    params_model = CheckboxParams

    async def run(self, params: CheckboxParams, backend: ExecutionBackend) -> ToolResult:
        await backend.set_checked(params.target(), params.checked)
        verb = "Checked" if params.checked else "Unchecked"
        return ToolResult.ok(f"{verb} {params.element_description()}", checked=params.checked)
