"""
FormPilot - Browser Tool Base
Every action kind is served by one BrowserTool: a pydantic model for its
parameters, a confirmation predicate, and an async handler that drives the
execution backend.

Handlers report failures as ToolResult errors. Backend errors from the
FormPilotError family are converted here so individual tools only deal with
the happy path; anything else propagates to the scheduler.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from formpilot.browser.backend import ExecutionBackend, Target
from formpilot.core.errors import ActionValidationError, ErrorType, FormPilotError
from formpilot.models.actions import ToolResult

logger = logging.getLogger(__name__)


def format_validation_error(error: ValidationError) -> str:
    """Render a pydantic ValidationError as one readable line."""
    parts = []
    for item in error.errors():
        message = str(item.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        loc = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{loc}: {message}" if loc else message)
    return "; ".join(parts)


class ToolParams(BaseModel):
    """Base for tool parameter models. Unknown keys are ignored."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    description: Optional[str] = None
    element: Optional[str] = None


class TargetParams(ToolParams):
    """Parameters that address one element on the page."""
    ref: Optional[str] = None
    selector: Optional[str] = None
    label: Optional[str] = None
    text: Optional[str] = None
    role: Optional[str] = None

    # Which addressing fields satisfy the "has a target" check
    target_fields: ClassVar[tuple] = ("ref", "selector", "label")

    @model_validator(mode="after")
    def require_target(self):
        if not any(getattr(self, name) for name in self.target_fields):
            raise ValueError(f"At least one of {', '.join(self.target_fields)} is required")
        return self

    def target(self) -> Target:
        return Target(
            ref=self.ref,
            selector=self.selector,
            label=self.label,
            text=self.text,
            role=self.role,
        )

    def element_description(self) -> str:
        return self.element or self.description or self.label or self.text or self.target().describe()


class BrowserTool(ABC):
    """A handler for one action kind."""

    name: ClassVar[str]
    description: ClassVar[str]
    params_model: ClassVar[Type[ToolParams]]

    def parse_params(self, params: Mapping[str, Any]) -> ToolParams:
        try:
            return self.params_model.model_validate(dict(params or {}))
        except ValidationError as e:
            raise ActionValidationError(format_validation_error(e)) from e

    def validate_params(self, params: Mapping[str, Any]) -> Optional[str]:
        """Return an error message for bad params, or None when they are acceptable."""
        try:
            self.parse_params(params)
        except ActionValidationError as e:
            return str(e)
        return None

    def requires_confirmation(self, params: Mapping[str, Any]) -> bool:
        """Whether an operator must approve this action before it runs."""
        return False

    async def execute(self, params: Mapping[str, Any], backend: ExecutionBackend) -> ToolResult:
        try:
            parsed = self.parse_params(params)
        except ActionValidationError as e:
            return ToolResult.fail(
                f"Invalid parameters for {self.name}: {e}",
                recoverable=False,
                error_type=ErrorType.INVALID_PARAMS,
            )

        try:
            return await self.run(parsed, backend)
        except FormPilotError as e:
            logger.info(f"[Tool:{self.name}] {e.error_type.value}: {e}")
            return ToolResult.fail(
                f"{self.name} failed: {e}",
                recoverable=e.recoverable,
                error_type=e.error_type,
                detail=str(e),
            )

    @abstractmethod
    async def run(self, params: ToolParams, backend: ExecutionBackend) -> ToolResult:
        """Perform the action with already-validated params."""
