"""
FormPilot - Human Intervention Tool
Marks the point where a person has to take over (CAPTCHA, login, an answer
the profile doesn't cover). Leaves the page untouched; the execution loop
suspends the session after the batch that ends with this action.
"""

from formpilot.browser.backend import ExecutionBackend
from formpilot.browser.tools.base import BrowserTool, ToolParams
from formpilot.models.actions import ToolResult


class HumanInterventionParams(ToolParams):
    reason: str = "Human action required"
    action: str = "complete the required step"


class HumanInterventionTool(BrowserTool):
    name = "human_intervention"
    description = "Pause automation and ask a person to complete a step"
    params_model = HumanInterventionParams

    async def run(self, params: HumanInterventionParams, backend: ExecutionBackend) -> ToolResult:
        return ToolResult.ok(
            f"Human intervention requested: {params.reason}",
            intervention=True,
            reason=params.reason,
            action=params.action,
        )
