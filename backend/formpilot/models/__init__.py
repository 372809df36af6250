"""
FormPilot - Models Package
In-memory dataclasses for actions, batches and sessions.
"""

from formpilot.models.actions import (
    ActionKind,
    ActionRequest,
    ExecutionBatch,
    RiskTier,
    ToolError,
    ToolResult,
    ToolState,
    TrackedAction,
)
from formpilot.models.session import (
    ActionOutcome,
    ApplicationSession,
    CycleRecord,
    SessionStatus,
)

__all__ = [
    # Actions
    "ActionKind",
    "ActionRequest",
    "ExecutionBatch",
    "RiskTier",
    "ToolError",
    "ToolResult",
    "ToolState",
    "TrackedAction",
    # Sessions
    "ActionOutcome",
    "ApplicationSession",
    "CycleRecord",
    "SessionStatus",
]
