"""
FormPilot - Action Models
Defines ActionRequest (kind + params), TrackedAction (state machine) and
ExecutionBatch.

Action lifecycle:
    VALIDATING -> SCHEDULED -> [AWAITING_APPROVAL -> SCHEDULED] -> EXECUTING
    -> SUCCESS | ERROR, with CANCELLED reachable from any state that is not
    EXECUTING or terminal.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from formpilot.core.errors import ErrorType, InvalidTransitionError


class ActionKind(str, Enum):
    """Closed vocabulary of browser actions a decision source may request."""
    FILL_FIELD = "fill_field"
    CLICK = "click"
    SELECT = "select"
    CHECKBOX = "checkbox"
    UPLOAD = "upload"
    WAIT = "wait"
    SCROLL = "scroll"
    NAVIGATE = "navigate"
    HUMAN_INTERVENTION = "human_intervention"


# Spellings decision sources use for the same kinds
KIND_ALIASES: Dict[str, str] = {
    "fill": ActionKind.FILL_FIELD.value,
    "type": ActionKind.FILL_FIELD.value,
    "fillfield": ActionKind.FILL_FIELD.value,
    "intervention": ActionKind.HUMAN_INTERVENTION.value,
    "human": ActionKind.HUMAN_INTERVENTION.value,
    "open": ActionKind.NAVIGATE.value,
    "goto": ActionKind.NAVIGATE.value,
    "select_option": ActionKind.SELECT.value,
    "check": ActionKind.CHECKBOX.value,
}


def normalize_kind(kind: str) -> str:
    """Lower-case, dash-to-underscore, resolve aliases. Unknown kinds pass through."""
    normalized = str(kind or "").strip().lower().replace("-", "_").replace(" ", "_")
    return KIND_ALIASES.get(normalized, normalized)


def known_kind(kind: str) -> Optional[ActionKind]:
    """Return the ActionKind for a normalized kind string, or None if unrecognized."""
    try:
        return ActionKind(kind)
    except ValueError:
        return None


class RiskTier(str, Enum):
    """Likelihood that an action mutates page structure unpredictably."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ToolState(str, Enum):
    """Execution state of a tracked action."""
    VALIDATING = "validating"
    SCHEDULED = "scheduled"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({ToolState.SUCCESS, ToolState.ERROR, ToolState.CANCELLED})

ALLOWED_TRANSITIONS: Dict[ToolState, frozenset] = {
    ToolState.VALIDATING: frozenset({ToolState.SCHEDULED, ToolState.ERROR, ToolState.CANCELLED}),
    ToolState.SCHEDULED: frozenset({
        ToolState.AWAITING_APPROVAL, ToolState.EXECUTING, ToolState.CANCELLED,
    }),
    ToolState.AWAITING_APPROVAL: frozenset({
        ToolState.SCHEDULED, ToolState.ERROR, ToolState.CANCELLED,
    }),
    ToolState.EXECUTING: frozenset({ToolState.SUCCESS, ToolState.ERROR}),
    ToolState.SUCCESS: frozenset(),
    ToolState.ERROR: frozenset(),
    ToolState.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class ActionRequest:
    """A single desired browser operation. Immutable once created."""
    id: str
    kind: str
    params: Mapping[str, Any] = field(default_factory=dict)
    reasoning: Optional[str] = None

    @property
    def action_kind(self) -> Optional[ActionKind]:
        return known_kind(self.kind)

    @classmethod
    def create(cls, kind: str, params: Optional[Mapping[str, Any]] = None,
               reasoning: Optional[str] = None, id: Optional[str] = None) -> "ActionRequest":
        return cls(
            id=id or f"act-{uuid.uuid4().hex[:8]}",
            kind=normalize_kind(kind),
            params=dict(params or {}),
            reasoning=reasoning,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ActionRequest":
        """Build a request from decision-source JSON ({kind|tool|action, params, ...})."""
        kind = data.get("kind") or data.get("tool") or data.get("toolName") or data.get("action") or ""
        params = data.get("params")
        if params is None:
            params = {
                key: value for key, value in data.items()
                if key not in ("id", "kind", "tool", "toolName", "action", "reasoning")
            }
        return cls.create(
            kind=kind,
            params=params,
            reasoning=data.get("reasoning"),
            id=data.get("id"),
        )

    def describe(self) -> str:
        """Short human-readable description for logs and progress events."""
        params = self.params
        target = (
            params.get("element") or params.get("description") or params.get("label")
            or params.get("text") or params.get("ref") or params.get("selector")
            or params.get("url") or ""
        )
        return f"{self.kind}({target})" if target else self.kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "params": dict(self.params),
            "reasoning": self.reasoning,
        }


@dataclass
class ToolError:
    """Structured failure reported by a tool handler."""
    message: str
    recoverable: bool
    type: ErrorType = ErrorType.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "recoverable": self.recoverable, "type": self.type.value}


@dataclass
class ToolResult:
    """Result from a tool execution."""
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[ToolError] = None

    @classmethod
    def ok(cls, message: str, **data: Any) -> "ToolResult":
        return cls(success=True, message=message, data=data or None)

    @classmethod
    def fail(cls, message: str, recoverable: bool = True,
             error_type: ErrorType = ErrorType.UNKNOWN, detail: Optional[str] = None) -> "ToolResult":
        return cls(
            success=False,
            message=message,
            error=ToolError(message=detail or message, recoverable=recoverable, type=error_type),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "data": self.data,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class TrackedAction:
    """An ActionRequest wrapped with mutable execution state."""
    request: ActionRequest
    state: ToolState = ToolState.VALIDATING
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    result: Optional[ToolResult] = None
    error: Optional[str] = None
    attempt: int = 1
    approved: bool = False

    @property
    def id(self) -> str:
        if self.attempt == 1:
            return self.request.id
        return f"{self.request.id}~{self.attempt}"

    @property
    def recoverable(self) -> bool:
        if self.result and self.result.error:
            return self.result.error.recoverable
        return self.state != ToolState.ERROR

    @property
    def error_type(self) -> Optional[ErrorType]:
        if self.result and self.result.error:
            return self.result.error.type
        return None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time) * 1000)

    def transition(self, new_state: ToolState, result: Optional[ToolResult] = None) -> ToolState:
        """Move to new_state, enforcing the transition table. Returns the old state."""
        old_state = self.state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise InvalidTransitionError(self.id, old_state.value, new_state.value)

        self.state = new_state
        if result is not None:
            self.result = result
            if not result.success and result.error:
                self.error = result.error.message
        if new_state.is_terminal:
            self.end_time = time.time()
        return old_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request": self.request.to_dict(),
            "state": self.state.value,
            "attempt": self.attempt,
            "approved": self.approved,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


@dataclass
class ExecutionBatch:
    """Ordered actions selected for one execution pass."""
    actions: List[ActionRequest] = field(default_factory=list)
    has_barrier: bool = False
    risk_tiers: List[RiskTier] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.actions)

    def __bool__(self) -> bool:
        return bool(self.actions)

    @property
    def barrier(self) -> Optional[ActionRequest]:
        if self.has_barrier and self.actions:
            return self.actions[-1]
        return None

    def is_barrier(self, index: int) -> bool:
        """Whether the action at this position is the batch-ending barrier."""
        return self.has_barrier and index == len(self.actions) - 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actions": [a.to_dict() for a in self.actions],
            "has_barrier": self.has_barrier,
            "risk_tiers": [t.value for t in self.risk_tiers],
        }
