"""
FormPilot - Error Taxonomy

Errors raised or reported by the execution engine. Tool handlers report
failures as structured results (see ToolError); the exception classes below
are raised by backend primitives and by the scheduler/loop for contract
violations and loop-level failures.
"""

from enum import Enum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from formpilot.models.actions import TrackedAction


class ErrorType(str, Enum):
    """Types of failures surfaced by the engine."""
    ELEMENT_NOT_FOUND = "element_not_found"
    TIMEOUT = "timeout"
    INVALID_PARAMS = "invalid_params"
    NAVIGATION_FAILED = "navigation_failed"
    BARRIER_FAILURE = "barrier_failure"
    MAX_CYCLES_EXCEEDED = "max_cycles_exceeded"
    DECISION_FAILED = "decision_failed"
    SNAPSHOT_FAILED = "snapshot_failed"
    UNKNOWN = "unknown"


class FormPilotError(Exception):
    """Base class for all engine errors."""
    error_type: ErrorType = ErrorType.UNKNOWN
    recoverable: bool = False


class ActionValidationError(FormPilotError):
    """Bad parameters. Never retried, never reaches the backend."""
    error_type = ErrorType.INVALID_PARAMS
    recoverable = False


class ElementNotFoundError(FormPilotError):
    """Target element could not be resolved on the current page."""
    error_type = ErrorType.ELEMENT_NOT_FOUND
    recoverable = True


class ActionTimeoutError(FormPilotError):
    """A tool invocation or approval wait exceeded its timeout."""
    error_type = ErrorType.TIMEOUT
    recoverable = True


class NavigationError(FormPilotError):
    """The backend failed to load a URL."""
    error_type = ErrorType.NAVIGATION_FAILED
    recoverable = True


class DecisionError(FormPilotError):
    """The decision source failed to produce a usable decision."""
    error_type = ErrorType.DECISION_FAILED
    recoverable = True


class SnapshotError(FormPilotError):
    """Page state could not be captured."""
    error_type = ErrorType.SNAPSHOT_FAILED
    recoverable = True


class BarrierFailure(FormPilotError):
    """The action that ended a batch failed; the loop must re-plan."""
    error_type = ErrorType.BARRIER_FAILURE
    recoverable = False

    def __init__(self, action: "TrackedAction"):
        self.action = action
        reason = action.error or (action.result.message if action.result else "unknown error")
        super().__init__(
            f"Barrier action {action.id} ({action.request.kind}) failed: {reason}"
        )


class MaxCyclesExceeded(FormPilotError):
    """The loop hit its cycle budget without the decision source finishing."""
    error_type = ErrorType.MAX_CYCLES_EXCEEDED
    recoverable = False

    def __init__(self, max_cycles: int):
        self.max_cycles = max_cycles
        super().__init__(f"Exceeded maximum of {max_cycles} cycles")


class InvalidTransitionError(FormPilotError):
    """A tracked action was asked to make a transition the state machine forbids."""

    def __init__(self, action_id: str, old_state: str, new_state: str, detail: Optional[str] = None):
        self.action_id = action_id
        self.old_state = old_state
        self.new_state = new_state
        message = f"Action {action_id}: illegal transition {old_state} -> {new_state}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
