"""
FormPilot - Session Models
ApplicationSession tracks one run of the execution loop against one form;
CycleRecord is the per-cycle history handed back to the decision source.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from formpilot.models.actions import TrackedAction

if TYPE_CHECKING:
    from formpilot.services.diff import DiffSummary


class SessionStatus(str, Enum):
    """Status of an application session."""
    PENDING = "pending"
    RUNNING = "running"
    WAITING_INTERVENTION = "waiting_intervention"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_finished(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)


@dataclass
class ActionOutcome:
    """How one action in a cycle ended."""
    id: str
    kind: str
    state: str
    message: str
    recoverable: bool

    @classmethod
    def from_tracked(cls, action: TrackedAction) -> "ActionOutcome":
        message = action.result.message if action.result else (action.error or "")
        return cls(
            id=action.id,
            kind=action.request.kind,
            state=action.state.value,
            message=message,
            recoverable=action.recoverable,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "state": self.state,
            "message": self.message,
            "recoverable": self.recoverable,
        }


@dataclass
class CycleRecord:
    """One decide -> batch -> diff cycle."""
    cycle: int
    actions: List[ActionOutcome] = field(default_factory=list)
    has_barrier: bool = False
    diff: Optional["DiffSummary"] = None
    intervention_response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "actions": [a.to_dict() for a in self.actions],
            "has_barrier": self.has_barrier,
            "diff": self.diff.to_dict() if self.diff else None,
            "intervention_response": self.intervention_response,
        }


@dataclass
class ApplicationSession:
    """State of one form-filling run."""
    session_id: str
    url: str
    profile: Dict[str, Any] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.PENDING
    max_cycles: int = 30
    headless: Optional[bool] = None
    cycles_completed: int = 0
    history: List[CycleRecord] = field(default_factory=list)
    last_diff: Optional["DiffSummary"] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    pending_intervention: Optional[str] = None  # intervention_id
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self, include_history: bool = True) -> Dict[str, Any]:
        data = {
            "session_id": self.session_id,
            "url": self.url,
            "status": self.status.value,
            "max_cycles": self.max_cycles,
            "cycles_completed": self.cycles_completed,
            "last_diff": self.last_diff.to_dict() if self.last_diff else None,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "pending_intervention": self.pending_intervention,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if include_history:
            data["history"] = [record.to_dict() for record in self.history]
        return data
