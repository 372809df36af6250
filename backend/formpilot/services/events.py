"""
FormPilot - Event Bus
Carries action state transitions and loop progress to observers (the logger,
WebSocket clients, tests) without the scheduler or loop knowing who listens.

Publishing is synchronous: subscribers are plain callables invoked in
subscription order. A subscriber that needs to do async work schedules it
itself (see api/v1/endpoints/websocket.py).
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from formpilot.models.actions import ToolState

logger = logging.getLogger(__name__)


class ProgressType(str, Enum):
    """Loop-level progress events."""
    CYCLE_STARTED = "cycle_started"
    BATCH_BUILT = "batch_built"
    ACTION_FAILED = "action_failed"
    DIFF_READY = "diff_ready"
    INTERVENTION_REQUIRED = "intervention_required"
    SESSION_RESUMED = "session_resumed"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    SESSION_CANCELLED = "session_cancelled"


@dataclass
class ActionStateEvent:
    """A tracked action moved between states."""
    action_id: str
    old_state: Optional[ToolState]
    new_state: ToolState
    message: str = ""
    session_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def type(self) -> str:
        return "action_state"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "session_id": self.session_id,
            "action_id": self.action_id,
            "old_state": self.old_state.value if self.old_state else None,
            "new_state": self.new_state.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }


@dataclass
class ProgressEvent:
    """Something happened at the loop level."""
    type: ProgressType
    session_id: Optional[str]
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }


Event = Union[ActionStateEvent, ProgressEvent]
Subscriber = Callable[[Event], None]


class EventBus:
    """In-process publish/subscribe channel."""

    def __init__(self, history_size: int = 500):
        self._subscribers: List[Subscriber] = []
        self.history: Deque[Event] = deque(maxlen=history_size)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Event) -> None:
        self.history.append(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"[EventBus] Subscriber {callback!r} failed on {event.type}")

    def events_for(self, session_id: str) -> List[Event]:
        return [e for e in self.history if e.session_id == session_id]


# =============================================================================
# Logging observer
# =============================================================================

_WARNING_PROGRESS = {
    ProgressType.ACTION_FAILED,
    ProgressType.INTERVENTION_REQUIRED,
    ProgressType.SESSION_FAILED,
}


def log_event(event: Event) -> None:
    """Write an event to the log at a level matching its severity."""
    session = event.session_id or "-"
    if isinstance(event, ActionStateEvent):
        old = event.old_state.value if event.old_state else "new"
        level = logging.WARNING if event.new_state == ToolState.ERROR else logging.DEBUG
        logger.log(
            level,
            f"[Session {session}] Action {event.action_id}: {old} -> {event.new_state.value}"
            + (f" ({event.message})" if event.message else ""),
        )
        return

    level = logging.WARNING if event.type in _WARNING_PROGRESS else logging.INFO
    logger.log(level, f"[Session {session}] {event.type.value}: {event.message}")


def attach_logging(bus: EventBus) -> Callable[[], None]:
    return bus.subscribe(log_event)
