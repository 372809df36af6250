"""
FormPilot - Human-in-the-Loop Intervention Service
Handles the points where a suspended session needs a person: a requested
takeover (CAPTCHA, login wall, a question the profile can't answer), a failed
submission, or an engine error.

Features:
1. Intervention request creation when a session suspends
2. Human response handling (respond / cancel)
3. Async wait for a response, with timeout

Requests live in process memory, keyed by id; the session id is carried as
task_id so one session's requests can be listed together.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from formpilot.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# Operator notes, passed on to the next decision
NOTES_FIELD = {"name": "message", "type": "textarea", "label": "Notes for the agent", "required": False}


class InterventionType(str, Enum):
    """Why a person is needed."""
    ACTION_REQUESTED = "action_requested"       # human_intervention action or decision
    BARRIER_FAILURE = "barrier_failure"
    ENGINE_ERROR = "engine_error"               # decision/snapshot failure


class InterventionStatus(str, Enum):
    """Status of an intervention request."""
    PENDING = "pending"
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class InterventionRequest:
    """A request for human intervention."""
    id: str
    task_id: str
    intervention_type: InterventionType
    title: str
    message: str
    status: InterventionStatus
    context: Dict[str, Any] = field(default_factory=dict)
    input_fields: List[Dict[str, Any]] = field(default_factory=lambda: [dict(NOTES_FIELD)])
    timeout_seconds: int = 600
    created_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    response: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "intervention_type": self.intervention_type.value,
            "title": self.title,
            "message": self.message,
            "status": self.status.value,
            "context": self.context,
            "input_fields": self.input_fields,
            "timeout_seconds": self.timeout_seconds,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "response": self.response,
        }

    def is_expired(self) -> bool:
        """Check if intervention request has timed out."""
        if self.status != InterventionStatus.PENDING:
            return False
        expiry_time = self.created_at + timedelta(seconds=self.timeout_seconds)
        return datetime.utcnow() > expiry_time

    @property
    def response_text(self) -> Optional[str]:
        """The free-text part of a response, if any."""
        if not self.response:
            return None
        for key in ("message", "answer", "response", "notes"):
            if self.response.get(key):
                return str(self.response[key])
        return ", ".join(f"{k}={v}" for k, v in self.response.items())


class InterventionManager:
    """
    Manages human intervention workflow.

    Waiters block on an asyncio.Event per request; respond/cancel set it.
    """

    def __init__(self):
        self._interventions: Dict[str, InterventionRequest] = {}
        self._events: Dict[str, asyncio.Event] = {}

    def create_intervention(
        self,
        task_id: str,
        intervention_type: InterventionType,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[int] = None,
    ) -> InterventionRequest:
        """Create and store a new intervention request."""
        request = InterventionRequest(
            id=str(uuid.uuid4()),
            task_id=task_id,
            intervention_type=intervention_type,
            title=title,
            message=message,
            status=InterventionStatus.PENDING,
            context=context or {},
            timeout_seconds=timeout_seconds or settings.INTERVENTION_TIMEOUT_SECONDS,
        )
        self._interventions[request.id] = request
        logger.info(f"[Intervention] Created {request.id} for {task_id}: {title}")
        return request

    def get_intervention(self, intervention_id: str) -> Optional[InterventionRequest]:
        intervention = self._interventions.get(intervention_id)
        if intervention and intervention.is_expired():
            self._finish(intervention, InterventionStatus.TIMEOUT)
        return intervention

    def get_pending_interventions(self, task_id: Optional[str] = None) -> List[InterventionRequest]:
        """All pending requests, optionally for one session."""
        pending = []
        for intervention_id in list(self._interventions):
            intervention = self.get_intervention(intervention_id)
            if intervention and intervention.status == InterventionStatus.PENDING:
                if task_id is None or intervention.task_id == task_id:
                    pending.append(intervention)
        return pending

    def complete_intervention(
        self,
        intervention_id: str,
        response: Dict[str, Any],
    ) -> Optional[InterventionRequest]:
        """
        Complete an intervention with the user's response.

        Returns None for unknown ids; raises ValueError when the request is
        no longer pending.
        """
        intervention = self.get_intervention(intervention_id)
        if not intervention:
            return None
        if intervention.status != InterventionStatus.PENDING:
            raise ValueError(f"Intervention {intervention_id} is {intervention.status.value}")

        intervention.response = response
        self._finish(intervention, InterventionStatus.COMPLETED)
        logger.info(f"[Intervention] Completed {intervention_id}")
        return intervention

    def cancel_intervention(self, intervention_id: str) -> Optional[InterventionRequest]:
        intervention = self.get_intervention(intervention_id)
        if not intervention:
            return None
        if intervention.status != InterventionStatus.PENDING:
            raise ValueError(f"Intervention {intervention_id} is {intervention.status.value}")

        self._finish(intervention, InterventionStatus.CANCELLED)
        logger.info(f"[Intervention] Cancelled {intervention_id}")
        return intervention

    async def wait_for_response(
        self,
        intervention_id: str,
        timeout_seconds: Optional[float] = None,
    ) -> Optional[InterventionRequest]:
        """
        Wait until the intervention is completed, cancelled or times out.

        Returns the request in its final state, or None for unknown ids.
        """
        intervention = self.get_intervention(intervention_id)
        if not intervention:
            return None
        if intervention.status != InterventionStatus.PENDING:
            return intervention

        timeout = timeout_seconds if timeout_seconds is not None else intervention.timeout_seconds
        event = self._events.setdefault(intervention_id, asyncio.Event())
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            if intervention.status == InterventionStatus.PENDING:
                self._finish(intervention, InterventionStatus.TIMEOUT)
                logger.warning(f"[Intervention] {intervention_id} timed out after {timeout}s")
        return intervention

    def _finish(self, intervention: InterventionRequest, status: InterventionStatus) -> None:
        intervention.status = status
        intervention.completed_at = datetime.utcnow()
        event = self._events.pop(intervention.id, None)
        if event:
            event.set()
