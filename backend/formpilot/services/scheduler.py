"""
FormPilot - Action Scheduler
Owns the lifecycle of every tracked action:

    VALIDATING -> SCHEDULED -> [AWAITING_APPROVAL -> SCHEDULED] -> EXECUTING
               -> SUCCESS | ERROR            (CANCELLED before EXECUTING)

- schedule(): looks up the tool and validates params (sync, never touches
  the browser).
- execute(): approval gate for confirmation-requiring tools, then the tool
  handler under the per-action timeout.
- approve()/cancel(): signals from API handlers, delivered through
  asyncio.Events to the waiting execute().

Every transition is published on the event bus as an ActionStateEvent.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from formpilot.browser.backend import ExecutionBackend
from formpilot.browser.tools.registry import ToolRegistry
from formpilot.core.config import get_settings
from formpilot.core.errors import ErrorType, InvalidTransitionError
from formpilot.models.actions import ActionRequest, ToolResult, ToolState, TrackedAction
from formpilot.services.events import ActionStateEvent, EventBus

logger = logging.getLogger(__name__)
settings = get_settings()


class ActionScheduler:
    """Validates, gates and runs actions one at a time."""

    def __init__(
        self,
        registry: ToolRegistry,
        backend: ExecutionBackend,
        event_bus: Optional[EventBus] = None,
        session_id: Optional[str] = None,
        action_timeout: Optional[float] = None,
        approval_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.backend = backend
        self.event_bus = event_bus or EventBus()
        self.session_id = session_id
        self.action_timeout = action_timeout if action_timeout is not None else settings.ACTION_TIMEOUT_SECONDS
        self.approval_timeout = (
            approval_timeout if approval_timeout is not None else settings.APPROVAL_TIMEOUT_SECONDS
        )

        self._actions: Dict[str, TrackedAction] = {}
        self._approval_events: Dict[str, asyncio.Event] = {}

    # =========================================================================
    # State bookkeeping
    # =========================================================================

    def _emit(self, action: TrackedAction, old_state: Optional[ToolState], message: str = "") -> None:
        self.event_bus.publish(ActionStateEvent(
            action_id=action.id,
            old_state=old_state,
            new_state=action.state,
            message=message,
            session_id=self.session_id,
        ))

    def _transition(
        self,
        action: TrackedAction,
        new_state: ToolState,
        result: Optional[ToolResult] = None,
        message: str = "",
    ) -> None:
        old_state = action.transition(new_state, result=result)
        self._emit(action, old_state, message or (result.message if result else ""))

    def _reject(self, action: TrackedAction, message: str) -> TrackedAction:
        logger.info(f"[Scheduler] Rejected {action.id} ({action.request.kind}): {message}")
        self._transition(
            action,
            ToolState.ERROR,
            result=ToolResult.fail(message, recoverable=False, error_type=ErrorType.INVALID_PARAMS),
        )
        return action

    # =========================================================================
    # Public API
    # =========================================================================

    def schedule(self, request: ActionRequest, attempt: int = 1) -> TrackedAction:
        """Create a tracked action and validate it. Returns it SCHEDULED or ERROR."""
        action = TrackedAction(request=request, attempt=attempt)
        existing = self._actions.get(action.id)
        if existing is not None and not existing.state.is_terminal:
            raise ValueError(f"Action {action.id} is already in flight ({existing.state.value})")

        self._actions[action.id] = action
        self._emit(action, None, f"Validating {request.describe()}")

        tool = self.registry.get(request.kind)
        if tool is None:
            return self._reject(action, f"Unknown action kind: {request.kind}")

        error = tool.validate_params(request.params)
        if error:
            return self._reject(action, f"Invalid parameters for {tool.name}: {error}")

        self._transition(action, ToolState.SCHEDULED, message="Parameters valid")
        return action

    async def execute(self, action: TrackedAction) -> TrackedAction:
        """Run a SCHEDULED action through the approval gate and its tool."""
        if action.state != ToolState.SCHEDULED:
            raise InvalidTransitionError(
                action.id, action.state.value, ToolState.EXECUTING.value,
                "only scheduled actions can be executed",
            )

        tool = self.registry.get(action.request.kind)
        if tool is None:
            raise InvalidTransitionError(
                action.id, action.state.value, ToolState.EXECUTING.value, "tool no longer registered",
            )

        if tool.requires_confirmation(action.request.params) and not action.approved:
            if not await self._wait_for_approval(action):
                return action

        self._transition(action, ToolState.EXECUTING, message=f"Executing {action.request.describe()}")
        try:
            result = await asyncio.wait_for(
                tool.execute(action.request.params, self.backend),
                timeout=self.action_timeout,
            )
        except asyncio.TimeoutError:
            result = ToolResult.fail(
                f"{tool.name} timed out after {self.action_timeout:g}s",
                recoverable=True,
                error_type=ErrorType.TIMEOUT,
            )
        except asyncio.CancelledError:
            self._transition(action, ToolState.ERROR, result=ToolResult.fail(
                f"{tool.name} was interrupted", recoverable=True,
            ))
            raise
        except Exception as e:
            logger.exception(f"[Scheduler] Tool {tool.name} raised while executing {action.id}")
            result = ToolResult.fail(
                f"{tool.name} raised {type(e).__name__}: {e}",
                recoverable=True,
                error_type=ErrorType.UNKNOWN,
            )

        new_state = ToolState.SUCCESS if result.success else ToolState.ERROR
        self._transition(action, new_state, result=result)
        return action

    async def _wait_for_approval(self, action: TrackedAction) -> bool:
        """Block until approved. False when the action timed out or was cancelled."""
        self._transition(action, ToolState.AWAITING_APPROVAL, message="Waiting for operator approval")
        event = self._approval_events.setdefault(action.id, asyncio.Event())
        logger.info(f"[Scheduler] {action.id} awaiting approval: {action.request.describe()}")

        try:
            await asyncio.wait_for(event.wait(), timeout=self.approval_timeout)
        except asyncio.TimeoutError:
            if action.state == ToolState.AWAITING_APPROVAL:
                self._transition(action, ToolState.ERROR, result=ToolResult.fail(
                    f"No approval within {self.approval_timeout:g}s",
                    recoverable=True,
                    error_type=ErrorType.TIMEOUT,
                ))
            return False
        finally:
            self._approval_events.pop(action.id, None)

        return action.state == ToolState.SCHEDULED

    def approve(self, action_id: str) -> TrackedAction:
        """Approve an action. Works before it reaches the gate, too."""
        action = self.get(action_id)
        if action.state == ToolState.AWAITING_APPROVAL:
            action.approved = True
            self._transition(action, ToolState.SCHEDULED, message="Approved")
            event = self._approval_events.get(action_id)
            if event:
                event.set()
        elif action.state in (ToolState.VALIDATING, ToolState.SCHEDULED):
            action.approved = True
        else:
            raise InvalidTransitionError(
                action_id, action.state.value, ToolState.SCHEDULED.value, "nothing to approve",
            )
        logger.info(f"[Scheduler] Approved {action_id}")
        return action

    def cancel(self, action_id: str) -> TrackedAction:
        """Cancel an action that hasn't started executing."""
        action = self.get(action_id)
        if action.state == ToolState.EXECUTING:
            raise InvalidTransitionError(
                action_id, action.state.value, ToolState.CANCELLED.value, "already executing",
            )
        self._transition(action, ToolState.CANCELLED, message="Cancelled")
        event = self._approval_events.get(action_id)
        if event:
            event.set()
        logger.info(f"[Scheduler] Cancelled {action_id}")
        return action

    def cancel_pending(self) -> List[TrackedAction]:
        """Cancel every action that can still be cancelled."""
        cancelled = []
        for action in list(self._actions.values()):
            if action.state in (ToolState.VALIDATING, ToolState.SCHEDULED, ToolState.AWAITING_APPROVAL):
                cancelled.append(self.cancel(action.id))
        return cancelled

    def retry(self, action: TrackedAction) -> TrackedAction:
        """Schedule a fresh attempt of a failed action."""
        if not action.state.is_terminal:
            raise InvalidTransitionError(
                action.id, action.state.value, ToolState.VALIDATING.value,
                "only finished actions can be retried",
            )
        logger.info(f"[Scheduler] Retrying {action.request.id} (attempt {action.attempt + 1})")
        return self.schedule(action.request, attempt=action.attempt + 1)

    def get(self, action_id: str) -> TrackedAction:
        try:
            return self._actions[action_id]
        except KeyError:
            raise KeyError(f"Unknown action: {action_id}") from None

    def actions(self) -> List[TrackedAction]:
        return list(self._actions.values())

    def awaiting_approval(self) -> List[TrackedAction]:
        return [a for a in self._actions.values() if a.state == ToolState.AWAITING_APPROVAL]

    def clear_completed(self) -> int:
        """Forget terminal actions. Returns how many were removed."""
        done = [aid for aid, a in self._actions.items() if a.state.is_terminal]
        for aid in done:
            del self._actions[aid]
        return len(done)
