"""
FormPilot - Execution Loop Service
Connects a decision source to the browser through the batch scheduler.

Each cycle:
1. Ask the decision source for actions (first cycle: full page snapshot,
   afterwards: the last diff summary)
2. Cut the list into one batch ending at the first barrier action
3. Snapshot, run the batch action by action, snapshot again
4. Diff the two snapshots and feed the summary into the next cycle

The loop stops when the decision source returns nothing (completed), when a
barrier fails or a person is needed (suspended until resumed), or when the
cycle budget runs out (failed).

SessionRunner drives loops as background tasks for the API: it owns the
browser for the session's lifetime and resumes the loop when the pending
intervention gets a response.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from formpilot.browser.backend import ExecutionBackend
from formpilot.browser.snapshot import PageSnapshot
from formpilot.browser.tools.registry import ToolRegistry, build_default_registry
from formpilot.core.config import get_settings
from formpilot.core.errors import (
    BarrierFailure,
    ErrorType,
    MaxCyclesExceeded,
)
from formpilot.models.actions import ActionKind, ExecutionBatch, ToolState, TrackedAction
from formpilot.models.session import (
    ActionOutcome,
    ApplicationSession,
    CycleRecord,
    SessionStatus,
)
from formpilot.services.batching import BatchBuilder
from formpilot.services.decision import DecisionContext, DecisionSource, LLMDecisionSource
from formpilot.services.diff import SnapshotDiffer
from formpilot.services.events import EventBus, ProgressEvent, ProgressType, attach_logging
from formpilot.services.intervention import (
    InterventionManager,
    InterventionStatus,
    InterventionType,
)
from formpilot.services.scheduler import ActionScheduler

settings = get_settings()
logger = logging.getLogger(__name__)


# In-memory session store (sessions do not outlive the process)
_session_store: Dict[str, ApplicationSession] = {}


def get_session(session_id: str) -> Optional[ApplicationSession]:
    """Get a session by ID."""
    return _session_store.get(session_id)


def list_sessions() -> List[ApplicationSession]:
    return list(_session_store.values())


def create_session(
    url: str,
    profile: Optional[Mapping[str, Any]] = None,
    max_cycles: Optional[int] = None,
    headless: Optional[bool] = None,
) -> ApplicationSession:
    """Create a new ApplicationSession entry in the in-memory store."""
    session = ApplicationSession(
        session_id=f"sess-{uuid.uuid4().hex[:12]}",
        url=url,
        profile=dict(profile or {}),
        max_cycles=max_cycles or settings.MAX_CYCLES,
        headless=headless,
    )
    _session_store[session.session_id] = session
    logger.info(f"[Execution] Created session {session.session_id} for {url}")
    return session


class ExecutionLoop:
    """Runs decide -> batch -> execute -> diff cycles for one session."""

    def __init__(
        self,
        session: ApplicationSession,
        decision_source: DecisionSource,
        backend: ExecutionBackend,
        registry: Optional[ToolRegistry] = None,
        event_bus: Optional[EventBus] = None,
        interventions: Optional[InterventionManager] = None,
        batch_builder: Optional[BatchBuilder] = None,
        differ: Optional[SnapshotDiffer] = None,
        action_timeout: Optional[float] = None,
        approval_timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
    ):
        self.session = session
        self.decision_source = decision_source
        self.backend = backend
        self.registry = registry or build_default_registry(settings.CONFIRM_SUBMISSIONS)
        self.event_bus = event_bus or EventBus()
        self.interventions = interventions
        self.batch_builder = batch_builder or BatchBuilder()
        self.differ = differ or SnapshotDiffer()
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.ACTION_RETRY_ATTEMPTS
        )
        self.scheduler = ActionScheduler(
            self.registry,
            backend,
            event_bus=self.event_bus,
            session_id=session.session_id,
            action_timeout=action_timeout,
            approval_timeout=approval_timeout,
        )

        self._context: Optional[DecisionContext] = None
        self._navigated = False
        self._cancelled = False

    # =========================================================================
    # Public API
    # =========================================================================

    async def run(self) -> ApplicationSession:
        """Start the session and drive it until it completes, suspends or fails."""
        if self.session.status != SessionStatus.PENDING:
            raise ValueError(f"Session {self.session.session_id} already started ({self.session.status.value})")

        self.session.status = SessionStatus.RUNNING
        self.session.started_at = datetime.now()
        logger.info(f"[ExecutionLoop] Starting session {self.session.session_id}: {self.session.url}")
        return await self._drive()

    async def resume(self, response: Optional[str] = None) -> ApplicationSession:
        """Continue a suspended session. The cycle budget carries over."""
        if self.session.status != SessionStatus.WAITING_INTERVENTION:
            raise ValueError(
                f"Session {self.session.session_id} is not suspended ({self.session.status.value})"
            )

        if response:
            if self.session.history:
                self.session.history[-1].intervention_response = response
            else:
                self.session.history.append(
                    CycleRecord(cycle=0, intervention_response=response)
                )

        self.session.status = SessionStatus.RUNNING
        self.session.pending_intervention = None
        self.session.error_type = None
        self.session.error_message = None
        self._progress(
            ProgressType.SESSION_RESUMED,
            f"Resumed at cycle {self.session.cycles_completed + 1}",
            response=response,
        )
        return await self._drive()

    def cancel(self) -> None:
        """Stop before the next action and cancel anything still pending."""
        self._cancelled = True
        self.scheduler.cancel_pending()
        if self.session.status in (SessionStatus.PENDING, SessionStatus.WAITING_INTERVENTION):
            self._finish_cancelled()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    # =========================================================================
    # Cycle driver
    # =========================================================================

    async def _drive(self) -> ApplicationSession:
        session = self.session

        while True:
            if self._cancelled:
                return self._finish_cancelled()

            if session.cycles_completed >= session.max_cycles:
                return self._fail(MaxCyclesExceeded(session.max_cycles))

            if self._context is None:
                initial = await self._initial_snapshot()
                if initial is None:
                    return session
                self._context = initial

            cycle = session.cycles_completed + 1
            self._progress(ProgressType.CYCLE_STARTED, f"Cycle {cycle}/{session.max_cycles}", cycle=cycle)

            try:
                decision = await self.decision_source.decide(self._context, list(session.history))
            except Exception as e:
                logger.exception(f"[ExecutionLoop] Decision source failed in cycle {cycle}")
                return self._suspend(
                    ErrorType.DECISION_FAILED,
                    f"Decision source failed: {e}",
                    InterventionType.ENGINE_ERROR,
                    "Decision source failed",
                )

            if self._cancelled:
                return self._finish_cancelled()

            if decision.is_complete:
                return self._complete()

            if decision.intervention is not None:
                return self._suspend(
                    None,
                    decision.intervention.reason,
                    InterventionType.ACTION_REQUESTED,
                    "Human action requested",
                    action=decision.intervention.action,
                )

            batch = self.batch_builder.build(decision.actions)
            dropped = len(self.batch_builder.remaining(decision.actions, batch))
            self._progress(
                ProgressType.BATCH_BUILT,
                f"{len(batch)} actions" + (f", barrier: {batch.barrier.kind}" if batch.barrier else "")
                + (f", {dropped} deferred" if dropped else ""),
                cycle=cycle,
                batch=batch.to_dict(),
                deferred=dropped,
            )

            try:
                before = await self.backend.capture_snapshot()
            except Exception as e:
                logger.exception("[ExecutionLoop] Could not capture snapshot before batch")
                return self._suspend(
                    ErrorType.SNAPSHOT_FAILED,
                    f"Snapshot failed: {e}",
                    InterventionType.ENGINE_ERROR,
                    "Page snapshot failed",
                )

            outcomes, barrier_action = await self._execute_batch(batch, cycle)

            record = CycleRecord(
                cycle=cycle,
                actions=[ActionOutcome.from_tracked(a) for a in outcomes],
                has_barrier=batch.has_barrier,
            )
            after = await self._capture_after()
            if after is not None:
                summary = self.differ.diff(before, after)
                record.diff = summary
                session.last_diff = summary
                self._context = summary
                self._progress(
                    ProgressType.DIFF_READY,
                    summary.describe().splitlines()[0],
                    cycle=cycle,
                    diff=summary.to_dict(),
                )

            session.history.append(record)
            session.cycles_completed = cycle
            self.scheduler.clear_completed()

            if self._cancelled:
                return self._finish_cancelled()

            if barrier_action is not None and barrier_action.state != ToolState.SUCCESS:
                failure = BarrierFailure(barrier_action)
                return self._suspend(
                    failure.error_type,
                    str(failure),
                    InterventionType.BARRIER_FAILURE,
                    f"{barrier_action.request.kind} failed",
                    action_id=barrier_action.id,
                )

            if after is None:
                return self._suspend(
                    ErrorType.SNAPSHOT_FAILED,
                    "Snapshot after batch failed",
                    InterventionType.ENGINE_ERROR,
                    "Page snapshot failed",
                )

            if barrier_action is not None and barrier_action.request.kind == ActionKind.HUMAN_INTERVENTION.value:
                data = (barrier_action.result.data or {}) if barrier_action.result else {}
                return self._suspend(
                    None,
                    data.get("reason", "Human action required"),
                    InterventionType.ACTION_REQUESTED,
                    "Human action requested",
                    action=data.get("action"),
                )

    async def _execute_batch(
        self,
        batch: ExecutionBatch,
        cycle: int,
    ) -> Tuple[List[TrackedAction], Optional[TrackedAction]]:
        """Run batch actions in order. Returns every attempt plus the barrier's final attempt."""
        attempts: List[TrackedAction] = []
        barrier_action: Optional[TrackedAction] = None

        for index, request in enumerate(batch.actions):
            if self._cancelled:
                break

            is_barrier = batch.is_barrier(index)
            action = self.scheduler.schedule(request)
            if action.state == ToolState.SCHEDULED:
                action = await self.scheduler.execute(action)

            retries = 0
            while (
                not is_barrier
                and action.state == ToolState.ERROR
                and action.recoverable
                and retries < self.retry_attempts
                and not self._cancelled
            ):
                attempts.append(action)
                retries += 1
                action = self.scheduler.retry(action)
                if action.state == ToolState.SCHEDULED:
                    action = await self.scheduler.execute(action)

            attempts.append(action)
            if is_barrier:
                barrier_action = action

            if action.state == ToolState.ERROR:
                self._progress(
                    ProgressType.ACTION_FAILED,
                    f"{request.describe()} failed: {action.error}",
                    cycle=cycle,
                    action_id=action.id,
                    recoverable=action.recoverable,
                    barrier=is_barrier,
                    error_type=action.error_type.value if action.error_type else None,
                )
                if is_barrier:
                    break

        return attempts, barrier_action

    async def _initial_snapshot(self) -> Optional[PageSnapshot]:
        try:
            if not self._navigated and self.session.url:
                await self.backend.navigate(self.session.url)
                self._navigated = True
            return await self.backend.capture_snapshot()
        except Exception as e:
            logger.exception(f"[ExecutionLoop] Could not load {self.session.url}")
            error_type = getattr(e, "error_type", ErrorType.SNAPSHOT_FAILED)
            self._suspend(
                error_type,
                f"Could not load the page: {e}",
                InterventionType.ENGINE_ERROR,
                "Page could not be loaded",
            )
            return None

    async def _capture_after(self) -> Optional[PageSnapshot]:
        try:
            return await self.backend.capture_snapshot()
        except Exception:
            logger.exception("[ExecutionLoop] Could not capture snapshot after batch")
            return None

    # =========================================================================
    # Session outcomes
    # =========================================================================

    def _progress(self, progress_type: ProgressType, message: str, **data: Any) -> None:
        self.event_bus.publish(ProgressEvent(
            type=progress_type,
            session_id=self.session.session_id,
            message=message,
            data={k: v for k, v in data.items() if v is not None},
        ))

    def _suspend(
        self,
        error_type: Optional[ErrorType],
        message: str,
        intervention_type: InterventionType,
        title: str,
        **context: Any,
    ) -> ApplicationSession:
        session = self.session
        session.status = SessionStatus.WAITING_INTERVENTION
        session.error_type = error_type.value if error_type else None
        session.error_message = message if error_type else None

        intervention_id = None
        if self.interventions is not None:
            intervention = self.interventions.create_intervention(
                task_id=session.session_id,
                intervention_type=intervention_type,
                title=title,
                message=message,
                context={
                    "cycle": session.cycles_completed,
                    "url": session.last_diff.after_url if session.last_diff else session.url,
                    **{k: v for k, v in context.items() if v is not None},
                },
            )
            intervention_id = intervention.id
        session.pending_intervention = intervention_id

        logger.warning(f"[ExecutionLoop] Session {session.session_id} suspended: {message}")
        self._progress(
            ProgressType.INTERVENTION_REQUIRED,
            message,
            intervention_id=intervention_id,
            intervention_type=intervention_type.value,
            error_type=session.error_type,
            **context,
        )
        return session

    def _complete(self) -> ApplicationSession:
        session = self.session
        session.status = SessionStatus.COMPLETED
        session.completed_at = datetime.now()
        logger.info(
            f"[ExecutionLoop] Session {session.session_id} completed after {session.cycles_completed} cycles"
        )
        self._progress(
            ProgressType.SESSION_COMPLETED,
            f"Form complete after {session.cycles_completed} cycles",
            cycles=session.cycles_completed,
        )
        return session

    def _fail(self, error: MaxCyclesExceeded) -> ApplicationSession:
        session = self.session
        session.status = SessionStatus.FAILED
        session.error_type = error.error_type.value
        session.error_message = str(error)
        session.completed_at = datetime.now()
        logger.error(f"[ExecutionLoop] Session {session.session_id} failed: {error}")
        self._progress(
            ProgressType.SESSION_FAILED,
            str(error),
            error_type=error.error_type.value,
            cycles=session.cycles_completed,
        )
        return session

    def _finish_cancelled(self) -> ApplicationSession:
        session = self.session
        if session.status == SessionStatus.CANCELLED:
            return session
        session.status = SessionStatus.CANCELLED
        session.completed_at = datetime.now()
        if session.pending_intervention and self.interventions is not None:
            intervention = self.interventions.get_intervention(session.pending_intervention)
            if intervention and intervention.status == InterventionStatus.PENDING:
                self.interventions.cancel_intervention(intervention.id)
        logger.info(f"[ExecutionLoop] Session {session.session_id} cancelled")
        self._progress(ProgressType.SESSION_CANCELLED, "Session cancelled")
        return session


# =============================================================================
# Background runner (used by the API)
# =============================================================================

BackendFactory = Callable[[ApplicationSession], Awaitable[ExecutionBackend]]
DecisionFactory = Callable[[ApplicationSession, ToolRegistry], DecisionSource]


async def _default_backend_factory(session: ApplicationSession) -> ExecutionBackend:
    from formpilot.agents.executor import BrowserAgent

    headless = session.headless if session.headless is not None else settings.PLAYWRIGHT_HEADLESS
    agent = BrowserAgent(headless=headless)
    await agent.launch_browser()
    return agent


def _default_decision_factory(session: ApplicationSession, registry: ToolRegistry) -> DecisionSource:
    return LLMDecisionSource(session.profile, tools_description=registry.describe())


class SessionRunner:
    """Runs execution loops as asyncio tasks and routes operator signals to them."""

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        interventions: Optional[InterventionManager] = None,
        backend_factory: Optional[BackendFactory] = None,
        decision_factory: Optional[DecisionFactory] = None,
    ):
        self.event_bus = event_bus or EventBus()
        self.interventions = interventions or InterventionManager()
        self.backend_factory = backend_factory or _default_backend_factory
        self.decision_factory = decision_factory or _default_decision_factory
        self._loops: Dict[str, ExecutionLoop] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        attach_logging(self.event_bus)

    def get_loop(self, session_id: str) -> Optional[ExecutionLoop]:
        return self._loops.get(session_id)

    def active_sessions(self) -> List[ApplicationSession]:
        return [loop.session for loop in self._loops.values() if not loop.session.status.is_finished]

    def start(self, session: ApplicationSession) -> asyncio.Task:
        """Launch the session's loop in the background."""
        if session.session_id in self._tasks:
            raise ValueError(f"Session {session.session_id} is already running")
        if session.status != SessionStatus.PENDING:
            raise ValueError(f"Session {session.session_id} already {session.status.value}")
        task = asyncio.create_task(self._run_session(session))
        self._tasks[session.session_id] = task
        return task

    async def _run_session(self, session: ApplicationSession) -> ApplicationSession:
        backend: Optional[ExecutionBackend] = None
        try:
            backend = await self.backend_factory(session)
            if session.status.is_finished:
                # cancelled while the browser was launching
                return session
            registry = build_default_registry(settings.CONFIRM_SUBMISSIONS)
            loop = ExecutionLoop(
                session,
                self.decision_factory(session, registry),
                backend,
                registry=registry,
                event_bus=self.event_bus,
                interventions=self.interventions,
            )
            self._loops[session.session_id] = loop

            await loop.run()
            while session.status == SessionStatus.WAITING_INTERVENTION and session.pending_intervention:
                intervention = await self.interventions.wait_for_response(session.pending_intervention)
                if session.status.is_finished:
                    break
                if intervention is None or intervention.status == InterventionStatus.CANCELLED:
                    loop.cancel()
                elif intervention.status == InterventionStatus.TIMEOUT:
                    session.status = SessionStatus.FAILED
                    session.error_type = ErrorType.TIMEOUT.value
                    session.error_message = "No response to intervention request"
                    session.completed_at = datetime.now()
                    self.event_bus.publish(ProgressEvent(
                        type=ProgressType.SESSION_FAILED,
                        session_id=session.session_id,
                        message=session.error_message,
                        data={"error_type": session.error_type},
                    ))
                else:
                    await loop.resume(intervention.response_text)
        except Exception as e:
            logger.exception(f"[SessionRunner] Session {session.session_id} crashed")
            session.status = SessionStatus.FAILED
            session.error_type = getattr(e, "error_type", ErrorType.UNKNOWN).value
            session.error_message = str(e)
            session.completed_at = datetime.now()
            self.event_bus.publish(ProgressEvent(
                type=ProgressType.SESSION_FAILED,
                session_id=session.session_id,
                message=f"Session crashed: {e}",
                data={"error_type": session.error_type},
            ))
        finally:
            close = getattr(backend, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception:
                    logger.exception(f"[SessionRunner] Failed to close backend for {session.session_id}")
            self._tasks.pop(session.session_id, None)
        return session

    def resume(self, session_id: str, response: Optional[str] = None) -> ApplicationSession:
        """Answer the session's pending intervention, which wakes its runner."""
        session = self._require(session_id)
        if session.status != SessionStatus.WAITING_INTERVENTION or not session.pending_intervention:
            raise ValueError(f"Session {session_id} is not waiting for intervention")
        self.interventions.complete_intervention(
            session.pending_intervention, {"message": response} if response else {},
        )
        return session

    def cancel(self, session_id: str) -> ApplicationSession:
        session = self._require(session_id)
        if session.status.is_finished:
            raise ValueError(f"Session {session_id} already {session.status.value}")
        loop = self._loops.get(session_id)
        if loop is not None:
            loop.cancel()
        else:
            session.status = SessionStatus.CANCELLED
            session.completed_at = datetime.now()
            self.event_bus.publish(ProgressEvent(
                type=ProgressType.SESSION_CANCELLED,
                session_id=session_id,
                message="Session cancelled",
            ))
        return session

    def _require(self, session_id: str) -> ApplicationSession:
        session = get_session(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        return session

    async def shutdown(self) -> None:
        """Cancel every running session task."""
        for loop in list(self._loops.values()):
            if not loop.session.status.is_finished:
                loop.cancel()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


_runner: Optional[SessionRunner] = None


def get_session_runner() -> SessionRunner:
    """Process-wide runner used by the API."""
    global _runner
    if _runner is None:
        _runner = SessionRunner()
    return _runner
