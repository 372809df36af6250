"""End-to-end cycles of the execution loop against the in-memory page."""

import asyncio

import pytest

from conftest import application_form, click, fill, wait_until

from formpilot.core.errors import ErrorType, NavigationError
from formpilot.models.actions import ActionRequest, ToolState
from formpilot.models.session import ApplicationSession, SessionStatus
from formpilot.services.decision import Decision, HumanInterventionRequest, ScriptedDecisionSource
from formpilot.services.diff import DiffSummary
from formpilot.services.events import ProgressEvent, ProgressType
from formpilot.services.execution import ExecutionLoop, SessionRunner, create_session
from formpilot.services.intervention import InterventionManager, InterventionType


def _session(max_cycles=30):
    return ApplicationSession(
        session_id="sess-test",
        url="https://jobs.example.com/apply",
        profile={"name": "Jane Doe", "email": "jane@example.com"},
        max_cycles=max_cycles,
    )


def _progress(bus):
    return [e.type for e in bus.history if isinstance(e, ProgressEvent)]


def _submit_script():
    return [
        [
            fill("textbox:Full name#0", "Jane Doe"),
            fill("textbox:Email#0", "jane@example.com"),
            click("button:Submit application#0", text="Submit application"),
        ],
        [],
    ]


def test_fill_and_submit_completes(registry, bus):
    backend = application_form()
    source = ScriptedDecisionSource(_submit_script())
    loop = ExecutionLoop(_session(), source, backend, registry=registry, event_bus=bus)

    session = asyncio.run(loop.run())

    assert session.status == SessionStatus.COMPLETED
    assert session.cycles_completed == 1
    record = session.history[0]
    assert record.has_barrier
    assert [a.state for a in record.actions] == ["success", "success", "success"]
    assert record.diff.url_changed
    assert backend.operations() == ["navigate", "fill", "fill", "click"]

    # first decision sees the whole page, the next one only the diff
    assert len(source.calls) == 2
    assert source.calls[0].url == "https://jobs.example.com/apply"
    assert isinstance(source.calls[1], DiffSummary)
    assert ProgressType.SESSION_COMPLETED in _progress(bus)


def test_failed_barrier_suspends_after_diff(registry, bus):
    backend = application_form()
    backend.missing.add("button:Submit application#0")
    source = ScriptedDecisionSource(_submit_script())
    interventions = InterventionManager()
    loop = ExecutionLoop(
        _session(), source, backend,
        registry=registry, event_bus=bus, interventions=interventions,
    )

    session = asyncio.run(loop.run())

    assert session.status == SessionStatus.WAITING_INTERVENTION
    assert session.error_type == ErrorType.BARRIER_FAILURE.value
    assert "Barrier action" in session.error_message
    # the diff was still produced and no new cycle started
    assert session.history[0].diff is not None
    assert session.last_diff is session.history[0].diff
    assert len(source.calls) == 1

    pending = interventions.get_pending_interventions("sess-test")
    assert len(pending) == 1
    assert pending[0].intervention_type == InterventionType.BARRIER_FAILURE
    assert session.pending_intervention == pending[0].id


def test_empty_decision_completes_without_batch(registry, bus):
    backend = application_form()
    loop = ExecutionLoop(_session(), ScriptedDecisionSource([[]]), backend, registry=registry, event_bus=bus)

    session = asyncio.run(loop.run())

    assert session.status == SessionStatus.COMPLETED
    assert session.cycles_completed == 0
    assert ProgressType.BATCH_BUILT not in _progress(bus)
    assert backend.operations() == ["navigate"]


def test_human_intervention_action_suspends_until_resumed(registry, bus):
    backend = application_form()
    source = ScriptedDecisionSource([
        [ActionRequest.create("human_intervention", {"reason": "CAPTCHA", "action": "Solve the puzzle"})],
        [fill("textbox:Full name#0", "Jane Doe")],
        [],
    ])
    interventions = InterventionManager()
    loop = ExecutionLoop(
        _session(), source, backend,
        registry=registry, event_bus=bus, interventions=interventions,
    )

    session = asyncio.run(loop.run())

    assert session.status == SessionStatus.WAITING_INTERVENTION
    assert session.error_type is None
    assert ProgressType.INTERVENTION_REQUIRED in _progress(bus)
    assert len(source.calls) == 1
    assert backend.operations() == ["navigate"]
    request = interventions.get_intervention(session.pending_intervention)
    assert request.intervention_type == InterventionType.ACTION_REQUESTED
    assert request.message == "CAPTCHA"

    session = asyncio.run(loop.resume("Solved it"))

    assert session.status == SessionStatus.COMPLETED
    assert session.history[0].intervention_response == "Solved it"
    assert session.cycles_completed == 2
    assert backend.value("textbox:Full name#0") == "Jane Doe"
    assert ProgressType.SESSION_RESUMED in _progress(bus)


def test_decision_level_intervention_runs_nothing(registry):
    backend = application_form()
    source = ScriptedDecisionSource([
        Decision(intervention=HumanInterventionRequest(reason="Salary expectation unknown")),
    ])
    loop = ExecutionLoop(_session(), source, backend, registry=registry)

    session = asyncio.run(loop.run())

    assert session.status == SessionStatus.WAITING_INTERVENTION
    assert session.cycles_completed == 0
    assert backend.operations() == ["navigate"]


class EndlessSource:
    """Always has one more field to fill."""

    def __init__(self):
        self.calls = 0

    async def decide(self, context, history):
        self.calls += 1
        return Decision.of([fill("textbox:Full name#0", f"Jane {self.calls}")])


def test_cycle_budget_stops_endless_source(registry, bus):
    backend = application_form()
    source = EndlessSource()
    loop = ExecutionLoop(_session(max_cycles=30), source, backend, registry=registry, event_bus=bus)

    session = asyncio.run(loop.run())

    assert session.status == SessionStatus.FAILED
    assert session.error_type == ErrorType.MAX_CYCLES_EXCEEDED.value
    assert session.cycles_completed == 30
    assert source.calls == 30
    assert _progress(bus)[-1] == ProgressType.SESSION_FAILED


def test_actions_after_barrier_are_deferred(registry, bus):
    backend = application_form()
    cover_letter = backend.add("textbox", "Cover letter")
    source = ScriptedDecisionSource([
        [
            fill("textbox:Full name#0", "Jane Doe"),
            ActionRequest.create("click", {"ref": "button:Submit application#0"}),
            fill(cover_letter, "Hello"),
        ],
    ])
    loop = ExecutionLoop(_session(), source, backend, registry=registry, event_bus=bus)

    asyncio.run(loop.run())

    assert backend.operations() == ["navigate", "fill", "click"]
    built = next(e for e in bus.history if isinstance(e, ProgressEvent) and e.type == ProgressType.BATCH_BUILT)
    assert built.data["deferred"] == 1


def test_recoverable_errors_do_not_halt_batch(registry):
    backend = application_form()
    source = ScriptedDecisionSource([
        [fill("textbox:Middle name#0", "Q"), fill("textbox:Email#0", "jane@example.com")],
    ])
    loop = ExecutionLoop(_session(), source, backend, registry=registry)

    session = asyncio.run(loop.run())

    assert session.status == SessionStatus.COMPLETED
    assert [a.state for a in session.history[0].actions] == ["error", "success"]
    assert session.history[0].actions[0].recoverable
    assert backend.value("textbox:Email#0") == "jane@example.com"


def test_recoverable_errors_are_retried_as_new_actions(registry):
    backend = application_form()
    backend.fail_once.add("textbox:Email#0")
    request = fill("textbox:Email#0", "jane@example.com")
    loop = ExecutionLoop(_session(), ScriptedDecisionSource([[request]]), backend,
                         registry=registry, retry_attempts=1)

    session = asyncio.run(loop.run())

    outcomes = session.history[0].actions
    assert [(o.id, o.state) for o in outcomes] == [
        (request.id, "error"),
        (f"{request.id}~2", "success"),
    ]


def test_decision_failure_suspends(registry):
    backend = application_form()
    source = ScriptedDecisionSource([RuntimeError("model unavailable")])
    loop = ExecutionLoop(_session(), source, backend, registry=registry)

    session = asyncio.run(loop.run())

    assert session.status == SessionStatus.WAITING_INTERVENTION
    assert session.error_type == ErrorType.DECISION_FAILED.value


def test_unreachable_page_suspends(registry):
    backend = application_form()
    backend.navigate_error = NavigationError("HTTP 503")
    loop = ExecutionLoop(_session(), ScriptedDecisionSource([[]]), backend, registry=registry)

    session = asyncio.run(loop.run())

    assert session.status == SessionStatus.WAITING_INTERVENTION
    assert session.error_type == ErrorType.NAVIGATION_FAILED.value


def test_submit_waits_for_approval_then_completes(gated_registry, bus):
    backend = application_form()
    loop = ExecutionLoop(_session(), ScriptedDecisionSource(_submit_script()), backend,
                         registry=gated_registry, event_bus=bus)

    async def scenario():
        task = asyncio.create_task(loop.run())
        await wait_until(lambda: bool(loop.scheduler.awaiting_approval()))
        assert backend.operations() == ["navigate", "fill", "fill"]
        loop.scheduler.approve(loop.scheduler.awaiting_approval()[0].id)
        return await task

    session = asyncio.run(scenario())

    assert session.status == SessionStatus.COMPLETED
    assert backend.url.endswith("/thanks")


def test_cancel_during_approval_cancels_session(gated_registry):
    backend = application_form()
    loop = ExecutionLoop(_session(), ScriptedDecisionSource(_submit_script()), backend,
                         registry=gated_registry)

    async def scenario():
        task = asyncio.create_task(loop.run())
        await wait_until(lambda: bool(loop.scheduler.awaiting_approval()))
        pending = loop.scheduler.awaiting_approval()[0]
        loop.cancel()
        session = await task
        return session, pending

    session, pending = asyncio.run(scenario())

    assert session.status == SessionStatus.CANCELLED
    assert pending.state == ToolState.CANCELLED
    assert "click" not in backend.operations()


def test_run_twice_is_rejected(registry):
    loop = ExecutionLoop(_session(), ScriptedDecisionSource([[]]), application_form(), registry=registry)
    asyncio.run(loop.run())
    with pytest.raises(ValueError, match="already started"):
        asyncio.run(loop.run())


def test_ref_only_submit_still_needs_approval(gated_registry):
    backend = application_form()
    source = ScriptedDecisionSource([
        [
            fill("textbox:Full name#0", "Jane Doe"),
            ActionRequest.create("click", {"ref": "button:Submit application#0"}),
        ],
    ])
    loop = ExecutionLoop(_session(), source, backend, registry=gated_registry, approval_timeout=0.05)

    session = asyncio.run(loop.run())

    assert "click" not in backend.operations()
    assert not backend.url.endswith("/thanks")
    assert session.status == SessionStatus.WAITING_INTERVENTION
    assert session.error_type == ErrorType.BARRIER_FAILURE.value


def test_cancel_while_browser_launches_stays_cancelled(bus):
    launched = []

    async def slow_backend(session):
        await asyncio.sleep(0.05)
        backend = application_form()
        launched.append(backend)
        return backend

    runner = SessionRunner(
        event_bus=bus,
        backend_factory=slow_backend,
        decision_factory=lambda session, registry: ScriptedDecisionSource([[]]),
    )
    session = create_session("https://jobs.example.com/apply")

    async def scenario():
        task = runner.start(session)
        await asyncio.sleep(0.01)
        runner.cancel(session.session_id)
        return await task

    result = asyncio.run(scenario())

    assert result.status == SessionStatus.CANCELLED
    assert result.error_type is None
    assert launched[0].closed
    assert launched[0].operations() == []
    assert ProgressType.SESSION_CANCELLED in _progress(bus)
    assert ProgressType.SESSION_FAILED not in _progress(bus)


def test_runner_refuses_to_start_twice():
    async def backend_factory(session):
        return application_form()

    runner = SessionRunner(
        backend_factory=backend_factory,
        decision_factory=lambda session, registry: ScriptedDecisionSource([[]]),
    )
    session = create_session("https://jobs.example.com/apply")

    async def scenario():
        task = runner.start(session)
        with pytest.raises(ValueError, match="already running"):
            runner.start(session)
        return await task

    assert asyncio.run(scenario()).status == SessionStatus.COMPLETED
    with pytest.raises(ValueError, match="already completed"):
        runner.start(session)
