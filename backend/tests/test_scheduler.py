"""Action state machine: validation, approval gate, timeouts, cancel, retry."""

import asyncio

import pytest

from conftest import application_form, click, fill, wait_until

from formpilot.core.errors import ErrorType, InvalidTransitionError
from formpilot.models.actions import ActionRequest, ToolResult, ToolState, TrackedAction
from formpilot.services.events import ActionStateEvent
from formpilot.services.scheduler import ActionScheduler


def _transitions(bus, action_id):
    return [
        (e.old_state, e.new_state)
        for e in bus.history
        if isinstance(e, ActionStateEvent) and e.action_id == action_id
    ]


def test_successful_action_walks_every_state(registry, bus):
    backend = application_form()
    scheduler = ActionScheduler(registry, backend, event_bus=bus, session_id="sess-1")
    request = fill("textbox:Full name#0", "Jane Doe")

    action = scheduler.schedule(request)
    assert action.state == ToolState.SCHEDULED
    asyncio.run(scheduler.execute(action))

    assert action.state == ToolState.SUCCESS
    assert backend.value("textbox:Full name#0") == "Jane Doe"
    assert _transitions(bus, request.id) == [
        (None, ToolState.VALIDATING),
        (ToolState.VALIDATING, ToolState.SCHEDULED),
        (ToolState.SCHEDULED, ToolState.EXECUTING),
        (ToolState.EXECUTING, ToolState.SUCCESS),
    ]
    assert all(e.session_id == "sess-1" for e in bus.history)


def test_validation_failure_never_touches_backend(registry, bus):
    backend = application_form()
    scheduler = ActionScheduler(registry, backend, event_bus=bus)

    action = scheduler.schedule(ActionRequest.create("fill_field", {"value": "x"}))

    assert action.state == ToolState.ERROR
    assert not action.recoverable
    assert action.error_type == ErrorType.INVALID_PARAMS
    assert backend.calls == []
    with pytest.raises(InvalidTransitionError):
        asyncio.run(scheduler.execute(action))


def test_unknown_kind_is_rejected(registry):
    scheduler = ActionScheduler(registry, application_form())
    action = scheduler.schedule(ActionRequest.create("teleport", {"to": "mars"}))

    assert action.state == ToolState.ERROR
    assert "Unknown action kind" in action.error


def test_backend_failure_is_recoverable_error(registry):
    backend = application_form()
    scheduler = ActionScheduler(registry, backend)
    action = scheduler.schedule(fill("textbox:Middle name#0", "Q"))
    asyncio.run(scheduler.execute(action))

    assert action.state == ToolState.ERROR
    assert action.recoverable
    assert action.error_type == ErrorType.ELEMENT_NOT_FOUND


def test_slow_action_times_out(registry):
    backend = application_form()
    backend.delay = 1.0
    scheduler = ActionScheduler(registry, backend, action_timeout=0.05)
    action = scheduler.schedule(fill("textbox:Email#0", "jane@example.com"))
    asyncio.run(scheduler.execute(action))

    assert action.state == ToolState.ERROR
    assert action.error_type == ErrorType.TIMEOUT
    assert action.recoverable


def test_terminal_states_are_final():
    action = TrackedAction(request=fill("textbox:Email#0", "x"))
    action.transition(ToolState.SCHEDULED)
    action.transition(ToolState.EXECUTING)
    action.transition(ToolState.SUCCESS, result=ToolResult.ok("done"))

    for state in ToolState:
        with pytest.raises(InvalidTransitionError):
            action.transition(state)
    assert action.duration_ms is not None


def test_approval_gate_waits_for_operator(gated_registry, bus):
    backend = application_form()
    scheduler = ActionScheduler(gated_registry, backend, event_bus=bus)
    request = click("button:Submit application#0", text="Submit application")

    async def scenario():
        action = scheduler.schedule(request)
        task = asyncio.create_task(scheduler.execute(action))
        await wait_until(lambda: action.state == ToolState.AWAITING_APPROVAL)
        assert backend.operations() == []
        assert scheduler.awaiting_approval() == [action]

        scheduler.approve(action.id)
        return await task

    action = asyncio.run(scenario())

    assert action.state == ToolState.SUCCESS
    assert action.approved
    assert backend.url.endswith("/thanks")
    assert (ToolState.AWAITING_APPROVAL, ToolState.SCHEDULED) in _transitions(bus, request.id)


def test_pre_approved_action_skips_gate(gated_registry):
    scheduler = ActionScheduler(gated_registry, application_form())
    action = scheduler.schedule(click("button:Submit application#0", text="Submit application"))
    scheduler.approve(action.id)
    asyncio.run(scheduler.execute(action))

    assert action.state == ToolState.SUCCESS


def test_approval_timeout_is_recoverable_error(gated_registry):
    backend = application_form()
    scheduler = ActionScheduler(gated_registry, backend, approval_timeout=0.05)
    action = scheduler.schedule(click("button:Submit application#0", text="Submit application"))
    asyncio.run(scheduler.execute(action))

    assert action.state == ToolState.ERROR
    assert action.error_type == ErrorType.TIMEOUT
    assert action.recoverable
    assert backend.operations() == []


def test_cancel_while_awaiting_approval(gated_registry):
    backend = application_form()
    scheduler = ActionScheduler(gated_registry, backend)

    async def scenario():
        action = scheduler.schedule(click("button:Submit application#0", text="Submit application"))
        task = asyncio.create_task(scheduler.execute(action))
        await wait_until(lambda: action.state == ToolState.AWAITING_APPROVAL)
        scheduler.cancel(action.id)
        return await task

    action = asyncio.run(scenario())

    assert action.state == ToolState.CANCELLED
    assert backend.operations() == []


def test_cannot_cancel_executing_or_finished(registry):
    backend = application_form()
    backend.delay = 0.2
    scheduler = ActionScheduler(registry, backend)

    async def scenario():
        action = scheduler.schedule(fill("textbox:Email#0", "jane@example.com"))
        task = asyncio.create_task(scheduler.execute(action))
        await wait_until(lambda: action.state == ToolState.EXECUTING)
        with pytest.raises(InvalidTransitionError):
            scheduler.cancel(action.id)
        return await task

    action = asyncio.run(scenario())
    assert action.state == ToolState.SUCCESS
    with pytest.raises(InvalidTransitionError):
        scheduler.cancel(action.id)
    with pytest.raises(InvalidTransitionError):
        scheduler.approve(action.id)


def test_unknown_action_id(registry):
    scheduler = ActionScheduler(registry, application_form())
    with pytest.raises(KeyError):
        scheduler.approve("act-missing")


def test_retry_creates_new_tracked_action(registry):
    backend = application_form()
    backend.fail_once.add("textbox:Email#0")
    scheduler = ActionScheduler(registry, backend)
    request = fill("textbox:Email#0", "jane@example.com")

    first = scheduler.schedule(request)
    asyncio.run(scheduler.execute(first))
    assert first.state == ToolState.ERROR

    second = scheduler.retry(first)
    asyncio.run(scheduler.execute(second))

    assert second is not first
    assert second.id == f"{request.id}~2"
    assert second.request is request
    assert first.state == ToolState.ERROR
    assert second.state == ToolState.SUCCESS


def test_retry_requires_finished_action(registry):
    scheduler = ActionScheduler(registry, application_form())
    action = scheduler.schedule(fill("textbox:Email#0", "x"))
    with pytest.raises(InvalidTransitionError):
        scheduler.retry(action)


def test_same_id_cannot_be_in_flight_twice(registry):
    scheduler = ActionScheduler(registry, application_form())
    request = fill("textbox:Email#0", "x")
    scheduler.schedule(request)
    with pytest.raises(ValueError):
        scheduler.schedule(request)


def test_clear_completed_keeps_pending(registry):
    scheduler = ActionScheduler(registry, application_form())
    done = scheduler.schedule(fill("textbox:Email#0", "x"))
    asyncio.run(scheduler.execute(done))
    pending = scheduler.schedule(fill("textbox:Full name#0", "Jane"))

    assert scheduler.clear_completed() == 1
    assert scheduler.actions() == [pending]
