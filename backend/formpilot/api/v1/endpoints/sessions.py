"""
FormPilot - Session Endpoints
Control plane for form-filling sessions.

Endpoints:
- POST /sessions: Create a session and start its execution loop
- GET /sessions: List sessions
- GET /sessions/{session_id}: Session status and cycle history
- POST /sessions/{session_id}/start: Start a session created without auto_start
- GET /sessions/{session_id}/actions: In-flight tracked actions
- POST /sessions/{session_id}/actions/{action_id}/approve: Release a gated action
- POST /sessions/{session_id}/actions/{action_id}/cancel: Cancel a pending action
- POST /sessions/{session_id}/resume: Answer the pending intervention
- POST /sessions/{session_id}/cancel: Stop the session
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from formpilot.core.errors import InvalidTransitionError
from formpilot.services.execution import (
    ExecutionLoop,
    SessionRunner,
    create_session,
    get_session,
    get_session_runner,
    list_sessions,
)

router = APIRouter()
logger = logging.getLogger(__name__)


# =============================================================================
# Request/Response Models
# =============================================================================

class SessionCreateRequest(BaseModel):
    """Request to start filling a form."""
    url: str = Field(
        ...,
        description="Application form URL",
        min_length=1,
        examples=["https://boards.greenhouse.io/acme/jobs/12345"],
    )
    profile: Dict[str, Any] = Field(
        default_factory=dict,
        description="Applicant data the decision source fills the form from",
    )
    max_cycles: Optional[int] = Field(default=None, ge=1, le=200)
    headless: Optional[bool] = Field(default=None, description="Override PLAYWRIGHT_HEADLESS")
    auto_start: bool = Field(default=True, description="Start the execution loop immediately")


class ResumeRequest(BaseModel):
    response: Optional[str] = Field(default=None, description="Operator notes passed to the next decision")


class SessionActionsResponse(BaseModel):
    session_id: str
    actions: List[Dict[str, Any]]
    awaiting_approval: List[str]


# =============================================================================
# Helpers
# =============================================================================

def _require_session(session_id: str):
    session = get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


def _require_loop(runner: SessionRunner, session_id: str) -> ExecutionLoop:
    _require_session(session_id)
    loop = runner.get_loop(session_id)
    if loop is None:
        raise HTTPException(status_code=409, detail=f"Session {session_id} is not running")
    return loop


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/sessions")
async def start_session(
    request: SessionCreateRequest,
    runner: SessionRunner = Depends(get_session_runner),
):
    """Create a session; with auto_start the loop runs as a background task."""
    session = create_session(
        url=request.url,
        profile=request.profile,
        max_cycles=request.max_cycles,
        headless=request.headless,
    )
    if request.auto_start:
        runner.start(session)
    return session.to_dict()


@router.get("/sessions")
async def get_sessions():
    return [s.to_dict(include_history=False) for s in list_sessions()]


@router.get("/sessions/{session_id}")
async def get_session_status(session_id: str):
    return _require_session(session_id).to_dict()


@router.post("/sessions/{session_id}/start")
async def run_session(
    session_id: str,
    runner: SessionRunner = Depends(get_session_runner),
):
    """Start the execution loop of a PENDING session."""
    session = _require_session(session_id)
    try:
        runner.start(session)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.to_dict(include_history=False)


@router.get("/sessions/{session_id}/actions", response_model=SessionActionsResponse)
async def get_session_actions(
    session_id: str,
    runner: SessionRunner = Depends(get_session_runner),
):
    """Tracked actions of the current cycle (completed ones are cleared between cycles)."""
    _require_session(session_id)
    loop = runner.get_loop(session_id)
    if loop is None:
        return SessionActionsResponse(session_id=session_id, actions=[], awaiting_approval=[])
    return SessionActionsResponse(
        session_id=session_id,
        actions=[a.to_dict() for a in loop.scheduler.actions()],
        awaiting_approval=[a.id for a in loop.scheduler.awaiting_approval()],
    )


@router.post("/sessions/{session_id}/actions/{action_id}/approve")
async def approve_action(
    session_id: str,
    action_id: str,
    runner: SessionRunner = Depends(get_session_runner),
):
    loop = _require_loop(runner, session_id)
    try:
        action = loop.scheduler.approve(action_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Action {action_id} not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info(f"[API] Approved {action_id} in {session_id}")
    return action.to_dict()


@router.post("/sessions/{session_id}/actions/{action_id}/cancel")
async def cancel_action(
    session_id: str,
    action_id: str,
    runner: SessionRunner = Depends(get_session_runner),
):
    loop = _require_loop(runner, session_id)
    try:
        action = loop.scheduler.cancel(action_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Action {action_id} not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return action.to_dict()


@router.post("/sessions/{session_id}/resume")
async def resume_session(
    session_id: str,
    request: ResumeRequest,
    runner: SessionRunner = Depends(get_session_runner),
):
    """Answer the pending intervention; the runner picks the loop back up."""
    try:
        session = runner.resume(session_id, request.response)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.to_dict(include_history=False)


@router.post("/sessions/{session_id}/cancel")
async def cancel_session(
    session_id: str,
    runner: SessionRunner = Depends(get_session_runner),
):
    try:
        session = runner.cancel(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.to_dict(include_history=False)
