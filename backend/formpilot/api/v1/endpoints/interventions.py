"""
FormPilot - Intervention Endpoints
Lets a person answer the requests suspended sessions raise.

Endpoints:
- GET /interventions: Pending requests (optionally for one session)
- GET /interventions/{intervention_id}
- POST /interventions/{intervention_id}/respond
- POST /interventions/{intervention_id}/cancel
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from formpilot.services.execution import SessionRunner, get_session_runner

router = APIRouter()


class InterventionResponseRequest(BaseModel):
    """Request body for responding to an intervention."""
    response: Dict[str, Any] = Field(
        default_factory=dict,
        description="User's response; a 'message' key is passed on to the next decision",
    )


@router.get("/interventions")
async def list_interventions(
    session_id: Optional[str] = Query(None),
    runner: SessionRunner = Depends(get_session_runner),
):
    pending = runner.interventions.get_pending_interventions(session_id)
    return {"count": len(pending), "interventions": [i.to_dict() for i in pending]}


@router.get("/interventions/{intervention_id}")
async def get_intervention(
    intervention_id: str,
    runner: SessionRunner = Depends(get_session_runner),
):
    intervention = runner.interventions.get_intervention(intervention_id)
    if not intervention:
        raise HTTPException(status_code=404, detail="Intervention not found")
    return intervention.to_dict()


@router.post("/interventions/{intervention_id}/respond")
async def respond_to_intervention(
    intervention_id: str,
    request: InterventionResponseRequest,
    runner: SessionRunner = Depends(get_session_runner),
):
    """Submit a response; the waiting session resumes with it."""
    try:
        intervention = runner.interventions.complete_intervention(intervention_id, request.response)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not intervention:
        raise HTTPException(status_code=404, detail="Intervention not found")
    return {"success": True, "intervention": intervention.to_dict()}


@router.post("/interventions/{intervention_id}/cancel")
async def cancel_intervention(
    intervention_id: str,
    runner: SessionRunner = Depends(get_session_runner),
):
    """Cancel a request; the waiting session is cancelled with it."""
    try:
        intervention = runner.interventions.cancel_intervention(intervention_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not intervention:
        raise HTTPException(status_code=404, detail="Intervention not found")
    return {"success": True, "intervention": intervention.to_dict()}
