"""
API v1 Router - Aggregates all v1 endpoints.
"""

from fastapi import APIRouter

from formpilot.api.v1.endpoints import interventions, sessions, websocket

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "FormPilot API"}


# Session control plane
router.include_router(sessions.router, tags=["Sessions"])

# Human-in-the-loop intervention
router.include_router(interventions.router, tags=["Intervention"])

# WebSocket real-time feed
router.include_router(websocket.router, tags=["WebSocket"])
