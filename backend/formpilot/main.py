"""
FormPilot - FastAPI Backend
Fills job application forms with a decision source proposing actions and a
Playwright browser carrying them out.

Architecture:
- FastAPI: Async HTTP + WebSocket API layer
- Execution loop: decide -> batch -> execute -> diff, one asyncio task per session
- Playwright: Browser automation (the Executor)
- OpenAI: Default decision source

Responsibilities:
- Session lifecycle (start, resume, cancel)
- Approval gate for submit-like actions
- Human-in-the-loop interventions
- Real-time event feed
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from formpilot.api.v1.router import router as api_v1_router
from formpilot.core.config import get_settings
from formpilot.services.execution import get_session_runner

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - runs on startup and shutdown."""
    # Startup
    logger.info(f"[Startup] {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"[Startup] Environment: {settings.APP_ENV}")
    logger.info(
        f"[Startup] Max cycles: {settings.MAX_CYCLES}, action timeout: {settings.ACTION_TIMEOUT_SECONDS}s, "
        f"confirm submissions: {settings.CONFIRM_SUBMISSIONS}"
    )
    if not settings.OPENAI_API_KEY:
        logger.warning("[Startup] OPENAI_API_KEY is not set; sessions will fail at the first decision")

    yield

    # Shutdown
    logger.info("[Shutdown] Cancelling running sessions...")
    await get_session_runner().shutdown()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Batching form-filling agent with approval gates and snapshot-diff verification",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware - Allow extension/dashboard to communicate with backend
cors_origins = settings.CORS_ORIGINS.split(",") if settings.CORS_ORIGINS else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)


# ============================================================================
# Root & Health Endpoints
# ============================================================================

@app.get("/")
async def root():
    """Root endpoint - API info."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.APP_ENV,
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health():
    """Health check endpoint for orchestration."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "sessions": {
            "active": len(get_session_runner().active_sessions()),
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("formpilot.main:app", host="0.0.0.0", port=8000, reload=True)
