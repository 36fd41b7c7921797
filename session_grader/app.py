"""FastAPI application for the session grading backend."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import API_ALLOWED_ORIGINS, API_HOST, API_PORT
from .logging_config import configure_logging
from .routes import router
from .services import get_grading_service

configure_logging()
LOGGER = logging.getLogger(__name__)
LOGGER.info("Creating session grading FastAPI application")

app = FastAPI(
    title="Session Grading API",
    version="1.0.0",
    description="Rubric grading, line ratings and voice conversation correlation for training sessions.",
)

# Allow list comes from configuration so deployments can constrain browser access.
app.add_middleware(
    CORSMiddleware,
    allow_origins=API_ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.on_event("startup")
def warm_grading_service() -> None:
    """Build the shared GradingService so the database and provider are ready.

    Returns:
        None
    """
    LOGGER.info("Startup hook triggered; initialising grading service")
    try:
        get_grading_service()
    except Exception:  # pylint: disable=broad-except
        LOGGER.exception("Grading service failed to initialise during startup")
        raise
    LOGGER.info("Grading service ready")


@app.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    """Report a simple OK status used for readiness checks.

    Returns:
        dict[str, str]: A service status payload.
    """
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    LOGGER.info("Launching Uvicorn development server on %s:%s", API_HOST, API_PORT)
    uvicorn.run("session_grader.app:app", host=API_HOST, port=API_PORT, reload=True)
