"""API routes for the session grading backend."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .errors import GradingError, GradingTimeoutError, GradingUnavailableError
from .models import (
    GradeSessionRequest,
    GradeSessionResponse,
    GradingHealthResponse,
    LineRatingBatchResponse,
    LineRatingProgress,
    LineRatingRequest,
    PhraseCacheClearResponse,
    QuickMetricsRequest,
    SpeechMetricsResponse,
    WebhookResponse,
)
from .services import GradingService, get_grading_service
from .webhooks import SIGNATURE_HEADER

LOGGER = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["grading"])


def resolve_grading_service() -> GradingService:
    """Wrapper to allow monkeypatching of the shared grading service dependency."""
    return get_grading_service()


def error_response(exc: GradingError, **extra: Any) -> JSONResponse:
    """Render ``exc`` as ``{"error": {"category", "message"}}`` with its HTTP status."""
    body: Dict[str, Any] = {"error": exc.to_dict()}
    body.update(extra)
    return JSONResponse(status_code=exc.status_code, content=body)


def internal_error_response(exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error while serving request: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"category": "internal", "message": "Internal server error"}},
    )


@router.post("/grade/session", response_model=GradeSessionResponse)
def grade_session(
    payload: GradeSessionRequest,
    background_tasks: BackgroundTasks,
    service: GradingService = Depends(resolve_grading_service),
):
    """Grade a stored session against the rubric and persist the result.

    When the model is unreachable or the budget runs out, the error body also
    carries ``quick_analysis`` so callers can still show the deterministic metrics.
    """
    LOGGER.info("Grading requested for session %s", payload.session_id)
    try:
        result = service.grade_session(payload.session_id)
    except (GradingUnavailableError, GradingTimeoutError) as exc:
        LOGGER.error("Rubric grading unavailable for session %s: %s", payload.session_id, exc)
        return error_response(exc, quick_analysis=service.quick_analysis(payload.session_id))
    except GradingError as exc:
        return error_response(exc)
    except Exception as exc:  # pylint: disable=broad-except
        return internal_error_response(exc)

    batches = 0
    if payload.include_line_ratings:
        try:
            batches = service.line_rating_batch_count(payload.session_id)
        except GradingError as exc:
            LOGGER.warning("Could not queue line ratings for session %s: %s", payload.session_id, exc)
        if batches:
            background_tasks.add_task(service.dispatch_line_ratings, payload.session_id)
    result["line_rating_batches"] = batches
    return result


@router.post("/grade/line-ratings", response_model=LineRatingBatchResponse)
def grade_line_ratings(
    payload: LineRatingRequest,
    background_tasks: BackgroundTasks,
    service: GradingService = Depends(resolve_grading_service),
):
    """Rate one batch synchronously, or queue every batch when no index is given."""
    rep_name = payload.rep_name or ""
    customer_name = payload.customer_name or ""
    try:
        if payload.batch_index is not None:
            return service.rate_line_batch(payload.session_id, payload.batch_index, rep_name, customer_name)
        total = service.line_rating_batch_count(payload.session_id)
    except GradingError as exc:
        return error_response(exc)
    except Exception as exc:  # pylint: disable=broad-except
        return internal_error_response(exc)

    if total:
        background_tasks.add_task(service.dispatch_line_ratings, payload.session_id, rep_name, customer_name)
    LOGGER.info("Queued %d line rating batch(es) for session %s", total, payload.session_id)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "session_id": payload.session_id,
            "status": "queued" if total else "empty",
            "total_batches": total,
        },
    )


@router.get("/grade/health/{session_id}", response_model=GradingHealthResponse)
def grading_health(session_id: str, service: GradingService = Depends(resolve_grading_service)):
    """Diagnose how far grading got for a session and what looks stuck."""
    try:
        return service.grading_health(session_id)
    except GradingError as exc:
        return error_response(exc)
    except Exception as exc:  # pylint: disable=broad-except
        return internal_error_response(exc)


@router.get("/sessions/{session_id}/line-ratings", response_model=LineRatingProgress)
def get_line_ratings(session_id: str, service: GradingService = Depends(resolve_grading_service)):
    """Return the merged line ratings and batch progress for a session."""
    try:
        return service.get_line_ratings(session_id)
    except GradingError as exc:
        return error_response(exc)


@router.post("/metrics/quick", response_model=SpeechMetricsResponse)
def quick_metrics(payload: QuickMetricsRequest, service: GradingService = Depends(resolve_grading_service)):
    """Compute deterministic speech metrics without calling the model."""
    try:
        return service.quick_metrics(payload.transcript, payload.duration_seconds)
    except GradingError as exc:
        return error_response(exc)


@router.post("/webhooks/conversation", response_model=WebhookResponse)
async def conversation_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    service: GradingService = Depends(resolve_grading_service),
):
    """Receive voice-provider conversation events.

    The signature is checked against the raw body, so the body is read before
    any JSON decoding.
    """
    raw_body = await request.body()
    try:
        return await run_in_threadpool(service.handle_webhook, raw_body, signature)
    except GradingError as exc:
        return error_response(exc)
    except Exception as exc:  # pylint: disable=broad-except
        return internal_error_response(exc)


@router.post("/phrase-cache/clear", response_model=PhraseCacheClearResponse)
def clear_phrase_cache(service: GradingService = Depends(resolve_grading_service)):
    return service.clear_phrase_cache()
