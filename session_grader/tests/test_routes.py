"""Tests for the grading API routes."""

from __future__ import annotations

from fastapi.testclient import TestClient

from session_grader.app import app
from session_grader.errors import (
    GradingUnavailableError,
    SessionNotFoundError,
    TranscriptNotFoundError,
    WebhookSignatureError,
)

QUICK_METRICS = {
    "filler_word_count": 1,
    "words_per_minute": 140,
    "question_ratio": 50,
    "close_attempts": 1,
    "buying_signal": False,
    "info_collected": False,
    "spouse_approval": False,
    "rep_word_count": 70,
    "rep_turns": 2,
    "homeowner_turns": 2,
}


class FakeService:
    def __init__(self) -> None:
        self.dispatched = []
        self.webhooks = []
        self.grade_error = None

    def grade_session(self, session_id):
        if self.grade_error is not None:
            raise self.grade_error
        return {
            "session_id": session_id,
            "scores": {"overall": 72, "rapport": 80},
            "summary": "Solid",
            "feedback": {"strengths": ["Warm"], "improvements": [], "specific_tips": []},
            "parse_status": "ok",
            "metrics": dict(QUICK_METRICS),
            "line_ratings_source": "heuristic",
            "line_ratings": [],
            "graded_at": "2024-03-01T18:10:00+00:00",
            "downgraded": False,
        }

    def quick_analysis(self, session_id):
        return dict(QUICK_METRICS)

    def line_rating_batch_count(self, session_id):
        return 2

    def dispatch_line_ratings(self, session_id, rep_name="", customer_name=""):
        self.dispatched.append((session_id, rep_name, customer_name))
        return {"session_id": session_id}

    def rate_line_batch(self, session_id, batch_index, rep_name, customer_name):
        return {
            "session_id": session_id,
            "batch_index": batch_index,
            "total_batches": 2,
            "rated": 5,
            "cached": 1,
            "errors": 0,
            "completed_batches": 1,
            "complete": False,
        }

    def get_line_ratings(self, session_id):
        if session_id == "ghost":
            raise TranscriptNotFoundError(session_id)
        return {
            "session_id": session_id,
            "ratings": [{"turn_index": 0, "label": "good"}],
            "rated_lines": 1,
            "completed_batches": 1,
            "completed_batch_indices": [0],
            "total_batches": 1,
            "complete": True,
            "status": "completed",
        }

    def grading_health(self, session_id):
        if session_id == "ghost":
            raise SessionNotFoundError(session_id)
        return {
            "session_id": session_id,
            "status": "warning",
            "issues": ["Line ratings incomplete (1/2 batches)"],
            "recommendations": ["POST /api/v1/grade/line-ratings to rerun the missing batches"],
            "has_transcript": True,
            "has_ended_at": True,
            "has_scores": True,
            "has_speech_metrics": True,
            "graded": True,
            "downgraded": False,
            "parse_status": "ok",
            "overall_score": 72,
            "line_ratings": {"total_batches": 2, "completed_batches": 1, "complete": False, "errors": 0},
            "started_at": "2024-03-01T18:00:00+00:00",
            "ended_at": "2024-03-01T18:05:00+00:00",
            "graded_at": "2024-03-01T18:06:00+00:00",
            "minutes_since_ended": 3,
        }

    def quick_metrics(self, entries, duration_seconds):
        return dict(QUICK_METRICS, rep_turns=len(entries))

    def handle_webhook(self, raw_body, signature):
        self.webhooks.append((raw_body, signature))
        if signature == "bad":
            raise WebhookSignatureError("Invalid webhook signature")
        return {"received": True, "trusted": signature is not None, "event": "conversation.completed", "correlation": None}

    def clear_phrase_cache(self):
        return {"cleared": 3, "stats": {"memory_entries": 0}}


def _client(monkeypatch, service: FakeService) -> TestClient:
    monkeypatch.setattr("session_grader.app.get_grading_service", lambda: service)
    monkeypatch.setattr("session_grader.routes.get_grading_service", lambda: service)
    return TestClient(app)


def test_healthcheck(monkeypatch):
    with _client(monkeypatch, FakeService()) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_grade_session_returns_scores(monkeypatch):
    """A graded session returns its scores and no queued batches by default."""
    service = FakeService()

    with _client(monkeypatch, service) as client:
        response = client.post("/api/v1/grade/session", json={"session_id": "session-1"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["scores"]["overall"] == 72
    assert payload["line_rating_batches"] == 0
    assert service.dispatched == []


def test_grade_session_queues_line_ratings(monkeypatch):
    """include_line_ratings schedules the batches after responding."""
    service = FakeService()

    with _client(monkeypatch, service) as client:
        response = client.post(
            "/api/v1/grade/session", json={"session_id": "session-1", "include_line_ratings": True}
        )

    assert response.status_code == 200
    assert response.json()["line_rating_batches"] == 2
    assert service.dispatched == [("session-1", "", "")]


def test_grade_session_unavailable_includes_quick_analysis(monkeypatch):
    """Model outages return 503 with the deterministic metrics attached."""
    service = FakeService()
    service.grade_error = GradingUnavailableError("model down", attempts=3)

    with _client(monkeypatch, service) as client:
        response = client.post("/api/v1/grade/session", json={"session_id": "session-1"})

    assert response.status_code == 503
    payload = response.json()
    assert payload["error"]["category"] == "upstream_unavailable"
    assert payload["quick_analysis"]["words_per_minute"] == 140


def test_grade_session_missing_transcript(monkeypatch):
    """Not-found errors use the shared error body."""
    service = FakeService()
    service.grade_error = TranscriptNotFoundError("session-1")

    with _client(monkeypatch, service) as client:
        response = client.post("/api/v1/grade/session", json={"session_id": "session-1"})

    assert response.status_code == 404
    assert response.json()["error"]["category"] == "not_found"


def test_grade_session_unexpected_failure(monkeypatch):
    """Unexpected exceptions are masked as internal errors."""
    service = FakeService()
    service.grade_error = KeyError("boom")

    with _client(monkeypatch, service) as client:
        response = client.post("/api/v1/grade/session", json={"session_id": "session-1"})

    assert response.status_code == 500
    assert response.json() == {"error": {"category": "internal", "message": "Internal server error"}}


def test_grade_session_requires_session_id(monkeypatch):
    with _client(monkeypatch, FakeService()) as client:
        response = client.post("/api/v1/grade/session", json={"session_id": ""})

    assert response.status_code == 422


def test_line_ratings_single_batch(monkeypatch):
    """A batch index processes that batch synchronously."""
    with _client(monkeypatch, FakeService()) as client:
        response = client.post("/api/v1/grade/line-ratings", json={"session_id": "session-1", "batch_index": 0})

    assert response.status_code == 200
    assert response.json()["rated"] == 5


def test_line_ratings_dispatch_all(monkeypatch):
    """Without a batch index every batch is queued and 202 is returned."""
    service = FakeService()

    with _client(monkeypatch, service) as client:
        response = client.post(
            "/api/v1/grade/line-ratings",
            json={"session_id": "session-1", "rep_name": "Sam", "customer_name": "Pat"},
        )

    assert response.status_code == 202
    assert response.json() == {"session_id": "session-1", "status": "queued", "total_batches": 2}
    assert service.dispatched == [("session-1", "Sam", "Pat")]


def test_get_line_ratings(monkeypatch):
    with _client(monkeypatch, FakeService()) as client:
        found = client.get("/api/v1/sessions/session-1/line-ratings")
        missing = client.get("/api/v1/sessions/ghost/line-ratings")

    assert found.status_code == 200
    assert found.json()["status"] == "completed"
    assert missing.status_code == 404


def test_grading_health(monkeypatch):
    """The diagnosis is returned as-is; unknown sessions are 404."""
    with _client(monkeypatch, FakeService()) as client:
        found = client.get("/api/v1/grade/health/session-1")
        missing = client.get("/api/v1/grade/health/ghost")

    assert found.status_code == 200
    payload = found.json()
    assert payload["status"] == "warning"
    assert payload["line_ratings"]["completed_batches"] == 1
    assert payload["minutes_since_ended"] == 3
    assert missing.status_code == 404
    assert missing.json()["error"]["category"] == "not_found"


def test_quick_metrics(monkeypatch):
    """Quick metrics pass the raw entries through to the service."""
    entries = [{"speaker": "rep", "text": "Hi"}, {"speaker": "homeowner", "text": "Hello"}]

    with _client(monkeypatch, FakeService()) as client:
        response = client.post("/api/v1/metrics/quick", json={"transcript": entries, "duration_seconds": 30})

    assert response.status_code == 200
    assert response.json()["rep_turns"] == 2


def test_webhook_passes_raw_body_and_signature(monkeypatch):
    """The signature header and untouched body bytes reach the service."""
    service = FakeService()
    body = b'{"type": "conversation.completed",  "conversation_id": "conv-1"}'

    with _client(monkeypatch, service) as client:
        response = client.post(
            "/api/v1/webhooks/conversation",
            content=body,
            headers={"x-elevenlabs-signature": "sha256=abc", "content-type": "application/json"},
        )

    assert response.status_code == 200
    assert response.json()["trusted"] is True
    assert service.webhooks == [(body, "sha256=abc")]


def test_webhook_bad_signature_is_unauthorized(monkeypatch):
    with _client(monkeypatch, FakeService()) as client:
        response = client.post(
            "/api/v1/webhooks/conversation", content=b"{}", headers={"x-elevenlabs-signature": "bad"}
        )

    assert response.status_code == 401
    assert response.json()["error"]["category"] == "auth"


def test_clear_phrase_cache(monkeypatch):
    with _client(monkeypatch, FakeService()) as client:
        response = client.post("/api/v1/phrase-cache/clear")

    assert response.status_code == 200
    assert response.json()["cleared"] == 3
