"""Voice-provider webhook ingress.

Verifies the HMAC signature over the raw body, stores the conversation
record (upserting on duplicate delivery), correlates it to a session and
back-links confident matches.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import math
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional

from .correlator import CORRELATION_WINDOW, ConversationRecord, CorrelationResult, SessionCandidate, correlate
from .errors import CorrelationError, InvalidInputError, PersistenceError, SchemaMismatchError, WebhookSignatureError
from .speech_metrics import compute_speech_metrics
from .storage import SessionStorage
from .transcript import Transcript

LOGGER = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-elevenlabs-signature"

EVENT_COMPLETED = "conversation.completed"
EVENT_ANALYZED = "conversation.analyzed"
EVENT_INITIATION_FAILURE = "call.initiation.failure"

# Longest session we expect; bounds how far back candidate starts are searched.
MAX_SESSION_LENGTH = timedelta(hours=2)

DEFAULT_AUDIO_QUALITY = 85


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Return True when the body is verified, False when no secret is configured.

    Raises:
        WebhookSignatureError: A secret is configured and the signature is
            missing or does not match.
    """
    if not secret:
        LOGGER.warning("Webhook secret not configured; accepting webhook without signature verification")
        return False
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")
    candidate = signature.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256="):]
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(candidate.lower(), expected):
        LOGGER.warning("Invalid webhook signature (received %s...)", candidate[:10])
        raise WebhookSignatureError("Invalid webhook signature")
    return True


def _duration_seconds(metadata: Mapping[str, Any], record: ConversationRecord) -> Optional[float]:
    for key in ("duration_seconds", "call_duration_secs"):
        value = metadata.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            try:
                seconds = float(value)
            except OverflowError:
                continue
            if math.isfinite(seconds):
                return seconds
    if record.started_at and record.ended_at:
        return float(int((record.ended_at - record.started_at).total_seconds()))
    return None


def build_voice_metrics(
    payload: Mapping[str, Any],
    duration: Optional[float],
    message_count: int,
) -> Dict[str, Any]:
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), Mapping) else {}
    analysis = payload.get("analysis") if isinstance(payload.get("analysis"), Mapping) else {}
    return {
        "conversation_id": payload.get("conversation_id"),
        "duration": duration,
        "message_count": message_count,
        "analysis": analysis or None,
        "metadata": metadata or None,
        "sentiment_progression": analysis.get("sentiment_progression")
        or metadata.get("sentiment_progression")
        or [],
        "interruption_count": metadata.get("interruptions_count", 0),
        "audio_quality": metadata.get("audio_quality", DEFAULT_AUDIO_QUALITY),
    }


class WebhookProcessor:
    """Dispatches verified webhook events."""

    def __init__(self, storage: SessionStorage, *, window: timedelta = CORRELATION_WINDOW) -> None:
        self.storage = storage
        self.window = window

    def handle(self, raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
        trusted = verify_signature(raw_body, signature, secret)
        try:
            payload = json.loads(raw_body or b"")
        except ValueError as exc:
            raise InvalidInputError(f"Webhook body is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise InvalidInputError("Webhook body must be a JSON object")
        # Some deliveries wrap the conversation under "data".
        if "conversation_id" not in payload and isinstance(payload.get("data"), dict):
            payload = {**payload["data"], "type": payload.get("type")}

        event = payload.get("type") or "unknown"
        LOGGER.info(
            "Received webhook type=%s conversation_id=%s agent_id=%s trusted=%s",
            event,
            payload.get("conversation_id"),
            payload.get("agent_id"),
            trusted,
        )

        response: Dict[str, Any] = {"received": True, "trusted": trusted, "event": event, "correlation": None}
        if event == EVENT_COMPLETED or payload.get("transcript"):
            response.update(self.handle_completed(payload))
        elif event == EVENT_ANALYZED:
            response["updated"] = self.handle_analyzed(payload)
        elif event == EVENT_INITIATION_FAILURE:
            LOGGER.warning(
                "Call initiation failure conversation_id=%s agent_id=%s error=%s reason=%s",
                payload.get("conversation_id"),
                payload.get("agent_id"),
                payload.get("error"),
                payload.get("reason"),
            )
        else:
            LOGGER.warning("Unknown webhook type %r", event)
        return response

    def _candidates(self, record: ConversationRecord) -> List[SessionCandidate]:
        instants = [value for value in (record.started_at, record.ended_at) if value is not None]
        if not instants:
            return []
        try:
            started_after = min(instants) - MAX_SESSION_LENGTH - self.window
            started_before = max(instants) + self.window
        except OverflowError:
            LOGGER.warning("Conversation %s timestamps are out of range; not correlating", record.conversation_id)
            return []
        rows = self.storage.find_candidate_sessions(
            record.agent_id,
            started_after=started_after,
            started_before=started_before,
            conversation_id=record.conversation_id,
        )
        return [SessionCandidate.from_row(row) for row in rows]

    def correlate_record(self, record: ConversationRecord) -> CorrelationResult:
        candidates = self._candidates(record)
        try:
            return correlate(record, candidates, window=self.window)
        except (OverflowError, TypeError, ValueError) as exc:
            raise CorrelationError(f"Correlation failed for {record.conversation_id}: {exc}") from exc

    def handle_completed(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        conversation_id = payload.get("conversation_id")
        agent_id = payload.get("agent_id")
        if not conversation_id or not agent_id:
            raise InvalidInputError("conversation_id and agent_id are required")

        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), Mapping) else {}
        transcript = payload.get("transcript")
        record = ConversationRecord.from_payload(payload)
        duration = _duration_seconds(metadata, record)
        message_count = len(transcript) if isinstance(transcript, list) else 0

        result = self.correlate_record(record)
        linked = result.should_backlink

        stored, created = self.storage.upsert_conversation(
            {
                "conversation_id": str(conversation_id),
                "agent_id": str(agent_id),
                "status": payload.get("type") or EVENT_COMPLETED,
                "transcript": transcript,
                "metadata": dict(metadata) or None,
                "analysis": payload.get("analysis"),
                "raw_payload": dict(payload),
                "duration_seconds": duration,
                "message_count": message_count,
                "session_id": result.session_id if linked else None,
                "user_id": result.user_id if linked else None,
                "correlation_confidence": result.confidence,
            }
        )
        if created:
            LOGGER.info("Stored conversation %s (%d messages)", conversation_id, message_count)
        else:
            LOGGER.info("Conversation %s already existed; updated", conversation_id)

        if linked:
            self._backlink(result, build_voice_metrics(payload, duration, message_count))
            self._analyze_speech(result.session_id, transcript, duration)
        elif result.matched:
            LOGGER.info(
                "Low-confidence match for conversation %s -> session %s; not back-linking",
                conversation_id,
                result.session_id,
            )

        return {
            "correlation": result.to_dict(),
            "linked": linked,
            "conversation_created": created,
            "conversation": {"conversation_id": stored["conversation_id"], "session_id": stored["session_id"]},
        }

    def _backlink(self, result: CorrelationResult, voice_metrics: Dict[str, Any]) -> None:
        session_id = result.session_id
        try:
            self.storage.update_session(
                session_id,
                {"conversation_id": voice_metrics["conversation_id"], "voice_metrics": voice_metrics},
            )
        except SchemaMismatchError as exc:
            LOGGER.warning("Session %s lacks voice columns (%s); storing in analytics", session_id, exc)
            self.storage.merge_session_analytics(
                session_id,
                {"conversation_id": voice_metrics["conversation_id"], "voice_metrics": voice_metrics},
            )

    def _analyze_speech(self, session_id: str, transcript: Any, duration: Optional[float]) -> None:
        """Attach deterministic speech metrics from the provider transcript."""
        if not isinstance(transcript, list) or not transcript:
            return
        try:
            parsed = Transcript.from_entries(transcript)
            metrics = compute_speech_metrics(parsed, duration or parsed.duration_seconds())
            self.storage.merge_session_analytics(session_id, {"voice_speech_metrics": metrics.to_dict()})
        except PersistenceError as exc:
            LOGGER.error("Could not store speech analysis for session %s: %s", session_id, exc)

    def handle_analyzed(self, payload: Mapping[str, Any]) -> bool:
        conversation_id = payload.get("conversation_id")
        if not conversation_id:
            raise InvalidInputError("conversation_id is required")
        fields: Dict[str, Any] = {"status": EVENT_ANALYZED}
        if payload.get("analysis") is not None:
            fields["analysis"] = payload.get("analysis")
        updated = self.storage.update_conversation(str(conversation_id), fields)
        if not updated:
            LOGGER.warning("Analysis received for unknown conversation %s", conversation_id)
        return updated
