"""SQLAlchemy ORM models for the session grading service."""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, Text, func

from .db import Base


class TimestampMixin:
    """Mixin that adds created_at/updated_at audit fields."""

    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class TrainingSession(TimestampMixin, Base):
    """Practice session owned by the host application; grading only enriches it."""

    __tablename__ = "training_sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=True, index=True)
    agent_id = Column(String(255), nullable=True, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True, index=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)
    full_transcript = Column(JSON, nullable=True)

    overall_score = Column(Integer, nullable=True)
    rapport_score = Column(Integer, nullable=True)
    discovery_score = Column(Integer, nullable=True)
    objection_handling_score = Column(Integer, nullable=True)
    close_score = Column(Integer, nullable=True)
    safety_score = Column(Integer, nullable=True)
    summary = Column(Text, nullable=True)
    feedback = Column(JSON, nullable=True)
    contextual_line_ratings = Column(JSON, nullable=True)
    speech_metrics = Column(JSON, nullable=True)
    graded_at = Column(DateTime(timezone=True), nullable=True)

    # Line ratings keyed by turn index (as a string, JSON object keys).
    line_ratings = Column(JSON, nullable=True)
    line_rating_batches_done = Column(JSON, nullable=True)
    line_rating_total_batches = Column(Integer, nullable=True)

    conversation_id = Column(String(255), nullable=True, index=True)
    voice_metrics = Column(JSON, nullable=True)
    analytics = Column(JSON, nullable=True)


class VoiceConversation(TimestampMixin, Base):
    """Conversation record delivered by the voice provider webhook."""

    __tablename__ = "voice_conversations"

    id = Column(Integer, primary_key=True)
    conversation_id = Column(String(255), unique=True, nullable=False, index=True)
    agent_id = Column(String(255), nullable=True, index=True)
    session_id = Column(String(64), nullable=True, index=True)
    user_id = Column(String(255), nullable=True)
    status = Column(String(64), nullable=True)
    transcript = Column(JSON, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    analysis = Column(JSON, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    message_count = Column(Integer, nullable=True)
    correlation_confidence = Column(String(16), nullable=True)


class PhraseCacheEntry(TimestampMixin, Base):
    """Persistent tier of the phrase cache."""

    __tablename__ = "phrase_cache"

    phrase = Column(String(1024), primary_key=True)
    rating = Column(JSON, nullable=False)
    hit_count = Column(Integer, nullable=False, default=0, server_default="0")
