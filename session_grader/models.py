"""Pydantic models for the session grading API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class GradeSessionRequest(BaseModel):
    """Request body for ``POST /grade/session``.

    Attributes:
        session_id: Training session to grade.
        include_line_ratings: Also queue line-by-line ratings in the background.
    """

    session_id: str = Field(..., min_length=1, description="Training session identifier")
    include_line_ratings: bool = Field(
        default=False,
        description="Queue line-by-line ratings for every rep turn after grading",
    )


class GradeSessionResponse(BaseModel):
    session_id: str
    scores: Dict[str, Optional[int]] = Field(default_factory=dict)
    summary: str = ""
    feedback: Dict[str, List[str]] = Field(default_factory=dict)
    parse_status: str
    metrics: Dict[str, Any] = Field(default_factory=dict)
    line_ratings_source: str
    line_ratings: List[Dict[str, Any]] = Field(default_factory=list)
    graded_at: str
    downgraded: bool = False
    line_rating_batches: int = Field(
        default=0, description="Number of line-rating batches queued for this session"
    )


class LineRatingRequest(BaseModel):
    """Request body for ``POST /grade/line-ratings``.

    Without ``batch_index`` every batch is dispatched in the background.
    """

    session_id: str = Field(..., min_length=1)
    batch_index: Optional[int] = Field(default=None, ge=0, description="Zero-based batch to process")
    rep_name: Optional[str] = Field(default=None, description="Sales rep display name for prompts")
    customer_name: Optional[str] = Field(default=None, description="Homeowner persona name for prompts")


class LineRatingBatchResponse(BaseModel):
    session_id: str
    batch_index: int
    total_batches: int
    rated: int
    cached: int
    errors: int
    completed_batches: int
    complete: bool


class LineRatingProgress(BaseModel):
    """Merged line ratings plus batch progress for one session."""

    session_id: str
    ratings: List[Dict[str, Any]] = Field(default_factory=list)
    rated_lines: int = 0
    completed_batches: int = 0
    completed_batch_indices: List[int] = Field(default_factory=list)
    total_batches: int = 0
    complete: bool = False
    status: str = "processing"


class QuickMetricsRequest(BaseModel):
    """Request body for ``POST /metrics/quick``."""

    transcript: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Entries shaped like {speaker, text|message, timestamp}",
    )
    duration_seconds: Optional[float] = Field(default=None, ge=0)


class SpeechMetricsResponse(BaseModel):
    filler_word_count: int
    words_per_minute: int
    question_ratio: int
    close_attempts: int
    buying_signal: bool
    info_collected: bool
    spouse_approval: bool
    rep_word_count: int
    rep_turns: int
    homeowner_turns: int


class WebhookResponse(BaseModel):
    received: bool = True
    trusted: bool
    event: str
    correlation: Optional[Dict[str, Any]] = None
    linked: Optional[bool] = None
    conversation_created: Optional[bool] = None
    conversation: Optional[Dict[str, Any]] = None
    updated: Optional[bool] = None


class PhraseCacheClearResponse(BaseModel):
    cleared: int = Field(..., description="Rows removed from the persistent cache")
    stats: Dict[str, int] = Field(default_factory=dict)


class LineRatingHealth(BaseModel):
    total_batches: int = 0
    completed_batches: int = 0
    complete: bool = False
    errors: int = 0


class GradingHealthResponse(BaseModel):
    """Diagnosis returned by ``GET /grade/health/{session_id}``."""

    session_id: str
    status: str = Field(..., description="healthy, warning or error")
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    has_transcript: bool
    has_ended_at: bool
    has_scores: bool
    has_speech_metrics: bool
    graded: bool
    downgraded: bool
    parse_status: Optional[str] = None
    overall_score: Optional[float] = None
    line_ratings: LineRatingHealth = Field(default_factory=LineRatingHealth)
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    graded_at: Optional[str] = None
    minutes_since_ended: Optional[int] = None
