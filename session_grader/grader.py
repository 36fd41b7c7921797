"""Rubric grading of a full practice conversation.

The grader renders the transcript and the deterministic metrics into one
prompt, asks the model for strict JSON, and turns whatever comes back into a
``RubricPacket``. Truncated responses go through ``json_repair``; when even
that fails the recognisable top-level sections are salvaged into a partial
packet. Only a response with nothing recoverable raises.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from . import config
from .errors import StructuredResponseError
from .json_repair import STATUS_OK, STATUS_REPAIRED, extract_sections, parse_json_lenient
from .llm import preview
from .speech_metrics import SpeechMetrics
from .transcript import Transcript, Turn

LOGGER = logging.getLogger(__name__)

RUBRIC_CATEGORIES = ("rapport", "discovery", "objection_handling", "closing", "safety")

STATUS_PARTIAL = "partial"

SOURCE_LLM = "llm"
SOURCE_HEURISTIC = "heuristic"

LABEL_EXCELLENT = "excellent"
LABEL_GOOD = "good"
LABEL_POOR = "poor"
LABEL_MISSED = "missed_opportunity"
LABEL_ERROR = "error"

_SCORE_ALIASES = {
    "rapport": ("rapport", "rapport_score"),
    "discovery": ("discovery", "discovery_score", "needs_discovery"),
    "objection_handling": ("objection_handling", "objections", "objection_handling_score"),
    "closing": ("closing", "close", "closing_score"),
    "safety": ("safety", "safety_score"),
}

_SECTION_NAMES = ("scores", "session_summary", "summary", "feedback", "line_ratings")

_HEDGING_PATTERN = re.compile(
    r"\b(?:maybe|i think|i guess|kind of|sort of|probably|possibly|not sure|"
    r"if you want|no pressure|just wondering|hopefully)\b",
    re.IGNORECASE,
)
_TECHNIQUE_PATTERN = re.compile(
    r"i understand|i hear you|i totally get|makes sense that|"
    r"\bfelt\b.*\bfound\b|a lot of (?:your )?neighbors|"
    r"which works better|morning or (?:afternoon|evening)|"
    r"when we come out|your technician|let's get you (?:started|scheduled)",
    re.IGNORECASE,
)
_SHORT_REPLY_WORDS = 4


class CompletionClient(Protocol):
    def complete(self, prompt: str, **kwargs: Any) -> str:
        ...


@dataclass
class LineRating:
    """Judgment about one rep turn, tagged with where it came from.

    ``source`` is ``"llm"`` for model-produced ratings and ``"heuristic"`` for
    the local lexical fallback; consumers must not treat them as equivalent.
    """

    turn_index: int
    label: str
    source: str
    reason: str = ""
    alternatives: List[str] = field(default_factory=list)
    text: str = ""
    cached: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "turn_index": self.turn_index,
            "label": self.label,
            "source": self.source,
            "reason": self.reason,
            "alternatives": list(self.alternatives),
            "text": self.text,
            "cached": self.cached,
        }
        if self.error:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LineRating":
        return cls(
            turn_index=int(data.get("turn_index", 0)),
            label=str(data.get("label") or ""),
            source=str(data.get("source") or SOURCE_LLM),
            reason=str(data.get("reason") or ""),
            alternatives=[str(item) for item in data.get("alternatives") or []],
            text=str(data.get("text") or ""),
            cached=bool(data.get("cached", False)),
            error=data.get("error"),
        )


@dataclass
class RubricPacket:
    scores: Dict[str, Optional[int]]
    summary: str = ""
    feedback: Dict[str, List[str]] = field(default_factory=dict)
    line_ratings: List[LineRating] = field(default_factory=list)
    line_ratings_source: str = SOURCE_HEURISTIC
    parse_status: str = STATUS_OK
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def overall(self) -> Optional[int]:
        return self.scores.get("overall")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scores": dict(self.scores),
            "summary": self.summary,
            "feedback": {key: list(value) for key, value in self.feedback.items()},
            "line_ratings": [rating.to_dict() for rating in self.line_ratings],
            "line_ratings_source": self.line_ratings_source,
            "parse_status": self.parse_status,
        }


def format_clock(seconds: float) -> str:
    whole = int(max(0.0, seconds))
    return f"{whole // 60}:{whole % 60:02d}"


def render_transcript(transcript: Transcript) -> str:
    """Render ``[index] (m:ss) Sales Rep|Homeowner: text`` lines."""
    lines = []
    for turn in transcript:
        speaker = "Sales Rep" if turn.is_rep else "Homeowner"
        lines.append(f"[{turn.index}] ({format_clock(transcript.offset_seconds(turn))}) {speaker}: {turn.text}")
    return "\n".join(lines)


SYSTEM_PROMPT = (
    "You are an expert sales coach grading door-to-door sales practice conversations. "
    "Analyze ONLY the conversation provided and respond with strict JSON, no prose."
)

_PROMPT_TEMPLATE = """Grade the sales rep in the conversation below.

Deterministic metrics (already computed, do not recount):
- Words per minute: {wpm}
- Filler words: {fillers}
- Question ratio: {question_ratio}%
- Close attempts: {close_attempts}
- Buying signal detected: {buying_signal}
- Contact details collected: {info_collected}
- Spouse approval raised: {spouse_approval}

Scoring criteria (each 0-100):
RAPPORT: personal connection, name usage, warmth. Penalize fake friendliness.
DISCOVERY: problem identification, open questions, follow-up depth.
OBJECTION_HANDLING: acknowledge, clarify, address, confirm. Penalize dismissiveness.
CLOSING: assumptive and alternative-choice closes, clear next steps. Penalize permission seeking.
SAFETY: addresses pets, children and product safety when relevant.

Return JSON with exactly these keys:
{{
  "scores": {{"rapport": 0, "discovery": 0, "objection_handling": 0, "closing": 0, "safety": 0, "overall": 0}},
  "session_summary": "2-3 sentences",
  "feedback": {{"strengths": [], "improvements": [], "specific_tips": []}},
  "line_ratings": [{{"line": 0, "rating": "excellent|good|poor|missed_opportunity", "reason": "", "alternatives": []}}]
}}
Rate only Sales Rep lines in line_ratings, using the bracketed line number.

Conversation:
{transcript}
"""


def build_rubric_prompt(transcript: Transcript, metrics: SpeechMetrics) -> str:
    return _PROMPT_TEMPLATE.format(
        wpm=metrics.words_per_minute,
        fillers=metrics.filler_word_count,
        question_ratio=metrics.question_ratio,
        close_attempts=metrics.close_attempts,
        buying_signal="yes" if metrics.buying_signal else "no",
        info_collected="yes" if metrics.info_collected else "no",
        spouse_approval="yes" if metrics.spouse_approval else "no",
        transcript=render_transcript(transcript),
    )


def clamp_score(value: Any) -> Optional[int]:
    """Coerce a model score into an int in 0..100; None when not numeric."""
    if isinstance(value, Mapping):
        value = value.get("score", value.get("value"))
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(max(0, min(100, math.floor(number + 0.5))))


def normalize_scores(raw: Any) -> Dict[str, Optional[int]]:
    source: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    scores: Dict[str, Optional[int]] = {}
    for category in RUBRIC_CATEGORIES:
        value = None
        for alias in _SCORE_ALIASES[category]:
            if alias in source:
                value = clamp_score(source[alias])
                if value is not None:
                    break
        scores[category] = value

    overall = clamp_score(source.get("overall", source.get("overall_score")))
    if overall is None:
        present = [score for score in scores.values() if score is not None]
        if present:
            overall = int(math.floor(sum(present) / len(present) + 0.5))
    scores["overall"] = overall
    return scores


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, Iterable):
        items = []
        for item in value:
            if isinstance(item, Mapping):
                text = item.get("text") or item.get("tip") or item.get("moment") or ""
                if text:
                    items.append(str(text))
            elif item is not None and str(item).strip():
                items.append(str(item))
        return items
    return []


def normalize_feedback(raw: Any) -> Dict[str, List[str]]:
    source: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    return {
        "strengths": _string_list(source.get("strengths")),
        "improvements": _string_list(source.get("improvements")),
        "specific_tips": _string_list(source.get("specific_tips", source.get("tips"))),
    }


def _coerce_index(item: Mapping[str, Any], limit: int) -> Optional[int]:
    """Turn index named by a model rating; None when absent, non-integral or outside ``[0, limit)``."""
    for key in ("turn_index", "line", "line_number", "index"):
        value = item.get(key)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, float):
            if not math.isfinite(value) or not value.is_integer():
                return None
            value = int(value)
        elif isinstance(value, str):
            if not value.strip().isdecimal():
                continue
            value = int(value.strip())
        elif not isinstance(value, int):
            continue
        return value if 0 <= value < limit else None
    return None


def adopt_llm_line_ratings(raw: Any, transcript: Transcript) -> List[LineRating]:
    """Take the model's line-rating list as given, only normalising field names."""
    if not isinstance(raw, list):
        return []
    rep_turns = transcript.rep_turns()
    turns_by_index = {turn.index: turn for turn in transcript}
    ratings: List[LineRating] = []
    for position, item in enumerate(raw):
        if not isinstance(item, Mapping):
            continue
        index = _coerce_index(item, len(transcript))
        if index is None:
            index = rep_turns[position].index if position < len(rep_turns) else position
        label = item.get("rating") or item.get("label") or item.get("effectiveness") or ""
        turn = turns_by_index.get(index)
        ratings.append(
            LineRating(
                turn_index=index,
                label=str(label).strip().lower(),
                source=SOURCE_LLM,
                reason=str(item.get("reason") or item.get("rationale") or ""),
                alternatives=_string_list(item.get("alternatives") or item.get("alternative_lines")),
                text=turn.text if turn else str(item.get("text") or ""),
            )
        )
    return ratings


def heuristic_label(turn: Turn) -> LineRating:
    """Approximate a rating from shallow lexical cues."""
    text = turn.text.strip()
    words = len([token for token in text.split() if token])
    if _TECHNIQUE_PATTERN.search(text):
        label, reason = LABEL_EXCELLENT, "Uses an advanced technique (empathy, reframing or an assumptive question)."
    elif _HEDGING_PATTERN.search(text):
        label, reason = LABEL_POOR, "Hedging language weakens the rep's position."
    elif words < _SHORT_REPLY_WORDS:
        label, reason = LABEL_MISSED, "Very short reply; an opportunity to advance the conversation was missed."
    else:
        label, reason = LABEL_GOOD, "No strong positive or negative cues detected."
    return LineRating(turn_index=turn.index, label=label, source=SOURCE_HEURISTIC, reason=reason, text=turn.text)


def heuristic_line_ratings(transcript: Transcript) -> List[LineRating]:
    return [heuristic_label(turn) for turn in transcript.rep_turns()]


def _summary_from(data: Mapping[str, Any]) -> str:
    summary = data.get("session_summary", data.get("summary"))
    if isinstance(summary, Mapping):
        summary = summary.get("text") or summary.get("overview") or ""
    return str(summary or "").strip()


def parse_rubric_response(response_text: str, transcript: Transcript) -> RubricPacket:
    """Turn a raw model response into a RubricPacket.

    Parsing strategy:
    1. Direct JSON parse (after stripping code fences)
    2. JSON repair of a truncated response
    3. Per-section extraction into a partial packet

    Raises:
        StructuredResponseError: When no section can be recovered.
    """
    try:
        data, status = parse_json_lenient(response_text)
        if not isinstance(data, Mapping):
            raise StructuredResponseError("Rubric response is not a JSON object", response_text)
        if not any(name in data for name in _SECTION_NAMES):
            raise StructuredResponseError("Rubric response has no recognisable sections", response_text)
    except StructuredResponseError:
        data = extract_sections(response_text, _SECTION_NAMES)
        if not any(name in data for name in ("scores", "feedback", "session_summary", "summary")):
            raise StructuredResponseError(
                "Rubric response could not be parsed, repaired or partially extracted",
                response_text,
            )
        status = STATUS_PARTIAL
        LOGGER.warning("Using partial rubric packet with sections %s", sorted(data))

    llm_ratings = adopt_llm_line_ratings(data.get("line_ratings"), transcript)
    if llm_ratings:
        line_ratings, source = llm_ratings, SOURCE_LLM
    else:
        line_ratings, source = heuristic_line_ratings(transcript), SOURCE_HEURISTIC

    known = set(_SECTION_NAMES)
    return RubricPacket(
        scores=normalize_scores(data.get("scores")),
        summary=_summary_from(data),
        feedback=normalize_feedback(data.get("feedback")),
        line_ratings=line_ratings,
        line_ratings_source=source,
        parse_status=status,
        extras={key: value for key, value in data.items() if key not in known},
    )


class RubricGrader:
    """Runs the rubric prompt through a completion client and parses the result.

    Transport errors (GradingUnavailableError) propagate untouched; retrying
    is the client's and caller's concern.
    """

    def __init__(
        self,
        llm: CompletionClient,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> None:
        self.llm = llm
        self.temperature = config.GRADER_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or config.GRADER_MAX_TOKENS

    def grade(
        self,
        transcript: Transcript,
        metrics: SpeechMetrics,
        *,
        deadline: Optional[float] = None,
    ) -> RubricPacket:
        """Grade ``transcript``; ``deadline`` is a ``time.monotonic()`` instant bounding the model call."""
        prompt = build_rubric_prompt(transcript, metrics)
        response_text = self.llm.complete(
            prompt,
            system=SYSTEM_PROMPT,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            json_mode=True,
            description="Rubric grading",
            deadline=deadline,
        )
        try:
            packet = parse_rubric_response(response_text, transcript)
        except StructuredResponseError:
            LOGGER.error("Unusable rubric response: %s", preview(response_text))
            raise
        if packet.parse_status == STATUS_REPAIRED:
            LOGGER.info("Rubric response was truncated and repaired (%d chars)", len(response_text or ""))
        LOGGER.debug(
            "Rubric graded turns=%d overall=%s line_ratings=%d source=%s",
            len(transcript),
            packet.overall,
            len(packet.line_ratings),
            packet.line_ratings_source,
        )
        return packet
