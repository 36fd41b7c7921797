"""Deterministic linguistic signals computed from a transcript.

Everything here is a pure function of the transcript and the session
duration. Nothing is persisted as a source of truth; the orchestrator
recomputes the record on every request.
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Pattern

from .transcript import Transcript, Turn

# Closed set of discourse fillers. "like" and "you know" are deliberately absent.
FILLER_PATTERN = re.compile(r"\b(?:um|uhh?|erm|err|hmm)\b", re.IGNORECASE)

_CLOSE_ATTEMPT_PATTERNS: List[Pattern[str]] = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"let's get you (?:started|scheduled)",
        r"\bi can offer\b",
        r"special pricing",
        r"today only",
        r"shall we proceed",
        r"ready to (?:start|begin)",
        r"can we schedule",
        r"would you like to",
        r"let's set up",
        r"when can we",
        r"what(?: is|'s) your (?:name|phone|email|house number)",
        r"what(?: is|'s).*address",
        r"anything else.*special notes",
        r"credit or debit",
        r"are you using.*credit.*debit",
        r"payment method",
        r"how would you like to pay",
        r"best time to (?:service|treat)",
        r"front yard or back yard",
        r"morning or evening",
        r"does morning.*evening work",
        r"which.*would you",
        r"put your dog away",
        r"can you open the garage",
        r"gate.*unlocked",
        r"give me (?:a shot|a chance|an honest try)",
        r"if i can get you done.*neighbor",
        r"you'll be here.*right",
    )
]

_BUYING_SIGNAL_PATTERNS: List[Pattern[str]] = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"sounds good",
        r"that works",
        r"i'm interested",
        r"let's do it",
        r"count me in",
        r"i'm ready",
        r"when can (?:you|we) start",
        r"what's next",
        r"how do i sign up",
        r"that makes sense",
        r"i like that",
        r"definitely need",
        r"that's reasonable",
        r"i can do that",
        r"what's included",
        r"how does it work",
        r"how soon",
        r"how much",
    )
]

_CONTACT_DETAIL_PATTERNS: List[Pattern[str]] = [
    re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"),
    re.compile(r"\(?\b\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b"),
    re.compile(r"\bmy (?:email|phone|number|name|address) is\b", re.IGNORECASE),
]

_SPOUSE_PATTERN = re.compile(
    r"\b(?:spouse|wife|husband|partner)\b.*\b(?:ask|check|talk|discuss|run it by|decide|approve|okay|ok)\b"
    r"|\b(?:ask|check with|talk to|discuss with|run it by)\b.*\b(?:spouse|wife|husband|partner)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class SpeechMetrics:
    filler_word_count: int = 0
    words_per_minute: int = 0
    question_ratio: int = 0
    close_attempts: int = 0
    buying_signal: bool = False
    info_collected: bool = False
    spouse_approval: bool = False
    rep_word_count: int = 0
    rep_turns: int = 0
    homeowner_turns: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def count_words(text: str) -> int:
    return len([token for token in text.split() if token])


def count_fillers(text: str) -> int:
    return len(FILLER_PATTERN.findall(text))


def _any_match(patterns: Iterable[Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def count_close_attempts(turns: Iterable[Turn]) -> int:
    """Count rep turns that contain at least one assumptive-close phrasing."""
    return sum(1 for turn in turns if _any_match(_CLOSE_ATTEMPT_PATTERNS, turn.text))


def compute_speech_metrics(transcript: Transcript, duration_seconds: float) -> SpeechMetrics:
    """Compute the deterministic metrics record for ``transcript``.

    WPM and question ratio only consider rep turns and are rounded half-up to
    whole numbers; zero duration or zero rep turns yield 0 instead of dividing.
    """
    if not transcript:
        return SpeechMetrics()

    rep_turns = transcript.rep_turns()
    homeowner_turns = transcript.homeowner_turns()

    rep_words = sum(count_words(turn.text) for turn in rep_turns)
    fillers = sum(count_fillers(turn.text) for turn in rep_turns)

    duration = float(duration_seconds or 0)
    if duration > 0 and math.isfinite(duration):
        wpm = _round_half_up(rep_words / (duration / 60.0))
    else:
        wpm = 0

    if rep_turns:
        questions = sum(1 for turn in rep_turns if turn.text.rstrip().endswith("?"))
        question_ratio = _round_half_up(questions / len(rep_turns) * 100)
    else:
        question_ratio = 0

    homeowner_text = [turn.text for turn in homeowner_turns]
    return SpeechMetrics(
        filler_word_count=fillers,
        words_per_minute=wpm,
        question_ratio=question_ratio,
        close_attempts=count_close_attempts(rep_turns),
        buying_signal=any(_any_match(_BUYING_SIGNAL_PATTERNS, text) for text in homeowner_text),
        info_collected=any(_any_match(_CONTACT_DETAIL_PATTERNS, text) for text in homeowner_text),
        spouse_approval=any(_SPOUSE_PATTERN.search(text) for text in homeowner_text),
        rep_word_count=rep_words,
        rep_turns=len(rep_turns),
        homeowner_turns=len(homeowner_turns),
    )
