"""Repair JSON produced by language models.

Model responses are routinely cut off at the token limit, wrapped in code
fences, or carry a dangling comma. ``repair_json`` turns such text back into
a parseable document by truncating it to the last complete value and
appending the closers of every container still open at that point. Fields
that were fully present before the cut survive; the partial tail does not.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import StructuredResponseError

LOGGER = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_REPAIRED = "repaired"

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)(?:```|\Z)", re.DOTALL)
_PRIMITIVE_PATTERN = re.compile(r"[^\s,:\[\]{}\"]+")
_PARTIAL_UNICODE_ESCAPE = re.compile(r"\\u[0-9a-fA-F]{0,3}\Z")


def _strip_wrapping(text: str) -> str:
    """Drop code fences and any prose before the first container."""
    cleaned = (text or "").strip()
    if "```" in cleaned:
        match = _FENCE_PATTERN.search(cleaned)
        if match:
            cleaned = match.group(1).strip()
    starts = [position for position in (cleaned.find("{"), cleaned.find("[")) if position >= 0]
    if starts:
        cleaned = cleaned[min(starts):]
    return cleaned


def _scan_string(text: str, start: int) -> int:
    """Return the index just past the string opened at ``start``, or -1 if unterminated."""
    position = start + 1
    length = len(text)
    while position < length:
        char = text[position]
        if char == "\\":
            position += 2
            continue
        if char == '"':
            return position + 1
        position += 1
    return -1


def _strip_dangling_commas(text: str) -> str:
    """Remove commas that sit directly before a closer (or the end of input)."""
    pieces: List[str] = []
    position = 0
    length = len(text)
    while position < length:
        char = text[position]
        if char == '"':
            end = _scan_string(text, position)
            if end == -1:
                pieces.append(text[position:])
                break
            pieces.append(text[position:end])
            position = end
            continue
        if char == ",":
            lookahead = position + 1
            while lookahead < length and text[lookahead].isspace():
                lookahead += 1
            if lookahead >= length or text[lookahead] in "}]":
                position += 1
                continue
        pieces.append(char)
        position += 1
    return "".join(pieces)


def _trim_partial_escape(fragment: str) -> str:
    """Drop an escape sequence cut off at the end of an unterminated string."""
    match = _PARTIAL_UNICODE_ESCAPE.search(fragment)
    if match:
        preceding = len(fragment[: match.start()]) - len(fragment[: match.start()].rstrip("\\"))
        if preceding % 2 == 0:
            fragment = fragment[: match.start()]
    trailing = len(fragment) - len(fragment.rstrip("\\"))
    if trailing % 2 == 1:
        fragment = fragment[:-1]
    return fragment


def _is_primitive(token: str) -> bool:
    try:
        json.loads(token)
    except ValueError:
        return False
    return True


def _closers(stack: List[List[str]]) -> str:
    return "".join("}" if frame[0] == "{" else "]" for frame in reversed(stack))


def _close_truncated(text: str) -> str:
    """Cut ``text`` back to its last complete value and close open containers.

    Each open container is tracked with the token it expects next
    (``key``/``colon``/``value``/``comma``). A checkpoint is taken after every
    complete value; anything unexpected ends the walk and the last checkpoint
    is returned.
    """
    stack: List[List[str]] = []
    checkpoint: Optional[Tuple[int, str]] = None
    position = 0
    length = len(text)

    while position < length:
        char = text[position]
        if char.isspace():
            position += 1
            continue
        frame = stack[-1] if stack else None
        state = frame[1] if frame else "value"

        if char == '"':
            end = _scan_string(text, position)
            if end == -1:
                if state != "value":
                    break
                fragment = _trim_partial_escape(text[position:])
                if frame:
                    frame[1] = "comma"
                return text[:position] + fragment + '"' + _closers(stack)
            if state == "key":
                frame[1] = "colon"
            elif state == "value":
                if not stack:
                    return text[:end]
                frame[1] = "comma"
                checkpoint = (end, _closers(stack))
            else:
                break
            position = end
            continue

        if char in "{[":
            if state != "value":
                break
            if frame:
                frame[1] = "comma"
            stack.append([char, "key" if char == "{" else "value"])
            checkpoint = (position + 1, _closers(stack))
            position += 1
            continue

        if char in "}]":
            if not frame or (char == "}") != (frame[0] == "{"):
                break
            if state not in ("comma", "key" if frame[0] == "{" else "value"):
                break
            stack.pop()
            if not stack:
                return text[: position + 1]
            checkpoint = (position + 1, _closers(stack))
            position += 1
            continue

        if char == ":":
            if state != "colon":
                break
            frame[1] = "value"
            position += 1
            continue

        if char == ",":
            if state != "comma":
                break
            frame[1] = "key" if frame[0] == "{" else "value"
            position += 1
            continue

        match = _PRIMITIVE_PATTERN.match(text, position)
        if not match or state != "value":
            break
        token = match.group(0)
        if not _is_primitive(token):
            break
        end = match.end()
        if not stack:
            return text[:end]
        frame[1] = "comma"
        checkpoint = (end, _closers(stack))
        position = end

    if checkpoint is None:
        return text
    end, tail = checkpoint
    return text[:end] + tail


def repair_json(text: str) -> str:
    """Return ``text`` rewritten into parseable JSON where that is recoverable."""
    candidate = _strip_wrapping(text)
    if not candidate:
        return candidate
    candidate = _strip_dangling_commas(candidate)
    return _close_truncated(candidate)


def _loads(text: str) -> Any:
    return json.loads(text, strict=False)


def parse_json_lenient(text: str) -> Tuple[Any, str]:
    """Parse ``text`` directly or after repair.

    Returns:
        Tuple of the decoded value and ``"ok"`` or ``"repaired"``.

    Raises:
        StructuredResponseError: When neither the direct nor the repaired
            text decodes.
    """
    if not text or not text.strip():
        raise StructuredResponseError("LLM response was empty", text or "")
    cleaned = _strip_wrapping(text)
    try:
        return _loads(cleaned), STATUS_OK
    except ValueError:
        pass

    repaired = repair_json(text)
    try:
        value = _loads(repaired)
    except ValueError as exc:
        raise StructuredResponseError(f"Response is not repairable JSON: {exc}", text) from exc
    LOGGER.info("Recovered truncated JSON response (%d -> %d chars)", len(cleaned), len(repaired))
    return value, STATUS_REPAIRED


def extract_sections(text: str, names: Iterable[str]) -> Dict[str, Any]:
    """Pull individually parseable top-level sections out of a broken response.

    For each name the first ``"name": <value>`` occurrence is located and the
    value is repaired on its own, so a malformed sibling does not take the
    whole packet down. Sections that still fail to decode are omitted.
    """
    sections: Dict[str, Any] = {}
    source = text or ""
    for name in names:
        match = re.search(r'"%s"\s*:\s*' % re.escape(name), source)
        if not match:
            continue
        fragment = _close_truncated(_strip_dangling_commas(source[match.end():]))
        try:
            sections[name] = _loads(fragment)
        except ValueError:
            LOGGER.debug("Section %s could not be recovered", name)
    return sections
