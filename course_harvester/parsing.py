"""Recover a JSON array from free-form model output."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from .errors import ResponseParseError

log = logging.getLogger(__name__)


def find_balanced_array(text: str, start: int = 0) -> Optional[str]:
    """Return the bracket-balanced slice opening at the first ``[`` at/after *start*.

    Brackets inside double-quoted strings (escapes honoured) do not count.
    Returns ``None`` when there is no ``[`` or the brackets never close,
    e.g. because the response was truncated.
    """
    first = text.find("[", start)
    if first == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(first, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return text[first : i + 1]
    return None


def extract_json_array(text: str) -> list[dict[str, Any]]:
    """Extract the record array embedded in *text*.

    Balanced slices are tried from each ``[`` in order, resuming after a
    slice that is not a record array, so a bracketed aside in a preamble
    ("[Note] ...") does not hide the real payload. A ``[`` whose brackets
    never close means the response was cut off; that is a parse failure
    rather than an invitation to look inside the broken payload.

    Raises:
        ResponseParseError: no slice decodes to a JSON array holding
            objects (an empty array is fine), or the response is truncated.
    """
    if not text:
        raise ResponseParseError("Empty response")

    position = 0
    last_error = "no JSON array found"
    while True:
        start = text.find("[", position)
        if start == -1:
            break
        candidate = find_balanced_array(text, start)
        if candidate is None:
            log.debug("Unbalanced array at offset %s: %.200s", start, text[start:])
            raise ResponseParseError("Truncated response: unbalanced brackets")
        position = start + len(candidate)
        try:
            parsed = json.loads(candidate)
        except ValueError as exc:
            last_error = str(exc)
            log.debug("Candidate at offset %s is not JSON: %s", start, exc)
            continue
        if not isinstance(parsed, list):
            continue
        records = [item for item in parsed if isinstance(item, dict)]
        if parsed and not records:
            last_error = "array holds no objects"
            continue
        if len(records) != len(parsed):
            log.debug("Ignored %s non-object array element(s)", len(parsed) - len(records))
        return records

    log.debug("No JSON array recovered (%s): %.200s", last_error, text)
    raise ResponseParseError(f"No recoverable JSON array: {last_error}")


def response_text(payload: Any) -> str:
    """Return the model text carried by a completion-service response body."""
    if isinstance(payload, list):
        return json.dumps(payload)
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        return ""

    candidates = payload.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        content = candidates[0].get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if isinstance(parts, list):
            texts = [str(p.get("text") or "") for p in parts if isinstance(p, dict)]
            if any(texts):
                return "".join(texts)

    text = payload.get("text")
    return str(text) if text else ""
