from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

FENCE_OPEN_RE = re.compile(r"```(?:json)?\s*\n?")
FENCE_CLOSE_RE = re.compile(r"\n?\s*```")
MARKER_RE = re.compile(r'"type"\s*:')
TYPED_OBJECT_RE = re.compile(r'\{\s*"type"\s*:')

logger = logging.getLogger("ephemera.streaming")


@dataclass(frozen=True)
class ClassifiedResponse:
    is_json: bool
    response: str
    preamble: str | None = None


def extract_balanced_json(text: str, start: int) -> str | None:
    """Return the object starting at ``text[start]`` or None if it never closes."""
    if start < 0 or start >= len(text) or text[start] != "{":
        return None

    depth = 0
    in_string = False
    escape = False
    for index in range(start, len(text)):
        ch = text[index]
        if escape:
            escape = False
            continue
        if ch == "\\" and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _parses(candidate: str) -> bool:
    try:
        json.loads(candidate)
    except json.JSONDecodeError:
        return False
    return True


def extract_json_from_response(text: str) -> ClassifiedResponse:
    """Late detection over a complete response that streamed as prose.

    Fences are stripped, the typed object (or failing that the first object) is
    cut out with ``extract_balanced_json`` and accepted only if it parses.
    """
    if not MARKER_RE.search(text):
        return ClassifiedResponse(is_json=False, response=text)

    original = text.strip()
    fence_start = original.find("```")
    preamble_before_fence = original[:fence_start].strip() if fence_start >= 0 else ""

    candidate = FENCE_CLOSE_RE.sub("", FENCE_OPEN_RE.sub("", original)).strip()

    typed = TYPED_OBJECT_RE.search(candidate)
    if typed is not None:
        start = typed.start()
        preamble = preamble_before_fence if fence_start >= 0 else candidate[:start].strip()
    else:
        start = candidate.find("{")
        if start < 0:
            return ClassifiedResponse(is_json=False, response=text)
        preamble = candidate[:start].strip()

    balanced = extract_balanced_json(candidate, start)
    if balanced is None or not _parses(balanced):
        return ClassifiedResponse(is_json=False, response=text)

    logger.info("late_json_detected", extra={"extra_fields": {"json_len": len(balanced)}})
    return ClassifiedResponse(is_json=True, response=balanced, preamble=preamble or None)
