"""Defensive parsing of structured output from a text-generating model.

Stage one strips code fences and surrounding prose and parses strictly.
Stage two pulls a minimal set of known fields out with regexes when the
JSON is almost, but not quite, valid.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)

NUMBER_FIELDS = ("plagiarismScore", "aiProbability", "originalScore", "newPlagiarismScore", "newAiProbability")
STRING_FIELDS = ("critique", "rewrittenText")
STRING_LIST_FIELDS = ("detectedIssues", "improvementsMade")

_STRING = r'"((?:[^"\\]|\\.)*)"'


def _number_re(name: str) -> re.Pattern:
    return re.compile(rf'"{name}"\s*:\s*"?(-?\d+(?:\.\d+)?)')


def _string_re(name: str) -> re.Pattern:
    return re.compile(rf'"{name}"\s*:\s*{_STRING}', re.DOTALL)


def _list_re(name: str) -> re.Pattern:
    return re.compile(rf'"{name}"\s*:\s*\[(.*?)\]', re.DOTALL)


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return value.replace('\\"', '"').replace("\\n", "\n")


def _number(value: str) -> Union[int, float]:
    parsed = float(value)
    return int(parsed) if parsed.is_integer() else parsed


def strip_fences(raw: str) -> str:
    return FENCE_RE.sub("", raw.strip()).replace("```", "")


def extract_json_span(text: str) -> Optional[str]:
    """Slice from the first opening bracket to the last closing one."""
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    end = max(text.rfind("}"), text.rfind("]"))
    if not starts or end == -1:
        return None
    start = min(starts)
    if end < start:
        return None
    return text[start : end + 1]


def extract_fields(text: str) -> Optional[dict[str, Any]]:
    """Best-effort field extraction for the known minimal schema."""
    found: dict[str, Any] = {}
    for name in NUMBER_FIELDS:
        match = _number_re(name).search(text)
        if match:
            found[name] = _number(match.group(1))
    for name in STRING_FIELDS:
        match = _string_re(name).search(text)
        if match:
            found[name] = _unescape(match.group(1))
    for name in STRING_LIST_FIELDS:
        match = _list_re(name).search(text)
        if match:
            found[name] = [_unescape(item) for item in re.findall(_STRING, match.group(1))]
    return found or None


def parse_structured_response(raw: Optional[str]) -> Optional[Union[dict, list]]:
    """Parse model output into JSON, falling back to field extraction.

    Returns None when nothing usable can be recovered.
    """
    if not raw or not raw.strip():
        return None

    cleaned = strip_fences(raw)
    span = extract_json_span(cleaned)
    if span is not None:
        try:
            return json.loads(span)
        except json.JSONDecodeError as exc:
            logger.info("Strict JSON parse failed (%s); trying field extraction", exc)

    recovered = extract_fields(cleaned)
    if recovered is None:
        logger.warning("Could not recover structured output: %.200s", raw)
    return recovered
