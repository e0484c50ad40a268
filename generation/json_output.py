"""
Pull JSON out of model replies.

Models wrap JSON in ``` fences, prepend chatter or cut the last object short
when the deadline hits; json_repair fixes most of that.
"""

import re
from typing import List

import json_repair

from pipeline.errors import ParseFailure

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)(?:```|$)")


def _unfence(raw: str) -> str:
    match = _FENCE.search(raw)
    return match.group(1).strip() if match else raw.strip()


def extract_json_array(raw: str) -> List[dict]:
    """
    Return the first JSON array in `raw` as a list of dicts.
    Non-dict items are dropped. Raises ParseFailure when no array is found.
    """
    if not raw or not raw.strip():
        raise ParseFailure("Model returned empty output", raw_length=len(raw or ""))

    cleaned = _unfence(raw)
    start = cleaned.find("[")
    if start == -1:
        raise ParseFailure(f"No JSON array found: {cleaned[:200]}", raw_length=len(raw))

    end = cleaned.rfind("]")
    fragment = cleaned[start:end + 1] if end > start else cleaned[start:]
    data = json_repair.loads(fragment)
    if not isinstance(data, list):
        raise ParseFailure("Model output is not a JSON array", raw_length=len(raw))
    return [item for item in data if isinstance(item, dict)]


def extract_json_obj(raw: str) -> dict:
    """Return the first JSON object in `raw`. Raises ParseFailure when none is found."""
    if not raw or not raw.strip():
        raise ParseFailure("Model returned empty output", raw_length=len(raw or ""))

    cleaned = _unfence(raw)
    start = cleaned.find("{")
    if start == -1:
        raise ParseFailure(f"No JSON object found: {cleaned[:200]}", raw_length=len(raw))

    end = cleaned.rfind("}")
    fragment = cleaned[start:end + 1] if end > start else cleaned[start:]
    data = json_repair.loads(fragment)
    if not isinstance(data, dict) or not data:
        raise ParseFailure("Model output is not a JSON object", raw_length=len(raw))
    return data
