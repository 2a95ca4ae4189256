"""Helpers for pulling structured content out of generated text."""

from __future__ import annotations

import json
import re

_FENCE_RE = re.compile(r"```[\w+-]*[ \t]*\n?(.*?)\n?```", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Return the first fenced code block's body, or the trimmed text if there is none."""
    if not text or not text.strip():
        return ""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip("\n")
    return text.strip()


def extract_json(text: str) -> dict:
    """Parse the JSON object in a response, tolerating fences and surrounding prose.

    Raises ValueError if no JSON object can be decoded.
    """
    body = strip_code_fences(text)
    start = body.find("{")
    end = body.rfind("}")
    if start == -1 or end < start:
        raise ValueError("No JSON object in response")
    data = json.loads(body[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("Response JSON is not an object")
    return data


def get_field(data: dict, *names: str, default=None):
    """Look up the first present key, case-insensitively."""
    lowered = {k.lower(): v for k, v in data.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value is not None:
            return value
    return default
