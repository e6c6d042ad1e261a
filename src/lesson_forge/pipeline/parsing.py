"""Best-effort JSON recovery from free-form model output."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\[{].*?[\]}])\s*```", re.DOTALL | re.IGNORECASE)


def parse_json_object(text: str) -> dict[str, Any] | None:
    """Find a JSON object in ``text``: whole text, fenced block, then outermost braces."""

    payload = _parse_json_payload(text.strip(), opener="{", closer="}")
    if not isinstance(payload, dict):
        return None
    return payload


def parse_json_array(text: str) -> list[Any] | None:
    """Same search as :func:`parse_json_object` for a top-level array."""

    payload = _parse_json_payload(text.strip(), opener="[", closer="]")
    if not isinstance(payload, list):
        return None
    return payload


def _parse_json_payload(text: str, *, opener: str, closer: str) -> Any | None:
    if not text:
        return None
    direct = _try_load(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load(text[start : end + 1])


def _try_load(raw: str) -> Any | None:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None
