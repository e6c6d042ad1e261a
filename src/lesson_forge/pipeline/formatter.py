"""Assignment item normalization for the formatter step."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from lesson_forge.pipeline.parsing import parse_json_array

logger = logging.getLogger(__name__)

_LETTER_TO_NUMBER = {"A": 1, "B": 2, "C": 3, "D": 4}
_FLAT_OBJECT = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}")


def structured_items(content: str) -> list[dict[str, Any]] | None:
    """Items when ``content`` already is a JSON list of assignment questions."""

    parsed = parse_json_array(content)
    if not parsed:
        return None
    first = parsed[0]
    if not isinstance(first, dict) or not (first.get("questionType") or first.get("contentBody")):
        return None
    return [item for item in parsed if isinstance(item, dict)]


def normalize_items(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [_normalize_item(item) for item in items]


def strip_outer_fence(text: str) -> str:
    """Drop a markdown fence around the whole payload, keeping inner backticks."""

    stripped = text.strip()
    if stripped.startswith("```json"):
        stripped = stripped[7:]
    elif stripped.startswith("```"):
        stripped = stripped[3:]
    if stripped.endswith("```"):
        stripped = stripped[:-3]
    return stripped.strip()


def recover_items(text: str) -> list[dict[str, Any]]:
    """Salvage well-formed question objects out of a broken array."""

    recovered: list[dict[str, Any]] = []
    for match in _FLAT_OBJECT.finditer(text):
        try:
            item = json.loads(match.group(0))
        except json.JSONDecodeError:
            continue
        if isinstance(item, dict) and item.get("questionType") and item.get("contentBody"):
            recovered.append(item)
    return recovered


def render_items(items: list[dict[str, Any]]) -> str:
    return json.dumps(normalize_items(items), ensure_ascii=False, indent=2)


def error_payload(error: str, raw: str) -> str:
    return json.dumps({"error": error, "raw": raw}, ensure_ascii=False, indent=2)


def format_model_output(text: str) -> str:
    """Formatted payload from formatter model text, or an explicit error payload."""

    cleaned = strip_outer_fence(text)
    parsed = parse_json_array(cleaned)
    if parsed is not None:
        return render_items([item for item in parsed if isinstance(item, dict)])

    recovered = recover_items(cleaned)
    if recovered:
        logger.info("Recovered %d assignment items from partial JSON", len(recovered))
        return render_items(recovered)

    logger.warning("Formatter output could not be parsed as assignment items")
    return error_payload("Formatter output is not a JSON list of assignment items", text)


def count_items(formatted: str | None) -> int:
    """Number of items in a formatted payload; error payloads count as zero."""

    if not formatted:
        return 0
    try:
        parsed = json.loads(formatted)
    except json.JSONDecodeError:
        return 0
    return len(parsed) if isinstance(parsed, list) else 0


def _normalize_item(item: dict[str, Any]) -> dict[str, Any]:
    options = item.get("options")
    if isinstance(options, list):
        padded = [*options, "", "", "", ""][:4]
        options = {str(index + 1): value for index, value in enumerate(padded)}
    elif not isinstance(options, dict) or not options:
        options = {"1": "", "2": "", "3": "", "4": ""}
    else:
        options = {str(key): value for key, value in options.items()}

    question_type = str(item.get("questionType") or "mcsc").lower()
    mcsc_answer = item.get("mcscAnswer")
    mcmc_answer = item.get("mcmcAnswer")
    correct_option = item.get("correct_option")
    if isinstance(correct_option, str) and not mcsc_answer and not mcmc_answer:
        if question_type == "mcsc":
            mcsc_answer = _LETTER_TO_NUMBER.get(correct_option.strip().upper(), 1)
        elif question_type == "mcmc":
            numbers = [
                _LETTER_TO_NUMBER[letter]
                for letter in (part.strip().upper() for part in correct_option.split(","))
                if letter in _LETTER_TO_NUMBER
            ]
            mcmc_answer = ", ".join(str(number) for number in numbers)

    normalized: dict[str, Any] = {
        "questionType": question_type,
        "contentType": "markdown",
        "contentBody": item.get("contentBody") or item.get("question_text") or "",
        "options": options,
        "difficultyLevel": item.get("difficultyLevel") or "Medium",
        "answerExplanation": item.get("answerExplanation") or item.get("explanation") or "",
    }
    if question_type == "mcsc":
        normalized["mcscAnswer"] = mcsc_answer
    elif question_type == "mcmc":
        normalized["mcmcAnswer"] = mcmc_answer
    elif question_type == "subjective":
        normalized["subjectiveAnswer"] = item.get("subjectiveAnswer") or item.get("model_answer")
    return normalized
