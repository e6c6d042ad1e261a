from __future__ import annotations

import json

import allure

from lesson_forge.pipeline.formatter import (
    count_items,
    error_payload,
    format_model_output,
    normalize_items,
    recover_items,
    strip_outer_fence,
    structured_items,
)
from lesson_forge.pipeline.parsing import parse_json_array, parse_json_object

pytestmark = [
    allure.epic("Content Pipeline"),
    allure.feature("Assignment Formatting"),
]

_MCSC = {
    "questionType": "MCSC",
    "contentBody": "Which keyword defines a generator?",
    "options": ["return", "yield", "lambda"],
    "correct_option": "B",
    "explanation": "yield suspends the function.",
}
_MCMC = {
    "questionType": "mcmc",
    "contentBody": "Which objects are iterable?",
    "options": {"1": "list", "2": "int", "3": "str", "4": "float"},
    "correct_option": "A, C",
}
_SUBJECTIVE = {
    "questionType": "subjective",
    "question_text": "Explain lazy evaluation.",
    "model_answer": "Values are produced on demand.",
    "difficultyLevel": "Hard",
}


def test_parse_json_object_handles_fences_and_prose() -> None:
    assert parse_json_object('{"score": 9}') == {"score": 9}
    assert parse_json_object('Here you go:\n```json\n{"score": 8}\n```') == {"score": 8}
    assert parse_json_object('Verdict: {"score": 7} as requested.') == {"score": 7}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("no json at all") is None
    assert parse_json_object("") is None


def test_parse_json_array_handles_fences_and_prose() -> None:
    assert parse_json_array("[1, 2]") == [1, 2]
    assert parse_json_array('```\n[{"a": 1}]\n```') == [{"a": 1}]
    assert parse_json_array("Items: [3] done") == [3]
    assert parse_json_array('{"a": 1}') is None


def test_normalize_items_maps_answers_and_defaults() -> None:
    mcsc, mcmc, subjective = normalize_items([_MCSC, _MCMC, _SUBJECTIVE])

    assert mcsc == {
        "questionType": "mcsc",
        "contentType": "markdown",
        "contentBody": "Which keyword defines a generator?",
        "options": {"1": "return", "2": "yield", "3": "lambda", "4": ""},
        "difficultyLevel": "Medium",
        "answerExplanation": "yield suspends the function.",
        "mcscAnswer": 2,
    }
    assert mcmc["mcmcAnswer"] == "1, 3"
    assert mcmc["options"] == {"1": "list", "2": "int", "3": "str", "4": "float"}
    assert subjective["contentBody"] == "Explain lazy evaluation."
    assert subjective["subjectiveAnswer"] == "Values are produced on demand."
    assert subjective["options"] == {"1": "", "2": "", "3": "", "4": ""}
    assert subjective["difficultyLevel"] == "Hard"


def test_normalize_items_keeps_explicit_answers() -> None:
    item = dict(_MCSC, mcscAnswer=3)

    assert normalize_items([item])[0]["mcscAnswer"] == 3


def test_structured_items_detects_assignment_arrays() -> None:
    assert structured_items(json.dumps([_MCSC, _MCMC])) == [_MCSC, _MCMC]
    assert structured_items("# Lecture notes\n\nNot JSON") is None
    assert structured_items("[]") is None
    assert structured_items('[{"title": "not a question"}]') is None


def test_strip_outer_fence_keeps_inner_content() -> None:
    assert strip_outer_fence('```json\n[{"a": "`x`"}]\n```') == '[{"a": "`x`"}]'
    assert strip_outer_fence("```\n[]\n```") == "[]"
    assert strip_outer_fence("[]") == "[]"


def test_recover_items_salvages_complete_objects() -> None:
    broken = "[" + json.dumps(_MCMC) + ", " + json.dumps(_SUBJECTIVE) + ', {"questionType": "mc'

    recovered = recover_items(broken)

    assert recovered == [_MCMC]


def test_format_model_output_parses_fenced_array() -> None:
    formatted = format_model_output("```json\n" + json.dumps([_MCSC, _SUBJECTIVE]) + "\n```")

    items = json.loads(formatted)
    assert [item["questionType"] for item in items] == ["mcsc", "subjective"]
    assert count_items(formatted) == 2


def test_format_model_output_recovers_partial_array() -> None:
    broken = "[" + json.dumps(_MCSC) + ", {\"questionType\": \"mcmc\", \"contentBody\": "

    formatted = format_model_output(broken)

    assert count_items(formatted) == 1
    assert json.loads(formatted)[0]["mcscAnswer"] == 2


def test_format_model_output_returns_error_payload() -> None:
    formatted = format_model_output("Sorry, nothing to format here.")

    payload = json.loads(formatted)
    assert payload["raw"] == "Sorry, nothing to format here."
    assert "not a JSON list" in payload["error"]
    assert count_items(formatted) == 0


def test_count_items_handles_missing_and_invalid_payloads() -> None:
    assert count_items(None) == 0
    assert count_items("") == 0
    assert count_items("not json") == 0
    assert count_items(error_payload("boom", "raw")) == 0
    assert count_items("[{}, {}]") == 2
