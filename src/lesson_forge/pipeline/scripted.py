"""Deterministic in-process backend for demos and tests."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator, Mapping

from lesson_forge.pipeline.backend import GenerationRequest, GenerationResponse

ScriptedReply = str | Exception | Callable[[GenerationRequest], str]
ScriptedResponse = ScriptedReply | list[ScriptedReply]

_LINE_VALUE = re.compile(
    r"^(?P<key>Topic|Subtopics|Requested subtopics|Mode): (?P<value>.*)$",
    re.MULTILINE,
)
_COUNTS = re.compile(r"Produce (\d+) mcsc, (\d+) mcmc and (\d+) subjective")
_OPTIONS = ["Statement one", "Statement two", "Statement three", "Statement four"]


class ScriptedBackend:
    """Answer each agent from a script instead of a model.

    A script value is a string, an exception to raise, a callable taking the
    request, or a list of those consumed in order (the last one repeats).
    Agents missing from the script fall back to :func:`default_script`.
    """

    def __init__(self, script: Mapping[str, ScriptedResponse] | None = None) -> None:
        self._script: dict[str, ScriptedResponse] = dict(default_script())
        if script:
            self._script.update(script)
        self._positions: dict[str, int] = {}
        self.calls: list[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        return GenerationResponse(text=self._reply(request))

    def stream(self, request: GenerationRequest) -> Iterator[str]:
        text = self._reply(request)
        yield from text.splitlines(keepends=True)

    def calls_for(self, agent: str) -> list[GenerationRequest]:
        return [call for call in self.calls if call.agent == agent]

    def _reply(self, request: GenerationRequest) -> str:
        self.calls.append(request)
        entry = self._script.get(request.agent)
        if entry is None:
            raise KeyError(f"No scripted response for agent {request.agent!r}")
        if isinstance(entry, list):
            position = self._positions.get(request.agent, 0)
            self._positions[request.agent] = position + 1
            entry = entry[min(position, len(entry) - 1)]
        if isinstance(entry, Exception):
            raise entry
        if callable(entry):
            return entry(request)
        return entry


def default_script() -> dict[str, ScriptedResponse]:
    """Plausible replies for every pipeline agent, good enough to pass the gates."""

    return {
        "CourseDetector": json.dumps(
            {
                "domain": "programming",
                "confidence": 0.92,
                "reasoning": "The topic and subtopics describe software development concepts.",
            },
        ),
        "Analyzer": _analysis_reply,
        "Creator": _creator_reply,
        "Sanitizer": "NO_CHANGES_NEEDED",
        "Reviewer": json.dumps(
            {
                "score": 9,
                "needsPolish": False,
                "feedback": "Clear structure and accurate examples throughout.",
                "detailedFeedback": [],
            },
        ),
        "Refiner": "NO_CHANGES_NEEDED",
        "Formatter": _formatter_reply,
        "MetaQuality": json.dumps(
            {
                "scores": {
                    "formatting": 8,
                    "pedagogy": 8,
                    "clarity": 9,
                    "structure": 8,
                    "consistency": 8,
                    "factualAccuracy": 9,
                },
                "issues": [],
                "strengths": ["Concrete examples for each subtopic"],
                "overallAssessment": "Solid material that follows the requested outline.",
            },
        ),
    }


def _prompt_values(prompt: str) -> dict[str, str]:
    return {
        match.group("key"): match.group("value").strip()
        for match in _LINE_VALUE.finditer(prompt)
    }


def _split_subtopics(raw: str) -> list[str]:
    if raw == "(none)":
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _analysis_reply(request: GenerationRequest) -> str:
    values = _prompt_values(request.prompt)
    subtopics = _split_subtopics(values.get("Requested subtopics", ""))
    return json.dumps(
        {
            "covered": subtopics,
            "notCovered": [],
            "partiallyCovered": [],
            "transcriptTopics": subtopics,
        },
    )


def _creator_reply(request: GenerationRequest) -> str:
    values = _prompt_values(request.prompt)
    topic = values.get("Topic", "the topic")
    subtopics = _split_subtopics(values.get("Subtopics", "")) or [topic]
    if values.get("Mode") == "assignment":
        counts = _COUNTS.search(request.prompt)
        mcsc, mcmc, subjective = (int(value) for value in counts.groups()) if counts else (1, 1, 1)
        return json.dumps(_assignment_items(topic, mcsc, mcmc, subjective), indent=2)

    sections = [f"# {topic}\n"]
    for subtopic in subtopics:
        sections.append(
            f"## {subtopic}\n\n"
            f"{subtopic} is a core part of {topic}. This section walks through the idea "
            "with a short worked example and the mistakes learners make most often.\n",
        )
    sections.append("## Recap\n\nReview each section and try the examples on your own.\n")
    return "\n".join(sections)


def _formatter_reply(request: GenerationRequest) -> str:
    values = _prompt_values(request.prompt)
    return json.dumps(_assignment_items(values.get("Topic", "the draft"), 0, 0, 1))


def _assignment_items(
    topic: str,
    mcsc: int,
    mcmc: int,
    subjective: int,
) -> list[dict[str, object]]:
    items: list[dict[str, object]] = []
    for index in range(mcsc):
        items.append(
            {
                "questionType": "mcsc",
                "contentBody": f"Question {index + 1} about {topic}: pick the correct statement.",
                "options": list(_OPTIONS),
                "correct_option": "B",
                "difficultyLevel": "Easy",
                "explanation": "The second statement matches the definition.",
            },
        )
    for index in range(mcmc):
        items.append(
            {
                "questionType": "mcmc",
                "contentBody": f"Question {index + 1} about {topic}: pick all correct statements.",
                "options": list(_OPTIONS),
                "correct_option": "A, C",
                "explanation": "The first and third statements both hold.",
            },
        )
    for index in range(subjective):
        items.append(
            {
                "questionType": "subjective",
                "contentBody": f"Explain {topic} in your own words (question {index + 1}).",
                "model_answer": f"A complete answer defines {topic} and gives an example.",
                "difficultyLevel": "Hard",
            },
        )
    return items
