from __future__ import annotations

import json
from datetime import UTC, datetime

import allure
import pytest

from lesson_forge.pipeline.backend import GenerationError
from lesson_forge.pipeline.events import (
    CheckpointEvent,
    ChunkEvent,
    CompleteEvent,
    CourseDetectedEvent,
    ErrorEvent,
    FormattedEvent,
    GapAnalysisEvent,
    MismatchStopEvent,
    NoteEvent,
    PipelineEvent,
    ReplaceEvent,
    StepEvent,
    UsageEvent,
)
from lesson_forge.pipeline.formatter import count_items
from lesson_forge.pipeline.orchestrator import (
    MISMATCH_MESSAGE,
    STATUS_MAP,
    STEP_MAP,
    ContentPipeline,
    parse_review,
    split_subtopics,
    status_for_agent,
    step_for_agent,
)
from lesson_forge.pipeline.scripted import ScriptedBackend
from lesson_forge.queue.models import (
    AssignmentCounts,
    CheckpointView,
    ContentMode,
    JobParams,
    JobStatus,
)

pytestmark = [
    allure.epic("Content Pipeline"),
    allure.feature("Agent Orchestration"),
]

_TRANSCRIPT = (
    "Today we look at generators. The yield keyword pauses a function and hands a value "
    "back to the caller. Generator expressions are the lazy cousin of list comprehensions."
)


def _lecture_params(**overrides) -> JobParams:
    values = {
        "topic": "Python generators",
        "subtopics": "yield, generator expressions",
        "mode": ContentMode.LECTURE,
    }
    values.update(overrides)
    return JobParams(**values)


def _review(score: float, *, needs_polish: bool, feedback: str = "Tighten the recap") -> str:
    return json.dumps(
        {
            "score": score,
            "needsPolish": needs_polish,
            "feedback": feedback,
            "detailedFeedback": ["The recap repeats the introduction word for word."],
        },
    )


def _run(backend: ScriptedBackend, params: JobParams, **kwargs) -> list[PipelineEvent]:
    pipeline = ContentPipeline(backend, max_retries=kwargs.pop("max_retries", 2), **kwargs)
    return list(pipeline.run(params))


def _of_type(events: list[PipelineEvent], kind: type) -> list:
    return [event for event in events if isinstance(event, kind)]


def _steps(events: list[PipelineEvent]) -> list[str]:
    return [event.agent for event in _of_type(events, StepEvent)]


def test_lecture_without_transcript_runs_draft_and_review() -> None:
    backend = ScriptedBackend()

    events = _run(backend, _lecture_params())

    assert _steps(events) == ["CourseDetector", "Creator", "Reviewer"]
    assert backend.calls_for("Analyzer") == []
    assert backend.calls_for("Sanitizer") == []
    detected = _of_type(events, CourseDetectedEvent)[0]
    assert detected.domain == "programming"
    assert detected.confidence == pytest.approx(0.92)
    checkpoints = _of_type(events, CheckpointEvent)
    assert [item.step_number for item in checkpoints] == [3, 4, 5]
    assert [item.step_name for item in checkpoints] == [
        "draft_creation",
        "sanitization",
        "review_refine",
    ]
    complete = events[-1]
    assert isinstance(complete, CompleteEvent)
    draft = "".join(chunk.content for chunk in _of_type(events, ChunkEvent))
    assert complete.content == draft
    assert "## yield" in draft
    assert "## generator expressions" in draft


def test_creator_prompt_carries_topic_mode_and_domain() -> None:
    backend = ScriptedBackend()

    _run(backend, _lecture_params(mode=ContentMode.PRE_READ))

    prompt = backend.calls_for("Creator")[0].prompt
    assert "Mode: pre-read" in prompt
    assert "Topic: Python generators" in prompt
    assert "Domain: programming" in prompt


def test_usage_events_sum_into_complete_cost(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LESSON_FORGE_LLM_PRICING", "*:1.0:2.0")

    events = _run(ScriptedBackend(), _lecture_params())

    usage = _of_type(events, UsageEvent)
    assert [item.agent for item in usage] == ["CourseDetector", "Creator", "Reviewer"]
    assert all(item.prompt_tokens > 0 and item.completion_tokens > 0 for item in usage)
    complete = events[-1]
    assert complete.cost == pytest.approx(sum(item.cost for item in usage))
    assert complete.cost > 0


def test_transcript_mismatch_stops_before_drafting() -> None:
    backend = ScriptedBackend(
        {
            "Analyzer": json.dumps(
                {
                    "covered": [],
                    "notCovered": ["yield", "generator expressions"],
                    "partiallyCovered": [],
                    "transcriptTopics": ["sourdough starters", "oven temperature"],
                },
            ),
        },
    )

    events = _run(backend, _lecture_params(transcript="We bake sourdough bread today."))

    assert isinstance(events[-1], MismatchStopEvent)
    assert events[-1].message == MISMATCH_MESSAGE
    assert backend.calls_for("Creator") == []
    assert _of_type(events, CompleteEvent) == []


def test_partial_coverage_is_not_a_mismatch_and_feeds_gap_notes() -> None:
    backend = ScriptedBackend(
        {
            "Analyzer": json.dumps(
                {
                    "covered": [],
                    "notCovered": ["generator expressions"],
                    "partiallyCovered": ["yield"],
                    "transcriptTopics": ["yield"],
                },
            ),
        },
    )

    events = _run(backend, _lecture_params(transcript=_TRANSCRIPT))

    gap = _of_type(events, GapAnalysisEvent)[0]
    assert gap.total == 2
    assert gap.covered_count == 1
    assert isinstance(events[-1], CompleteEvent)
    creator_prompt = backend.calls_for("Creator")[0].prompt
    assert "missing from the transcript" in creator_prompt
    assert "generator expressions" in creator_prompt


def test_gap_analysis_failure_is_not_fatal() -> None:
    backend = ScriptedBackend(
        {"Analyzer": GenerationError("analyzer offline", transient=True)},
    )

    events = _run(backend, _lecture_params(transcript=_TRANSCRIPT))

    notes = [note.message for note in _of_type(events, NoteEvent) if note.agent == "Analyzer"]
    assert notes == ["Analysis failed, continuing without gap analysis"]
    assert _of_type(events, GapAnalysisEvent) == []
    assert isinstance(events[-1], CompleteEvent)


def test_course_detection_failure_falls_back_to_general_domain() -> None:
    backend = ScriptedBackend(
        {"CourseDetector": GenerationError("detector offline", transient=False)},
    )

    events = _run(backend, _lecture_params())

    detected = _of_type(events, CourseDetectedEvent)[0]
    assert detected.domain == "general"
    assert detected.confidence == 0.5
    assert "Domain: general" in backend.calls_for("Creator")[0].prompt
    assert isinstance(events[-1], CompleteEvent)


def test_sanitizer_rewrite_replaces_content() -> None:
    cleaned = "# Python generators\n\n## yield\n\nOnly what the transcript says about yield.\n"
    backend = ScriptedBackend({"Sanitizer": cleaned})

    events = _run(backend, _lecture_params(transcript=_TRANSCRIPT))

    assert _steps(events) == ["CourseDetector", "Analyzer", "Creator", "Sanitizer", "Reviewer"]
    assert _of_type(events, ReplaceEvent)[0].content == cleaned.strip()
    assert "Only what the transcript says" in backend.calls_for("Reviewer")[0].prompt
    assert events[-1].content == cleaned.strip()


def test_sanitizer_without_changes_keeps_draft() -> None:
    backend = ScriptedBackend()

    events = _run(backend, _lecture_params(transcript=_TRANSCRIPT))

    assert _of_type(events, ReplaceEvent) == []
    assert any(
        note.agent == "Sanitizer" and note.message == "No changes needed"
        for note in _of_type(events, NoteEvent)
    )
    sanitizer_checkpoint = _of_type(events, CheckpointEvent)[1]
    assert sanitizer_checkpoint.step_number == 4


def test_review_loop_refines_until_later_threshold() -> None:
    patch = "<<<<<<< SEARCH\n## Recap\n=======\n## Summary\n>>>>>>>"
    backend = ScriptedBackend(
        {
            "Reviewer": [
                _review(6.0, needs_polish=True),
                _review(8.5, needs_polish=True, feedback="Almost there, minor wording issues"),
            ],
            "Refiner": patch,
        },
    )

    events = _run(backend, _lecture_params())

    assert _steps(events) == ["CourseDetector", "Creator", "Reviewer", "Refiner", "Reviewer"]
    refined = _of_type(events, ReplaceEvent)[0].content
    assert "## Summary" in refined
    assert "## Recap" not in refined
    assert "## Summary" in backend.calls_for("Reviewer")[1].prompt
    assert "Tighten the recap" in backend.calls_for("Refiner")[0].prompt
    assert events[-1].content == refined


def test_first_review_requires_higher_score() -> None:
    backend = ScriptedBackend(
        {
            "Reviewer": [
                _review(8.5, needs_polish=True),
                _review(8.5, needs_polish=True),
            ],
        },
    )

    events = _run(backend, _lecture_params())

    assert len(backend.calls_for("Reviewer")) == 2
    assert len(backend.calls_for("Refiner")) == 1
    assert isinstance(events[-1], CompleteEvent)


def test_review_loop_stops_at_max_loops() -> None:
    backend = ScriptedBackend({"Reviewer": _review(4.0, needs_polish=True)})

    events = _run(backend, _lecture_params(), review_max_loops=2)

    assert len(backend.calls_for("Reviewer")) == 2
    assert len(backend.calls_for("Refiner")) == 1
    reviewer_notes = [note.message for note in _of_type(events, NoteEvent)]
    assert "Max review passes reached (score 4), proceeding" in reviewer_notes
    assert isinstance(events[-1], CompleteEvent)


def test_review_passes_when_reviewer_says_no_polish_needed() -> None:
    backend = ScriptedBackend({"Reviewer": _review(7.0, needs_polish=False)})

    _run(backend, _lecture_params())

    assert backend.calls_for("Refiner") == []


def test_generator_gate_failure_is_recorded_and_run_continues() -> None:
    backend = ScriptedBackend({"Creator": "Too short."})

    events = _run(backend, _lecture_params(), max_retries=1)

    assert len(backend.calls_for("Creator")) == 2
    notes = [note for note in _of_type(events, NoteEvent) if note.agent == "Creator"]
    assert notes[0].message == "Output below quality threshold after 2 attempts"
    assert len([item for item in _of_type(events, UsageEvent) if item.agent == "Creator"]) == 2
    assert events[-1].content == "Too short."


def test_creator_error_ends_run_with_error_event() -> None:
    backend = ScriptedBackend({"Creator": GenerationError("backend exploded", transient=False)})

    events = _run(backend, _lecture_params())

    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].agent == "Creator"
    assert events[-1].message == "backend exploded"
    assert _of_type(events, CheckpointEvent) == []


def test_assignment_draft_json_skips_formatter_model() -> None:
    backend = ScriptedBackend()
    params = JobParams(
        topic="SQL joins",
        subtopics="inner join, left join",
        mode=ContentMode.ASSIGNMENT,
        assignment_counts=AssignmentCounts(mcsc=2, mcmc=1, subjective=1),
    )

    events = _run(backend, params)

    assert _steps(events)[-1] == "Formatter"
    assert backend.calls_for("Formatter") == []
    formatted = _of_type(events, FormattedEvent)[0].content
    assert count_items(formatted) == 4
    types = [item["questionType"] for item in json.loads(formatted)]
    assert types == ["mcsc", "mcsc", "mcmc", "subjective"]
    assert "Produce 2 mcsc, 1 mcmc and 1 subjective" in backend.calls_for("Creator")[0].prompt


def test_assignment_markdown_draft_goes_through_formatter_model() -> None:
    backend = ScriptedBackend(
        {
            "Creator": (
                "# SQL joins assignment\n\n"
                "1. Explain the difference between an inner join and a left join, and give "
                "one query for each that runs against the orders and customers tables.\n"
                "2. Describe when a left join returns NULL columns and how to filter them.\n"
            ),
        },
    )
    params = JobParams(topic="SQL joins", subtopics="inner join", mode=ContentMode.ASSIGNMENT)

    events = _run(backend, params)

    assert len(backend.calls_for("Formatter")) == 1
    formatted = _of_type(events, FormattedEvent)[0].content
    assert count_items(formatted) == 1
    assert json.loads(formatted)[0]["questionType"] == "subjective"


def test_resume_after_draft_skips_detection_and_drafting() -> None:
    backend = ScriptedBackend()
    resume = CheckpointView(
        job_id="job-1",
        step_number=3,
        step_name="draft_creation",
        content_snapshot="# Saved draft\n\nContent produced before the worker crashed.\n",
        created_at=datetime(2026, 10, 18, tzinfo=UTC),
    )

    events = list(ContentPipeline(backend).run(_lecture_params(), resume=resume))

    assert isinstance(events[0], NoteEvent)
    assert events[0].message == "Resuming after draft_creation"
    assert isinstance(events[1], ReplaceEvent)
    assert backend.calls_for("CourseDetector") == []
    assert backend.calls_for("Creator") == []
    assert [item.step_number for item in _of_type(events, CheckpointEvent)] == [4, 5]
    assert events[-1].content == resume.content_snapshot


def test_resume_after_review_only_formats_assignment() -> None:
    backend = ScriptedBackend()
    items = [
        {"questionType": "subjective", "contentBody": "Explain joins.", "model_answer": "..."},
    ]
    resume = CheckpointView(
        job_id="job-2",
        step_number=5,
        step_name="review_refine",
        content_snapshot=json.dumps(items),
        created_at=datetime(2026, 10, 18, tzinfo=UTC),
    )
    params = JobParams(topic="SQL joins", subtopics="inner join", mode=ContentMode.ASSIGNMENT)

    events = list(ContentPipeline(backend).run(params, resume=resume))

    assert _steps(events) == ["Formatter"]
    assert backend.calls == []
    assert count_items(_of_type(events, FormattedEvent)[0].content) == 1
    assert isinstance(events[-1], CompleteEvent)


def test_parse_review_defaults() -> None:
    assert parse_review("not json").score == 7.0
    assert parse_review("not json").needs_polish is True
    verdict = parse_review('{"score": 12, "feedback": "Great"}')
    assert verdict.score == 10.0
    assert verdict.needs_polish is False
    assert parse_review('{"score": 8.5}').needs_polish is True
    assert parse_review('{"score": 6, "detailedFeedback": "one"}').detailed_feedback == ["one"]


def test_split_subtopics_and_step_maps() -> None:
    assert split_subtopics("yield, generator expressions\nsend,  ,") == [
        "yield",
        "generator expressions",
        "send",
    ]
    assert step_for_agent("Creator") == 2
    assert step_for_agent("Refiner") == 4
    assert step_for_agent("Unknown") == 0
    assert status_for_agent("Reviewer") == JobStatus.CRITIQUING
    assert status_for_agent("Formatter") == JobStatus.FORMATTING
    assert status_for_agent("Unknown") == JobStatus.PROCESSING


def test_every_reported_agent_has_a_step_and_status() -> None:
    sanitized = _run(
        ScriptedBackend({"Sanitizer": "# Python generators\n\n## yield\n\nTrimmed.\n"}),
        _lecture_params(transcript=_TRANSCRIPT),
    )
    formatted = _run(
        ScriptedBackend(
            {
                "Creator": (
                    "# SQL joins assignment\n\n"
                    "1. Explain the difference between an inner join and a left join.\n"
                ),
            },
        ),
        JobParams(topic="SQL joins", subtopics="inner join", mode=ContentMode.ASSIGNMENT),
    )

    agents = set(_steps(sanitized)) | set(_steps(formatted))

    assert {"Analyzer", "Sanitizer", "Formatter"} <= agents
    assert agents <= set(STEP_MAP)
    assert set(STEP_MAP) == set(STATUS_MAP)
