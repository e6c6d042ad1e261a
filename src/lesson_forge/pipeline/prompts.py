"""Prompt templates for each content pipeline agent."""

from __future__ import annotations

from lesson_forge.queue.models import AssignmentCounts, ContentMode

_JSON_ONLY = """
Respond with a single JSON object and nothing else. No markdown fences, no commentary.
"""

COURSE_DETECTOR_SYSTEM = """\
You classify educational content requests into a subject domain.
Pick the closest domain (for example: programming, data-science, mathematics, business,
design, general) and rate how confident you are between 0 and 1.
""" + _JSON_ONLY

COURSE_DETECTOR_PROMPT = """\
Topic: {topic}
Subtopics: {subtopics}

Return: {{"domain": "<domain>", "confidence": <0..1>, "reasoning": "<one sentence>"}}
"""

ANALYZER_SYSTEM = """\
You compare a lecture transcript against the subtopics a learner asked for.
Only report what the transcript actually teaches. A subtopic mentioned in passing is
"partially covered"; a subtopic never discussed is "not covered".
""" + _JSON_ONLY

ANALYZER_PROMPT = """\
Topic: {topic}
Requested subtopics: {subtopics}

Transcript:
{transcript}

Return:
{{"covered": [...], "notCovered": [...], "partiallyCovered": [...], "transcriptTopics": [...]}}
"""

CREATOR_SYSTEM = """\
You are an instructional designer writing course material in clean markdown.
Write for a motivated adult learner. Use concrete examples, short paragraphs and
headings for each subtopic. Never mention that you are an AI.
"""

CREATOR_PROMPT = """\
Mode: {mode}
Topic: {topic}
Subtopics: {subtopics}
Domain: {domain}
{mode_instructions}
{transcript_section}"""

_MODE_INSTRUCTIONS: dict[ContentMode, str] = {
    ContentMode.PRE_READ: (
        "Write a short pre-read that primes the learner before class: key terms, "
        "one motivating example and three questions to think about."
    ),
    ContentMode.LECTURE: (
        "Write full lecture notes: explanations, worked examples and a recap section."
    ),
    ContentMode.ASSIGNMENT: (
        "Write an assignment as a JSON list. Each item has questionType "
        "(mcsc, mcmc or subjective), contentBody, options (four strings for mcsc/mcmc), "
        "correct_option (A-D, comma separated for mcmc), model_answer for subjective "
        "questions, difficultyLevel and explanation. "
        "Produce {mcsc} mcsc, {mcmc} mcmc and {subjective} subjective questions."
    ),
}

SANITIZER_SYSTEM = """\
You check generated course material against the source transcript.
Remove claims that the transcript contradicts and content about subtopics it never covers,
unless the learner explicitly asked for them. Keep everything else verbatim.
If nothing needs to change, reply with exactly NO_CHANGES_NEEDED.
Otherwise reply with the full corrected material only.
"""

SANITIZER_PROMPT = """\
Transcript:
{transcript}

Material:
{content}
"""

REVIEWER_SYSTEM = """\
You are a strict editor scoring course material from 0 to 10 for accuracy, clarity,
structure and usefulness to the learner.
""" + _JSON_ONLY

REVIEWER_PROMPT = """\
Mode: {mode}
Topic: {topic}
Subtopics: {subtopics}

Material:
{content}

Return:
{{"score": <0..10>, "needsPolish": <true|false>, "feedback": "<summary>",
 "detailedFeedback": ["<specific issue>", ...]}}
"""

REFINER_SYSTEM = """\
You fix course material using editor feedback. Reply only with SEARCH/REPLACE blocks:

<<<<<<< SEARCH
exact text copied from the material
=======
replacement text
>>>>>>>

Copy search text exactly. Keep blocks small. If no change is needed, reply with
NO_CHANGES_NEEDED.
"""

REFINER_PROMPT = """\
Feedback: {feedback}
Details:
{details}

Material:
{content}
"""

FORMATTER_SYSTEM = """\
You convert assignment drafts into a JSON list of question objects with fields
questionType, contentBody, options, correct_option, model_answer, difficultyLevel and
explanation. Reply with the JSON list only.
"""

FORMATTER_PROMPT = """\
Draft:
{content}
"""


def _join(items: list[str]) -> str:
    return ", ".join(items) if items else "(none)"


def course_detector_prompt(*, topic: str, subtopics: list[str]) -> str:
    return COURSE_DETECTOR_PROMPT.format(topic=topic, subtopics=_join(subtopics))


def analyzer_prompt(*, topic: str, subtopics: list[str], transcript: str) -> str:
    return ANALYZER_PROMPT.format(
        topic=topic,
        subtopics=_join(subtopics),
        transcript=transcript,
    )


def creator_prompt(  # noqa: PLR0913
    *,
    topic: str,
    subtopics: list[str],
    mode: ContentMode,
    domain: str,
    transcript: str | None,
    counts: AssignmentCounts,
    gap_notes: str = "",
) -> str:
    instructions = _MODE_INSTRUCTIONS[mode].format(
        mcsc=counts.mcsc,
        mcmc=counts.mcmc,
        subjective=counts.subjective,
    )
    transcript_section = ""
    if transcript:
        transcript_section = f"\nBase the material on this transcript:\n{transcript}\n"
    if gap_notes:
        transcript_section += f"\n{gap_notes}\n"
    return CREATOR_PROMPT.format(
        mode=mode.value,
        topic=topic,
        subtopics=_join(subtopics),
        domain=domain,
        mode_instructions=instructions,
        transcript_section=transcript_section,
    )


def sanitizer_prompt(*, transcript: str, content: str) -> str:
    return SANITIZER_PROMPT.format(transcript=transcript, content=content)


def reviewer_prompt(*, topic: str, subtopics: list[str], mode: ContentMode, content: str) -> str:
    return REVIEWER_PROMPT.format(
        mode=mode.value,
        topic=topic,
        subtopics=_join(subtopics),
        content=content,
    )


def refiner_prompt(*, feedback: str, details: list[str], content: str) -> str:
    rendered = "\n".join(f"- {item}" for item in details) or "- (none)"
    return REFINER_PROMPT.format(feedback=feedback, details=rendered, content=content)


def formatter_prompt(*, content: str) -> str:
    return FORMATTER_PROMPT.format(content=content)


META_QUALITY_SYSTEM = """\
You audit finished course material to improve the generation pipeline itself.
Score each dimension from 0 to 10: formatting, pedagogy, clarity, structure,
consistency, factualAccuracy. Report recurring problems as issues naming the agent that
caused them (Creator, Sanitizer, Reviewer, Refiner or Formatter) and a category from:
formatting, pedagogy, clarity, structure, consistency, factual_errors.
Severity is one of low, medium, high, critical.
""" + _JSON_ONLY

META_QUALITY_PROMPT = """\
Mode: {mode}
Topic: {topic}

Material:
{content}

Return:
{{"scores": {{"formatting": 0, "pedagogy": 0, "clarity": 0, "structure": 0,
  "consistency": 0, "factualAccuracy": 0}},
 "issues": [{{"category": "...", "severity": "...", "affectedAgent": "...",
   "description": "...", "suggestedFix": "...", "examples": ["..."]}}],
 "strengths": ["..."], "overallAssessment": "..."}}
"""


def meta_quality_prompt(*, mode: ContentMode, topic: str, content: str) -> str:
    return META_QUALITY_PROMPT.format(mode=mode.value, topic=topic, content=content)
