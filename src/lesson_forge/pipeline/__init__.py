"""Multi-agent content pipeline and its generation backends.

The pipeline is a plain generator of events. It never touches the queue: the
worker in :mod:`lesson_forge.worker` claims a job, feeds its parameters in, and
turns each event into a status update, an event log entry, a checkpoint or the
final result. Keeping persistence out of the pipeline is what lets a job resume
from its latest checkpoint and lets cancellation land between any two events.
"""

from lesson_forge.pipeline.backend import (
    CliGenerationBackend,
    GenerationBackend,
    GenerationError,
    GenerationRequest,
    GenerationResponse,
)
from lesson_forge.pipeline.orchestrator import ContentPipeline
from lesson_forge.pipeline.scripted import ScriptedBackend

__all__ = [
    "CliGenerationBackend",
    "ContentPipeline",
    "GenerationBackend",
    "GenerationError",
    "GenerationRequest",
    "GenerationResponse",
    "ScriptedBackend",
]
