"""Durable job queue and status state machine."""

from lesson_forge.queue.cancellation import CancellationRegistry, CancellationToken
from lesson_forge.queue.repository import JobQueue, JobStateError

__all__ = [
    "CancellationRegistry",
    "CancellationToken",
    "JobQueue",
    "JobStateError",
]
