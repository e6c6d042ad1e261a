"""Process-local cancellation tokens for jobs owned by one worker."""

from __future__ import annotations

import threading
from collections.abc import Callable


class CancellationToken:
    """Cooperative abort flag checked by the driver between pipeline events."""

    def __init__(self, poll: Callable[[], bool] | None = None) -> None:
        self._event = threading.Event()
        self._poll = poll

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """True once signalled locally, or when the poll reports an external cancel."""

        if self._event.is_set():
            return True
        if self._poll is not None and self._poll():
            self._event.set()
            return True
        return False


class CancellationRegistry:
    """Tokens keyed by job id, owned by a single worker instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}

    def register(
        self,
        job_id: str,
        *,
        poll: Callable[[], bool] | None = None,
    ) -> CancellationToken:
        token = CancellationToken(poll=poll)
        with self._lock:
            self._tokens[job_id] = token
        return token

    def unregister(self, job_id: str) -> None:
        with self._lock:
            self._tokens.pop(job_id, None)

    def cancel(self, job_id: str) -> bool:
        """Signal the token for ``job_id``; False when this process does not own it."""

        with self._lock:
            token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._tokens)
