"""Generation backends: the interface plus the subprocess-based CLI runner."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol

_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
    "temporarily unavailable",
    "temporary failure",
    "overloaded",
    "connection reset",
    "network error",
    "could not resolve host",
)
_POLL_SECONDS = 0.1


@dataclass(slots=True)
class GenerationRequest:
    """One model call made on behalf of a pipeline agent."""

    agent: str
    system: str
    prompt: str
    model: str = "default"

    def compose(self) -> str:
        if not self.system:
            return self.prompt
        return f"{self.system}\n\n{self.prompt}"


@dataclass(slots=True)
class GenerationResponse:
    text: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class GenerationError(RuntimeError):
    """Backend call failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class GenerationBackend(Protocol):
    """Protocol implemented by generation backends."""

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Run one call and return the complete text."""

    def stream(self, request: GenerationRequest) -> Iterator[str]:
        """Run one call and yield text chunks as they arrive."""


class CliGenerationBackend:
    """Run a CLI agent per call, rendered from a command template.

    Template placeholders: ``{prompt}``, ``{prompt_file}`` and ``{model}``.
    Standard output is the generated text.
    """

    def __init__(self, *, command_template: str, timeout_seconds: int = 600) -> None:
        self._command_template = command_template
        self._timeout_seconds = timeout_seconds

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        with tempfile.TemporaryDirectory(prefix="lesson-forge-") as tmp:
            workdir = Path(tmp)
            run_args, command_head = self._prepare(request, workdir)
            stdout_path = workdir / "stdout.txt"
            stderr_path = workdir / "stderr.txt"
            try:
                with (
                    stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    returncode = _run_until_exit(
                        run_args=run_args,
                        env=_agent_env(request),
                        timeout_seconds=self._timeout_seconds,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                    )
            except FileNotFoundError as error:
                raise GenerationError(
                    f"CLI backend command not found: {command_head}",
                    transient=False,
                ) from error
            except OSError as error:
                raise GenerationError(
                    f"CLI backend failed to start: {error}",
                    transient=True,
                ) from error

            stdout = stdout_path.read_text("utf-8")
            stderr = stderr_path.read_text("utf-8")
        _raise_for_exit(request.agent, returncode, stderr)
        return GenerationResponse(text=stdout.strip())

    def stream(self, request: GenerationRequest) -> Iterator[str]:
        with tempfile.TemporaryDirectory(prefix="lesson-forge-") as tmp:
            workdir = Path(tmp)
            run_args, command_head = self._prepare(request, workdir)
            stderr_path = workdir / "stderr.txt"
            with stderr_path.open("w", encoding="utf-8") as stderr_handle:
                try:
                    process = subprocess.Popen(  # noqa: S603
                        run_args,
                        env=_agent_env(request),
                        stdout=subprocess.PIPE,
                        stderr=stderr_handle,
                        text=True,
                    )
                except FileNotFoundError as error:
                    raise GenerationError(
                        f"CLI backend command not found: {command_head}",
                        transient=False,
                    ) from error
                except OSError as error:
                    raise GenerationError(
                        f"CLI backend failed to start: {error}",
                        transient=True,
                    ) from error

                deadline = time.monotonic() + self._timeout_seconds
                try:
                    # The deadline is checked between output lines.
                    assert process.stdout is not None
                    for line in process.stdout:
                        if time.monotonic() >= deadline:
                            raise GenerationError(
                                f"{request.agent} timed out after {self._timeout_seconds}s",
                                transient=True,
                            )
                        yield line
                    returncode = process.wait(timeout=max(0.0, deadline - time.monotonic()))
                except subprocess.TimeoutExpired as error:
                    raise GenerationError(
                        f"{request.agent} timed out after {self._timeout_seconds}s",
                        transient=True,
                    ) from error
                finally:
                    if process.poll() is None:
                        _terminate_process(process)
            stderr = stderr_path.read_text("utf-8")
        _raise_for_exit(request.agent, returncode, stderr)

    def _prepare(self, request: GenerationRequest, workdir: Path) -> tuple[list[str], str]:
        prompt = request.compose()
        prompt_file = workdir / "prompt.txt"
        prompt_file.write_text(prompt, "utf-8")
        return _build_run_args(
            command_template=self._command_template,
            model=request.model,
            prompt=prompt,
            prompt_file=prompt_file,
        )


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise GenerationError("CLI backend command template is empty.", transient=False)
    if "{prompt" not in stripped:
        raise GenerationError(
            "CLI backend command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except KeyError as error:
        raise GenerationError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise GenerationError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv, argv[0]


def _agent_env(request: GenerationRequest) -> dict[str, str]:
    env = os.environ.copy()
    env["LESSON_FORGE_AGENT"] = request.agent
    env["LESSON_FORGE_MODEL"] = request.model
    return env


def _raise_for_exit(agent: str, returncode: int, stderr: str) -> None:
    if returncode == 0:
        return
    detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no stderr output"
    lowered = stderr.lower()
    transient = any(pattern in lowered for pattern in _TRANSIENT_PATTERNS)
    raise GenerationError(
        f"{agent} backend exited with code {returncode}: {detail}",
        transient=transient,
    )


def _run_until_exit(
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> int:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    started = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode

        if time.monotonic() - started >= timeout_seconds:
            _terminate_process(process)
            raise GenerationError(
                f"CLI backend timed out after {timeout_seconds}s",
                transient=True,
            )
        time.sleep(_POLL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
