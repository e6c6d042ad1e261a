"""Local demo agent for CLI backend integration tests.

Prints the scripted reply for the agent named in ``LESSON_FORGE_AGENT``.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from lesson_forge.pipeline.backend import GenerationRequest
from lesson_forge.pipeline.scripted import ScriptedBackend


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic generation."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--fail-with", default="", help="Write this to stderr and exit 1.")
    args = parser.parse_args(argv)

    if args.fail_with:
        sys.stderr.write(args.fail_with + "\n")
        return 1

    prompt = Path(args.prompt_file).read_text("utf-8")
    request = GenerationRequest(
        agent=os.getenv("LESSON_FORGE_AGENT", "Creator"),
        system="",
        prompt=prompt,
        model=os.getenv("LESSON_FORGE_MODEL", "default"),
    )
    sys.stdout.write(ScriptedBackend().generate(request).text + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
