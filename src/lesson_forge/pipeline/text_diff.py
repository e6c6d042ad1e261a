"""SEARCH/REPLACE patch application for refiner output."""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

NO_CHANGES_MARKER = "NO_CHANGES_NEEDED"

_PATCH_BLOCK = re.compile(r"<<<<<<< SEARCH\n(.*?)\n=======\n(.*?)\n>>>>>>>", re.DOTALL)
_AGENT_MARKERS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<<<<<<< SEARCH\n?"),
    re.compile(r"=======\n?"),
    re.compile(r">>>>>>>\n?"),
    re.compile(r"<<<<<<<"),
    re.compile(r">>>>>>>"),
    re.compile(NO_CHANGES_MARKER + r"\n?"),
)
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")


def strip_agent_markers(content: str) -> str:
    """Remove leaked patch markers and collapse runs of blank lines."""

    result = content
    for pattern in _AGENT_MARKERS:
        result = pattern.sub("", result)
    return _EXTRA_BLANK_LINES.sub("\n\n", result)


def apply_search_replace(original: str, patch: str) -> str:
    """Apply each SEARCH/REPLACE block once, to the first match only.

    A block whose search text is missing is retried with surrounding whitespace
    trimmed, then skipped.
    """

    original = original.replace("\r\n", "\n")
    patch = patch.replace("\r\n", "\n")
    if NO_CHANGES_MARKER in patch:
        return original

    result = original
    applied = 0
    failed = 0
    for match in _PATCH_BLOCK.finditer(patch):
        search, replacement = match.group(1), match.group(2)
        index = result.find(search)
        if index != -1:
            if result.count(search) > 1:
                logger.warning(
                    "Patch search text appears %d times; replacing first only",
                    result.count(search),
                )
            result = result[:index] + replacement + result[index + len(search) :]
            applied += 1
            continue

        trimmed = search.strip()
        index = result.find(trimmed) if trimmed else -1
        if index == -1:
            logger.warning("Patch search text not found: %r", search[:50])
            failed += 1
            continue
        result = result[:index] + replacement.strip() + result[index + len(trimmed) :]
        applied += 1

    if applied or failed:
        logger.info("Applied %d patches, %d failed", applied, failed)
    return strip_agent_markers(result)
