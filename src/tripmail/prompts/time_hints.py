"""Clock time extraction from email bodies.

Extracted times are handed to the model alongside the email, so it does not
have to find check-in, pickup or departure times on its own. Every regex
operation uses the `regex` library with a timeout because bodies are
untrusted input.

Usage:
    from tripmail.prompts.time_hints import extract_time_hints, format_time_hints

    hints = extract_time_hints(body)
    print(format_time_hints(hints))
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import regex

from tripmail.core.logging import get_logger

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

# Context lines longer than this are cut around the time
MAX_CONTEXT_LENGTH = 160

NO_TIMES_MESSAGE = "No specific times found in email."

# 4:00 PM, 4:00pm, 16:30, 10:15 a.m., 11 AM, 7pm
TIME_PATTERN = regex.compile(
    r"\b(?:"
    r"(?:[01]?\d|2[0-3]):[0-5]\d(?!\d)(?:\s?[AaPp]\.?[Mm]\b)?"
    r"|(?:1[0-2]|0?[1-9])\s?[AaPp]\.?[Mm]\b"
    r")"
)


@dataclass(frozen=True)
class TimeHint:
    """A clock time found in the email and the line it appeared on."""

    time: str
    context: str


def _context_for(line: str, start: int, end: int) -> str:
    line = line.strip()
    if len(line) <= MAX_CONTEXT_LENGTH:
        return line
    half = MAX_CONTEXT_LENGTH // 2
    center = (start + end) // 2
    lo = max(0, center - half)
    return line[lo : lo + MAX_CONTEXT_LENGTH].strip()


def extract_time_hints(body: str) -> list[TimeHint]:
    """Find clock times in document order, each time reported once.

    Args:
        body: Plain-text email body

    Returns:
        TimeHint per distinct time string, with its first surrounding line
    """
    if not body:
        return []

    hints: list[TimeHint] = []
    seen: set[str] = set()
    for line in body.splitlines():
        if not line.strip():
            continue
        try:
            matches = list(TIME_PATTERN.finditer(line, timeout=REGEX_TIMEOUT))
        except TimeoutError:
            logger.warning("time_hint_extraction_timeout", line_length=len(line))
            continue
        leading = len(line) - len(line.lstrip())
        for match in matches:
            time_text = match.group(0).strip()
            key = time_text.lower()
            if key in seen:
                continue
            seen.add(key)
            hints.append(
                TimeHint(
                    time=time_text,
                    context=_context_for(line, match.start() - leading, match.end() - leading),
                )
            )
    return hints


def format_time_hints(hints: Sequence[TimeHint]) -> str:
    """Render hints as a numbered list for prompt interpolation."""
    if not hints:
        return NO_TIMES_MESSAGE
    return "\n".join(
        f'{i}. "{hint.time}" in context: "{hint.context}"' for i, hint in enumerate(hints, 1)
    )
