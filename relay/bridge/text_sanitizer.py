"""
Text sanitizing helpers for assistant CLI output.

Pure functions only: terminal escape removal, whitespace normalization and
the usage-statistics footer filter shared by the output parser and the
bridge's stderr handling.
"""

from __future__ import annotations

import re

ANSI_RE = re.compile(
    r"[\u001b\u009b][\[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><~]"
)
# OSC sequences (window titles, hyperlinks) terminated by BEL
OSC_RE = re.compile(r"\x1b\][^\x07]*\x07")

# Control chars except \t (0x09), \n (0x0A), \r (0x0D)
CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

STATS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^Total usage est:"),
    re.compile(r"^API time spent:"),
    re.compile(r"^Total session time:"),
    re.compile(r"^Total code changes:"),
    re.compile(r"^Breakdown by AI model:"),
    re.compile(r"^\s*(claude|gpt|gemini)-"),
    re.compile(r"^\s*\d+[.\d]*k?\s+in,"),
)

_BLANK_RUN_RE = re.compile(r"\n{3,}")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes (colors, cursor movement, OSC titles)."""
    return ANSI_RE.sub("", OSC_RE.sub("", text))


def strip_control_chars(text: str) -> str:
    return CONTROL_RE.sub("", text)


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces/tabs and trim every line."""
    return "\n".join(
        re.sub(r"[\t ]+", " ", line).strip()
        for line in normalize_line_endings(text).split("\n")
    )


def truncate(text: str, max_length: int, suffix: str = "...") -> str:
    if len(text) <= max_length:
        return text
    if max_length <= len(suffix):
        return suffix[:max_length]
    return text[: max_length - len(suffix)] + suffix


def truncate_lines(text: str, max_lines: int) -> str:
    lines = text.split("\n")
    if len(lines) <= max_lines:
        return text
    return "\n".join(lines[:max_lines])


def is_stats_line(line: str) -> bool:
    stripped = line.strip()
    return any(pattern.search(stripped) for pattern in STATS_PATTERNS)


def filter_usage_stats(text: str) -> str:
    """Drop the CLI's usage/billing footer lines and tidy what is left."""
    kept = "\n".join(line for line in text.split("\n") if not is_stats_line(line))
    return _BLANK_RUN_RE.sub("\n\n", kept).strip()


def sanitize(text: str) -> str:
    return normalize_whitespace(strip_control_chars(strip_ansi(text)))


def is_empty(text: str) -> bool:
    return not text.strip()


def count_lines(text: str) -> int:
    if text == "":
        return 0
    return len(text.split("\n"))


def remove_blank_lines(text: str) -> str:
    """Keep at most one blank line between paragraphs."""
    return _BLANK_RUN_RE.sub("\n\n", text)


def trim_lines(text: str) -> str:
    return "\n".join(line.rstrip() for line in text.split("\n"))
