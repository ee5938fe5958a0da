"""
Assistant Output Parser

Turns unstructured lines printed by the assistant CLI into typed events:
tool start/end announcements, error lines and progress indicators. Pattern
tables are ordered and the first match wins. Classification never decides
what text is forwarded to the client; that is handled by ``feed``, which
only strips terminal codes and the usage-statistics footer.
"""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel

from .text_sanitizer import filter_usage_stats, is_stats_line, strip_ansi

# ==============================================================================
# PATTERN TABLES
# ==============================================================================

TOOL_START_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bEditing\s+(.+)", re.IGNORECASE), "edit_file"),
    (re.compile(r"\bCreating\s+(?:file\s+)?(.+)", re.IGNORECASE), "create_file"),
    (re.compile(r"\bRunning\s+`(.+?)`", re.IGNORECASE), "run_command"),
    (re.compile(r"\bSearching\s+(.+)", re.IGNORECASE), "search"),
    (re.compile(r"\bReading\s+(.+)", re.IGNORECASE), "read_file"),
    (re.compile(r"\bExecuting\s+bash\s+(.+)", re.IGNORECASE), "bash"),
    (re.compile(r"\bGrepping\s+(.+)", re.IGNORECASE), "grep"),
    (re.compile(r"\bGlobbing\s+(.+)", re.IGNORECASE), "glob"),
    (re.compile(r"\bListing\s+(?:files\s+)?(.+)", re.IGNORECASE), "list_files"),
    (re.compile(r"\bDeleting\s+(?:file\s+)?(.+)", re.IGNORECASE), "delete_file"),
)

TOOL_END_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bEdited\s+(.+)", re.IGNORECASE), "edit_file"),
    (re.compile(r"\bCreated\s+(.+)", re.IGNORECASE), "create_file"),
    (re.compile(r"\bRan\s+`(.+?)`", re.IGNORECASE), "run_command"),
    (re.compile(r"\bFinished\s+searching", re.IGNORECASE), "search"),
    (re.compile(r"\bRead\s+(.+)", re.IGNORECASE), "read_file"),
    (re.compile(r"\bBash\s+completed", re.IGNORECASE), "bash"),
    (re.compile(r"\bGrep\s+completed", re.IGNORECASE), "grep"),
    (re.compile(r"\bGlob\s+completed", re.IGNORECASE), "glob"),
    (re.compile(r"\bListed\s+(.+)", re.IGNORECASE), "list_files"),
    (re.compile(r"\bDeleted\s+(.+)", re.IGNORECASE), "delete_file"),
)

FAILURE_RE = re.compile(
    r"\b(?:fail\w*|error\w*|exception\w*|time[d ]?\s?out|abort\w*|crash\w*|panic\w*"
    r"|non-zero exit)\b|\bexit code\s*[1-9]",
    re.IGNORECASE,
)

ERROR_RE = re.compile(r"^(?:Error|Failed|Exception|Fatal):\s*(.*)$", re.IGNORECASE)

STEP_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bStep\s+(\d+)\s*/\s*(\d+)", re.IGNORECASE),
    re.compile(r"\[(\d+)/(\d+)\]"),
    re.compile(r"\((\d+)\s+of\s+(\d+)\)", re.IGNORECASE),
)
PERCENT_RE = re.compile(r"(?<![\d.])(\d{1,3})%")


# ==============================================================================
# EVENTS
# ==============================================================================


class ToolStartEvent(BaseModel):
    type: Literal["tool_start"] = "tool_start"
    tool: str
    detail: str = ""


class ToolEndEvent(BaseModel):
    type: Literal["tool_end"] = "tool_end"
    tool: str
    status: Literal["success", "failure"] = "success"


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    step: int | None = None
    total: int | None = None
    percent: int | None = None


ParsedEvent = ToolStartEvent | ToolEndEvent | ErrorEvent | ProgressEvent


def detect_status(line: str) -> Literal["success", "failure"]:
    """Infer a tool outcome from failure keywords on the announcing line."""
    return "failure" if FAILURE_RE.search(line) else "success"


class OutputParser:
    """
    Line classifier with an incremental text buffer.

    ``parse_line``/``parse_block`` are stateless. ``feed``/``flush`` keep the
    trailing partial line of a chunked stream until its newline arrives so
    each line is classified exactly once.
    """

    def __init__(self) -> None:
        self._pending = ""
        self._blank_run = 0  # consecutive blank lines already emitted
        self._after_stats = False

    # ---------- stateless classification ----------

    @staticmethod
    def is_stats_line(line: str) -> bool:
        return is_stats_line(line)

    @staticmethod
    def strip_stats(text: str) -> str:
        return filter_usage_stats(text)

    def parse_line(self, line: str) -> ParsedEvent | None:
        """Classify one line: tool_start, tool_end, error, progress or nothing."""
        trimmed = strip_ansi(line).strip()
        if not trimmed:
            return None

        for pattern, tool in TOOL_START_PATTERNS:
            match = pattern.search(trimmed)
            if match:
                detail = match.group(1).strip() if match.groups() else ""
                return ToolStartEvent(tool=tool, detail=detail)

        for pattern, tool in TOOL_END_PATTERNS:
            if pattern.search(trimmed):
                return ToolEndEvent(tool=tool, status=detect_status(trimmed))

        error_match = ERROR_RE.match(trimmed)
        if error_match:
            return ErrorEvent(message=error_match.group(1).strip())

        return self._parse_progress(trimmed)

    def parse_block(self, text: str) -> list[ParsedEvent]:
        events = (self.parse_line(line) for line in text.split("\n"))
        return [event for event in events if event is not None]

    @staticmethod
    def _parse_progress(line: str) -> ProgressEvent | None:
        for pattern in STEP_PATTERNS:
            match = pattern.search(line)
            if match:
                return ProgressEvent(step=int(match.group(1)), total=int(match.group(2)))
        match = PERCENT_RE.search(line)
        if match:
            return ProgressEvent(percent=int(match.group(1)))
        return None

    # ---------- incremental stream handling ----------

    def feed(self, chunk: str) -> tuple[str, list[ParsedEvent]]:
        """
        Consume a raw output chunk.

        Returns the forwardable text of every line completed by this chunk
        (terminal codes and stats lines removed, newlines kept) together with
        the events found on those lines.
        """
        self._pending += strip_ansi(chunk).replace("\r\n", "\n")
        if "\n" not in self._pending:
            return "", []
        complete, self._pending = self._pending.rsplit("\n", 1)
        return self._process_lines(complete.split("\n"), trailing_newline=True)

    def flush(self) -> tuple[str, list[ParsedEvent]]:
        """Process whatever partial line is left at end of output."""
        if not self._pending:
            return "", []
        remainder, self._pending = self._pending, ""
        return self._process_lines([remainder], trailing_newline=False)

    def reset(self) -> None:
        self._pending = ""
        self._blank_run = 0
        self._after_stats = False

    def _process_lines(
        self, lines: list[str], trailing_newline: bool
    ) -> tuple[str, list[ParsedEvent]]:
        kept: list[str] = []
        events: list[ParsedEvent] = []
        for line in lines:
            if is_stats_line(line):
                self._after_stats = True
                continue
            if not line.strip():
                # a dropped footer must not leave a run of blank lines behind
                if self._after_stats and self._blank_run:
                    continue
                self._blank_run += 1
            else:
                self._blank_run = 0
                self._after_stats = False
            kept.append(line)
            event = self.parse_line(line)
            if event is not None:
                events.append(event)
        if not kept:
            return "", events
        text = "\n".join(kept)
        return (text + "\n" if trailing_newline else text), events
