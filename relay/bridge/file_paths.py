"""
File path extraction and open-intent detection.

Used by the bridge's open-file shortcut: a prompt such as
``open ~/Downloads/report.xlsx`` is served by the OS default application
instead of the assistant.
"""

from __future__ import annotations

import os
import posixpath
import re

_ABSOLUTE_RE = re.compile(r"(?:^|[\s,(])(/(?:[\w.@+-]+/)*[\w.@+-]+(?:\.\w+)?)", re.MULTILINE)
_RELATIVE_RE = re.compile(r"(?:^|[\s,(])(\.\.?/[\w./@+-]*[\w.@+-])", re.MULTILINE)
_HOME_RE = re.compile(r"(?:^|[\s,(])(~/[\w./@+-]+)", re.MULTILINE)
_QUOTED_RE = re.compile(r"""['"`]((?:/|\.\.?/|~/)[\w./@+~ -]+?)['"`]""")

# English and Chinese verbs asking to open/show a file
_OPEN_INTENT_RE = re.compile(
    r"\b(?:open|launch|view|show|display|preview)\b|打开|开启|查看|显示|预览",
    re.IGNORECASE,
)

OPENABLE_EXTENSIONS: frozenset[str] = frozenset(
    {
        # documents
        ".pdf", ".doc", ".docx", ".odt", ".rtf", ".txt", ".md", ".pages",
        # spreadsheets
        ".xls", ".xlsx", ".xlsm", ".ods", ".csv", ".numbers",
        # presentations
        ".ppt", ".pptx", ".odp", ".key",
        # images
        ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".svg", ".webp", ".heic", ".tiff",
        # media
        ".mp3", ".wav", ".m4a", ".flac", ".mp4", ".mov", ".avi", ".mkv", ".webm",
        # archives and web pages
        ".zip", ".html", ".htm",
    }
)  # fmt: skip


def _unique(matches: list[str]) -> list[str]:
    return list(dict.fromkeys(matches))


def extract_absolute_paths(text: str) -> list[str]:
    return _unique([m.group(1) for m in _ABSOLUTE_RE.finditer(text)])


def extract_relative_paths(text: str, cwd: str | None = None) -> list[str]:
    """Extract ``./`` and ``../`` paths, resolved against ``cwd`` when given."""
    paths = [m.group(1) for m in _RELATIVE_RE.finditer(text)]
    if cwd:
        paths = [os.path.normpath(os.path.join(cwd, p)) for p in paths]
    return _unique(paths)


def extract_home_paths(text: str) -> list[str]:
    return _unique([m.group(1) for m in _HOME_RE.finditer(text)])


def extract_quoted_paths(text: str) -> list[str]:
    """Extract quoted paths, which may contain spaces."""
    return _unique([m.group(1) for m in _QUOTED_RE.finditer(text)])


def extract_file_paths(text: str) -> list[str]:
    """Extract every path-looking token from text, first occurrence wins."""
    return _unique(
        extract_quoted_paths(text)
        + extract_absolute_paths(text)
        + extract_home_paths(text)
        + extract_relative_paths(text)
    )


def is_absolute_path(path: str) -> bool:
    return path.startswith("/")


def is_relative_path(path: str) -> bool:
    return path.startswith("./") or path.startswith("../")


def normalize_path(path: str) -> str:
    """Resolve ``.``/``..`` segments, use forward slashes, drop trailing slash."""
    normalized = posixpath.normpath(path.replace("\\", "/"))
    # posixpath keeps a leading '//' as-is
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


def get_extension(path: str) -> str:
    return os.path.splitext(path)[1]


def has_extension(path: str, extensions: list[str] | tuple[str, ...] | frozenset[str]) -> bool:
    ext = get_extension(path).lower()
    return any(ext == (e.lower() if e.startswith(".") else f".{e.lower()}") for e in extensions)


def expand_path(path: str) -> str:
    return os.path.expanduser(path)


def is_openable(path: str, extensions: frozenset[str] | None = None) -> bool:
    """True if the extension belongs to a document/media type, never source code."""
    return has_extension(path, extensions if extensions is not None else OPENABLE_EXTENSIONS)


def has_open_intent(text: str) -> bool:
    return bool(_OPEN_INTENT_RE.search(text))
