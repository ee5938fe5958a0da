"""
Protocol validation.

Each message variant has a pure predicate (``is_prompt_message`` and so on)
that answers whether an arbitrary decoded JSON value is exactly that
variant. ``parse_client_message`` / ``parse_server_message`` turn a raw text
frame into a typed message or a reason string and never raise.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ValidationError

from .models import (
    MAX_PROMPT_LENGTH,
    ClientMessage,
    DoneMessage,
    ErrorMessage,
    FileOpenedMessage,
    InterruptMessage,
    OpenFileMessage,
    PingMessage,
    PongMessage,
    PromptMessage,
    ServerMessage,
    StreamMessage,
    ToolEndMessage,
    ToolStartMessage,
    client_message_adapter,
    server_message_adapter,
)


class ParseResult(BaseModel):
    """Outcome of decoding one frame."""

    ok: bool
    message: Any = None
    error: str | None = None


class ContentCheck(BaseModel):
    valid: bool
    error: str | None = None


def _matches(model: type[BaseModel], value: Any) -> bool:
    # the discriminator must be present, not filled in from the model default
    if not isinstance(value, dict) or value.get("type") != model.model_fields["type"].default:
        return False
    try:
        model.model_validate(value)
    except ValidationError:
        return False
    return True


def validate_message_id(msg_id: Any) -> bool:
    return isinstance(msg_id, str) and len(msg_id) > 0


def validate_prompt_content(content: Any) -> ContentCheck:
    """Check prompt text is a non-empty string within the length limit."""
    if not isinstance(content, str):
        return ContentCheck(valid=False, error="content must be a string")
    if not content:
        return ContentCheck(valid=False, error="content must not be empty")
    if len(content) > MAX_PROMPT_LENGTH:
        return ContentCheck(
            valid=False,
            error=f"content exceeds maximum length of {MAX_PROMPT_LENGTH} characters",
        )
    return ContentCheck(valid=True)


# ---------- Client message predicates ----------


def is_prompt_message(value: Any) -> bool:
    return _matches(PromptMessage, value)


def is_interrupt_message(value: Any) -> bool:
    return _matches(InterruptMessage, value)


def is_ping_message(value: Any) -> bool:
    return _matches(PingMessage, value)


def is_open_file_message(value: Any) -> bool:
    return _matches(OpenFileMessage, value)


# ---------- Server message predicates ----------


def is_stream_message(value: Any) -> bool:
    return _matches(StreamMessage, value)


def is_tool_start_message(value: Any) -> bool:
    return _matches(ToolStartMessage, value)


def is_tool_end_message(value: Any) -> bool:
    return _matches(ToolEndMessage, value)


def is_done_message(value: Any) -> bool:
    return _matches(DoneMessage, value)


def is_error_message(value: Any) -> bool:
    return _matches(ErrorMessage, value)


def is_pong_message(value: Any) -> bool:
    return _matches(PongMessage, value)


def is_file_opened_message(value: Any) -> bool:
    return _matches(FileOpenedMessage, value)


def is_valid_client_message(value: Any) -> bool:
    return (
        is_prompt_message(value)
        or is_interrupt_message(value)
        or is_ping_message(value)
        or is_open_file_message(value)
    )


def is_valid_server_message(value: Any) -> bool:
    return (
        is_stream_message(value)
        or is_tool_start_message(value)
        or is_tool_end_message(value)
        or is_done_message(value)
        or is_error_message(value)
        or is_pong_message(value)
        or is_file_opened_message(value)
    )


# ---------- Frame parsing ----------


def _decode(raw: str) -> tuple[Any, str | None]:
    if raw == "":
        return None, "empty string"
    try:
        return json.loads(raw), None
    except (json.JSONDecodeError, ValueError):
        return None, "invalid JSON"


def parse_client_message(raw: str) -> ParseResult:
    """Decode a client → server frame."""
    value, error = _decode(raw)
    if error:
        return ParseResult(ok=False, error=error)
    if not isinstance(value, dict):
        return ParseResult(ok=False, error="invalid client message")
    try:
        message: ClientMessage = client_message_adapter.validate_python(value)
    except ValidationError:
        return ParseResult(ok=False, error="invalid client message")
    return ParseResult(ok=True, message=message)


def parse_server_message(raw: str) -> ParseResult:
    """Decode a server → client frame."""
    value, error = _decode(raw)
    if error:
        return ParseResult(ok=False, error=error)
    if not isinstance(value, dict):
        return ParseResult(ok=False, error="invalid server message")
    try:
        message: ServerMessage = server_message_adapter.validate_python(value)
    except ValidationError:
        return ParseResult(ok=False, error="invalid server message")
    return ParseResult(ok=True, message=message)
