"""
Relay Protocol Data Models

Wire types exchanged between the browser UI and the relay server, plus the
chat records kept in the bounded history. Every frame is one JSON object
discriminated by its ``type`` field. Unknown extra fields are ignored so
newer clients can talk to older servers.
"""

from __future__ import annotations

import time
from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
)

MAX_PROMPT_LENGTH = 100_000


class WireModel(BaseModel):
    """Base for wire frames; extra fields are ignored."""

    model_config = ConfigDict(extra="ignore")


# ==============================================================================
# CLIENT → SERVER
# ==============================================================================


class PromptMessage(WireModel):
    type: Literal["prompt"] = "prompt"
    content: StrictStr
    id: StrictStr


class InterruptMessage(WireModel):
    type: Literal["interrupt"] = "interrupt"
    id: StrictStr


class PingMessage(WireModel):
    type: Literal["ping"] = "ping"


class OpenFileMessage(WireModel):
    type: Literal["open_file"] = "open_file"
    path: StrictStr
    id: StrictStr


ClientMessage = Annotated[
    PromptMessage | InterruptMessage | PingMessage | OpenFileMessage,
    Field(discriminator="type"),
]


# ==============================================================================
# SERVER → CLIENT
# ==============================================================================


class StreamMessage(WireModel):
    type: Literal["stream"] = "stream"
    content: StrictStr
    id: StrictStr


class ToolStartMessage(WireModel):
    type: Literal["tool_start"] = "tool_start"
    tool: StrictStr
    detail: StrictStr
    id: StrictStr


class ToolEndMessage(WireModel):
    type: Literal["tool_end"] = "tool_end"
    tool: StrictStr
    status: Literal["success", "failure"]
    id: StrictStr


class DoneMessage(WireModel):
    type: Literal["done"] = "done"
    id: StrictStr


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    message: StrictStr
    id: StrictStr


class PongMessage(WireModel):
    type: Literal["pong"] = "pong"


class FileOpenedMessage(WireModel):
    type: Literal["file_opened"] = "file_opened"
    path: StrictStr
    success: StrictBool
    message: StrictStr | None = None
    id: StrictStr


ServerMessage = Annotated[
    StreamMessage
    | ToolStartMessage
    | ToolEndMessage
    | DoneMessage
    | ErrorMessage
    | PongMessage
    | FileOpenedMessage,
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
server_message_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def serialize_message(message: BaseModel) -> str:
    """Encode a wire model as a single JSON text frame."""
    return message.model_dump_json(exclude_none=True)


# ==============================================================================
# CHAT STATE
# ==============================================================================

Role = Literal["user", "assistant"]
ToolStatus = Literal["running", "success", "failure"]


def _now_ms() -> float:
    return time.time() * 1000


class ToolExecution(BaseModel):
    """One detected sub-operation inside an assistant reply."""

    tool: StrictStr
    detail: StrictStr = ""
    status: ToolStatus = "running"


class ChatMessage(BaseModel):
    """
    A chat turn as kept in history.

    ``timestamp`` is milliseconds since the epoch, matching what the browser
    persists locally.
    """

    id: StrictStr
    role: Role
    content: StrictStr
    tools: list[ToolExecution] = Field(default_factory=list)
    done: StrictBool = False
    timestamp: StrictInt | StrictFloat = Field(default_factory=_now_ms)
