#!/usr/bin/env python3
"""
In-Memory Chat History

Bounded, insertion-ordered store of chat messages for the relay session.

PURPOSE: keep the last N turns so reconnecting clients and the HTTP history
endpoints can see what happened; nothing is written to disk.
FEATURES: FIFO eviction, per-message content cap, search, JSON export/import,
and application of streamed server events to the assistant placeholder.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from relay.protocol.models import (
    ChatMessage,
    DoneMessage,
    ErrorMessage,
    Role,
    StreamMessage,
    ToolEndMessage,
    ToolExecution,
    ToolStartMessage,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 100
DEFAULT_MAX_CONTENT_LENGTH = 100_000
RESPONSE_SUFFIX = "-response"


class ImportResult(BaseModel):
    imported: int = 0
    errors: list[str] = Field(default_factory=list)


class HistoryStats(BaseModel):
    total: int
    user: int
    assistant: int
    avg_length: float


class ChatHistory:
    """Ring buffer of ChatMessage keyed by id; oldest entries are evicted first."""

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH,
    ):
        self.max_messages = max_messages
        self.max_content_length = max_content_length
        # dict preserves insertion order; re-adding an id moves it to the tail
        self._messages: dict[str, ChatMessage] = {}

    # ---------- Mutation ----------

    def add_message(self, message: ChatMessage) -> None:
        """Store a copy of ``message`` with its content capped, then trim."""
        content = message.content[: self.max_content_length]
        stored = message.model_copy(update={"content": content}, deep=True)
        self._messages.pop(stored.id, None)
        self._messages[stored.id] = stored
        self.trim_to_limit()

    def update_message(self, msg_id: str, updates: dict[str, Any]) -> bool:
        """
        Merge ``updates`` into an existing message.

        The id is immutable once stored and content is not re-truncated here.
        """
        existing = self._messages.get(msg_id)
        if existing is None:
            return False
        changes = {k: v for k, v in updates.items() if k != "id"}
        self._messages[msg_id] = existing.model_copy(update=changes)
        return True

    def delete_message(self, msg_id: str) -> bool:
        return self._messages.pop(msg_id, None) is not None

    def clear(self) -> None:
        self._messages.clear()

    def trim_to_limit(self) -> int:
        """Evict the oldest messages beyond ``max_messages``; returns count removed."""
        removed = 0
        while len(self._messages) > self.max_messages:
            oldest_id = next(iter(self._messages))
            del self._messages[oldest_id]
            removed += 1
        if removed:
            logger.debug("Trimmed %d message(s) from chat history", removed)
        return removed

    # ---------- Queries ----------

    def get_message(self, msg_id: str) -> ChatMessage | None:
        return self._messages.get(msg_id)

    def get_messages(self) -> list[ChatMessage]:
        return list(self._messages.values())

    def get_messages_by_role(self, role: Role) -> list[ChatMessage]:
        return [m for m in self._messages.values() if m.role == role]

    def get_last_n(self, n: int) -> list[ChatMessage]:
        if n <= 0:
            return []
        return self.get_messages()[-n:]

    @property
    def message_count(self) -> int:
        return len(self._messages)

    def search(self, query: str) -> list[ChatMessage]:
        """Case-insensitive substring search; an empty query matches nothing."""
        if not query:
            return []
        needle = query.lower()
        return [m for m in self._messages.values() if needle in m.content.lower()]

    def search_by_time_range(self, start: float, end: float) -> list[ChatMessage]:
        return [m for m in self._messages.values() if start <= m.timestamp <= end]

    def has_pending_messages(self) -> bool:
        return any(not m.done for m in self._messages.values())

    def get_latest_message(self) -> ChatMessage | None:
        if not self._messages:
            return None
        return self._messages[next(reversed(self._messages))]

    def get_stats(self) -> HistoryStats:
        messages = self.get_messages()
        total = len(messages)
        user = sum(1 for m in messages if m.role == "user")
        avg_length = sum(len(m.content) for m in messages) / total if total else 0.0
        return HistoryStats(total=total, user=user, assistant=total - user, avg_length=avg_length)

    # ---------- Serialization ----------

    def export_json(self) -> str:
        return json.dumps([m.model_dump() for m in self._messages.values()])

    def import_json(self, raw: str) -> ImportResult:
        """
        Import messages from a JSON array.

        Each element is validated on its own; invalid ones are reported by
        index and skipped while the valid ones are still imported.
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            return ImportResult(errors=["Invalid JSON"])
        if not isinstance(data, list):
            return ImportResult(errors=["Expected an array"])

        result = ImportResult()
        for index, item in enumerate(data):
            try:
                message = ChatMessage.model_validate(item)
            except ValidationError:
                result.errors.append(f"Invalid message at index {index}")
                continue
            self.add_message(message)
            result.imported += 1

        if result.errors:
            logger.warning(
                "Imported %d message(s), rejected %d", result.imported, len(result.errors)
            )
        return result

    # ---------- Session event application ----------

    def record_prompt(self, content: str, msg_id: str) -> ChatMessage:
        """Add the user turn and its empty assistant placeholder."""
        self.add_message(ChatMessage(id=msg_id, role="user", content=content, done=True))
        placeholder = ChatMessage(id=msg_id + RESPONSE_SUFFIX, role="assistant", content="")
        self.add_message(placeholder)
        return placeholder

    def apply_server_message(self, message: Any) -> bool:
        """
        Fold one outbound server event into the matching assistant message.

        Returns False when the event has no placeholder (unknown or evicted
        id, pong, file_opened).
        """
        msg_id = getattr(message, "id", None)
        if msg_id is None:
            return False
        target = self._messages.get(msg_id + RESPONSE_SUFFIX)
        if target is None or target.role != "assistant":
            return False

        if isinstance(message, StreamMessage):
            # appends are not re-truncated, same as update_message
            target.content += message.content
        elif isinstance(message, ToolStartMessage):
            target.tools.append(ToolExecution(tool=message.tool, detail=message.detail))
        elif isinstance(message, ToolEndMessage):
            for execution in reversed(target.tools):
                if execution.tool == message.tool and execution.status == "running":
                    execution.status = message.status
                    break
        elif isinstance(message, DoneMessage):
            target.done = True
        elif isinstance(message, ErrorMessage):
            target.content += f"\n\n**Error:** {message.message}"
            target.done = True
        else:
            return False
        return True

    def mark_interrupted(self, msg_id: str) -> bool:
        return self.update_message(msg_id + RESPONSE_SUFFIX, {"done": True})
