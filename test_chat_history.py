#!/usr/bin/env python3
"""
Tests for the in-memory ChatHistory ring buffer and the application of
server events to assistant placeholders.
"""

import json

from relay.history import ChatHistory
from relay.protocol import (
    ChatMessage,
    DoneMessage,
    ErrorMessage,
    FileOpenedMessage,
    PongMessage,
    StreamMessage,
    ToolEndMessage,
    ToolStartMessage,
)


def _msg(msg_id, role="user", content="hello", **kwargs):
    return ChatMessage(id=msg_id, role=role, content=content, **kwargs)


def test_trims_oldest_first():
    history = ChatHistory(max_messages=3)
    for i in range(5):
        history.add_message(_msg(f"m{i}"))
    assert history.message_count == 3
    assert [m.id for m in history.get_messages()] == ["m2", "m3", "m4"]
    assert history.trim_to_limit() == 0


def test_content_is_capped():
    history = ChatHistory(max_content_length=10)
    history.add_message(_msg("m1", content="x" * 25))
    assert len(history.get_message("m1").content) == 10


def test_stored_copy_is_independent():
    history = ChatHistory()
    original = _msg("m1")
    history.add_message(original)
    original.content = "changed"
    assert history.get_message("m1").content == "hello"


def test_duplicate_id_moves_to_tail():
    history = ChatHistory()
    history.add_message(_msg("a"))
    history.add_message(_msg("b"))
    history.add_message(_msg("a", content="again"))
    assert [m.id for m in history.get_messages()] == ["b", "a"]
    assert history.get_message("a").content == "again"
    assert history.get_latest_message().id == "a"


def test_update_and_delete():
    history = ChatHistory()
    history.add_message(_msg("m1"))
    assert history.update_message("m1", {"content": "edited", "id": "other"})
    assert history.get_message("m1").content == "edited"
    assert history.get_message("other") is None
    assert not history.update_message("missing", {"content": "x"})

    assert history.delete_message("m1")
    assert not history.delete_message("m1")
    history.add_message(_msg("m2"))
    history.clear()
    assert history.message_count == 0
    assert history.get_latest_message() is None


def test_queries():
    history = ChatHistory()
    history.add_message(_msg("u1", content="Open the Report", timestamp=1000))
    history.add_message(_msg("a1", role="assistant", content="Opened it", timestamp=2000))
    history.add_message(_msg("u2", content="thanks", timestamp=3000))

    assert [m.id for m in history.get_messages_by_role("assistant")] == ["a1"]
    assert [m.id for m in history.get_last_n(2)] == ["a1", "u2"]
    assert history.get_last_n(0) == []
    assert [m.id for m in history.search("report")] == ["u1"]
    assert [m.id for m in history.search("OPEN")] == ["u1", "a1"]
    assert history.search("") == []
    assert [m.id for m in history.search_by_time_range(1000, 2000)] == ["u1", "a1"]


def test_stats():
    history = ChatHistory()
    empty = history.get_stats()
    assert empty.total == 0
    assert empty.avg_length == 0

    history.add_message(_msg("u1", content="abcd"))
    history.add_message(_msg("a1", role="assistant", content="ab"))
    stats = history.get_stats()
    assert (stats.total, stats.user, stats.assistant) == (2, 1, 1)
    assert stats.avg_length == 3


def test_export_import_partial_success():
    source = ChatHistory()
    source.add_message(_msg("m1", timestamp=5))
    restored = ChatHistory()
    result = restored.import_json(source.export_json())
    assert result.imported == 1
    assert result.errors == []
    assert restored.get_message("m1") == source.get_message("m1")

    payload = json.dumps(
        [
            {"id": "ok", "role": "user", "content": "hi"},
            {"id": 1},
            {"id": "bad", "role": "robot", "content": "x"},
        ]
    )
    result = ChatHistory().import_json(payload)
    assert result.imported == 1
    assert result.errors == ["Invalid message at index 1", "Invalid message at index 2"]

    assert ChatHistory().import_json("{").errors == ["Invalid JSON"]
    assert ChatHistory().import_json("{}").errors == ["Expected an array"]


def test_server_events_fill_the_placeholder():
    history = ChatHistory()
    placeholder = history.record_prompt("fix the bug", "m1")
    assert placeholder.id == "m1-response"
    assert history.get_message("m1").done
    assert history.has_pending_messages()

    assert history.apply_server_message(StreamMessage(content="Looking", id="m1"))
    assert history.apply_server_message(ToolStartMessage(tool="edit_file", detail="a.py", id="m1"))
    assert history.apply_server_message(ToolStartMessage(tool="edit_file", detail="b.py", id="m1"))
    assert history.apply_server_message(ToolEndMessage(tool="edit_file", status="failure", id="m1"))
    assert history.apply_server_message(StreamMessage(content=" done", id="m1"))
    assert history.apply_server_message(DoneMessage(id="m1"))

    reply = history.get_message("m1-response")
    assert reply.content == "Looking done"
    # tool_end closes the most recent running entry of that tool
    assert [(t.detail, t.status) for t in reply.tools] == [("a.py", "running"), ("b.py", "failure")]
    assert reply.done
    assert not history.has_pending_messages()


def test_error_and_unrelated_events():
    history = ChatHistory()
    history.record_prompt("hi", "m1")
    history.apply_server_message(StreamMessage(content="partial", id="m1"))
    assert history.apply_server_message(ErrorMessage(message="boom", id="m1"))
    reply = history.get_message("m1-response")
    assert reply.content == "partial\n\n**Error:** boom"
    assert reply.done

    assert not history.apply_server_message(PongMessage())
    assert not history.apply_server_message(DoneMessage(id="unknown"))
    assert not history.apply_server_message(
        FileOpenedMessage(path="/a.pdf", success=True, id="m1")
    )


def test_mark_interrupted():
    history = ChatHistory()
    history.record_prompt("long task", "m1")
    assert history.mark_interrupted("m1")
    assert history.get_message("m1-response").done
    assert not history.mark_interrupted("nope")


if __name__ == "__main__":
    test_trims_oldest_first()
    test_content_is_capped()
    test_stored_copy_is_independent()
    test_duplicate_id_moves_to_tail()
    test_update_and_delete()
    test_queries()
    test_stats()
    test_export_import_partial_success()
    test_server_events_fill_the_placeholder()
    test_error_and_unrelated_events()
    test_mark_interrupted()
    print("✓ chat history tests passed")
