#!/usr/bin/env python3
"""
Tests for the Copilot bridge against a fake assistant CLI.

The fake is a POSIX shell script that behaves according to the prompt
it receives as ``-p <prompt>``.
"""

import asyncio
import os
import sys
import tempfile
import time

import pytest

from relay.bridge import BUSY_MESSAGE, CopilotBridge, default_open_command
from relay.protocol import (
    DoneMessage,
    ErrorMessage,
    FileOpenedMessage,
    StreamMessage,
    ToolEndMessage,
    ToolStartMessage,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake CLI is a shell script")

FAKE_CLI = """#!/bin/sh
prompt="$2"
case "$prompt" in
  slow*)
    sleep 5 &
    echo "$$ $!" > "$PID_FILE"
    echo "thinking"
    wait
    echo "late"
    ;;
  stubborn*)
    trap '' TERM
    sleep 30 &
    echo "$$ $!" > "$PID_FILE"
    echo "holding"
    wait
    ;;
  fail*)
    echo "partial"
    echo "Error: something broke" >&2
    echo "Total usage est: 1 Premium request" >&2
    exit 3
    ;;
  tools*)
    echo "Editing src/app.py"
    echo "Edited src/app.py"
    echo "All good"
    ;;
  stats*)
    echo "answer"
    echo "Total usage est: 1 Premium request"
    echo "API time spent: 2s"
    ;;
  show*)
    echo "Saved the chart to $OUT_FILE"
    ;;
  *)
    echo "echo: $prompt"
    ;;
esac
"""


def _make_bridge(workdir, **overrides):
    script = os.path.join(workdir, "fake-copilot")
    with open(script, "w") as f:
        f.write(FAKE_CLI)
    os.chmod(script, 0o755)

    config = {
        "command": script,
        "args": [],
        "cwd": workdir,
        "env": {
            "OUT_FILE": os.path.join(workdir, "chart.png"),
            "PID_FILE": os.path.join(workdir, "pids"),
        },
        "kill_grace_period": 0.5,
        "open_file": {"enabled": True, "command": "true"},
    }
    config.update(overrides)
    bridge = CopilotBridge(config)
    messages = []
    bridge.on("message", messages.append)
    bridge.start()
    return bridge, messages


async def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("timed out waiting for bridge output")
        await asyncio.sleep(0.02)


def _done(messages, msg_id):
    return any(isinstance(m, DoneMessage) and m.id == msg_id for m in messages)


def _streamed(messages, msg_id):
    return "".join(m.content for m in messages if isinstance(m, StreamMessage) and m.id == msg_id)


def _pids(workdir):
    """Shell and background child pids recorded by the fake CLI."""
    with open(os.path.join(workdir, "pids")) as f:
        return [int(pid) for pid in f.read().split()]


def _alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        with open(f"/proc/{pid}/stat") as f:
            # an orphan nobody has reaped yet shows up as a zombie
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except OSError:
        return True


def test_prompt_streams_then_done():
    async def scenario(workdir):
        bridge, messages = _make_bridge(workdir)
        exits = []
        bridge.on("exit", lambda msg_id, code: exits.append((msg_id, code)))

        await bridge.send_prompt("hello there", "m1")
        assert bridge.is_busy
        assert bridge.current_msg_id == "m1"

        await _wait_for(lambda: _done(messages, "m1"))
        assert _streamed(messages, "m1") == "echo: hello there\n"
        assert isinstance(messages[-1], DoneMessage)
        assert exits == [("m1", 0)]
        assert not bridge.is_busy
        await bridge.stop()

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_tool_events_and_stats_filtering():
    async def scenario(workdir):
        bridge, messages = _make_bridge(workdir)

        await bridge.send_prompt("tools please", "t1")
        await _wait_for(lambda: _done(messages, "t1"))
        assert _streamed(messages, "t1") == "Editing src/app.py\nEdited src/app.py\nAll good\n"
        starts = [m for m in messages if isinstance(m, ToolStartMessage)]
        ends = [m for m in messages if isinstance(m, ToolEndMessage)]
        assert [(m.tool, m.detail, m.id) for m in starts] == [("edit_file", "src/app.py", "t1")]
        assert [(m.tool, m.status, m.id) for m in ends] == [("edit_file", "success", "t1")]

        await bridge.send_prompt("stats", "s1")
        await _wait_for(lambda: _done(messages, "s1"))
        assert _streamed(messages, "s1") == "answer\n"
        await bridge.stop()

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_non_zero_exit_reports_stderr_then_done():
    async def scenario(workdir):
        bridge, messages = _make_bridge(workdir)

        await bridge.send_prompt("fail now", "f1")
        await _wait_for(lambda: _done(messages, "f1"))

        errors = [m for m in messages if isinstance(m, ErrorMessage)]
        assert [(m.message, m.id) for m in errors] == [("Error: something broke", "f1")]
        assert _streamed(messages, "f1") == "partial\n"
        kinds = [type(m) for m in messages]
        assert kinds.index(ErrorMessage) < kinds.index(DoneMessage)
        await bridge.stop()

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_busy_rejection_and_interrupt():
    async def scenario(workdir):
        bridge, messages = _make_bridge(workdir)

        await bridge.send_prompt("slow job", "m1")
        await _wait_for(lambda: _streamed(messages, "m1") == "thinking\n")

        await bridge.send_prompt("hello", "m2")
        busy = [m for m in messages if isinstance(m, ErrorMessage)]
        assert [(m.message, m.id) for m in busy] == [(BUSY_MESSAGE, "m2")]
        assert bridge.current_msg_id == "m1"

        await bridge.interrupt()
        assert not bridge.is_busy
        await asyncio.sleep(0.3)
        assert not _done(messages, "m1")
        assert "late" not in _streamed(messages, "m1")

        # idle again: the next prompt runs normally
        await bridge.send_prompt("hello", "m3")
        await _wait_for(lambda: _done(messages, "m3"))
        assert _streamed(messages, "m3") == "echo: hello\n"
        await bridge.stop()

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_interrupt_terminates_the_whole_process_group():
    async def scenario(workdir):
        # a grace period longer than the wait below, so only SIGTERM can do it
        bridge, messages = _make_bridge(workdir, kill_grace_period=10.0)

        await bridge.send_prompt("slow job", "g1")
        await _wait_for(lambda: _streamed(messages, "g1") == "thinking\n")
        pids = _pids(workdir)
        assert len(pids) == 2
        assert all(_alive(pid) for pid in pids)

        await bridge.interrupt()
        await _wait_for(lambda: not any(_alive(pid) for pid in pids), timeout=3.0)
        await bridge.stop()

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_sigkill_after_grace_period_when_sigterm_is_ignored():
    async def scenario(workdir):
        bridge, messages = _make_bridge(workdir, kill_grace_period=1.0)

        await bridge.send_prompt("stubborn job", "k1")
        await _wait_for(lambda: _streamed(messages, "k1") == "holding\n")
        pids = _pids(workdir)

        await bridge.interrupt()
        assert not bridge.is_busy
        await asyncio.sleep(0.3)
        # shell and child both ignore SIGTERM
        assert all(_alive(pid) for pid in pids)

        await _wait_for(lambda: not any(_alive(pid) for pid in pids), timeout=4.0)
        await bridge.stop()
        assert not _done(messages, "k1")

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_interrupt_when_idle_is_a_no_op():
    async def scenario(workdir):
        bridge, messages = _make_bridge(workdir)
        await bridge.interrupt()
        assert messages == []
        assert not bridge.is_busy
        await bridge.stop()
        assert not bridge.is_ready

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_spawn_failure_returns_to_idle():
    async def scenario(workdir):
        bridge, messages = _make_bridge(workdir, command=os.path.join(workdir, "missing-cli"))

        await bridge.send_prompt("hello", "e1")
        assert not bridge.is_busy
        assert len(messages) == 1
        assert isinstance(messages[0], ErrorMessage)
        assert messages[0].id == "e1"
        assert messages[0].message.startswith("Failed to start")
        await bridge.stop()

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_open_intent_with_existing_file_skips_the_assistant():
    async def scenario(workdir):
        bridge, messages = _make_bridge(workdir)
        report = os.path.join(workdir, "report.pdf")
        with open(report, "w") as f:
            f.write("%PDF-1.4")

        await bridge.send_prompt(f"open {report}", "o1")
        assert [type(m) for m in messages] == [FileOpenedMessage, DoneMessage]
        opened = messages[0]
        assert opened.path == report
        assert opened.success
        assert opened.id == "o1"
        assert not bridge.is_busy
        await bridge.stop()

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_pending_open_from_streamed_output():
    async def scenario(workdir):
        bridge, messages = _make_bridge(workdir)
        chart = os.path.join(workdir, "chart.png")
        with open(chart, "wb") as f:
            f.write(b"\x89PNG")

        # the path in the prompt does not exist, so the assistant runs
        await bridge.send_prompt("show /nonexistent/dir/plot.png as a chart", "p1")
        await _wait_for(lambda: _done(messages, "p1"))

        opened = [m for m in messages if isinstance(m, FileOpenedMessage)]
        assert [(m.path, m.success, m.id) for m in opened] == [(chart, True, "p1")]
        assert isinstance(messages[-1], DoneMessage)
        await bridge.stop()

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_open_file_failures():
    async def scenario(workdir):
        bridge, messages = _make_bridge(
            workdir, open_file={"command": os.path.join(workdir, "no-launcher")}
        )
        await bridge.open_file("missing.pdf", "x1")
        assert messages[-1] == FileOpenedMessage(
            path="missing.pdf", success=False, message="File not found", id="x1"
        )

        notes = os.path.join(workdir, "notes.txt")
        with open(notes, "w") as f:
            f.write("notes")
        await bridge.open_file("notes.txt", "x2")
        failed = messages[-1]
        assert isinstance(failed, FileOpenedMessage)
        assert failed.path == "notes.txt"
        assert not failed.success
        assert failed.message
        await bridge.stop()

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_listener_errors_do_not_break_delivery():
    async def scenario(workdir):
        bridge, messages = _make_bridge(workdir)

        def broken(message):
            raise RuntimeError("listener bug")

        bridge.on("message", broken)
        bridge.on("message", messages.append)

        await bridge.open_file("missing.pdf", "l1")
        # delivered to the listener registered before and after the broken one
        assert len(messages) == 2

        bridge.off("message", broken)
        bridge.off("message", broken)
        await bridge.stop()

    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(scenario(workdir))


def test_default_open_command():
    argv = default_open_command("/tmp/report.pdf")
    assert argv[-1] == "/tmp/report.pdf"
    assert argv[0] in ("open", "xdg-open", "cmd")


if __name__ == "__main__":
    test_default_open_command()
    test_prompt_streams_then_done()
    test_tool_events_and_stats_filtering()
    test_non_zero_exit_reports_stderr_then_done()
    test_busy_rejection_and_interrupt()
    test_interrupt_terminates_the_whole_process_group()
    test_sigkill_after_grace_period_when_sigterm_is_ignored()
    test_interrupt_when_idle_is_a_no_op()
    test_spawn_failure_returns_to_idle()
    test_open_intent_with_existing_file_skips_the_assistant()
    test_pending_open_from_streamed_output()
    test_open_file_failures()
    test_listener_errors_do_not_break_delivery()
    print("✓ bridge tests passed")
