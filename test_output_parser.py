#!/usr/bin/env python3
"""
Tests for OutputParser line classification and incremental feeding.
"""

from relay.bridge import ErrorEvent, OutputParser, ProgressEvent, ToolEndEvent, ToolStartEvent


def test_tool_start_lines():
    parser = OutputParser()
    assert parser.parse_line("Editing src/index.ts") == ToolStartEvent(
        tool="edit_file", detail="src/index.ts"
    )
    assert parser.parse_line("Running `npm test`") == ToolStartEvent(
        tool="run_command", detail="npm test"
    )
    assert parser.parse_line("  Creating file docs/guide.md  ") == ToolStartEvent(
        tool="create_file", detail="docs/guide.md"
    )


def test_tool_end_status_from_keywords():
    parser = OutputParser()
    assert parser.parse_line("Ran `npm test`") == ToolEndEvent(tool="run_command", status="success")
    assert parser.parse_line("Ran `make` with exit code 2") == ToolEndEvent(
        tool="run_command", status="failure"
    )
    assert parser.parse_line("Edited foo.py but the patch failed") == ToolEndEvent(
        tool="edit_file", status="failure"
    )
    assert parser.parse_line("Bash completed") == ToolEndEvent(tool="bash", status="success")


def test_error_lines():
    parser = OutputParser()
    assert parser.parse_line("Error: build failed") == ErrorEvent(message="build failed")
    assert parser.parse_line("fatal: repository not found") == ErrorEvent(
        message="repository not found"
    )


def test_progress_lines():
    parser = OutputParser()
    assert parser.parse_line("Step 2/5 completed") == ProgressEvent(step=2, total=5)
    assert parser.parse_line("[3/10] compiling") == ProgressEvent(step=3, total=10)
    assert parser.parse_line("Indexing (1 of 4)") == ProgressEvent(step=1, total=4)
    assert parser.parse_line("Downloading 45%") == ProgressEvent(percent=45)


def test_unmatched_and_blank_lines():
    parser = OutputParser()
    assert parser.parse_line("") is None
    assert parser.parse_line("   ") is None
    assert parser.parse_line("Here is the summary you asked for.") is None


def test_ansi_codes_do_not_hide_events():
    parser = OutputParser()
    assert parser.parse_line("\x1b[32mEditing a.py\x1b[0m") == ToolStartEvent(
        tool="edit_file", detail="a.py"
    )


def test_parse_block_keeps_line_order():
    events = OutputParser().parse_block("Editing a.py\nthinking...\nEdited a.py\nStep 1/2")
    assert events == [
        ToolStartEvent(tool="edit_file", detail="a.py"),
        ToolEndEvent(tool="edit_file", status="success"),
        ProgressEvent(step=1, total=2),
    ]


def test_feed_buffers_partial_lines():
    parser = OutputParser()
    assert parser.feed("Edit") == ("", [])

    text, events = parser.feed("ing a.py\nhel")
    assert text == "Editing a.py\n"
    assert events == [ToolStartEvent(tool="edit_file", detail="a.py")]

    assert parser.flush() == ("hel", [])
    assert parser.flush() == ("", [])


def test_feed_strips_stats_footer_and_crlf():
    parser = OutputParser()
    text, events = parser.feed(
        "Answer\r\n\x1b[2mTotal usage est: 1 Premium request\x1b[0m\r\nAPI time spent: 2s\n"
    )
    assert text == "Answer\n"
    assert events == []


def test_feed_collapses_blank_lines_around_dropped_footer():
    parser = OutputParser()
    text, _ = parser.feed(
        "answer\n\nTotal usage est: 1 Premium request\nAPI time spent: 2s\n\n"
        "Breakdown by AI model:\n claude-sonnet-4.5  1.2k in, 20 out\n\n"
    )
    assert text == "answer\n\n"

    # blank-line state carries across chunks
    parser.reset()
    pieces = [
        parser.feed("first\n\n")[0],
        parser.feed("Total session time: 4s\n")[0],
        parser.feed("\n\nsecond\n")[0],
    ]
    assert "".join(pieces) == "first\n\nsecond\n"

    # blank lines the assistant wrote itself are left alone
    parser.reset()
    assert parser.feed("a\n\n\nb\n") == ("a\n\n\nb\n", [])


def test_stats_helpers():
    assert OutputParser.is_stats_line(" claude-sonnet-4.5  12.3k in, 400 out")
    assert OutputParser.is_stats_line("Total session time: 12s")
    assert not OutputParser.is_stats_line("The total is 12")
    assert OutputParser.strip_stats("done\nTotal code changes: +1 -0\n") == "done"


def test_reset_drops_pending_text():
    parser = OutputParser()
    parser.feed("partial")
    parser.reset()
    assert parser.flush() == ("", [])


if __name__ == "__main__":
    test_tool_start_lines()
    test_tool_end_status_from_keywords()
    test_error_lines()
    test_progress_lines()
    test_unmatched_and_blank_lines()
    test_ansi_codes_do_not_hide_events()
    test_parse_block_keeps_line_order()
    test_feed_buffers_partial_lines()
    test_feed_strips_stats_footer_and_crlf()
    test_feed_collapses_blank_lines_around_dropped_footer()
    test_stats_helpers()
    test_reset_drops_pending_text()
    print("✓ output parser tests passed")
