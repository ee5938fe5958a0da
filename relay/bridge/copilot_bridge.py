"""
Copilot Bridge

Owns the assistant CLI process for the relay. A fresh, non-interactive
process (``<command> -p <prompt> <args>``) is spawned per prompt; stdout is
streamed to listeners as protocol messages and stderr is buffered for the
error report on a non-zero exit. At most one process runs at a time.

Prompts that ask to open an existing file are served by the OS default
application and never reach the assistant.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import signal
import sys
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from relay.logging_utils import (
    INCOMING,
    OUTGOING,
    log_directional_flow,
    log_error_with_context,
    log_parsed_event,
    log_raw_output,
    should_log_feature,
)
from relay.protocol import (
    DoneMessage,
    ErrorMessage,
    FileOpenedMessage,
    ServerMessage,
    StreamMessage,
    ToolEndMessage,
    ToolStartMessage,
)

from .file_paths import (
    OPENABLE_EXTENSIONS,
    expand_path,
    extract_file_paths,
    has_open_intent,
    is_openable,
)
from .output_parser import OutputParser, ParsedEvent, ToolEndEvent, ToolStartEvent
from .text_sanitizer import filter_usage_stats, strip_ansi

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "Another prompt is still being processed"

Listener = Callable[..., Any]


def default_open_command(path: str) -> list[str]:
    """Platform launcher that opens ``path`` with its default application."""
    if sys.platform == "darwin":
        return ["open", path]
    if sys.platform == "win32":
        return ["cmd", "/c", "start", "", path]
    return ["xdg-open", path]


class CopilotBridge:
    """
    Single-flight bridge between protocol messages and the assistant CLI.

    Listeners subscribe with ``on(event, callback)``:

    - ``"message"``: called with every outgoing server message model
    - ``"ready"``: called once ``start`` has run
    - ``"exit"``: called with ``(msg_id, returncode)`` when a process exits

    State is ``idle`` or ``running``; ``current_msg_id`` is the correlation
    id of the running prompt. A prompt arriving while running is answered
    with an error and does not change state.
    """

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        config = config or {}
        self.command: str = config.get("command", "copilot")
        self.args: list[str] = [str(arg) for arg in config.get("args", [])]
        cwd = config.get("cwd")
        self.cwd: str | None = expand_path(cwd) if cwd else None
        self.env: dict[str, str] = {
            str(key): str(value) for key, value in (config.get("env") or {}).items()
        }
        self.kill_grace_period: float = float(config.get("kill_grace_period", 1.0))
        self.read_chunk_size: int = int(config.get("read_chunk_size", 4096))

        open_conf = config.get("open_file") or {}
        self.open_file_enabled: bool = bool(open_conf.get("enabled", True))
        self.open_command: str | None = open_conf.get("command")
        extra = {
            ext.lower() if ext.startswith(".") else f".{ext.lower()}"
            for ext in open_conf.get("openable_extensions") or []
        }
        self.openable_extensions: frozenset[str] = OPENABLE_EXTENSIONS | extra

        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._parser = OutputParser()
        self._ready = False
        self._process: asyncio.subprocess.Process | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._current_msg_id: str | None = None
        # msg_id -> paths already opened from streamed output
        self._pending_open: dict[str, set[str]] = {}
        self._background: set[asyncio.Task[Any]] = set()

    # ---------- listeners ----------

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners[event].remove(listener)

    def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(*args)
            except Exception as e:
                log_error_with_context(f"in bridge '{event}' listener", e)

    def _emit_message(self, message: ServerMessage) -> None:
        self._emit("message", message)

    # ---------- state ----------

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def is_busy(self) -> bool:
        return self._current_msg_id is not None

    @property
    def current_msg_id(self) -> str | None:
        return self._current_msg_id

    def start(self) -> None:
        """Mark the bridge ready. Processes are spawned per prompt."""
        self._ready = True
        logger.info(f"Copilot bridge ready (command: {self.command})")
        self._emit("ready")

    async def stop(self) -> None:
        """Interrupt any running prompt and wait for killed processes to be reaped."""
        await self.interrupt()
        self._ready = False
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Copilot bridge stopped")

    def resize(self, cols: int, rows: int) -> None:
        """No-op: the assistant runs without a terminal."""

    # ---------- prompts ----------

    async def send_prompt(self, content: str, msg_id: str) -> None:
        """
        Run one prompt.

        Returns once the prompt is either answered directly (busy error,
        open-file shortcut, spawn failure) or the assistant process has been
        started; output is then delivered through ``"message"`` listeners
        until the terminal ``done``.
        """
        if self.is_busy:
            logger.warning(f"Rejecting prompt {msg_id}: {self._current_msg_id} still running")
            self._emit_message(ErrorMessage(message=BUSY_MESSAGE, id=msg_id))
            return

        # claimed before the first await so a concurrent prompt sees us busy
        self._current_msg_id = msg_id
        self._parser.reset()

        if self.open_file_enabled and has_open_intent(content):
            paths = extract_file_paths(content)
            existing = [path for path in paths if os.path.exists(self._resolve(path))]
            if existing:
                log_directional_flow(OUTGOING, "OS", "opening %s for %s", existing, msg_id)
                for path in existing:
                    await self.open_file(path, msg_id)
                self._finish(msg_id)
                return
            if paths:
                self._pending_open[msg_id] = set()

        argv = [self.command, "-p", content, *self.args]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env={**os.environ, **self.env},
                start_new_session=sys.platform != "win32",
            )
        except (OSError, ValueError) as e:
            log_error_with_context(f"starting {self.command}", e)
            if self._current_msg_id == msg_id:
                self._current_msg_id = None
            self._pending_open.pop(msg_id, None)
            self._emit_message(
                ErrorMessage(message=f"Failed to start {self.command}: {e}", id=msg_id)
            )
            return

        if self._current_msg_id != msg_id:
            # interrupted while spawning
            self._terminate(process)
            return

        self._process = process
        if should_log_feature("bridge", "process_lifecycle"):
            log_directional_flow(OUTGOING, "Copilot", "spawned pid %s for %s", process.pid, msg_id)
        self._run_task = asyncio.create_task(self._run(process, msg_id))

    async def _run(self, process: asyncio.subprocess.Process, msg_id: str) -> None:
        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.create_task(process.stderr.read())
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await process.stdout.read(self.read_chunk_size)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                log_raw_output(text)
                await self._handle_output(self._parser.feed(text), msg_id)

            tail = decoder.decode(b"", final=True)
            if tail:
                await self._handle_output(self._parser.feed(tail), msg_id)
            await self._handle_output(self._parser.flush(), msg_id)

            stderr = (await stderr_task).decode("utf-8", errors="replace")
            returncode = await process.wait()
        except asyncio.CancelledError:
            stderr_task.cancel()
            raise
        except OSError as e:
            stderr_task.cancel()
            log_error_with_context(f"reading {self.command} output", e)
            if self._current_msg_id == msg_id:
                self._emit_message(ErrorMessage(message=str(e), id=msg_id))
            self._terminate(process)
            self._release(msg_id)
            return

        if should_log_feature("bridge", "process_lifecycle"):
            log_directional_flow(INCOMING, "Copilot", "pid %s exited with %s", process.pid, returncode)
        self._emit("exit", msg_id, returncode)

        if returncode != 0:
            message = filter_usage_stats(strip_ansi(stderr))
            if message:
                self._emit_message(ErrorMessage(message=message, id=msg_id))
        self._finish(msg_id)

    async def _handle_output(
        self, parsed: tuple[str, list[ParsedEvent]], msg_id: str
    ) -> None:
        text, events = parsed
        if text:
            self._emit_message(StreamMessage(content=text, id=msg_id))
        for event in events:
            log_parsed_event(event)
            if isinstance(event, ToolStartEvent):
                self._emit_message(
                    ToolStartMessage(tool=event.tool, detail=event.detail, id=msg_id)
                )
            elif isinstance(event, ToolEndEvent):
                self._emit_message(
                    ToolEndMessage(tool=event.tool, status=event.status, id=msg_id)
                )
        if text and msg_id in self._pending_open:
            await self._open_streamed_paths(text, msg_id)

    async def _open_streamed_paths(self, text: str, msg_id: str) -> None:
        opened = self._pending_open[msg_id]
        for path in extract_file_paths(text):
            if path in opened or not is_openable(path, self.openable_extensions):
                continue
            if not os.path.exists(self._resolve(path)):
                continue
            opened.add(path)
            await self.open_file(path, msg_id)

    def _release(self, msg_id: str) -> bool:
        """Return to idle if ``msg_id`` is still the running prompt."""
        if self._current_msg_id != msg_id:
            return False
        self._current_msg_id = None
        self._process = None
        self._run_task = None
        self._pending_open.pop(msg_id, None)
        return True

    def _finish(self, msg_id: str) -> None:
        if self._release(msg_id):
            self._emit_message(DoneMessage(id=msg_id))

    # ---------- cancellation ----------

    async def interrupt(self) -> None:
        """
        Cancel the running prompt, if any.

        Output reading stops before this returns, so no further stream or
        tool events are emitted for the cancelled id. The process group gets
        SIGTERM and, if still alive after ``kill_grace_period``, SIGKILL.
        No terminal message is emitted.
        """
        msg_id = self._current_msg_id
        process, task = self._process, self._run_task
        if msg_id is None:
            return
        self._release(msg_id)
        logger.info(f"Interrupting prompt {msg_id}")

        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if process is not None:
            self._terminate(process)
        self._parser.reset()

    def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        self._signal_group(process, signal.SIGTERM)
        task = asyncio.create_task(self._reap(process))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"pid {process.pid} ignored SIGTERM, killing")
            self._signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            await process.wait()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(os.getpgid(process.pid), sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except ProcessLookupError:
            pass
        except OSError as e:
            log_error_with_context(f"signalling pid {process.pid}", e)

    # ---------- open-file skill ----------

    def _resolve(self, path: str) -> str:
        expanded = expand_path(path)
        if os.path.isabs(expanded):
            return expanded
        return os.path.join(self.cwd or os.getcwd(), expanded)

    async def open_file(self, path: str, msg_id: str) -> None:
        """Open ``path`` with the default application; always emits ``file_opened``."""
        resolved = self._resolve(path)
        if not os.path.exists(resolved):
            self._emit_message(
                FileOpenedMessage(path=path, success=False, message="File not found", id=msg_id)
            )
            return

        argv = [self.open_command, resolved] if self.open_command else default_open_command(resolved)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=sys.platform != "win32",
            )
        except (OSError, ValueError) as e:
            log_error_with_context(f"opening {path}", e)
            self._emit_message(
                FileOpenedMessage(path=path, success=False, message=str(e), id=msg_id)
            )
            return

        # detached: reaped in the background, never awaited by the caller
        task = asyncio.create_task(process.wait())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        if should_log_feature("bridge", "open_file"):
            log_directional_flow(OUTGOING, "OS", "opened %s", resolved)
        self._emit_message(FileOpenedMessage(path=path, success=True, id=msg_id))
