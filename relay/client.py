"""
Reconnecting relay client.

Talks the relay wire protocol over ``websockets``: the shared token is
offered as the sub-protocol, a ``ping`` is sent every ``ping_interval``
seconds and dropped connections are retried with a ``RetryStrategy``.
``copilot-relay-chat`` is a line-oriented terminal front end over it.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
import uuid
from collections.abc import Callable
from typing import Any, Literal

import websockets
from websockets import ClientConnection
from websockets.exceptions import InvalidHandshake
from websockets.typing import Subprotocol

from relay.auth import UNAUTHORIZED_CLOSE_CODE, mask_token
from relay.config import Configuration
from relay.logging_utils import INCOMING, OUTGOING, log_directional_flow, should_log_feature
from relay.protocol import (
    DoneMessage,
    ErrorMessage,
    FileOpenedMessage,
    InterruptMessage,
    OpenFileMessage,
    PingMessage,
    PromptMessage,
    StreamMessage,
    ToolEndMessage,
    ToolStartMessage,
    parse_server_message,
    serialize_message,
)
from relay.resilience import RetryStrategy, create_default_strategy, create_strategy
from relay.url_utils import build_websocket_url, is_valid_tunnel_url, is_valid_websocket_url

logger = logging.getLogger(__name__)

ConnectionStatus = Literal["connected", "disconnected", "reconnecting"]


class RelayClient:
    """
    Websocket client for the relay.

    ``on_message`` receives every valid server message model; frames that
    fail validation are ignored. ``run`` keeps the connection up until
    ``close`` is called, the retry budget is exhausted or the token is
    rejected.
    """

    def __init__(
        self,
        url: str,
        token: str | None = None,
        on_message: Callable[[Any], None] | None = None,
        retry_strategy: RetryStrategy | None = None,
        ping_interval: float = 30.0,
        on_status: Callable[[ConnectionStatus], None] | None = None,
    ):
        self.url = url
        self.token = token
        self.on_message = on_message
        self.on_status = on_status
        self.retry_strategy = retry_strategy or create_default_strategy()
        self.ping_interval = ping_interval
        self._status: ConnectionStatus = "disconnected"
        self._ws: ClientConnection | None = None
        self._closing = False

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        if self.on_status is not None:
            self.on_status(status)

    # ---------- connection loop ----------

    async def run(self) -> None:
        """Connect and reconnect until closed, rejected or out of retries."""
        self._closing = False
        try:
            while not self._closing:
                try:
                    await self._connect_and_run()
                except websockets.ConnectionClosed as e:
                    code = e.rcvd.code if e.rcvd is not None else None
                    if code == UNAUTHORIZED_CLOSE_CODE:
                        logger.error("Relay rejected the token, not reconnecting")
                        break
                    logger.warning(f"Connection closed (code {code})")
                except (OSError, InvalidHandshake, asyncio.TimeoutError) as e:
                    logger.warning(f"Connection to {self.url} failed: {e}")

                if self._closing:
                    break
                if not self.retry_strategy.should_retry():
                    logger.error(
                        f"Giving up after {self.retry_strategy.attempt} reconnect attempts"
                    )
                    break

                delay = self.retry_strategy.next_delay()
                self._set_status("reconnecting")
                if should_log_feature("client", "reconnect_attempts"):
                    logger.info(
                        f"Reconnect attempt {self.retry_strategy.attempt} in {delay:.1f}s"
                    )
                await asyncio.sleep(delay)
        finally:
            self._set_status("disconnected")

    async def _connect_and_run(self) -> None:
        subprotocols = [Subprotocol(self.token)] if self.token else None
        logger.info(
            f"Connecting to {self.url}"
            + (f" with token {mask_token(self.token)}" if self.token else "")
        )
        async with websockets.connect(self.url, subprotocols=subprotocols) as ws:
            self._ws = ws
            self.retry_strategy.reset()
            self._set_status("connected")
            ping_task = asyncio.create_task(self._ping_loop())
            try:
                async for raw in ws:
                    self._handle_frame(raw if isinstance(raw, str) else raw.decode("utf-8"))
            finally:
                ping_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await ping_task
                self._ws = None

    async def _ping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            with contextlib.suppress(ConnectionError, websockets.ConnectionClosed):
                await self.send(PingMessage())

    def _handle_frame(self, raw: str) -> None:
        result = parse_server_message(raw)
        if not result.ok:
            logger.debug(f"Ignoring server frame: {result.error}")
            return
        if should_log_feature("client", "messages"):
            log_directional_flow(INCOMING, "Relay", "%s", raw)
        if self.on_message is not None:
            self.on_message(result.message)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()

    # ---------- outbound ----------

    async def send(self, message: Any) -> None:
        if self._ws is None:
            raise ConnectionError("Not connected to the relay")
        payload = serialize_message(message)
        if should_log_feature("client", "messages"):
            log_directional_flow(OUTGOING, "Relay", "%s", payload)
        await self._ws.send(payload)

    async def prompt(self, content: str) -> str:
        msg_id = uuid.uuid4().hex
        await self.send(PromptMessage(content=content, id=msg_id))
        return msg_id

    async def interrupt(self, msg_id: str) -> None:
        await self.send(InterruptMessage(id=msg_id))

    async def open_file(self, path: str) -> str:
        msg_id = uuid.uuid4().hex
        await self.send(OpenFileMessage(path=path, id=msg_id))
        return msg_id


# ==============================================================================
# TERMINAL FRONT END
# ==============================================================================


def resolve_relay_url(url: str, path: str = "/ws") -> str:
    """Accept either a websocket URL or a tunnel/http URL of the relay."""
    if is_valid_websocket_url(url):
        return url
    if is_valid_tunnel_url(url):
        return build_websocket_url(url, path)
    raise ValueError(f"Not a relay URL: {url}")


def render_message(message: Any) -> str:
    """Terminal text for one server message; empty for ones not shown."""
    if isinstance(message, StreamMessage):
        return message.content
    if isinstance(message, ToolStartMessage):
        return f"\n[{message.tool}] {message.detail}\n"
    if isinstance(message, ToolEndMessage):
        return f"[{message.tool}] {message.status}\n"
    if isinstance(message, FileOpenedMessage):
        if message.success:
            return f"Opened {message.path}\n"
        return f"Could not open {message.path}: {message.message}\n"
    if isinstance(message, ErrorMessage):
        return f"\n**Error:** {message.message}\n"
    if isinstance(message, DoneMessage):
        return "\n"
    return ""


async def _chat(client: RelayClient) -> None:
    """Read prompts from stdin; ``/interrupt``, ``/open PATH`` and ``/quit`` are commands."""
    loop = asyncio.get_running_loop()
    runner = asyncio.create_task(client.run())
    current: str | None = None
    try:
        while not runner.done():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                if line == "/quit":
                    break
                if line == "/interrupt":
                    if current is not None:
                        await client.interrupt(current)
                elif line.startswith("/open "):
                    await client.open_file(line[len("/open ") :].strip())
                else:
                    current = await client.prompt(line)
            except ConnectionError as e:
                print(f"({e})", file=sys.stderr)
    finally:
        await client.close()
        runner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await runner


def cli_main() -> None:
    """Console script: interactive chat against a running relay."""
    config = Configuration()
    client_config = config.get_client_config()

    parser = argparse.ArgumentParser(description="Chat with the Copilot web relay")
    parser.add_argument("--url", default=client_config["url"], help="Relay or tunnel URL")
    parser.add_argument("--token", default=config.auth_token, help="Shared secret")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.WARNING, format="%(asctime)s - %(levelname)s - %(message)s"
    )

    retry = dict(client_config.get("retry") or {})
    preset = retry.pop("preset", "default")

    def on_status(status: ConnectionStatus) -> None:
        print(f"({status})", file=sys.stderr)

    client = RelayClient(
        resolve_relay_url(args.url, config.get_server_config()["path"]),
        token=args.token or os.getenv("AUTH_TOKEN") or None,
        on_message=lambda message: print(render_message(message), end="", flush=True),
        retry_strategy=create_strategy(preset, **retry),
        ping_interval=client_config["ping_interval"],
        on_status=on_status,
    )
    try:
        asyncio.run(_chat(client))
    except KeyboardInterrupt:
        pass
