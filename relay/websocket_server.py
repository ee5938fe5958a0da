"""
WebSocket Server for the Copilot Web Relay

Thin transport layer between browser clients and the Copilot bridge. It
authenticates connections, rate limits inbound frames, routes validated
client messages to the bridge and broadcasts bridge output to every
connection. The chat history of the session is kept in memory and exposed
over a few read-only HTTP endpoints.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

import uvicorn
from fastapi import APIRouter, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from relay.auth import (
    UNAUTHORIZED_CLOSE_CODE,
    UNAUTHORIZED_REASON,
    authorize_websocket,
    extract_bearer_token,
    extract_token_from_header,
)
from relay.bridge import CopilotBridge
from relay.history import ChatHistory
from relay.logging_utils import (
    INCOMING,
    OUTGOING,
    log_auth_attempt,
    log_error_with_context,
    log_wire_message,
    should_log_feature,
)
from relay.protocol import (
    ErrorMessage,
    InterruptMessage,
    OpenFileMessage,
    PingMessage,
    PongMessage,
    PromptMessage,
    ServerMessage,
    parse_client_message,
    serialize_message,
    validate_prompt_content,
)
from relay.resilience import PerClientRateLimiter, RateLimiterConfig

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Rate limit exceeded, retry in {wait} ms"
DEFAULT_FORWARDED_FOR_HEADERS = ("cf-connecting-ip", "x-forwarded-for")


class HealthResponse(BaseModel):
    status: str = "ok"
    copilot: str


class Connection:
    """One authorized websocket and its ordered outbound queue."""

    def __init__(self, websocket: WebSocket, client_id: str):
        self.websocket = websocket
        self.client_id = client_id
        self.outbound: asyncio.Queue[str] = asyncio.Queue()

    def send(self, message: ServerMessage) -> None:
        self.outbound.put_nowait(serialize_message(message))

    async def writer(self) -> None:
        """Drain the queue in order; one writer per connection."""
        while True:
            payload = await self.outbound.get()
            log_wire_message(OUTGOING, self.client_id, payload)
            await self.websocket.send_text(payload)


class WebSocketServer:
    """
    Relay websocket communication server.

    This class only handles:
    - Connection authentication and bookkeeping
    - Inbound validation, rate limiting and routing
    - Broadcasting bridge output

    Process management is delegated to CopilotBridge.
    """

    def __init__(
        self,
        config: dict[str, Any],
        auth_token: str | None = None,
        bridge: CopilotBridge | None = None,
        history: ChatHistory | None = None,
    ):
        self.config = config
        self.server_config: dict[str, Any] = config.get("server", {})
        self.auth_token = auth_token
        # proxies such as cloudflared put the browser's address in a header;
        # without it every tunneled client would share the proxy's bucket
        self.forwarded_for_headers: list[str] = [
            header.lower()
            for header in self.server_config.get(
                "forwarded_for_headers", DEFAULT_FORWARDED_FOR_HEADERS
            )
        ]
        self.bridge = bridge or CopilotBridge(config.get("bridge", {}))

        history_config = config.get("history", {})
        self.history = history or ChatHistory(
            max_messages=history_config.get("max_messages", 100),
            max_content_length=history_config.get("max_content_length", 100_000),
        )

        rate_config = config.get("rate_limit", {})
        self.rate_limiter: PerClientRateLimiter | None = None
        self.rate_limit_idle_ms: float = rate_config.get("cleanup_idle_ms", 60_000)
        if rate_config.get("enabled", True):
            self.rate_limiter = PerClientRateLimiter(
                RateLimiterConfig(
                    max_tokens=rate_config.get("max_tokens", 20),
                    refill_rate=rate_config.get("refill_rate", 5),
                    refill_interval=rate_config.get("refill_interval_ms", 1000),
                )
            )

        self.active_connections: list[Connection] = []
        self.bridge.on("message", self._on_bridge_message)
        self.app = self._create_app()

    # ---------- app ----------

    def _create_app(self) -> FastAPI:
        """Create and configure FastAPI app."""

        @contextlib.asynccontextmanager
        async def lifespan(app: FastAPI) -> AsyncIterator[None]:
            self.bridge.start()
            maintenance = asyncio.create_task(self._maintenance_loop())
            try:
                yield
            finally:
                maintenance.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await maintenance
                await self.bridge.stop()

        app = FastAPI(title="Copilot Web Relay", lifespan=lifespan)
        router = APIRouter()

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.server_config.get("cors_origins", ["*"]),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.websocket(self.server_config.get("path", "/ws"))
        async def websocket_endpoint(websocket: WebSocket):  # type: ignore
            await self._handle_websocket_connection(websocket)

        @app.get("/health")
        async def health() -> HealthResponse:  # type: ignore
            return HealthResponse(copilot="running" if self.bridge.is_ready else "stopped")

        @router.get("/history")
        async def get_history() -> list[dict[str, Any]]:  # type: ignore
            return [message.model_dump() for message in self.history.get_messages()]

        @router.get("/history/search")
        async def search_history(q: str = "") -> list[dict[str, Any]]:  # type: ignore
            return [message.model_dump() for message in self.history.search(q)]

        @router.get("/history/stats")
        async def history_stats() -> dict[str, Any]:  # type: ignore
            return self.history.get_stats().model_dump()

        # Prevent static analyzers from marking route handlers as unused
        __keep_for_pyright = (websocket_endpoint, health, get_history, search_history, history_stats)
        del __keep_for_pyright

        app.include_router(router)

        return app

    async def _maintenance_loop(self) -> None:
        """Evict idle rate-limit buckets once per heartbeat interval."""
        interval = self.server_config.get("heartbeat_interval", 30.0)
        while True:
            await asyncio.sleep(interval)
            if self.rate_limiter is not None:
                removed = self.rate_limiter.cleanup(self.rate_limit_idle_ms)
                if removed:
                    logger.debug(f"Evicted {removed} idle rate-limit buckets")

    # ---------- connections ----------

    async def _handle_websocket_connection(self, websocket: WebSocket) -> None:
        """Authenticate, then run reader and writer until either side ends."""
        client_id = self._client_id(websocket)
        authorized, subprotocol = authorize_websocket(websocket, self.auth_token)
        if self.auth_token:
            offered = extract_token_from_header(
                websocket.headers.get("sec-websocket-protocol")
            ) or extract_bearer_token(websocket.headers.get("authorization"))
            log_auth_attempt(client_id, offered, authorized)

        if not authorized:
            await websocket.accept()
            await websocket.close(code=UNAUTHORIZED_CLOSE_CODE, reason=UNAUTHORIZED_REASON)
            return

        connection = await self._connect_websocket(websocket, client_id, subprotocol)
        reader = asyncio.create_task(self._read_loop(connection))
        writer = asyncio.create_task(connection.writer())
        try:
            done, pending = await asyncio.wait(
                [reader, writer], return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            for task in done:
                exception = task.exception()
                if exception is not None and not isinstance(exception, WebSocketDisconnect):
                    log_error_with_context(f"on connection {client_id}", exception)
        finally:
            self._disconnect_websocket(connection)

    async def _connect_websocket(
        self, websocket: WebSocket, client_id: str, subprotocol: str | None
    ) -> Connection:
        await websocket.accept(subprotocol=subprotocol)
        connection = Connection(websocket, client_id)
        self.active_connections.append(connection)
        if should_log_feature("websocket", "connection_events"):
            logger.info(
                f"WebSocket connection from {client_id} established. "
                f"Total connections: {len(self.active_connections)}"
            )
        return connection

    def _disconnect_websocket(self, connection: Connection) -> None:
        if connection in self.active_connections:
            self.active_connections.remove(connection)
        if should_log_feature("websocket", "connection_events"):
            logger.info(
                f"WebSocket connection from {connection.client_id} closed. "
                f"Total connections: {len(self.active_connections)}"
            )

    def _client_id(self, websocket: WebSocket) -> str:
        """Rate-limit and log key: the forwarded address, else the peer host."""
        for header in self.forwarded_for_headers:
            value = websocket.headers.get(header, "").split(",")[0].strip()
            if value:
                return value
        client = websocket.client
        return client.host if client is not None else "unknown"

    async def _read_loop(self, connection: Connection) -> None:
        try:
            while True:
                raw = await connection.websocket.receive_text()
                log_wire_message(INCOMING, connection.client_id, raw)
                await self._handle_frame(connection, raw)
        except WebSocketDisconnect:
            logger.debug(f"WebSocket {connection.client_id} disconnected")

    # ---------- inbound ----------

    async def _handle_frame(self, connection: Connection, raw: str) -> None:
        result = parse_client_message(raw)
        if not result.ok:
            logger.warning(f"Dropping frame from {connection.client_id}: {result.error}")
            return
        message = result.message

        if not isinstance(message, PingMessage) and not self._admit(connection, message):
            return

        if isinstance(message, PromptMessage):
            await self._handle_prompt(connection, message)
        elif isinstance(message, InterruptMessage):
            await self._handle_interrupt(connection, message)
        elif isinstance(message, PingMessage):
            connection.send(PongMessage())
        elif isinstance(message, OpenFileMessage):
            await self.bridge.open_file(message.path, message.id)

    def _admit(self, connection: Connection, message: Any) -> bool:
        """Consume one token for the client; reply with the wait time when out."""
        if self.rate_limiter is None:
            return True
        if self.rate_limiter.try_consume(connection.client_id):
            return True

        wait = self.rate_limiter.get_wait_time(connection.client_id)
        if should_log_feature("websocket", "rate_limit"):
            logger.warning(f"Rate limited {connection.client_id} ({message.type}), wait {wait} ms")
        msg_id = getattr(message, "id", None)
        if msg_id is not None:
            connection.send(ErrorMessage(message=RATE_LIMIT_MESSAGE.format(wait=wait), id=msg_id))
        return False

    async def _handle_interrupt(self, connection: Connection, message: InterruptMessage) -> None:
        running = self.bridge.current_msg_id
        if running != message.id:
            logger.info(
                f"Ignoring interrupt for {message.id} from {connection.client_id}: "
                f"{running or 'no prompt'} is running"
            )
            return
        await self.bridge.interrupt()
        self.history.mark_interrupted(running)

    async def _handle_prompt(self, connection: Connection, message: PromptMessage) -> None:
        check = validate_prompt_content(message.content)
        if not check.valid:
            connection.send(ErrorMessage(message=check.error or "Invalid prompt", id=message.id))
            return
        if not self.bridge.is_busy:
            self.history.record_prompt(message.content, message.id)
        await self.bridge.send_prompt(message.content, message.id)

    # ---------- outbound ----------

    def _on_bridge_message(self, message: ServerMessage) -> None:
        """Record bridge output and fan it out to every connection."""
        self.history.apply_server_message(message)
        self.broadcast(message)

    def broadcast(self, message: ServerMessage) -> None:
        for connection in list(self.active_connections):
            connection.send(message)

    # ---------- lifecycle ----------

    async def start_server(self) -> None:
        """Start the server; returns when uvicorn shuts down."""
        host = self.server_config.get("host", "localhost")
        port = self.server_config.get("port", 3100)
        heartbeat = self.server_config.get("heartbeat_interval", 30.0)

        logger.info(f"Starting relay on ws://{host}:{port}{self.server_config.get('path', '/ws')}")
        if not self.auth_token:
            logger.warning("AUTH_TOKEN is not set: accepting every connection")

        server_config = uvicorn.Config(
            self.app,
            host=host,
            port=port,
            log_level="info",
            ws_ping_interval=heartbeat,
            ws_ping_timeout=heartbeat,
        )
        server = uvicorn.Server(server_config)

        try:
            await server.serve()
        except Exception as e:
            logger.error(f"WebSocket server error: {e}")
            raise
        finally:
            logger.info("Relay server stopped")


async def run_websocket_server(config: dict[str, Any], auth_token: str | None = None) -> None:
    """Build and run the relay server from a configuration dictionary."""
    server = WebSocketServer(config, auth_token)
    await server.start_server()
