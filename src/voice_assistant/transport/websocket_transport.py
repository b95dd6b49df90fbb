"""WebSocket transport implementation.

Serves the client channel over WebSocket. Browser and CLI clients send raw
binary audio frames or JSON messages and receive JSON event messages.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import websockets
from pydantic import ValidationError
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from voice_assistant.events import AudioChunk, ClientEvent, ServerEvent
from voice_assistant.transport.base import ClientChannel, Transport
from voice_assistant.transport.websocket_protocol import (
    ErrorMessage,
    ServerMessage,
    SessionEndMessage,
    SessionStartMessage,
    client_message_adapter,
    to_client_event,
    to_server_message,
)

logger = logging.getLogger(__name__)

# Close code for "try again later" (RFC 6455)
CLOSE_TRY_AGAIN_LATER = 1013


class WebSocketChannel(ClientChannel):
    """WebSocket-based client channel.

    Implements the ClientChannel interface for WebSocket connections,
    handling JSON message serialization and binary audio frames.
    """

    def __init__(self, websocket: ServerConnection, session_id: str) -> None:
        """Initialize WebSocket channel.

        Args:
            websocket: WebSocket connection
            session_id: Unique session identifier
        """
        self._websocket = websocket
        self._session_id = session_id
        self._connected = True

        logger.info(
            "WebSocket channel initialized",
            extra={"session_id": session_id, "remote": websocket.remote_address},
        )

    @property
    def session_id(self) -> str:
        """Get unique session identifier."""
        return self._session_id

    @property
    def is_connected(self) -> bool:
        """Check if the channel connection is still active."""
        return self._connected and self._websocket.state == State.OPEN

    async def send_event(self, event: ServerEvent) -> None:
        """Send one event to the client.

        Args:
            event: Outbound event

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        if not self.is_connected:
            raise ConnectionError("WebSocket connection is closed")

        message = to_server_message(event)
        try:
            await self._websocket.send(message.model_dump_json())
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise ConnectionError(f"WebSocket connection closed: {e}") from e

        logger.debug(
            "Event sent",
            extra={"session_id": self._session_id, "event_type": message.type},
        )

    async def receive_events(self) -> AsyncIterator[ClientEvent]:
        """Receive events from the client.

        Binary frames are raw audio chunks. Text frames must be valid JSON
        client messages; anything else is answered with an INVALID_MESSAGE
        error and skipped.

        Yields:
            ClientEvent: Decoded inbound event
        """
        try:
            async for raw_message in self._websocket:
                if isinstance(raw_message, bytes):
                    if raw_message:
                        yield AudioChunk(data=raw_message)
                    continue

                try:
                    message = client_message_adapter.validate_json(raw_message)
                except ValidationError as e:
                    logger.warning(
                        "Invalid client message",
                        extra={"session_id": self._session_id, "error": str(e)},
                    )
                    await self._send_error(
                        f"Invalid message: {e.errors()[0]['msg']}", code="INVALID_MESSAGE"
                    )
                    continue

                logger.debug(
                    "Client message received",
                    extra={"session_id": self._session_id, "type": message.type},
                )
                yield to_client_event(message)

        except websockets.exceptions.ConnectionClosed:
            logger.info(
                "WebSocket connection closed by client",
                extra={"session_id": self._session_id},
            )
        finally:
            self._connected = False

    async def send_session_start(self) -> None:
        """Send session start notification to client."""
        await self._send_message(SessionStartMessage(session_id=self._session_id))

    async def send_session_end(self, reason: str = "completed") -> None:
        """Send session end notification to client."""
        await self._send_message(SessionEndMessage(session_id=self._session_id, reason=reason))

    async def _send_error(self, error_msg: str, code: str = "INTERNAL_ERROR") -> None:
        """Send error message to client."""
        await self._send_message(ErrorMessage(message=error_msg, code=code))

    async def _send_message(self, message: ServerMessage) -> None:
        """Send a server message to the client, ignoring a closed connection."""
        if not self.is_connected:
            return

        try:
            await self._websocket.send(message.model_dump_json())
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            logger.info(
                "Failed to send message, connection closed",
                extra={"session_id": self._session_id, "error": str(e)},
            )

    async def close(self, reason: str = "closed") -> None:
        """Send the session end notification and close the connection."""
        if not self._connected:
            return

        logger.info("Closing WebSocket channel", extra={"session_id": self._session_id})

        try:
            await self.send_session_end(reason=reason)
            await self._websocket.close()
        finally:
            self._connected = False


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages WebSocket server lifecycle and creates WebSocketChannel instances
    for incoming client connections.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 4000,
        max_connections: int = 100,
        max_message_bytes: int = 2**20,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum inbound message size
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._server: Any = None  # websockets Server type
        self._running = False
        self._session_queue: asyncio.Queue[WebSocketChannel] = asyncio.Queue()
        self._active_connections = 0

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "websocket"

    @property
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        return self._running

    @property
    def active_connections(self) -> int:
        """Number of currently connected clients."""
        return self._active_connections

    @property
    def port(self) -> int:
        """Bound port (resolved after start when configured as 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport is already running or fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info(
            "Starting WebSocket server", extra={"host": self._host, "port": self._port}
        )

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise

        self._running = True
        logger.info(
            "WebSocket server started",
            extra={"host": self._host, "port": self.port},
        )

    async def stop(self) -> None:
        """Stop the WebSocket server and close all client connections."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")

        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_session(self) -> ClientChannel:
        """Accept a new client.

        Returns:
            ClientChannel: Channel for the new client

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._session_queue.get()

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle incoming WebSocket connection.

        Args:
            websocket: WebSocket connection
        """
        if self._active_connections >= self._max_connections:
            logger.warning(
                "Rejecting WebSocket connection, server at capacity",
                extra={"remote": websocket.remote_address, "limit": self._max_connections},
            )
            await websocket.close(CLOSE_TRY_AGAIN_LATER, "server at capacity")
            return

        session_id = f"ws-{uuid.uuid4().hex[:12]}"
        logger.info(
            "New WebSocket connection",
            extra={"session_id": session_id, "remote": websocket.remote_address},
        )

        self._active_connections += 1
        try:
            channel = WebSocketChannel(websocket, session_id)
            await channel.send_session_start()
            await self._session_queue.put(channel)

            # The session task consumes the socket; keep the handler alive
            # until the connection is gone.
            await websocket.wait_closed()
        finally:
            self._active_connections -= 1
            logger.info("WebSocket connection closed", extra={"session_id": session_id})
