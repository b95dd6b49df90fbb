"""Live transcription bridge.

Owns streaming WebSocket connections to the transcription provider
(Deepgram's live listen API). Audio chunks go in through
``TranscriptionConnection.send``; interim and final transcript fragments come
out through the ``on_fragment`` callback.

Connection lifecycle:
    CONNECTING → OPEN → CLOSING → CLOSED
    CONNECTING → CLOSED (handshake failed)
    OPEN → CLOSED (provider closed the stream or the network dropped)

The bridge never reconnects and never buffers audio. When the provider ends
a stream the connection calls ``on_closed`` exactly once and stays CLOSED;
deciding whether and when to open a new one is up to the caller.
"""

import asyncio
import contextlib
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from voice_assistant.config import TranscriptionConfig
from voice_assistant.errors import TranscriptionConnectionError

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Transcription connection states."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class TranscriptFragment:
    """A piece of transcript from the provider.

    Attributes:
        text: Transcript text
        is_final: True if the provider will not revise this text again
    """

    text: str
    is_final: bool


FragmentHandler = Callable[[TranscriptFragment], None]
ClosedHandler = Callable[[], None]


def parse_fragment(raw: str | bytes) -> TranscriptFragment | None:
    """Parse a provider message into a transcript fragment.

    Only ``Results`` messages carrying a non-empty transcript produce a
    fragment. Metadata, speech-started and utterance-end messages return None.

    Args:
        raw: Raw WebSocket message from the provider

    Returns:
        Parsed fragment, or None if the message carries no transcript
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Invalid transcription message", extra={"error": str(e)})
        return None

    if not isinstance(data, dict) or data.get("type") != "Results":
        return None

    try:
        transcript = data["channel"]["alternatives"][0].get("transcript") or ""
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        logger.warning("Malformed transcription result", extra={"error": str(e)})
        return None

    if not transcript.strip():
        return None

    return TranscriptFragment(text=transcript, is_final=bool(data.get("is_final", False)))


class TranscriptionConnection:
    """One live streaming connection to the transcription provider.

    Created in CONNECTING state by ``TranscriptionBridge.open``; the handshake
    and the receive loop run in a background task.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str],
        on_fragment: FragmentHandler,
        on_closed: ClosedHandler,
        connect_timeout_s: float = 10.0,
        connector: Callable[..., Any] = connect,
    ) -> None:
        """Initialize transcription connection.

        Args:
            url: Fully parameterized streaming endpoint
            headers: Handshake headers (authorization)
            on_fragment: Called for every transcript fragment
            on_closed: Called once if the provider side ends the stream
            connect_timeout_s: Handshake timeout in seconds
            connector: WebSocket connect function (websockets.asyncio.client.connect)
        """
        self.connection_id = f"stt-{uuid.uuid4().hex[:8]}"
        self._url = url
        self._headers = headers
        self._on_fragment = on_fragment
        self._on_closed = on_closed
        self._connect_timeout_s = connect_timeout_s
        self._connector = connector

        self._state = ConnectionState.CONNECTING
        self._websocket: ClientConnection | None = None
        self._task: asyncio.Task[None] | None = None
        self._close_requested = False

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    def start(self) -> None:
        """Start the handshake and receive loop in the background.

        Raises:
            RuntimeError: If the connection was already started
        """
        if self._task is not None:
            raise RuntimeError("Transcription connection already started")

        logger.info(
            "Opening transcription connection",
            extra={"connection_id": self.connection_id},
        )
        self._task = asyncio.create_task(
            self._run(), name=f"transcription-{self.connection_id}"
        )

    async def send(self, chunk: bytes) -> None:
        """Forward one audio chunk to the provider.

        Args:
            chunk: Raw audio bytes

        Raises:
            TranscriptionConnectionError: If the connection is not OPEN or the
                send fails
        """
        websocket = self._websocket
        if self._state is not ConnectionState.OPEN or websocket is None:
            raise TranscriptionConnectionError(
                f"Cannot send audio while transcription connection is {self._state.value}"
            )

        try:
            await websocket.send(chunk)
        except ConnectionClosed as e:
            raise TranscriptionConnectionError(f"Transcription connection lost: {e}") from e

    async def close(self) -> None:
        """Close the connection from our side.

        Asks the provider to flush and finish the stream, then closes the
        socket. Does not call ``on_closed``. Safe to call multiple times.
        """
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return

        self._close_requested = True
        was_open = self._state is ConnectionState.OPEN
        self._state = ConnectionState.CLOSING
        logger.info(
            "Closing transcription connection",
            extra={"connection_id": self.connection_id},
        )

        try:
            if was_open and self._websocket is not None:
                with contextlib.suppress(ConnectionClosed):
                    await self._websocket.send(json.dumps({"type": "CloseStream"}))
                await self._websocket.close()
            elif self._task is not None:
                # Handshake still in flight
                self._task.cancel()

            if self._task is not None:
                await asyncio.gather(self._task, return_exceptions=True)
        finally:
            self._mark_closed(provider_initiated=False)

    async def _run(self) -> None:
        try:
            websocket = await self._connector(
                self._url,
                additional_headers=self._headers,
                open_timeout=self._connect_timeout_s,
            )
        except asyncio.CancelledError:
            self._mark_closed(provider_initiated=False)
            raise
        except (OSError, TimeoutError, WebSocketException) as e:
            logger.warning(
                "Transcription connection failed to open",
                extra={"connection_id": self.connection_id, "error": str(e)},
            )
            self._mark_closed(provider_initiated=True)
            return

        if self._state is not ConnectionState.CONNECTING:
            await websocket.close()
            return

        self._websocket = websocket
        self._state = ConnectionState.OPEN
        logger.info(
            "Transcription connection open",
            extra={"connection_id": self.connection_id},
        )

        try:
            async for raw_message in websocket:
                fragment = parse_fragment(raw_message)
                if fragment is not None:
                    self._on_fragment(fragment)
        except ConnectionClosed as e:
            logger.warning(
                "Transcription connection dropped",
                extra={"connection_id": self.connection_id, "error": str(e)},
            )
        except (OSError, WebSocketException) as e:
            logger.error(
                "Transcription connection error",
                extra={"connection_id": self.connection_id, "error": str(e)},
            )
        finally:
            self._mark_closed(provider_initiated=not self._close_requested)

    def _mark_closed(self, provider_initiated: bool) -> None:
        if self._state is ConnectionState.CLOSED:
            return

        self._state = ConnectionState.CLOSED
        self._websocket = None
        logger.info(
            "Transcription connection closed",
            extra={
                "connection_id": self.connection_id,
                "provider_initiated": provider_initiated,
            },
        )

        if provider_initiated:
            self._on_closed()


class TranscriptionBridge:
    """Factory for live transcription connections.

    Holds the fixed provider configuration and credentials; every call to
    ``open`` starts a fresh connection with identical settings.
    """

    def __init__(
        self,
        config: TranscriptionConfig,
        api_key: str,
        connector: Callable[..., Any] = connect,
    ) -> None:
        """Initialize transcription bridge.

        Args:
            config: Transcription provider configuration
            api_key: Provider API key
            connector: WebSocket connect function
        """
        self.config = config
        self._api_key = api_key
        self._connector = connector

    @property
    def url(self) -> str:
        """Streaming endpoint with the configured query options."""
        params: dict[str, str] = {
            "model": self.config.model,
            "language": self.config.language,
            "punctuate": str(self.config.punctuate).lower(),
            "smart_format": str(self.config.smart_format).lower(),
            "interim_results": str(self.config.interim_results).lower(),
        }
        if self.config.encoding:
            params["encoding"] = self.config.encoding
        if self.config.sample_rate:
            params["sample_rate"] = str(self.config.sample_rate)
        return f"{self.config.url}?{urlencode(params)}"

    def open(self, on_fragment: FragmentHandler, on_closed: ClosedHandler) -> TranscriptionConnection:
        """Begin opening a new streaming connection.

        Returns immediately with the connection in CONNECTING state.

        Args:
            on_fragment: Called for every transcript fragment
            on_closed: Called once if the provider side ends the stream

        Returns:
            The new connection
        """
        connection = TranscriptionConnection(
            url=self.url,
            headers={"Authorization": f"Token {self._api_key}"},
            on_fragment=on_fragment,
            on_closed=on_closed,
            connect_timeout_s=self.config.connect_timeout_s,
            connector=self._connector,
        )
        connection.start()
        return connection
