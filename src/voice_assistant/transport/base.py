"""Base transport abstraction for client connections.

Defines the interface a client-facing transport implements so the session
orchestrator can stay independent of the wire format. Channels translate
between their wire messages and the typed events in ``voice_assistant.events``.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from voice_assistant.events import ClientEvent, ServerEvent


class ClientChannel(ABC):
    """Bidirectional event channel to one connected client.

    Events sent through a channel reach the client in the order they were
    sent.
    """

    @abstractmethod
    async def send_event(self, event: ServerEvent) -> None:
        """Send one event to the client.

        Args:
            event: Outbound event

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        pass

    @abstractmethod
    async def receive_events(self) -> AsyncIterator[ClientEvent]:
        """Receive events from the client.

        Ends when the client disconnects. Malformed messages are answered
        with an error event on the channel and skipped.

        Yields:
            ClientEvent: Decoded inbound event
        """
        # Using yield to make this an async generator
        if False:
            yield

    @abstractmethod
    async def close(self) -> None:
        """Close the channel and release transport resources."""
        pass

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Unique session identifier for logging and tracking."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the client connection is still active."""
        pass


class Transport(ABC):
    """Base transport implementation.

    Manages the lifecycle of a transport server and hands out one channel
    per connected client.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and close all active channels."""
        pass

    @abstractmethod
    async def accept_session(self) -> ClientChannel:
        """Accept a new client.

        Blocks until a client connects.

        Returns:
            ClientChannel: Channel for the new client

        Raises:
            RuntimeError: If the transport is not running
        """
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        pass
