"""Transport layer for voice assistant client connections.

Provides the client channel abstraction and its WebSocket implementation.
"""

from voice_assistant.transport.base import ClientChannel, Transport
from voice_assistant.transport.websocket_transport import (
    WebSocketChannel,
    WebSocketTransport,
)

__all__ = [
    "ClientChannel",
    "Transport",
    "WebSocketChannel",
    "WebSocketTransport",
]
