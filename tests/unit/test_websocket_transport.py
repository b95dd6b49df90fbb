"""Unit tests for WebSocket transport implementation.

Tests the WebSocket message protocol, channel event encoding/decoding and
transport server lifecycle.
"""

import base64
import json
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK
from websockets.protocol import State

from voice_assistant.events import (
    AIResponse,
    AudioChunk,
    AudioData,
    ErrorNotice,
    FinalTranscript,
    InterimTranscript,
    PlaybackEnded,
    TextInput,
    TranscriptionReconnecting,
)
from voice_assistant.transport.websocket_protocol import (
    AudioChunkMessage,
    AudioDataMessage,
    ErrorMessage,
    PlaybackEndedMessage,
    ReconnectingMessage,
    SessionStartMessage,
    TextMessage,
    client_message_adapter,
    server_message_adapter,
    to_client_event,
    to_server_message,
)
from voice_assistant.transport.websocket_transport import (
    WebSocketChannel,
    WebSocketTransport,
)


class TestWebSocketProtocol:
    """Test WebSocket message protocol models."""

    def test_text_message_validation(self) -> None:
        """Test text message validation."""
        msg = TextMessage(text="Hello, world!")
        assert msg.type == "textMessage"
        assert msg.text == "Hello, world!"

    def test_text_message_empty_text(self) -> None:
        """Test text message with empty text."""
        with pytest.raises(ValueError):
            TextMessage(text="")

    def test_audio_chunk_requires_base64(self) -> None:
        """Test audio chunk payload validation."""
        with pytest.raises(ValueError, match="base64"):
            AudioChunkMessage(audio="not-valid-base64!!!")

    def test_client_messages_by_type(self) -> None:
        """Test the discriminated union picks the right model."""
        encoded = base64.b64encode(b"\x01\x02").decode("ascii")

        assert isinstance(
            client_message_adapter.validate_json('{"type": "textMessage", "text": "hi"}'),
            TextMessage,
        )
        assert isinstance(
            client_message_adapter.validate_json('{"type": "playbackEnded"}'),
            PlaybackEndedMessage,
        )
        assert isinstance(
            client_message_adapter.validate_json(
                json.dumps({"type": "audioChunk", "audio": encoded})
            ),
            AudioChunkMessage,
        )

    def test_unknown_client_message_type(self) -> None:
        """Test unknown message types are rejected."""
        with pytest.raises(ValidationError):
            client_message_adapter.validate_json('{"type": "sessionStart", "session_id": "x"}')

    def test_to_client_event(self) -> None:
        """Test wire messages map to session events."""
        encoded = base64.b64encode(b"\x01\x02").decode("ascii")

        assert to_client_event(AudioChunkMessage(audio=encoded)) == AudioChunk(b"\x01\x02")
        assert to_client_event(TextMessage(text="hello")) == TextInput("hello")
        assert to_client_event(PlaybackEndedMessage()) == PlaybackEnded()

    def test_to_server_message(self) -> None:
        """Test session events map to wire messages."""
        assert to_server_message(InterimTranscript("hel")).model_dump() == {
            "type": "transcript",
            "text": "hel",
        }
        assert to_server_message(FinalTranscript("hello")).model_dump() == {
            "type": "finalTranscript",
            "text": "hello",
        }
        assert to_server_message(AIResponse("Hi!")).model_dump() == {
            "type": "aiResponse",
            "text": "Hi!",
        }
        assert to_server_message(ErrorNotice("oops", code="BUSY")).model_dump() == {
            "type": "error",
            "message": "oops",
            "code": "BUSY",
        }
        assert isinstance(to_server_message(TranscriptionReconnecting()), ReconnectingMessage)

    def test_audio_data_is_base64(self) -> None:
        """Test reply audio is base64-encoded on the wire."""
        message = to_server_message(AudioData(b"ID3-mp3", mime_type="audio/mpeg"))

        assert isinstance(message, AudioDataMessage)
        assert base64.b64decode(message.audio) == b"ID3-mp3"
        assert message.mime_type == "audio/mpeg"

    def test_unsupported_event(self) -> None:
        """Test events without a wire form are rejected."""
        with pytest.raises(TypeError):
            to_server_message(object())  # type: ignore[arg-type]

    def test_server_message_parsing(self) -> None:
        """Test server messages parse back into models."""
        raw = SessionStartMessage(session_id="ws-1").model_dump_json()

        message = server_message_adapter.validate_json(raw)

        assert isinstance(message, SessionStartMessage)
        assert message.session_id == "ws-1"

    def test_error_message_defaults(self) -> None:
        """Test error message default code."""
        msg = ErrorMessage(message="Test error")
        assert msg.type == "error"
        assert msg.code == "INTERNAL_ERROR"


class TestWebSocketChannel:
    """Test WebSocket channel implementation."""

    @pytest.fixture
    def mock_websocket(self) -> MagicMock:
        """Create mock WebSocket connection."""
        ws = MagicMock()
        ws.state = State.OPEN
        ws.remote_address = ("127.0.0.1", 12345)
        ws.send = AsyncMock()
        ws.close = AsyncMock()
        return ws

    def set_incoming(self, ws: MagicMock, messages: list[str | bytes]) -> None:
        async def mock_iter() -> AsyncGenerator[str | bytes]:
            for msg in messages:
                yield msg

        ws.__aiter__ = lambda self: mock_iter()

    def sent_messages(self, ws: MagicMock) -> list[dict]:
        return [json.loads(call.args[0]) for call in ws.send.call_args_list]

    def test_channel_initialization(self, mock_websocket: MagicMock) -> None:
        """Test channel initialization."""
        channel = WebSocketChannel(mock_websocket, "test-session")

        assert channel.session_id == "test-session"
        assert channel.is_connected is True

    @pytest.mark.asyncio
    async def test_send_event(self, mock_websocket: MagicMock) -> None:
        """Test sending an event as JSON."""
        channel = WebSocketChannel(mock_websocket, "test-session")

        await channel.send_event(FinalTranscript("hello"))

        assert self.sent_messages(mock_websocket) == [
            {"type": "finalTranscript", "text": "hello"}
        ]

    @pytest.mark.asyncio
    async def test_send_event_disconnected(self, mock_websocket: MagicMock) -> None:
        """Test sending when the socket is closed."""
        mock_websocket.state = State.CLOSED
        channel = WebSocketChannel(mock_websocket, "test-session")

        with pytest.raises(ConnectionError, match="connection is closed"):
            await channel.send_event(AIResponse("hi"))

    @pytest.mark.asyncio
    async def test_send_event_connection_lost(self, mock_websocket: MagicMock) -> None:
        """Test a send failure marks the channel disconnected."""
        mock_websocket.send.side_effect = ConnectionClosedOK(None, None)
        channel = WebSocketChannel(mock_websocket, "test-session")

        with pytest.raises(ConnectionError):
            await channel.send_event(AIResponse("hi"))

        assert channel.is_connected is False

    @pytest.mark.asyncio
    async def test_receive_events(self, mock_websocket: MagicMock) -> None:
        """Test binary and JSON frames decode into events."""
        encoded = base64.b64encode(b"\x03\x04").decode("ascii")
        self.set_incoming(
            mock_websocket,
            [
                b"\x01\x02",
                json.dumps({"type": "audioChunk", "audio": encoded}),
                json.dumps({"type": "textMessage", "text": "Hello"}),
                json.dumps({"type": "playbackEnded"}),
            ],
        )
        channel = WebSocketChannel(mock_websocket, "test-session")

        events = [event async for event in channel.receive_events()]

        assert events == [
            AudioChunk(b"\x01\x02"),
            AudioChunk(b"\x03\x04"),
            TextInput("Hello"),
            PlaybackEnded(),
        ]
        assert channel.is_connected is False

    @pytest.mark.asyncio
    async def test_receive_invalid_message(self, mock_websocket: MagicMock) -> None:
        """Test malformed messages are answered with an error and skipped."""
        self.set_incoming(
            mock_websocket,
            [
                "not json",
                json.dumps({"type": "bogus"}),
                json.dumps({"type": "textMessage", "text": ""}),
                b"",
                json.dumps({"type": "textMessage", "text": "still here"}),
            ],
        )
        channel = WebSocketChannel(mock_websocket, "test-session")

        events = [event async for event in channel.receive_events()]

        assert events == [TextInput("still here")]
        errors = self.sent_messages(mock_websocket)
        assert len(errors) == 3
        assert all(e["type"] == "error" and e["code"] == "INVALID_MESSAGE" for e in errors)

    @pytest.mark.asyncio
    async def test_receive_connection_closed(self, mock_websocket: MagicMock) -> None:
        """Test an abrupt close ends iteration quietly."""

        async def broken_iter() -> AsyncGenerator[str]:
            yield json.dumps({"type": "textMessage", "text": "Hello"})
            raise ConnectionClosedOK(None, None)

        mock_websocket.__aiter__ = lambda self: broken_iter()
        channel = WebSocketChannel(mock_websocket, "test-session")

        events = [event async for event in channel.receive_events()]

        assert events == [TextInput("Hello")]
        assert channel.is_connected is False

    @pytest.mark.asyncio
    async def test_send_session_start(self, mock_websocket: MagicMock) -> None:
        """Test sending session start notification."""
        channel = WebSocketChannel(mock_websocket, "test-session")

        await channel.send_session_start()

        assert self.sent_messages(mock_websocket) == [
            {"type": "sessionStart", "session_id": "test-session"}
        ]

    @pytest.mark.asyncio
    async def test_close_channel(self, mock_websocket: MagicMock) -> None:
        """Test channel close sends sessionEnd and closes the socket."""
        channel = WebSocketChannel(mock_websocket, "test-session")

        await channel.close(reason="shutdown")
        await channel.close()

        assert channel.is_connected is False
        mock_websocket.close.assert_called_once()
        assert self.sent_messages(mock_websocket) == [
            {"type": "sessionEnd", "session_id": "test-session", "reason": "shutdown"}
        ]


class TestWebSocketTransport:
    """Test WebSocket transport server."""

    def test_transport_initialization(self) -> None:
        """Test transport initialization."""
        transport = WebSocketTransport(host="0.0.0.0", port=8080, max_connections=100)  # noqa: S104

        assert transport.transport_type == "websocket"
        assert transport.is_running is False
        assert transport.active_connections == 0
        assert transport.port == 8080

    @pytest.mark.asyncio
    async def test_transport_start_stop(self) -> None:
        """Test transport start and stop."""
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=10)

        await transport.start()
        assert transport.is_running is True
        assert transport.port != 0

        await transport.stop()
        assert transport.is_running is False

    @pytest.mark.asyncio
    async def test_transport_double_start(self) -> None:
        """Test starting transport twice."""
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=10)

        await transport.start()

        with pytest.raises(RuntimeError, match="already running"):
            await transport.start()

        await transport.stop()

    @pytest.mark.asyncio
    async def test_accept_session_not_running(self) -> None:
        """Test accepting session when transport not running."""
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=10)

        with pytest.raises(RuntimeError, match="not running"):
            await transport.accept_session()

    @pytest.mark.asyncio
    async def test_accept_and_exchange(self) -> None:
        """Test a real client connects, gets sessionStart and exchanges events."""
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=10)
        await transport.start()

        try:
            async with connect(f"ws://127.0.0.1:{transport.port}") as client:
                channel = await transport.accept_session()
                start = json.loads(await client.recv())
                assert start == {"type": "sessionStart", "session_id": channel.session_id}
                assert transport.active_connections == 1

                await client.send(json.dumps({"type": "textMessage", "text": "hi"}))
                events = channel.receive_events()
                assert await anext(events) == TextInput("hi")

                await channel.send_event(AIResponse("Hello!"))
                assert json.loads(await client.recv()) == {"type": "aiResponse", "text": "Hello!"}

                await channel.close()
                end = json.loads(await client.recv())
                assert end["type"] == "sessionEnd"
        finally:
            await transport.stop()

    @pytest.mark.asyncio
    async def test_rejects_over_capacity(self) -> None:
        """Test connections beyond max_connections are closed with 1013."""
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=1)
        await transport.start()

        try:
            async with connect(f"ws://127.0.0.1:{transport.port}") as first:
                await first.recv()
                async with connect(f"ws://127.0.0.1:{transport.port}") as second:
                    with pytest.raises(ConnectionClosed) as exc_info:
                        await second.recv()
                    assert exc_info.value.rcvd is not None
                    assert exc_info.value.rcvd.code == 1013
        finally:
            await transport.stop()
