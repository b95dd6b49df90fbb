"""WebSocket CLI client for testing the voice assistant.

Connects to the assistant's WebSocket endpoint, sends each line typed on
stdin as a text message, prints transcripts, replies and errors, and saves
every synthesized reply to an audio file.
"""

import argparse
import asyncio
import base64
import logging
import signal
import sys
import time
from pathlib import Path

import websockets
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection

from voice_assistant.transport.websocket_protocol import (
    AIResponseMessage,
    AudioDataMessage,
    ErrorMessage,
    FinalTranscriptMessage,
    PlaybackEndedMessage,
    ReconnectingMessage,
    SessionEndMessage,
    SessionStartMessage,
    TextMessage,
    TranscriptMessage,
    server_message_adapter,
)

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "audio/ogg": ".ogg",
}


class AudioFileWriter:
    """Saves reply audio payloads to numbered files."""

    def __init__(self, output_dir: Path) -> None:
        """Initialize audio file writer.

        Args:
            output_dir: Directory for saved replies (created if missing)
        """
        self.output_dir = output_dir
        self.count = 0

    def write(self, audio: bytes, mime_type: str = "audio/mpeg") -> Path:
        """Write one reply to disk.

        Returns:
            Path of the written file
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.count += 1
        extension = _EXTENSIONS.get(mime_type, ".bin")
        path = self.output_dir / f"reply_{self.count:04d}_{int(time.time() * 1000)}{extension}"
        path.write_bytes(audio)
        logger.debug(f"Saved audio to {path}")
        return path


class CLIClient:
    """WebSocket CLI client for voice assistant communication."""

    def __init__(
        self,
        server_url: str,
        output_dir: Path = Path("replies"),
        verbose: bool = False,
    ) -> None:
        """Initialize CLI client.

        Args:
            server_url: WebSocket server URL (e.g., ws://localhost:4000)
            output_dir: Directory for saved reply audio
            verbose: Enable verbose logging
        """
        self.server_url = server_url
        self.verbose = verbose
        self.session_id: str | None = None
        self.running = True
        self.audio_writer = AudioFileWriter(output_dir)

    async def send_text(self, websocket: ClientConnection, text: str) -> None:
        """Send a text message to the server."""
        await websocket.send(TextMessage(text=text).model_dump_json())
        logger.debug(f"Sent: {text}")

    async def send_playback_ended(self, websocket: ClientConnection) -> None:
        """Tell the server the last reply has finished playing."""
        await websocket.send(PlaybackEndedMessage().model_dump_json())

    async def handle_message(self, websocket: ClientConnection, raw_message: str) -> None:
        """Handle one incoming message from the server.

        Args:
            websocket: WebSocket connection
            raw_message: Raw JSON message from server
        """
        try:
            message = server_message_adapter.validate_json(raw_message)
        except ValidationError as e:
            logger.warning(f"Unrecognized server message: {e}")
            return

        if isinstance(message, SessionStartMessage):
            self.session_id = message.session_id
            print(f"\nSession started: {message.session_id}")

        elif isinstance(message, TranscriptMessage):
            print(f"\r... {message.text}", end="", flush=True)

        elif isinstance(message, FinalTranscriptMessage):
            print(f"\nYou said: {message.text}")

        elif isinstance(message, AIResponseMessage):
            print(f"Assistant: {message.text}")

        elif isinstance(message, AudioDataMessage):
            path = self.audio_writer.write(base64.b64decode(message.audio), message.mime_type)
            print(f"Audio saved: {path}")
            # Nothing is played here, so playback is over as soon as it is saved
            await self.send_playback_ended(websocket)

        elif isinstance(message, ReconnectingMessage):
            print("\n(transcription reconnecting)")

        elif isinstance(message, ErrorMessage):
            logger.error(f"Server error [{message.code}]: {message.message}")
            print(f"\nError: {message.message}")

        elif isinstance(message, SessionEndMessage):
            print(f"\nSession ended: {message.reason}")
            self.running = False

    async def receive_messages(self, websocket: ClientConnection) -> None:
        """Receive and handle messages from the server."""
        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    message = message.decode("utf-8")
                await self.handle_message(websocket, message)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by server")
        finally:
            self.running = False

    async def input_loop(self, websocket: ClientConnection) -> None:
        """Read user input from stdin and send it."""
        print("\n" + "=" * 60)
        print("Voice Assistant CLI Client")
        print("=" * 60)
        print("\nType a message and press Enter. /quit exits.\n")

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "You: ")
            except EOFError:
                # Ctrl+D
                self.running = False
                break

            text = text.strip()
            if not text:
                continue
            if text == "/quit":
                self.running = False
                print("\nGoodbye!")
                break

            await self.send_text(websocket, text)

        await websocket.close()

    async def run(self) -> None:
        """Run the CLI client."""
        async with websockets.connect(self.server_url) as websocket:
            logger.info(f"Connected to {self.server_url}")

            def signal_handler() -> None:
                self.running = False

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, signal_handler)

            try:
                await asyncio.gather(
                    self.input_loop(websocket),
                    self.receive_messages(websocket),
                )
            finally:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="WebSocket CLI client for the voice assistant")
    parser.add_argument(
        "--host",
        type=str,
        default="ws://localhost:4000",
        help="WebSocket server URL (default: ws://localhost:4000)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("replies"),
        help="Directory for saved reply audio (default: ./replies)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    client = CLIClient(server_url=args.host, output_dir=args.output_dir, verbose=args.verbose)
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        print("\nExiting...")
    except OSError as e:
        logger.error(f"Client error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
