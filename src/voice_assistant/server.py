"""Voice assistant server entry point.

Loads configuration and credentials, starts the WebSocket client transport
and the health/metrics HTTP server, and runs one ``Session`` per connected
client until interrupted.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from voice_assistant.completion import CompletionClient
from voice_assistant.config import AssistantConfig, Credentials
from voice_assistant.errors import ConfigurationError
from voice_assistant.health import setup_health_routes
from voice_assistant.registry import SessionRegistry
from voice_assistant.session import Session
from voice_assistant.synthesis import SpeechSynthesisClient
from voice_assistant.transcription import TranscriptionBridge
from voice_assistant.transport.base import ClientChannel
from voice_assistant.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("configs") / "assistant.yaml"


class AssistantServer:
    """Process-wide resources shared by all sessions.

    Holds the provider clients (stateless, safe to share) and the session
    registry, and builds a ``Session`` for each accepted client.
    """

    def __init__(self, config: AssistantConfig, credentials: Credentials) -> None:
        """Initialize assistant server.

        Args:
            config: Assistant configuration
            credentials: Provider API keys
        """
        self.config = config
        self.registry = SessionRegistry()
        self.bridge = TranscriptionBridge(config.transcription, credentials.deepgram_api_key)
        self.completion = CompletionClient.from_config(
            config.completion, credentials.openai_api_key
        )
        self.synthesis = SpeechSynthesisClient(credentials.elevenlabs_api_key, config.synthesis)

    def create_session(self, channel: ClientChannel) -> Session:
        """Build a session for a newly connected client."""
        return Session(
            channel=channel,
            bridge=self.bridge,
            completion=self.completion,
            synthesis=self.synthesis,
            retry_delay_s=self.config.reconnect.retry_delay_s,
            history_limit=self.config.completion.history_limit,
            audio_mime_type=self.config.synthesis.output_mime_type,
        )

    async def shutdown(self) -> None:
        """Close all sessions and release provider clients."""
        await self.registry.close_all()
        await self.synthesis.close()
        await self.completion.close()
        logger.info("Assistant server shutdown complete")


async def handle_session(
    session: Session,
    channel: ClientChannel,
    registry: SessionRegistry,
) -> None:
    """Run one client session from connect to disconnect.

    Pumps client events into the session while ``Session.run`` processes
    them. When the client disconnects the session is unregistered and
    closed, which also closes its transcription connection.

    Args:
        session: Session for this client
        channel: Client channel the session talks to
        registry: Registry the session is tracked in
    """
    session_id = session.session_id
    await registry.add(session)
    runner = asyncio.create_task(session.run(), name=f"session-{session_id}")

    try:
        async for event in channel.receive_events():
            session.submit(event)
        logger.info("Client disconnected", extra={"session_id": session_id})
    except asyncio.CancelledError:
        logger.info("Session handler cancelled", extra={"session_id": session_id})
        raise
    except Exception as e:
        logger.exception(
            "Session handler error",
            extra={"session_id": session_id, "error": str(e)},
        )
        raise
    finally:
        registry.remove(session)
        await session.close()
        await runner
        await channel.close()

        logger.info("Session metrics", extra=session.get_metrics_summary())


async def start_server(config_path: Path | None, credentials: Credentials | None = None) -> None:
    """Start the voice assistant with configured transport.

    Credentials are validated before any listener is bound.

    Args:
        config_path: Path to YAML config file (defaults used if missing)
        credentials: Provider API keys (loaded from the environment if None)

    Raises:
        ConfigurationError: If configuration or credentials are invalid
        OSError: If a listener cannot bind
    """
    config = AssistantConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(
        "Loaded configuration",
        extra={"config_path": str(config_path) if config_path else None},
    )

    if credentials is None:
        credentials = Credentials.from_env()

    server = AssistantServer(config, credentials)

    ws_config = config.transport.websocket
    transport = WebSocketTransport(
        host=ws_config.host,
        port=ws_config.port,
        max_connections=ws_config.max_connections,
        max_message_bytes=ws_config.max_message_bytes,
    )
    await transport.start()

    runner: AppRunner | None = None
    if config.health.enabled:
        health_app = Application()
        setup_health_routes(health_app, server.registry, transport=transport)
        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, config.health.host, config.health.port)
        await site.start()
        logger.info("Health check server started", extra={"port": config.health.port})

    session_tasks: set[asyncio.Task[None]] = set()
    try:
        logger.info("Voice assistant ready", extra={"port": transport.port})

        while True:
            channel = await transport.accept_session()
            logger.info("New session accepted", extra={"session_id": channel.session_id})
            session = server.create_session(channel)
            task = asyncio.create_task(handle_session(session, channel, server.registry))
            session_tasks.add(task)
            task.add_done_callback(session_tasks.discard)

    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        logger.info("Shutting down voice assistant")

        await transport.stop()

        if runner is not None:
            await runner.cleanup()
            logger.info("Health check server stopped")

        await server.shutdown()

        if session_tasks:
            logger.info("Waiting for sessions to complete", extra={"count": len(session_tasks)})
            _, pending = await asyncio.wait(
                session_tasks, timeout=config.graceful_shutdown_timeout_s
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Voice assistant stopped")


def main() -> None:
    """Entry point for the voice assistant server."""
    parser = argparse.ArgumentParser(description="Duplex voice assistant server")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to assistant config YAML file (defaults used if missing)",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Configuration error: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Voice assistant interrupted")


if __name__ == "__main__":
    main()
