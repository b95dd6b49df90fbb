"""Configuration schema for the voice assistant.

Defines Pydantic models for loading and validating configuration from YAML
files and environment variables. Provider credentials are loaded separately
from the environment (optionally via a ``.env`` file) and are never part of
the YAML file.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from voice_assistant.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly voice assistant. Your replies are spoken aloud, "
    "so keep them short and conversational and avoid lists, markdown or emoji."
)


class WebSocketConfig(BaseModel):
    """WebSocket client transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=4000, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=100, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=2**20, ge=1024, description="Maximum inbound WebSocket message size"
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class HealthConfig(BaseModel):
    """Health check HTTP server configuration."""

    enabled: bool = Field(default=True, description="Serve health and metrics endpoints")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int = Field(default=4001, ge=1024, le=65535, description="Bind port")


class TranscriptionConfig(BaseModel):
    """Live transcription provider configuration.

    These options are fixed for the lifetime of the process; every new
    streaming connection is opened with the same settings.
    """

    url: str = Field(
        default="wss://api.deepgram.com/v1/listen",
        description="Streaming transcription endpoint",
    )
    model: str = Field(default="nova", description="Transcription model")
    language: str = Field(default="en", description="Spoken language (BCP-47 tag)")
    punctuate: bool = Field(default=True, description="Add punctuation to transcripts")
    smart_format: bool = Field(default=True, description="Apply smart formatting")
    interim_results: bool = Field(default=True, description="Emit non-final transcripts")
    encoding: str | None = Field(
        default=None,
        description="Raw audio encoding (e.g. linear16); None lets the provider sniff containers",
    )
    sample_rate: int | None = Field(
        default=None, ge=8000, le=48000, description="Raw audio sample rate in Hz"
    )
    connect_timeout_s: float = Field(
        default=10.0, gt=0, description="Timeout for the streaming handshake"
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate that the endpoint is a WebSocket URL."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"Transcription url must start with ws:// or wss://, got '{v}'")
        return v


class CompletionConfig(BaseModel):
    """Text completion provider configuration."""

    model: str = Field(default="gpt-4o-mini", description="Chat completion model")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System prompt")
    max_tokens: int = Field(default=300, ge=1, description="Max tokens per reply")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature")
    history_limit: int = Field(
        default=20,
        ge=0,
        description="Number of prior messages sent with each request (0 disables history)",
    )
    timeout_s: float = Field(default=30.0, gt=0, description="Request timeout in seconds")


class SynthesisConfig(BaseModel):
    """Speech synthesis provider configuration."""

    base_url: str = Field(
        default="https://api.elevenlabs.io/v1", description="Speech synthesis API base URL"
    )
    voice_id: str = Field(default="Z61JuDmU52ECd8UROolE", description="Voice identifier")
    model_id: str | None = Field(default=None, description="Synthesis model (provider default if None)")
    optimize_streaming_latency: int = Field(
        default=1, ge=0, le=4, description="Latency optimization level"
    )
    output_mime_type: str = Field(default="audio/mpeg", description="Requested audio encoding")
    timeout_s: float = Field(default=30.0, gt=0, description="Request timeout in seconds")


class ReconnectConfig(BaseModel):
    """Transcription reconnection policy."""

    retry_delay_s: float = Field(
        default=1.0,
        ge=0.01,
        le=10.0,
        description="Delay before the single resend of the chunk that triggered a reconnect",
    )


class AssistantConfig(BaseModel):
    """Root voice assistant configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "AssistantConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ConfigurationError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration root in {path} must be a mapping")

        _apply_env_overrides(data)

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "AssistantConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        data: dict = {}
        _apply_env_overrides(data)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration from environment: {e}") from e


# Environment variable → (section path, field)
_ENV_OVERRIDES: dict[str, tuple[tuple[str, ...], str]] = {
    "ASSISTANT_HOST": (("transport", "websocket"), "host"),
    "ASSISTANT_PORT": (("transport", "websocket"), "port"),
    "DEEPGRAM_MODEL": (("transcription",), "model"),
    "DEEPGRAM_LANGUAGE": (("transcription",), "language"),
    "OPENAI_MODEL": (("completion",), "model"),
    "ELEVENLABS_VOICE_ID": (("synthesis",), "voice_id"),
    "LOG_LEVEL": ((), "log_level"),
}


def _apply_env_overrides(data: dict) -> None:
    for env_var, (section_path, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if not value:
            continue
        section = data
        for name in section_path:
            section = section.setdefault(name, {})
        section[key] = value


class Credentials(BaseModel):
    """Provider API keys.

    Loaded once at startup; a missing key is fatal because no session can
    complete a turn without all three providers.
    """

    deepgram_api_key: str = Field(..., min_length=1, repr=False)
    openai_api_key: str = Field(..., min_length=1, repr=False)
    elevenlabs_api_key: str = Field(..., min_length=1, repr=False)

    @classmethod
    def from_env(cls, dotenv_path: Path | None = None) -> "Credentials":
        """Load credentials from the environment.

        Values from a ``.env`` file are used only where the real environment
        does not define the variable.

        Args:
            dotenv_path: Optional explicit ``.env`` location

        Returns:
            Loaded credentials

        Raises:
            ConfigurationError: If any required variable is missing or empty
        """
        load_dotenv(dotenv_path=dotenv_path, override=False)

        required = {
            "deepgram_api_key": "DEEPGRAM_API_KEY",
            "openai_api_key": "OPENAI_API_KEY",
            "elevenlabs_api_key": "ELEVENLABS_API_KEY",
        }
        values = {name: os.getenv(env_var, "").strip() for name, env_var in required.items()}
        missing = [required[name] for name, value in values.items() if not value]
        if missing:
            raise ConfigurationError(
                f"Missing required credentials: {', '.join(missing)}. "
                "Set them in the environment or in a .env file."
            )

        logger.info("Provider credentials loaded", extra={"providers": sorted(required.values())})
        return cls(**values)
