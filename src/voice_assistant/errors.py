"""Exception taxonomy for the voice assistant."""


class VoiceAssistantError(Exception):
    """Base class for all voice assistant errors."""

    pass


class ConfigurationError(VoiceAssistantError):
    """Raised when configuration validation fails at startup."""

    pass


class TranscriptionConnectionError(VoiceAssistantError):
    """Raised when the live transcription connection cannot open or send."""

    pass


class ProviderCallError(VoiceAssistantError):
    """Raised when a completion or speech synthesis request fails.

    Covers transport failures, timeouts, non-2xx responses and malformed
    payloads.

    Attributes:
        provider: Provider name ("completion" or "synthesis")
        status: HTTP status code when the provider answered, else None
    """

    def __init__(self, provider: str, message: str, status: int | None = None) -> None:
        super().__init__(f"{provider} provider error: {message}")
        self.provider = provider
        self.status = status


ProviderError = ProviderCallError
