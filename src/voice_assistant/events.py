"""Transport-agnostic client events and conversation records.

Inbound events are produced by a client channel from whatever its wire
format is; outbound events are consumed by the channel and serialized back.
The session orchestrator only ever sees these types.
"""

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


# Client → Server


@dataclass(frozen=True)
class AudioChunk:
    """Raw microphone audio frame."""

    data: bytes


@dataclass(frozen=True)
class TextInput:
    """User-typed text that bypasses transcription."""

    text: str


@dataclass(frozen=True)
class PlaybackEnded:
    """Client finished playing the synthesized reply."""


ClientEvent = AudioChunk | TextInput | PlaybackEnded


# Server → Client


@dataclass(frozen=True)
class InterimTranscript:
    """Non-final transcript, superseded by the next fragment."""

    text: str


@dataclass(frozen=True)
class FinalTranscript:
    """Finalized user utterance (or echoed text message)."""

    text: str


@dataclass(frozen=True)
class AIResponse:
    """Assistant reply text."""

    text: str


@dataclass(frozen=True)
class AudioData:
    """Synthesized assistant speech."""

    audio: bytes
    mime_type: str = "audio/mpeg"


@dataclass(frozen=True)
class ErrorNotice:
    """User-facing failure notice."""

    message: str
    code: str = "INTERNAL_ERROR"


@dataclass(frozen=True)
class TranscriptionReconnecting:
    """The transcription connection is being re-established."""


ServerEvent = (
    InterimTranscript
    | FinalTranscript
    | AIResponse
    | AudioData
    | ErrorNotice
    | TranscriptionReconnecting
)


class MessageRole(Enum):
    """Conversation participant."""

    USER = "user"
    ASSISTANT = "assistant"


def _time_id() -> str:
    # Millisecond timestamp; two messages in the same millisecond share an id.
    return str(int(time.time() * 1000))


@dataclass
class Message:
    """One user utterance or assistant reply in a session's history.

    Only ``is_audio_playing`` changes after creation, and only from True to
    False once the client stops playing the reply.
    """

    role: MessageRole
    content: str
    id: str = field(default_factory=_time_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    is_audio_playing: bool = False

    def to_chat_message(self) -> dict[str, str]:
        """Return the message in chat-completion format."""
        return {"role": self.role.value, "content": self.content}
