"""WebSocket message protocol definitions.

Defines Pydantic models for WebSocket message serialization/deserialization.
Control and event messages are JSON text frames; microphone audio may also
arrive as raw binary frames, which need no model.
"""

import base64
import binascii
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from voice_assistant.events import (
    AIResponse,
    AudioChunk,
    AudioData,
    ClientEvent,
    ErrorNotice,
    FinalTranscript,
    InterimTranscript,
    PlaybackEnded,
    ServerEvent,
    TextInput,
    TranscriptionReconnecting,
)


class AudioChunkMessage(BaseModel):
    """Client → Server: Microphone audio chunk.

    Alternative to a binary frame for clients that can only send text.
    """

    type: Literal["audioChunk"] = "audioChunk"
    audio: str = Field(..., min_length=1, description="Base64-encoded audio chunk")

    @field_validator("audio")
    @classmethod
    def validate_audio(cls, v: str) -> str:
        """Validate that the payload is base64."""
        try:
            base64.b64decode(v, validate=True)
        except binascii.Error as e:
            raise ValueError(f"audio must be base64-encoded: {e}") from e
        return v


class TextMessage(BaseModel):
    """Client → Server: Typed user message.

    Handled exactly like a final transcript of the same text.
    """

    type: Literal["textMessage"] = "textMessage"
    text: str = Field(..., min_length=1, description="User message text")


class PlaybackEndedMessage(BaseModel):
    """Client → Server: Playback of the last reply has finished."""

    type: Literal["playbackEnded"] = "playbackEnded"


class SessionStartMessage(BaseModel):
    """Server → Client: Session start notification.

    Sent when a new session is established.
    """

    type: Literal["sessionStart"] = "sessionStart"
    session_id: str = Field(..., description="Unique session identifier")


class SessionEndMessage(BaseModel):
    """Server → Client: Session end notification.

    Sent when a session terminates (normal or error).
    """

    type: Literal["sessionEnd"] = "sessionEnd"
    session_id: str = Field(..., description="Session identifier")
    reason: str = Field(default="completed", description="Reason for session end")


class TranscriptMessage(BaseModel):
    """Server → Client: Interim transcript."""

    type: Literal["transcript"] = "transcript"
    text: str


class FinalTranscriptMessage(BaseModel):
    """Server → Client: Finalized user utterance."""

    type: Literal["finalTranscript"] = "finalTranscript"
    text: str


class AIResponseMessage(BaseModel):
    """Server → Client: Assistant reply text."""

    type: Literal["aiResponse"] = "aiResponse"
    text: str


class AudioDataMessage(BaseModel):
    """Server → Client: Synthesized reply audio."""

    type: Literal["audioData"] = "audioData"
    audio: str = Field(..., description="Base64-encoded audio payload")
    mime_type: str = Field(default="audio/mpeg", description="Audio encoding")


class ErrorMessage(BaseModel):
    """Server → Client: Error notification.

    Sent when an error occurs during the session.
    """

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")
    code: str = Field(default="INTERNAL_ERROR", description="Error code")


class ReconnectingMessage(BaseModel):
    """Server → Client: Transcription connection is being re-established."""

    type: Literal["reconnecting"] = "reconnecting"


# Union type for all server → client messages
ServerMessage = (
    SessionStartMessage
    | SessionEndMessage
    | TranscriptMessage
    | FinalTranscriptMessage
    | AIResponseMessage
    | AudioDataMessage
    | ErrorMessage
    | ReconnectingMessage
)

# Union type for all client → server messages
ClientMessage = AudioChunkMessage | TextMessage | PlaybackEndedMessage

client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(
    Annotated[ClientMessage, Field(discriminator="type")]
)
server_message_adapter: TypeAdapter[ServerMessage] = TypeAdapter(
    Annotated[ServerMessage, Field(discriminator="type")]
)


def to_client_event(message: ClientMessage) -> ClientEvent:
    """Convert a validated client message into a session event."""
    if isinstance(message, AudioChunkMessage):
        return AudioChunk(data=base64.b64decode(message.audio))
    if isinstance(message, TextMessage):
        return TextInput(text=message.text)
    return PlaybackEnded()


def to_server_message(event: ServerEvent) -> ServerMessage:
    """Convert a session event into its wire message.

    Raises:
        TypeError: If the event type has no wire representation
    """
    if isinstance(event, InterimTranscript):
        return TranscriptMessage(text=event.text)
    if isinstance(event, FinalTranscript):
        return FinalTranscriptMessage(text=event.text)
    if isinstance(event, AIResponse):
        return AIResponseMessage(text=event.text)
    if isinstance(event, AudioData):
        return AudioDataMessage(
            audio=base64.b64encode(event.audio).decode("ascii"),
            mime_type=event.mime_type,
        )
    if isinstance(event, ErrorNotice):
        return ErrorMessage(message=event.message, code=event.code)
    if isinstance(event, TranscriptionReconnecting):
        return ReconnectingMessage()
    raise TypeError(f"Unsupported server event: {type(event).__name__}")
