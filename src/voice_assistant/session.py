"""Session orchestrator.

One ``Session`` per connected client. It owns the client channel, the live
transcription connection and the turn-taking state machine, and sequences
one completion call and one speech synthesis call per user turn.

Everything that can change session state is funnelled through a per-session
``asyncio.Queue`` and handled by ``Session.run`` one event at a time: client
input, transcript fragments, transcription closures, the reconnect retry
timer and provider results. Provider calls run as separate tasks and post
their results back to the queue, so the session keeps servicing the client
while a reply is being generated.

Turn state machine:
    LISTENING → AWAITING_REPLY (final transcript or text message)
    AWAITING_REPLY → SPEAKING (synthesized audio delivered)
    AWAITING_REPLY → LISTENING (provider failure)
    SPEAKING → LISTENING (playback ended, or the user starts talking again)

Per turn the client always sees finalTranscript, then aiResponse, then
audioData; or finalTranscript followed by a single error.
"""

import asyncio
import logging
import time
from collections.abc import Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from voice_assistant.completion import CompletionClient
from voice_assistant.errors import ProviderCallError, TranscriptionConnectionError
from voice_assistant.events import (
    AIResponse,
    AudioChunk,
    AudioData,
    ClientEvent,
    ErrorNotice,
    FinalTranscript,
    InterimTranscript,
    Message,
    MessageRole,
    PlaybackEnded,
    ServerEvent,
    TextInput,
    TranscriptionReconnecting,
)
from voice_assistant.metrics import get_metrics_collector
from voice_assistant.synthesis import SpeechSynthesisClient
from voice_assistant.transcription import (
    ConnectionState,
    TranscriptFragment,
    TranscriptionBridge,
    TranscriptionConnection,
)
from voice_assistant.transport.base import ClientChannel

logger = logging.getLogger(__name__)

PROVIDER_ERROR_MESSAGE = "Sorry, I encountered an error processing your message."
BUSY_MESSAGE = "Still working on the previous reply, please wait."


class TurnState(Enum):
    """Turn-taking states.

    States:
    - LISTENING: Waiting for the user to finish an utterance
    - AWAITING_REPLY: Completion and synthesis in flight
    - SPEAKING: Client is playing the synthesized reply
    """

    LISTENING = "listening"
    AWAITING_REPLY = "awaiting_reply"
    SPEAKING = "speaking"


# Valid state transitions
VALID_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.LISTENING: {TurnState.AWAITING_REPLY},
    TurnState.AWAITING_REPLY: {TurnState.SPEAKING, TurnState.LISTENING},
    TurnState.SPEAKING: {TurnState.LISTENING},
}


# Internal queue events


@dataclass(frozen=True)
class _FragmentReceived:
    generation: int
    fragment: TranscriptFragment


@dataclass(frozen=True)
class _TranscriptionClosed:
    generation: int


@dataclass(frozen=True)
class _RetryChunk:
    data: bytes


@dataclass(frozen=True)
class _CompletionReady:
    turn_id: int
    text: str
    latency_s: float


@dataclass(frozen=True)
class _SynthesisReady:
    turn_id: int
    audio: bytes
    latency_s: float


@dataclass(frozen=True)
class _ProviderFailed:
    turn_id: int
    error: ProviderCallError


@dataclass(frozen=True)
class _Stop:
    pass


@dataclass
class SessionMetrics:
    """Session activity metrics."""

    # Turn outcomes
    turns_started: int = 0
    turns_completed: int = 0
    turns_failed: int = 0

    # Transcription
    chunks_forwarded: int = 0
    chunks_dropped: int = 0
    transcription_connections: int = 0
    reconnects: int = 0

    # Provider latency of the most recent turn
    last_completion_latency_ms: float | None = None
    last_synthesis_latency_ms: float | None = None

    session_start_ts: float = field(default_factory=time.monotonic)
    session_end_ts: float | None = None

    def finalize(self) -> None:
        """Mark session as complete and record end time."""
        self.session_end_ts = time.monotonic()

    @property
    def duration_s(self) -> float:
        """Session duration so far, or total once finalized."""
        return (self.session_end_ts or time.monotonic()) - self.session_start_ts


class Session:
    """Orchestrates one client's conversation.

    Example:
        >>> session = Session(channel, bridge, completion, synthesis)
        >>> runner = asyncio.create_task(session.run())
        >>> session.submit(TextInput("hello"))
        >>> ...
        >>> await session.close()

    Thread-safety: Not thread-safe. All methods must be called from the
    event loop that runs ``run``.
    """

    def __init__(
        self,
        channel: ClientChannel,
        bridge: TranscriptionBridge,
        completion: CompletionClient,
        synthesis: SpeechSynthesisClient,
        retry_delay_s: float = 1.0,
        history_limit: int = 20,
        audio_mime_type: str = "audio/mpeg",
    ) -> None:
        """Initialize session.

        Args:
            channel: Client channel this session talks to
            bridge: Factory for transcription connections
            completion: Completion client
            synthesis: Speech synthesis client
            retry_delay_s: Delay before resending the chunk that triggered a reconnect
            history_limit: Prior messages passed to each completion request
            audio_mime_type: MIME type reported with synthesized audio
        """
        self.session_id = channel.session_id
        self.state = TurnState.LISTENING
        self.messages: list[Message] = []
        self.metrics = SessionMetrics()

        self._channel: ClientChannel | None = channel
        self._bridge = bridge
        self._completion = completion
        self._synthesis = synthesis
        self._retry_delay_s = retry_delay_s
        self._history_limit = history_limit
        self._audio_mime_type = audio_mime_type

        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._connection: TranscriptionConnection | None = None
        self._generation = 0
        self._retry_task: asyncio.Task[None] | None = None
        self._provider_tasks: set[asyncio.Task[None]] = set()
        self._turn_id = 0
        self._interim_text = ""
        self._closed = False

        self._collector = get_metrics_collector()
        self._collector.record_session_start()

    @property
    def connection(self) -> TranscriptionConnection | None:
        """Current transcription connection, if any."""
        return self._connection

    @property
    def interim_transcript(self) -> str:
        """Latest interim transcript of the utterance in progress."""
        return self._interim_text

    @property
    def is_closed(self) -> bool:
        """Check if the session has been closed."""
        return self._closed

    # === Inbound ===

    def submit(self, event: ClientEvent) -> None:
        """Queue an event received from the client."""
        self._post(event)

    def _post(self, event: Any) -> None:
        if self._closed:
            return
        self._events.put_nowait(event)

    async def run(self) -> None:
        """Process queued events until the session is closed."""
        logger.info("Session started", extra={"session_id": self.session_id})

        while True:
            event = await self._events.get()
            try:
                if isinstance(event, _Stop):
                    break
                if self._closed:
                    continue
                await self._dispatch(event)
            except Exception as e:
                logger.exception(
                    "Error handling session event",
                    extra={
                        "session_id": self.session_id,
                        "event_type": type(event).__name__,
                        "error": str(e),
                    },
                )
            finally:
                self._events.task_done()

        logger.info("Session loop stopped", extra={"session_id": self.session_id})

    async def drain(self) -> None:
        """Wait until every event queued so far has been handled.

        Requires ``run`` to be executing in another task.
        """
        await self._events.join()

    async def wait_idle(self) -> None:
        """Wait until all queued events and in-flight work have been handled.

        Includes provider calls and a pending reconnect retry. Requires
        ``run`` to be executing in another task.
        """
        while True:
            await self.drain()
            pending = [task for task in self._provider_tasks if not task.done()]
            if self._retry_task is not None and not self._retry_task.done():
                pending.append(self._retry_task)
            if not pending and self._events.empty():
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _dispatch(self, event: Any) -> None:
        if isinstance(event, AudioChunk):
            await self._handle_audio_chunk(event.data)
        elif isinstance(event, TextInput):
            await self._handle_text_input(event.text)
        elif isinstance(event, PlaybackEnded):
            self._finish_playback()
        elif isinstance(event, _FragmentReceived):
            await self._handle_fragment(event)
        elif isinstance(event, _TranscriptionClosed):
            self._handle_transcription_closed(event)
        elif isinstance(event, _RetryChunk):
            await self._handle_retry_chunk(event.data)
        elif isinstance(event, _CompletionReady):
            await self._handle_completion_ready(event)
        elif isinstance(event, _SynthesisReady):
            await self._handle_synthesis_ready(event)
        elif isinstance(event, _ProviderFailed):
            await self._handle_provider_failed(event)
        else:
            logger.warning(
                "Unknown session event",
                extra={"session_id": self.session_id, "event_type": type(event).__name__},
            )

    # === Client input ===

    async def _handle_audio_chunk(self, data: bytes) -> None:
        if self.state is TurnState.SPEAKING:
            # The user talking again means playback is over
            self._finish_playback()

        if self.state is TurnState.AWAITING_REPLY:
            self._drop_chunk("awaiting_reply")
            return

        await self._forward_chunk(data)

    async def _handle_text_input(self, text: str) -> None:
        if not text.strip():
            logger.debug("Ignoring empty text message", extra={"session_id": self.session_id})
            return

        if self.state is TurnState.SPEAKING:
            self._finish_playback()

        if self.state is TurnState.AWAITING_REPLY:
            await self._emit(ErrorNotice(BUSY_MESSAGE, code="BUSY"))
            return

        await self._start_turn(text)

    def _finish_playback(self) -> None:
        if self.state is not TurnState.SPEAKING:
            logger.debug(
                "Playback end ignored",
                extra={"session_id": self.session_id, "state": self.state.value},
            )
            return

        self._stop_audio_playing()
        self.transition_state(TurnState.LISTENING)

    def _stop_audio_playing(self) -> None:
        for message in self.messages:
            if message.role is MessageRole.ASSISTANT and message.is_audio_playing:
                message.is_audio_playing = False

    # === Transcription ===

    async def _forward_chunk(self, data: bytes) -> None:
        connection = self._connection
        state = connection.state if connection is not None else ConnectionState.CLOSED

        if connection is not None and state is ConnectionState.OPEN:
            try:
                await connection.send(data)
            except TranscriptionConnectionError as e:
                logger.warning(
                    "Audio send failed, reconnecting",
                    extra={"session_id": self.session_id, "error": str(e)},
                )
                await connection.close()
            else:
                self._record_forwarded()
                return
        elif state in (ConnectionState.CONNECTING, ConnectionState.CLOSING):
            self._drop_chunk(state.value)
            return

        await self._reconnect(data)

    async def _reconnect(self, data: bytes) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            self._drop_chunk("reconnect_in_flight")
            return

        reconnecting = self._connection is not None
        self._open_transcription()
        if reconnecting:
            self.metrics.reconnects += 1
            self._collector.record_reconnect()
        logger.info(
            "Transcription connection opening, retrying chunk after delay",
            extra={
                "session_id": self.session_id,
                "retry_delay_s": self._retry_delay_s,
                "reconnect": reconnecting,
            },
        )

        await self._emit(TranscriptionReconnecting())
        self._retry_task = asyncio.create_task(
            self._retry_after_delay(data), name=f"retry-{self.session_id}"
        )

    def _open_transcription(self) -> None:
        self._generation += 1
        generation = self._generation
        self._connection = self._bridge.open(
            on_fragment=lambda fragment: self._post(_FragmentReceived(generation, fragment)),
            on_closed=lambda: self._post(_TranscriptionClosed(generation)),
        )
        self.metrics.transcription_connections += 1

    async def _retry_after_delay(self, data: bytes) -> None:
        await asyncio.sleep(self._retry_delay_s)
        self._post(_RetryChunk(data))

    async def _handle_retry_chunk(self, data: bytes) -> None:
        self._retry_task = None

        if self.state is not TurnState.LISTENING:
            self._drop_chunk("turn_in_progress")
            return

        connection = self._connection
        if connection is None or connection.state is not ConnectionState.OPEN:
            logger.warning(
                "Transcription still not open after retry delay, dropping chunk",
                extra={
                    "session_id": self.session_id,
                    "connection_state": connection.state.value if connection else None,
                },
            )
            self._drop_chunk("reconnect_failed")
            return

        try:
            await connection.send(data)
        except TranscriptionConnectionError as e:
            logger.warning(
                "Retried audio send failed, dropping chunk",
                extra={"session_id": self.session_id, "error": str(e)},
            )
            self._drop_chunk("send_failed")
            return

        self._record_forwarded()
        logger.info("Chunk sent after reconnection", extra={"session_id": self.session_id})

    async def _handle_fragment(self, event: _FragmentReceived) -> None:
        if event.generation != self._generation:
            return

        if self.state is not TurnState.LISTENING:
            logger.debug(
                "Discarding transcript fragment during turn",
                extra={"session_id": self.session_id, "state": self.state.value},
            )
            return

        fragment = event.fragment
        if fragment.is_final:
            self._interim_text = ""
            await self._start_turn(fragment.text)
        else:
            self._interim_text = fragment.text
            await self._emit(InterimTranscript(fragment.text))

    def _handle_transcription_closed(self, event: _TranscriptionClosed) -> None:
        if event.generation != self._generation:
            return
        logger.info(
            "Transcription connection closed by provider, reopening on next audio chunk",
            extra={"session_id": self.session_id},
        )

    def _record_forwarded(self) -> None:
        self.metrics.chunks_forwarded += 1
        self._collector.record_chunk_forwarded()

    def _drop_chunk(self, reason: str) -> None:
        self.metrics.chunks_dropped += 1
        self._collector.record_chunk_dropped(reason)
        logger.debug(
            "Audio chunk dropped", extra={"session_id": self.session_id, "reason": reason}
        )

    # === Turn pipeline ===

    async def _start_turn(self, text: str) -> None:
        self.transition_state(TurnState.AWAITING_REPLY)
        self._turn_id += 1
        self.metrics.turns_started += 1
        self._collector.record_turn_started()

        await self._emit(FinalTranscript(text))

        history = self.messages[-self._history_limit :] if self._history_limit else []
        self.messages.append(Message(role=MessageRole.USER, content=text))
        self._spawn(self._request_completion(self._turn_id, text, history))

    async def _request_completion(self, turn_id: int, text: str, history: list[Message]) -> None:
        start_time = time.perf_counter()
        try:
            reply = await self._completion.complete(text, history)
        except ProviderCallError as e:
            self._post(_ProviderFailed(turn_id, e))
            return
        except Exception as e:
            logger.exception("Unexpected completion failure", extra={"session_id": self.session_id})
            self._post(_ProviderFailed(turn_id, ProviderCallError("completion", str(e))))
            return
        self._post(_CompletionReady(turn_id, reply, time.perf_counter() - start_time))

    async def _request_synthesis(self, turn_id: int, text: str) -> None:
        start_time = time.perf_counter()
        try:
            audio = await self._synthesis.synthesize(text)
        except ProviderCallError as e:
            self._post(_ProviderFailed(turn_id, e))
            return
        except Exception as e:
            logger.exception("Unexpected synthesis failure", extra={"session_id": self.session_id})
            self._post(_ProviderFailed(turn_id, ProviderCallError("synthesis", str(e))))
            return
        self._post(_SynthesisReady(turn_id, audio, time.perf_counter() - start_time))

    def _is_current_turn(self, turn_id: int) -> bool:
        if turn_id == self._turn_id and self.state is TurnState.AWAITING_REPLY:
            return True
        logger.debug(
            "Discarding stale provider result",
            extra={"session_id": self.session_id, "turn_id": turn_id},
        )
        return False

    async def _handle_completion_ready(self, event: _CompletionReady) -> None:
        if not self._is_current_turn(event.turn_id):
            return

        self.metrics.last_completion_latency_ms = event.latency_s * 1000
        self._collector.observe_completion_latency(event.latency_s)

        self.messages.append(
            Message(role=MessageRole.ASSISTANT, content=event.text, is_audio_playing=True)
        )
        # aiResponse goes out before synthesis starts
        await self._emit(AIResponse(event.text))
        self._spawn(self._request_synthesis(event.turn_id, event.text))

    async def _handle_synthesis_ready(self, event: _SynthesisReady) -> None:
        if not self._is_current_turn(event.turn_id):
            return

        self.metrics.last_synthesis_latency_ms = event.latency_s * 1000
        self._collector.observe_synthesis_latency(event.latency_s)

        self.transition_state(TurnState.SPEAKING)
        await self._emit(AudioData(event.audio, mime_type=self._audio_mime_type))

        self.metrics.turns_completed += 1
        self._collector.record_turn_completed()

    async def _handle_provider_failed(self, event: _ProviderFailed) -> None:
        if not self._is_current_turn(event.turn_id):
            return

        logger.warning(
            "Provider call failed, turn aborted",
            extra={
                "session_id": self.session_id,
                "provider": event.error.provider,
                "status": event.error.status,
                "error": str(event.error),
            },
        )
        self.metrics.turns_failed += 1
        self._collector.record_turn_failed(event.error.provider)

        self._stop_audio_playing()
        self.transition_state(TurnState.LISTENING)
        await self._emit(ErrorNotice(PROVIDER_ERROR_MESSAGE, code="PROVIDER_ERROR"))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._provider_tasks.add(task)
        task.add_done_callback(self._provider_tasks.discard)

    # === Outbound ===

    async def _emit(self, event: ServerEvent) -> None:
        channel = self._channel
        if channel is None:
            return

        try:
            await channel.send_event(event)
        except ConnectionError as e:
            logger.info(
                "Client channel closed, event not delivered",
                extra={
                    "session_id": self.session_id,
                    "event_type": type(event).__name__,
                    "error": str(e),
                },
            )

    def transition_state(self, new_state: TurnState) -> None:
        """Transition to a new turn state with validation.

        Args:
            new_state: Target state

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state

        logger.info(
            "Session state transition",
            extra={
                "session_id": self.session_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    # === Lifecycle ===

    async def close(self) -> None:
        """Close the session.

        Cancels the reconnect retry, closes the transcription connection and
        detaches the client channel. Provider calls already in flight are
        left to finish; their results are discarded. Safe to call multiple
        times.
        """
        if self._closed:
            return

        self._closed = True
        self._channel = None

        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None

        connection = self._connection
        self._connection = None
        if connection is not None:
            await connection.close()

        self.metrics.finalize()
        self._collector.record_session_end()
        self._events.put_nowait(_Stop())

        logger.info("Session closed", extra=self.get_metrics_summary())

    def get_metrics_summary(self) -> dict[str, str | float | int | None]:
        """Get session metrics summary for logging/monitoring.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "turns_started": self.metrics.turns_started,
            "turns_completed": self.metrics.turns_completed,
            "turns_failed": self.metrics.turns_failed,
            "chunks_forwarded": self.metrics.chunks_forwarded,
            "chunks_dropped": self.metrics.chunks_dropped,
            "transcription_connections": self.metrics.transcription_connections,
            "reconnects": self.metrics.reconnects,
            "last_completion_latency_ms": self.metrics.last_completion_latency_ms,
            "last_synthesis_latency_ms": self.metrics.last_synthesis_latency_ms,
            "message_count": len(self.messages),
            "session_duration_s": self.metrics.duration_s,
        }
