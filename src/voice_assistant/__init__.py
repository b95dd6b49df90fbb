"""Duplex voice assistant.

Streams microphone audio to a live transcription provider, turns each final
utterance into an AI reply and speaks it back over a WebSocket client channel.
"""

__version__ = "0.1.0"
