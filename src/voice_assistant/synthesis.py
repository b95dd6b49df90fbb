"""Speech synthesis client.

Converts one assistant reply into a single encoded audio payload using the
ElevenLabs streaming text-to-speech endpoint. The response body is read in
full before returning; the client never hands back partial audio.
"""

import logging
import time
from typing import Any

import aiohttp

from voice_assistant.config import SynthesisConfig
from voice_assistant.errors import ProviderCallError

logger = logging.getLogger(__name__)

PROVIDER = "synthesis"


class SpeechSynthesisClient:
    """Text-to-speech HTTP client.

    Owns a lazily created aiohttp session shared by all requests; call
    ``close`` on shutdown.
    """

    def __init__(
        self,
        api_key: str,
        config: SynthesisConfig | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize speech synthesis client.

        Args:
            api_key: ElevenLabs API key
            config: Synthesis provider configuration
            session: Preconfigured aiohttp session (tests)
        """
        self.config = config or SynthesisConfig()
        self._api_key = api_key
        self._session = session
        self._owns_session = session is None

    @property
    def output_mime_type(self) -> str:
        """MIME type of the returned audio."""
        return self.config.output_mime_type

    @property
    def url(self) -> str:
        """Synthesis endpoint for the configured voice."""
        base_url = self.config.base_url.rstrip("/")
        return f"{base_url}/text-to-speech/{self.config.voice_id}/stream"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_s)
            )
            self._owns_session = True
        return self._session

    async def synthesize(self, text: str) -> bytes:
        """Synthesize speech for one reply.

        Args:
            text: Text to speak

        Returns:
            Complete encoded audio payload

        Raises:
            ProviderCallError: On network failure, timeout, non-200 status or
                an empty body
        """
        session = await self._ensure_session()
        payload: dict[str, Any] = {"text": text}
        if self.config.model_id:
            payload["model_id"] = self.config.model_id
        headers = {
            "accept": self.config.output_mime_type,
            "xi-api-key": self._api_key,
            "Content-Type": "application/json",
        }
        params = {"optimize_streaming_latency": str(self.config.optimize_streaming_latency)}

        start_time = time.perf_counter()
        try:
            async with session.post(
                self.url,
                json=payload,
                headers=headers,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_s),
            ) as response:
                if response.status != 200:
                    detail = (await response.text())[:200]
                    raise ProviderCallError(
                        PROVIDER,
                        f"HTTP {response.status}: {detail or response.reason}",
                        status=response.status,
                    )
                audio = await response.read()
        except TimeoutError as e:
            raise ProviderCallError(
                PROVIDER, f"request timed out after {self.config.timeout_s:.1f}s"
            ) from e
        except aiohttp.ClientError as e:
            raise ProviderCallError(PROVIDER, f"request failed: {e}") from e

        if not audio:
            raise ProviderCallError(PROVIDER, "response contained no audio", status=200)

        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "Speech synthesized",
            extra={
                "voice_id": self.config.voice_id,
                "latency_ms": round(latency_ms, 1),
                "audio_bytes": len(audio),
            },
        )
        return audio

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
