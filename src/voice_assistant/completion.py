"""Text completion client.

Turns one finalized user utterance (plus bounded prior history) into one
assistant reply via the OpenAI chat completions API. Every failure mode is
surfaced as ``ProviderCallError`` so the session has a single thing to catch.
"""

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any

import openai
from openai import AsyncOpenAI

from voice_assistant.config import CompletionConfig
from voice_assistant.errors import ProviderCallError
from voice_assistant.events import Message

logger = logging.getLogger(__name__)

PROVIDER = "completion"


class CompletionClient:
    """Single-shot chat completion client.

    Example:
        >>> client = CompletionClient(api_key="sk-...", model="gpt-4o-mini")
        >>> reply = await client.complete("What's the capital of France?")
        >>> print(reply)
        The capital of France is Paris.

    The client holds no per-conversation state; history is passed in by the
    caller on every request.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        system_prompt: str | None = None,
        max_tokens: int = 300,
        temperature: float = 0.7,
        timeout_s: float = 30.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """Initialize completion client.

        Args:
            api_key: OpenAI API key
            model: Chat completion model
            system_prompt: Optional system prompt prepended to every request
            max_tokens: Max tokens per reply
            temperature: Sampling temperature
            timeout_s: Request timeout in seconds
            client: Preconfigured AsyncOpenAI client (tests)

        Raises:
            ValueError: If api_key is empty
        """
        if not api_key:
            raise ValueError("Invalid OpenAI API key. Set OPENAI_API_KEY environment variable.")

        # Retries are disabled: a slow retry storm would stall the turn.
        self._client = client or AsyncOpenAI(api_key=api_key, max_retries=0)
        self.model = model
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout_s = timeout_s

        logger.info(f"CompletionClient initialized: model={model}, max_tokens={max_tokens}")

    @classmethod
    def from_config(cls, config: CompletionConfig, api_key: str) -> "CompletionClient":
        """Create a client from the completion config section."""
        return cls(
            api_key=api_key,
            model=config.model,
            system_prompt=config.system_prompt,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            timeout_s=config.timeout_s,
        )

    def build_messages(self, text: str, history: Sequence[Message] = ()) -> list[dict[str, Any]]:
        """Build the chat message list for a request.

        Args:
            text: Finalized user utterance
            history: Prior conversation messages, oldest first

        Returns:
            Messages in chat-completion format
        """
        messages: list[dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend(message.to_chat_message() for message in history)
        messages.append({"role": "user", "content": text})
        return messages

    async def complete(self, text: str, history: Sequence[Message] = ()) -> str:
        """Request one assistant reply.

        Args:
            text: Finalized user utterance
            history: Prior conversation messages, oldest first

        Returns:
            Reply text

        Raises:
            ProviderCallError: On network failure, timeout, API error or an
                empty reply
        """
        messages = self.build_messages(text, history)
        start_time = time.perf_counter()

        logger.debug(f"Calling OpenAI API: model={self.model}, messages={len(messages)}")

        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self.model,
                    messages=messages,  # type: ignore[arg-type]
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                ),
                timeout=self.timeout_s,
            )
        except TimeoutError as e:
            raise ProviderCallError(
                PROVIDER, f"request timed out after {self.timeout_s:.1f}s"
            ) from e
        except openai.APIStatusError as e:
            raise ProviderCallError(PROVIDER, e.message, status=e.status_code) from e
        except openai.OpenAIError as e:
            raise ProviderCallError(PROVIDER, str(e)) from e

        if not response.choices:
            raise ProviderCallError(PROVIDER, "response contained no choices")

        content = response.choices[0].message.content
        if not content or not content.strip():
            raise ProviderCallError(PROVIDER, "response contained no text")

        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "Completion received",
            extra={"model": self.model, "latency_ms": round(latency_ms, 1), "chars": len(content)},
        )
        return content

    async def close(self) -> None:
        """Release the underlying HTTP client."""
        await self._client.close()
