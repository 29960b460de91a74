"""
Text-generation collaborator used by reflection and fact extraction.

The memory core only needs ``complete(prompt, system) -> str``; any object
with that coroutine satisfies ``TextGenerator``. ``AnthropicGenerator``
wraps ``anthropic.AsyncAnthropic``.
"""

import logging
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger("cortex.generation")

DEFAULT_MODEL = "claude-3-haiku-20240307"
DEFAULT_MAX_TOKENS = 2048


@runtime_checkable
class TextGenerator(Protocol):
    async def complete(self, prompt: str, system: Optional[str] = None) -> str:
        ...


class AnthropicGenerator:
    """TextGenerator backed by the Anthropic Messages API.

    Example:
        from anthropic import AsyncAnthropic
        generator = AnthropicGenerator(AsyncAnthropic(api_key="..."))
        text = await generator.complete("Summarize this", system="Be brief")
    """

    def __init__(
        self,
        client: Any = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: Optional[float] = 60.0,
    ):
        if client is None:
            from anthropic import AsyncAnthropic

            client = AsyncAnthropic(timeout=timeout)
        self._client = client
        self._model = model
        self._max_tokens = max_tokens

    @property
    def model(self) -> str:
        return self._model

    async def complete(self, prompt: str, system: Optional[str] = None) -> str:
        kwargs = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        response = await self._client.messages.create(**kwargs)
        parts = [getattr(block, "text", "") for block in response.content if getattr(block, "type", "") == "text"]
        return "".join(parts)
