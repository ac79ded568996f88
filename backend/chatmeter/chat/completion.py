"""Streaming completion client.

The chat router only depends on ``CompletionClient``: anything that turns a
message history into an async stream of text chunks.
"""
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Protocol

from openai import AsyncOpenAI, OpenAIError

from chatmeter.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class CompletionError(Exception):
    """Raised when the completion provider fails mid-stream or up front."""
    pass


class CompletionClient(Protocol):
    def stream(self, messages: Sequence[dict[str, str]]) -> AsyncIterator[str]:
        ...


class OpenAICompletionClient:
    """Chat completions over the OpenAI API (or a compatible base URL)."""

    def __init__(self, settings: Settings):
        if not settings.openai_api_key:
            raise CompletionError("OPENAI_API_KEY is not configured")
        self.client = AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
        self.model = settings.chat_model
        self.system_prompt = settings.chat_system_prompt

    async def stream(self, messages: Sequence[dict[str, str]]) -> AsyncIterator[str]:
        formatted = [{"role": "system", "content": self.system_prompt}]
        formatted.extend({"role": m["role"], "content": m["content"]} for m in messages)

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=formatted,
                stream=True,
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                token = chunk.choices[0].delta.content
                if token:
                    yield token
        except OpenAIError as exc:
            logger.error("completion.provider_error", extra={"model": self.model, "error_message": str(exc)})
            raise CompletionError(str(exc)) from exc


def get_completion_client() -> CompletionClient:
    """Dependency returning the configured completion client."""
    return OpenAICompletionClient(get_settings())
