"""Anthropic API provider implementation.

This module provides a ModelStreamProvider that connects directly to
Anthropic's Messages API using the official SDK.

Usage:
    provider = AnthropicProvider(api_key="sk-ant-...")
    async for delta in provider.stream("claude-sonnet-4-20250514", messages):
        ...
"""
import logging
from typing import AsyncIterator, Dict, List, Optional

from app.errors import ProviderFault

from .base import LLMMessage, ModelStreamProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096


def to_anthropic_messages(messages: List[LLMMessage]) -> List[Dict]:
    """Convert LLMMessages to the Messages API payload.

    Images are sent as URL image blocks ahead of the text block.
    """
    payload: List[Dict] = []
    for message in messages:
        if message.images and message.role == "user":
            blocks: List[Dict] = [
                {"type": "image", "source": {"type": "url", "url": image.url}}
                for image in message.images
            ]
            blocks.append({"type": "text", "text": message.content})
            payload.append({"role": message.role, "content": blocks})
        else:
            payload.append({"role": message.role, "content": message.content})
    return payload


class AnthropicProvider(ModelStreamProvider):
    """ModelStreamProvider using Anthropic's Claude API directly.

    Attributes:
        api_key: Anthropic API key for authentication.
        base_url: Anthropic API base URL.
        max_tokens: Output cap for streamed replies.
    """

    DEFAULT_BASE_URL = "https://api.anthropic.com"

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url or self.DEFAULT_BASE_URL
        self.max_tokens = max_tokens
        self._client: Optional[object] = None

    @property
    def name(self) -> str:
        return "anthropic"

    def _get_client(self) -> object:
        """Get or create the async Anthropic client.

        Raises:
            ImportError: If anthropic package is not installed.
        """
        if self._client is None:
            try:
                import anthropic
            except ImportError:
                raise ImportError(
                    "anthropic package is required for AnthropicProvider. "
                    "Install it with: pip install anthropic"
                )
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                base_url=self.base_url,
            )
        return self._client

    def _request_kwargs(
        self, model: str, messages: List[LLMMessage], system: Optional[str], max_tokens: int
    ) -> Dict:
        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": to_anthropic_messages(messages),
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def stream(
        self,
        model: str,
        messages: List[LLMMessage],
        system: Optional[str] = None,
    ) -> AsyncIterator[str]:
        import anthropic

        client = self._get_client()
        try:
            async with client.messages.stream(
                **self._request_kwargs(model, messages, system, self.max_tokens)
            ) as response:
                async for text in response.text_stream:
                    if text:
                        yield text
        except anthropic.AnthropicError as e:
            logger.error(f"Anthropic stream for {model} failed: {e}")
            raise ProviderFault(str(e), self.name) from e

    async def complete(
        self,
        model: str,
        messages: List[LLMMessage],
        system: Optional[str] = None,
        max_tokens: int = 256,
    ) -> str:
        import anthropic

        client = self._get_client()
        try:
            response = await client.messages.create(
                **self._request_kwargs(model, messages, system, max_tokens)
            )
        except anthropic.AnthropicError as e:
            logger.error(f"Anthropic completion failed for {model}: {e}")
            raise ProviderFault(str(e), self.name) from e

        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        ).strip()

    async def health_check(self) -> bool:
        """Check if the Anthropic API is accessible with a 1-token request."""
        try:
            client = self._get_client()
            await client.messages.create(
                model="claude-3-5-haiku-latest",
                max_tokens=1,
                messages=[{"role": "user", "content": "hi"}],
            )
            return True
        except Exception as e:
            logger.warning(f"Anthropic health check failed: {e}")
            return False
