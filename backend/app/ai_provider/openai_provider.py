"""OpenAI-compatible API provider implementation.

This module provides a ModelStreamProvider that talks to any endpoint
implementing the OpenAI chat completions API: OpenAI itself, or a gateway
such as LiteLLM fronting self-hosted models.

Usage:
    provider = OpenAICompatibleProvider(api_key="sk-...", base_url="http://litellm:4000/v1")
    async for delta in provider.stream("llama3.3", messages):
        ...
"""
import logging
from typing import AsyncIterator, Dict, List, Optional

from app.errors import ProviderFault

from .base import LLMMessage, ModelStreamProvider

logger = logging.getLogger(__name__)


def to_openai_messages(messages: List[LLMMessage], system: Optional[str] = None) -> List[Dict]:
    """Convert LLMMessages to the chat completions ``messages`` payload.

    User messages with images become multi-part content with ``image_url``
    parts after the text part.
    """
    payload: List[Dict] = []
    if system:
        payload.append({"role": "system", "content": system})
    for message in messages:
        if message.images and message.role == "user":
            parts: List[Dict] = [{"type": "text", "text": message.content}]
            parts.extend(
                {"type": "image_url", "image_url": {"url": image.url}}
                for image in message.images
            )
            payload.append({"role": message.role, "content": parts})
        else:
            payload.append({"role": message.role, "content": message.content})
    return payload


class OpenAICompatibleProvider(ModelStreamProvider):
    """ModelStreamProvider using the OpenAI SDK.

    Attributes:
        api_key: API key for the endpoint (gateways often accept any value).
        base_url: Optional custom API base URL.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> None:
        """Initialize the OpenAI-compatible provider.

        Args:
            api_key: API key for authentication.
            base_url: Optional custom API base URL (e.g. a LiteLLM proxy).
        """
        self.api_key = api_key
        self.base_url = base_url
        self._client: Optional[object] = None

    @property
    def name(self) -> str:
        return "openai"

    def _get_client(self) -> object:
        """Get or create the async OpenAI client.

        Raises:
            ImportError: If openai package is not installed.
        """
        if self._client is None:
            try:
                import openai
            except ImportError:
                raise ImportError(
                    "openai package is required for OpenAICompatibleProvider. "
                    "Install it with: pip install openai"
                )
            kwargs = {"api_key": self.api_key or "not-needed"}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    async def stream(
        self,
        model: str,
        messages: List[LLMMessage],
        system: Optional[str] = None,
    ) -> AsyncIterator[str]:
        import openai

        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=to_openai_messages(messages, system),
                stream=True,
            )
        except openai.OpenAIError as e:
            logger.error(f"OpenAI stream request failed for {model}: {e}")
            raise ProviderFault(str(e), self.name) from e

        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.OpenAIError as e:
            logger.error(f"OpenAI stream for {model} failed mid-response: {e}")
            raise ProviderFault(str(e), self.name) from e
        finally:
            await response.close()

    async def complete(
        self,
        model: str,
        messages: List[LLMMessage],
        system: Optional[str] = None,
        max_tokens: int = 256,
    ) -> str:
        import openai

        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=model,
                max_tokens=max_tokens,
                messages=to_openai_messages(messages, system),
            )
        except openai.OpenAIError as e:
            logger.error(f"OpenAI completion failed for {model}: {e}")
            raise ProviderFault(str(e), self.name) from e

        return (response.choices[0].message.content or "").strip()

    async def health_check(self) -> bool:
        """Check if the endpoint is reachable by listing models."""
        try:
            client = self._get_client()
            await client.models.list()
            return True
        except Exception as e:
            logger.warning(f"OpenAI-compatible health check failed: {e}")
            return False
