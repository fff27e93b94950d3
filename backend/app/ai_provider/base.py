"""ModelStreamProvider abstract interface for LLM integrations.

Every provider turns an ordered message history into either a stream of text
deltas (``stream``) or one complete answer (``complete``). A stream that is
exhausted normally has completed; a provider failure surfaces as
``ProviderFault`` raised from the iterator. Closing the iterator early
(``aclose()``) cancels the upstream request.

Usage:
    from app.ai_provider import LLMMessage, OpenAICompatibleProvider

    provider = OpenAICompatibleProvider(api_key="...", base_url="http://litellm:4000")
    async for delta in provider.stream("llama3.3", [LLMMessage(role="user", content="Hi")]):
        print(delta, end="")
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Literal, Optional


@dataclass
class ImagePart:
    """An image the model should see alongside a message.

    Attributes:
        url: Retrieval URL the provider can fetch.
        content_type: MIME type of the image.
    """
    url: str
    content_type: str = "image/png"


@dataclass
class LLMMessage:
    """A single message sent to a model.

    Attributes:
        role: Author of the message.
        content: Message text.
        images: Images attached to a user message.
    """
    role: Literal["user", "assistant"]
    content: str
    images: List[ImagePart] = field(default_factory=list)


class ModelStreamProvider(ABC):
    """Abstract base class for model providers.

    Methods:
        stream: Yield text deltas for the next assistant message.
        complete: Return one non-streamed completion.
        health_check: Verify the provider is reachable.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name used in logs and ProviderFault messages."""

    @abstractmethod
    def stream(
        self,
        model: str,
        messages: List[LLMMessage],
        system: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Stream the model's reply as ordered text deltas.

        Args:
            model: Provider-side model identifier.
            messages: Conversation history, oldest first, ending with the
                      user message to answer.
            system: Optional system instruction.

        Returns:
            Async iterator of text deltas. Exhaustion means completion.

        Raises:
            ProviderFault: From the iterator when the provider fails.
        """

    @abstractmethod
    async def complete(
        self,
        model: str,
        messages: List[LLMMessage],
        system: Optional[str] = None,
        max_tokens: int = 256,
    ) -> str:
        """Return a single non-streamed completion.

        Raises:
            ProviderFault: If the request fails.
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the provider answered a minimal request."""
