"""Model registry and provider resolver.

Maps the chat model ids a client may request onto configured models and
the provider instance that serves each of them.

Usage:
    from app.ai_provider.resolver import ProviderResolver
    from app.config import get_config

    resolver = ProviderResolver.from_config(get_config())
    model = resolver.find_model("llama3.3")
    provider = resolver.provider_for(model)
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from app.config import ChatlineConfig, ChatModelConfig
from app.errors import ModelNotFoundError

from .anthropic_provider import AnthropicProvider
from .base import ModelStreamProvider
from .openai_provider import OpenAICompatibleProvider

logger = logging.getLogger(__name__)


class ProviderType(str, Enum):
    """Supported provider types."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


@dataclass
class ProviderStatus:
    """Health of a single provider."""
    name: str
    healthy: bool


class ProviderResolver:
    """Resolves chat model ids to configured models and providers.

    Attributes:
        models: Configured chat models, in display order.
        default_model_id: Model used when a request names none.
        title_model_id: Model used for conversation titles.
    """

    def __init__(
        self,
        models: List[ChatModelConfig],
        providers: Dict[str, ModelStreamProvider],
        default_model_id: str,
        title_model_id: Optional[str] = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            models: Configured chat models.
            providers: Provider instances keyed by provider type.
            default_model_id: Fallback model id.
            title_model_id: Title model id; defaults to the fallback model.
        """
        self.models = list(models)
        self._models_by_id = {m.id: m for m in self.models}
        self._providers = dict(providers)
        self.default_model_id = default_model_id
        self.title_model_id = title_model_id or default_model_id

    @classmethod
    def from_config(cls, config: ChatlineConfig) -> "ProviderResolver":
        """Create providers for every provider type a configured model uses."""
        needed = {m.provider for m in config.models}
        providers: Dict[str, ModelStreamProvider] = {}

        if ProviderType.OPENAI.value in needed:
            providers[ProviderType.OPENAI.value] = OpenAICompatibleProvider(
                api_key=config.secrets.openai.api_key,
                base_url=config.secrets.openai.base_url,
            )
        if ProviderType.ANTHROPIC.value in needed:
            if not config.secrets.anthropic.api_key:
                logger.warning("Anthropic models configured but no anthropic.api_key set")
            providers[ProviderType.ANTHROPIC.value] = AnthropicProvider(
                api_key=config.secrets.anthropic.api_key or "",
            )

        logger.info(
            "Provider resolver ready: %d model(s), providers=%s",
            len(config.models), sorted(providers),
        )
        return cls(
            models=config.models,
            providers=providers,
            default_model_id=config.chat.default_model_id,
            title_model_id=config.chat.title_model_id,
        )

    def find_model(self, model_id: Optional[str]) -> ChatModelConfig:
        """Look up a model by id, falling back to the default when None.

        Raises:
            ModelNotFoundError: The id is not a configured model.
        """
        model_id = model_id or self.default_model_id
        model = self._models_by_id.get(model_id)
        if model is None:
            raise ModelNotFoundError(model_id)
        return model

    def provider_for(self, model: ChatModelConfig) -> ModelStreamProvider:
        """Return the provider serving ``model``.

        Raises:
            ModelNotFoundError: No provider is configured for the model.
        """
        provider = self._providers.get(model.provider)
        if provider is None:
            raise ModelNotFoundError(model.id)
        return provider

    def title_model(self) -> ChatModelConfig:
        return self.find_model(self.title_model_id)

    async def get_status(self) -> List[ProviderStatus]:
        """Run a health check against every configured provider."""
        statuses = []
        for name, provider in self._providers.items():
            healthy = await provider.health_check()
            statuses.append(ProviderStatus(name=name, healthy=healthy))
        return statuses


# Global resolver instance
_resolver: Optional[ProviderResolver] = None


def get_resolver() -> Optional[ProviderResolver]:
    """Get the global provider resolver instance."""
    return _resolver


def set_resolver(resolver: Optional[ProviderResolver]) -> None:
    """Set the global provider resolver instance."""
    global _resolver
    _resolver = resolver
