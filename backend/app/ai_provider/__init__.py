"""AI Provider module for LLM integrations.

This module provides a unified streaming interface for model providers with
two implementations: OpenAICompatibleProvider (OpenAI or any compatible
gateway such as LiteLLM) and AnthropicProvider.

Usage:
    from app.ai_provider import LLMMessage, OpenAICompatibleProvider

    provider = OpenAICompatibleProvider(base_url="http://litellm:4000/v1")
    async for delta in provider.stream("llama3.3", [LLMMessage(role="user", content="Hello")]):
        print(delta, end="")
"""
from .anthropic_provider import AnthropicProvider
from .base import ImagePart, LLMMessage, ModelStreamProvider
from .openai_provider import OpenAICompatibleProvider
from .prompts import DEFAULT_SYSTEM_PROMPT, TITLE_SYSTEM_PROMPT
from .resolver import ProviderResolver, get_resolver, set_resolver
from .title import clean_title, generate_title

__all__ = [
    "ModelStreamProvider",
    "LLMMessage",
    "ImagePart",
    "OpenAICompatibleProvider",
    "AnthropicProvider",
    "DEFAULT_SYSTEM_PROMPT",
    "TITLE_SYSTEM_PROMPT",
    "ProviderResolver",
    "get_resolver",
    "set_resolver",
    "clean_title",
    "generate_title",
]
