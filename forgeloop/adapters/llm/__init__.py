"""LLM adapter package.

Provides a unified interface for LLM providers with purpose-based model
selection.

Usage:
    from forgeloop.adapters.llm import get_provider, Purpose

    provider = get_provider("anthropic")
    response = provider.complete(
        messages=[{"role": "user", "content": "Fix this"}],
        purpose=Purpose.CORRECTION,
    )
"""

from forgeloop.adapters.llm.base import (
    LLMProvider,
    LLMResponse,
    ModelSelector,
    Purpose,
)
from forgeloop.adapters.llm.anthropic import AnthropicProvider
from forgeloop.adapters.llm.mock import MockProvider

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "ModelSelector",
    "Purpose",
    "AnthropicProvider",
    "MockProvider",
    "get_provider",
]


def get_provider(provider_type: str = "anthropic") -> LLMProvider:
    """Get a configured LLM provider.

    Args:
        provider_type: Provider type ("anthropic" or "mock")

    Raises:
        ValueError: If provider type is unknown
    """
    if provider_type == "anthropic":
        return AnthropicProvider()
    elif provider_type == "mock":
        return MockProvider()
    else:
        raise ValueError(f"Unknown provider type: {provider_type}")
