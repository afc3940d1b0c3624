"""
providers - Unified completion-service interface.

Usage:
    from lessonforge.providers import get_provider

    provider = get_provider(config)
    result = await provider.complete(system, prompt, temperature=0.3, max_output_tokens=8192)
    print(result["content"])
"""

from .base import (
    CompletionProvider,
    CompletionResult,
    ProviderError,
    RateLimitError,
    AuthenticationError,
)

SUPPORTED_PROVIDERS = ("gemini", "openai", "anthropic")


def get_provider(config) -> CompletionProvider:
    """
    Factory function to get the appropriate provider based on config.

    Uses deferred imports so missing SDKs don't crash the framework.
    Each provider validates credentials in its __init__.

    Provider resolution order:
        1. config.provider
        2. Registry default_provider from models.yaml

    Args:
        config: RuntimeConfig

    Returns:
        CompletionProvider instance for the configured provider

    Raises:
        ValueError: If provider is unknown or not specified anywhere
        ImportError: If provider SDK is not installed
        AuthenticationError: If the provider's API key is missing
    """
    provider_name = config.provider
    if not provider_name:
        registry = CompletionProvider.load_model_registry()
        provider_name = registry.get("default_provider")

    if not provider_name:
        raise ValueError(
            "No API provider specified in config and no default_provider in registry. "
            "Set api.provider to 'gemini', 'openai', or 'anthropic'."
        )

    provider_name = provider_name.lower()

    if provider_name == "gemini":
        from .gemini import GeminiProvider
        return GeminiProvider(config)

    elif provider_name == "openai":
        from .openai import OpenAIProvider
        return OpenAIProvider(config)

    elif provider_name == "anthropic":
        from .anthropic import AnthropicProvider
        return AnthropicProvider(config)

    else:
        raise ValueError(
            f"Unknown provider: '{provider_name}'. "
            f"Supported providers: {', '.join(SUPPORTED_PROVIDERS)}"
        )


__all__ = [
    "CompletionProvider",
    "CompletionResult",
    "ProviderError",
    "RateLimitError",
    "AuthenticationError",
    "SUPPORTED_PROVIDERS",
    "get_provider",
]
