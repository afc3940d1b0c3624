"""
base.py - Abstract base class for completion providers.

Defines the narrow contract the runtime depends on: send a system
instruction plus a user prompt, get back text and token usage. Which
vendor or model sits behind it does not matter to the rest of the
package.

All providers must implement:
- complete(): one async request/response round trip
- estimate_cost(): USD estimate for a token count
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, TypedDict

import yaml

if TYPE_CHECKING:
    from lessonforge.config import RuntimeConfig


class CompletionResult(TypedDict):
    """Result from a single completion call."""
    content: str
    input_tokens: int
    output_tokens: int
    finish_reason: str


class CompletionProvider(ABC):
    """
    Abstract base class for completion providers.

    Usage:
        from lessonforge.providers import get_provider

        provider = get_provider(config)
        result = await provider.complete(system_prompt, user_prompt,
                                         temperature=0.3, max_output_tokens=8192)
        print(result["content"])
    """

    name = "base"

    def __init__(self, config: "RuntimeConfig"):
        """
        Initialize the provider.

        Args:
            config: Runtime configuration; config.model overrides the
                registry default model for this provider
        """
        self.config = config
        provider_info = CompletionProvider.get_provider_info(self.name)
        self.model = config.model or provider_info.get("default_model")

        registry_models = CompletionProvider.get_provider_models(self.name)
        model_info = registry_models.get(self.model, {})
        defaults = CompletionProvider.get_default_pricing()

        # Pricing comes exclusively from registry
        self.input_rate = model_info.get("input_per_million", defaults.get("input_per_million", 1.00))
        self.output_rate = model_info.get("output_per_million", defaults.get("output_per_million", 2.00))

    @abstractmethod
    async def complete(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float,
        max_output_tokens: int,
    ) -> CompletionResult:
        """
        Make a single completion request.

        Args:
            system: System instruction
            prompt: User payload
            temperature: Sampling temperature
            max_output_tokens: Upper bound on generated tokens

        Returns:
            CompletionResult with content, token counts, and finish reason

        Raises:
            RateLimitError: For 429, quota, or overload errors (transient)
            AuthenticationError: For rejected credentials
            ProviderError: For any other API failure
        """

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Estimate cost in USD for token usage."""
        input_cost = (input_tokens / 1_000_000) * self.input_rate
        output_cost = (output_tokens / 1_000_000) * self.output_rate
        return round(input_cost + output_cost, 6)

    def get_api_key_env_var(self) -> str:
        """Get the environment variable name for this provider's API key."""
        return CompletionProvider.get_provider_info(self.name).get("env_var", "API_KEY")

    # === Model Registry Methods ===

    @staticmethod
    def load_model_registry() -> dict:
        """Load the centralized model registry from models.yaml."""
        registry_path = Path(__file__).parent / "models.yaml"
        with open(registry_path) as f:
            return yaml.safe_load(f)

    @staticmethod
    def get_provider_models(provider_name: str) -> dict:
        """Get the models dict for a given provider from the registry."""
        registry = CompletionProvider.load_model_registry()
        provider_data = registry.get("providers", {}).get(provider_name, {})
        return provider_data.get("models", {})

    @staticmethod
    def get_provider_info(provider_name: str) -> dict:
        """Get provider-level info (env_var, sdk, default_model)."""
        registry = CompletionProvider.load_model_registry()
        return registry.get("providers", {}).get(provider_name, {})

    @staticmethod
    def get_default_pricing() -> dict:
        """Get default pricing for unknown models."""
        registry = CompletionProvider.load_model_registry()
        return registry.get("defaults", {"input_per_million": 1.00, "output_per_million": 2.00})


class ProviderError(Exception):
    """Base exception for provider errors."""
    pass


class RateLimitError(ProviderError):
    """Rate limit (429), quota, or overload error - should be retried."""
    pass


class AuthenticationError(ProviderError):
    """Authentication/authorization error."""
    pass
