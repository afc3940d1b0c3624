"""
anthropic.py - Anthropic Claude completion provider.

Implements the CompletionProvider interface on top of the async
Messages API.

Environment variables required:
    ANTHROPIC_API_KEY: API key for Anthropic API access
"""

from .base import (
    CompletionProvider,
    CompletionResult,
    ProviderError,
    RateLimitError,
    AuthenticationError,
)


class AnthropicProvider(CompletionProvider):
    """
    Anthropic Claude provider.

    Config options (under api:):
        model: Model to use (default from models.yaml)
    """

    name = "anthropic"

    def __init__(self, config):
        """
        Initialize the Anthropic provider.

        Raises:
            AuthenticationError: If API key not set
            ImportError: If anthropic package not installed
        """
        super().__init__(config)
        self._validate_sdk()
        self._validate_credentials()
        self._init_client()

    def _validate_sdk(self):
        """Check that anthropic SDK is installed."""
        try:
            import anthropic
            self._anthropic = anthropic
        except ImportError:
            raise ImportError(
                "anthropic package not installed. "
                "Install with: pip install 'lessonforge[anthropic]'"
            )

    def _validate_credentials(self):
        """Check that required credentials are available."""
        if not self.config.api_key:
            raise AuthenticationError(
                "ANTHROPIC_API_KEY environment variable not set. "
                "Required for Anthropic API access. "
                "Get your API key from https://console.anthropic.com/settings/keys"
            )
        self._api_key = self.config.api_key

    def _init_client(self):
        """Initialize the async Anthropic client with SDK-level retries disabled."""
        self._client = self._anthropic.AsyncAnthropic(api_key=self._api_key, max_retries=0)

    async def complete(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float,
        max_output_tokens: int,
    ) -> CompletionResult:
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_output_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )

            content = ""
            if response.content:
                # Content blocks can be text or other types
                content = "".join(
                    block.text for block in response.content if hasattr(block, "text")
                )

            input_tokens = 0
            output_tokens = 0
            if response.usage:
                input_tokens = response.usage.input_tokens or 0
                output_tokens = response.usage.output_tokens or 0

            finish_reason = response.stop_reason or "end_turn"

            return CompletionResult(
                content=content,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                finish_reason=finish_reason.upper(),
            )

        except self._anthropic.RateLimitError as e:
            raise RateLimitError(f"Anthropic rate limit exceeded: {e}") from e
        except self._anthropic.AuthenticationError as e:
            raise AuthenticationError(f"Anthropic authentication failed: {e}") from e
        except self._anthropic.APITimeoutError as e:
            raise RateLimitError(f"Anthropic request timed out: {e}") from e
        except self._anthropic.APIStatusError as e:
            if e.status_code in (429, 529):
                raise RateLimitError(f"Anthropic overloaded: {e}") from e
            raise ProviderError(f"Anthropic API error: {e}") from e
        except self._anthropic.APIError as e:
            raise ProviderError(f"Anthropic API error: {e}") from e
