"""
openai.py - OpenAI completion provider.

Implements the CompletionProvider interface on top of the async
Chat Completions API.

Environment variables required:
    OPENAI_API_KEY: API key for OpenAI API access
"""

from typing import Any

from .base import (
    CompletionProvider,
    CompletionResult,
    ProviderError,
    RateLimitError,
    AuthenticationError,
)


class OpenAIProvider(CompletionProvider):
    """
    OpenAI provider.

    Config options (under api:):
        model: Model to use (default from models.yaml)
    """

    name = "openai"

    def __init__(self, config):
        """
        Initialize the OpenAI provider.

        Raises:
            AuthenticationError: If API key not set
            ImportError: If openai package not installed
        """
        super().__init__(config)
        self._validate_sdk()
        self._validate_credentials()
        self._init_client()

    def _validate_sdk(self):
        """Check that openai SDK is installed."""
        try:
            import openai
            self._openai = openai
        except ImportError:
            raise ImportError(
                "openai package not installed. "
                "Install with: pip install 'lessonforge[openai]'"
            )

    def _validate_credentials(self):
        """Check that required credentials are available."""
        if not self.config.api_key:
            raise AuthenticationError(
                "OPENAI_API_KEY environment variable not set. "
                "Required for OpenAI API access. "
                "Get your API key from https://platform.openai.com/api-keys"
            )
        self._api_key = self.config.api_key

    def _init_client(self):
        """Initialize the async OpenAI client with SDK-level retries disabled."""
        self._client = self._openai.AsyncOpenAI(api_key=self._api_key, max_retries=0)

    async def complete(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float,
        max_output_tokens: int,
    ) -> CompletionResult:
        try:
            kwargs: dict[str, Any] = {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                "temperature": temperature,
                "max_tokens": max_output_tokens,
            }

            response = await self._client.chat.completions.create(**kwargs)

            content = ""
            if response.choices and response.choices[0].message:
                content = response.choices[0].message.content or ""

            input_tokens = 0
            output_tokens = 0
            if response.usage:
                input_tokens = response.usage.prompt_tokens or 0
                output_tokens = response.usage.completion_tokens or 0

            finish_reason = "stop"
            if response.choices and response.choices[0].finish_reason:
                finish_reason = response.choices[0].finish_reason

            return CompletionResult(
                content=content,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                finish_reason=finish_reason.upper(),
            )

        except self._openai.RateLimitError as e:
            raise RateLimitError(f"OpenAI rate limit exceeded: {e}") from e
        except self._openai.AuthenticationError as e:
            raise AuthenticationError(f"OpenAI authentication failed: {e}") from e
        except self._openai.APITimeoutError as e:
            raise RateLimitError(f"OpenAI request timed out: {e}") from e
        except self._openai.APIError as e:
            raise ProviderError(f"OpenAI API error: {e}") from e
