"""
gemini.py - Gemini completion provider.

Implements the CompletionProvider interface with the google-genai SDK's
async client.

Environment variables required:
    GOOGLE_API_KEY: API key for Gemini API access
"""

from .base import (
    CompletionProvider,
    CompletionResult,
    ProviderError,
    RateLimitError,
    AuthenticationError,
)
from lessonforge.retry import is_transient_error

# google.genai.errors.APIError carries the HTTP code and the RPC status name
RETRYABLE_CODES = (429, 503, 504)
RETRYABLE_STATUSES = ("RESOURCE_EXHAUSTED", "UNAVAILABLE", "DEADLINE_EXCEEDED")
AUTH_STATUSES = ("UNAUTHENTICATED", "PERMISSION_DENIED")


class GeminiProvider(CompletionProvider):
    """
    Gemini provider.

    Config options (under api:):
        model: Model to use (default from models.yaml)
    """

    name = "gemini"

    def __init__(self, config):
        """
        Initialize the Gemini provider.

        Raises:
            AuthenticationError: If API key not set
            ImportError: If google-genai package not installed
        """
        super().__init__(config)
        self._validate_sdk()
        self._validate_credentials()
        self._init_client()

    def _validate_sdk(self):
        """Check that google-genai SDK is installed."""
        try:
            from google import genai
            from google.genai import errors, types
            self._genai = genai
            self._types = types
            self._errors = errors
        except ImportError:
            raise ImportError(
                "google-genai package not installed. "
                "Install with: pip install 'lessonforge[gemini]'"
            )

    def _validate_credentials(self):
        """Check that required credentials are available."""
        if not self.config.api_key:
            raise AuthenticationError(
                "GOOGLE_API_KEY environment variable not set. "
                "Required for Gemini API access. "
                "Get your API key from https://aistudio.google.com/apikey"
            )
        self._api_key = self.config.api_key

    def _init_client(self):
        """Initialize the Gemini client."""
        self._client = self._genai.Client(api_key=self._api_key)

    async def complete(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float,
        max_output_tokens: int,
    ) -> CompletionResult:
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=self._types.GenerateContentConfig(
                    system_instruction=system,
                    temperature=temperature,
                    max_output_tokens=max_output_tokens,
                ),
            )

            content = response.text or ""

            input_tokens = 0
            output_tokens = 0
            if getattr(response, "usage_metadata", None):
                usage = response.usage_metadata
                input_tokens = getattr(usage, "prompt_token_count", 0) or 0
                output_tokens = getattr(usage, "candidates_token_count", 0) or 0

            finish_reason = "STOP"
            if response.candidates:
                fr = getattr(response.candidates[0], "finish_reason", None)
                if fr is not None:
                    finish_reason = fr.name if hasattr(fr, "name") else str(fr)

            return CompletionResult(
                content=content,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                finish_reason=finish_reason,
            )

        except self._errors.APIError as e:
            status = (getattr(e, "status", None) or "").upper()

            if e.code in RETRYABLE_CODES or status in RETRYABLE_STATUSES:
                raise RateLimitError(f"Gemini rate limit or transient error: {e}") from e

            if e.code in (401, 403) or status in AUTH_STATUSES or "api key not valid" in str(e).lower():
                raise AuthenticationError(f"Gemini authentication failed: {e}") from e

            raise ProviderError(f"Gemini API error: {e}") from e

        except Exception as e:
            # Transport failures such as httpx timeouts are not APIErrors
            if is_transient_error(e):
                raise RateLimitError(f"Transient error: {e}") from e
            raise ProviderError(f"Gemini API error: {e}") from e
