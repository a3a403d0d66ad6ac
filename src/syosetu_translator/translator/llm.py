"""OpenAI-compatible chat completion client."""

from typing import Optional

import openai
import structlog

from syosetu_translator.config import LLMConfig, get_config
from syosetu_translator.errors import TranslateError, TranslateErrorKind

logger = structlog.get_logger()


def _retry_after(error: openai.APIStatusError) -> Optional[float]:
    """Seconds from the response's retry-after header, if usable."""
    value = error.response.headers.get("retry-after")
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def classify_api_error(error: Exception) -> TranslateError:
    """Map an OpenAI SDK exception onto the translate error taxonomy."""
    if isinstance(error, openai.RateLimitError):
        return TranslateError(
            TranslateErrorKind.RATE_LIMITED, str(error), retry_after=_retry_after(error)
        )
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return TranslateError(TranslateErrorKind.AUTH, str(error))
    if isinstance(error, openai.APITimeoutError):
        return TranslateError(TranslateErrorKind.TRANSIENT, "API request timed out")
    if isinstance(error, (openai.APIConnectionError, openai.APIStatusError)):
        return TranslateError(TranslateErrorKind.TRANSIENT, f"{type(error).__name__}: {error}")
    if isinstance(error, openai.APIResponseValidationError):
        return TranslateError(TranslateErrorKind.INVALID_RESPONSE, str(error))
    return TranslateError(TranslateErrorKind.TRANSIENT, f"{type(error).__name__}: {error}")


class LLMClient:
    """Single-request chat completion client.

    The SDK's built-in retries are disabled; the pipeline owns retry and
    rate-limit policy.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        """Initialize the LLM client.

        Args:
            config: LLM configuration, uses global config if None
        """
        self.config = config or get_config().llm
        self._client: Optional[openai.AsyncOpenAI] = None

    @property
    def client(self) -> openai.AsyncOpenAI:
        """Lazy-load the OpenAI client."""
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                max_retries=0,
            )
        return self._client

    async def complete(
        self,
        user_prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        allow_empty: bool = False,
    ) -> str:
        """Send one completion request.

        Args:
            allow_empty: Accept an empty answer instead of raising

        Returns:
            Stripped message content

        Raises:
            TranslateError: Classified API failure, or INVALID_RESPONSE when the
                response carries no content and allow_empty is False
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                temperature=self.config.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.config.max_tokens,
                stream=False,
            )
        except openai.OpenAIError as e:
            error = classify_api_error(e)
            logger.debug("llm_request_failed", kind=error.kind.value, error=str(e))
            raise error from e

        if not response.choices:
            raise TranslateError(TranslateErrorKind.INVALID_RESPONSE, "Response has no choices")
        content = response.choices[0].message.content or ""
        if not content.strip() and not allow_empty:
            raise TranslateError(TranslateErrorKind.INVALID_RESPONSE, "Response content is empty")
        return content.strip()
