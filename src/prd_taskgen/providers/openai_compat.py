"""Adapters for vendors speaking the OpenAI chat completions protocol.

DeepSeek and Perplexity both expose OpenAI-compatible endpoints, so they
share the streaming and error handling here and differ only in base URL,
credentials and ranking.
"""

from typing import Any, AsyncIterator, ClassVar

import openai

from ..errors import classify_error
from ..models import CallContext, ErrorCategory, ModelSettings, ProviderKind
from .base import ModelClient, ProviderAdapter, error_body_type

_OVERLOAD_TYPES = {"server_error", "overloaded", "overloaded_error", "service_unavailable"}
_RATE_LIMIT_TYPES = {"rate_limit_exceeded", "rate_limit_error", "requests"}


class OpenAICompatibleAdapter(ProviderAdapter):
    """Base for adapters backed by ``openai.AsyncOpenAI`` with a custom base URL."""

    base_url: ClassVar[str]

    def _create_client(self, api_key: str, settings: ModelSettings) -> Any:
        return openai.AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            max_retries=0,
        )

    async def close(self, client: ModelClient) -> None:
        await client.client.close()

    async def _open_stream(self, client: ModelClient, context: CallContext) -> Any:
        settings = client.settings
        return await client.client.chat.completions.create(
            model=settings.model,
            messages=[
                {"role": "system", "content": context.system_prompt},
                {"role": "user", "content": self.user_message(context)},
            ],
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            stream=True,
            timeout=settings.timeout_seconds,
        )

    async def _iter_text(self, stream: Any) -> AsyncIterator[str]:
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            content = getattr(delta, "content", None) if delta is not None else None
            if content:
                yield content

    def classify_error(self, error: BaseException) -> ErrorCategory:
        if isinstance(error, openai.APITimeoutError):
            return ErrorCategory.TIMEOUT
        if isinstance(error, openai.APIConnectionError):
            return ErrorCategory.NETWORK

        if isinstance(error, openai.APIStatusError):
            error_type = error_body_type(error.body)
            if error.status_code == 429 or error_type in _RATE_LIMIT_TYPES:
                return ErrorCategory.RATE_LIMITED
            if error.status_code >= 500 or error_type in _OVERLOAD_TYPES:
                return ErrorCategory.OVERLOADED
            if error.status_code in (400, 401, 403, 404, 422):
                return ErrorCategory.INVALID_REQUEST

        return classify_error(str(error))


class DeepSeekAdapter(OpenAICompatibleAdapter):
    """DeepSeek chat models; the standard fallback when Claude is overloaded."""

    kind = ProviderKind.DEEPSEEK
    display_name = "DeepSeek"
    api_key_env = "DEEPSEEK_API_KEY"
    base_url = "https://api.deepseek.com"

    def get_priority(self, context: CallContext) -> int:
        if context.is_overloaded(self.kind):
            return -10
        if context.preferred_provider == self.kind:
            return 100
        if context.is_overloaded(ProviderKind.CLAUDE):
            return 80
        return 50


class PerplexityAdapter(OpenAICompatibleAdapter):
    """Perplexity Sonar models, preferred for web-connected research."""

    kind = ProviderKind.PERPLEXITY
    display_name = "Perplexity"
    api_key_env = "PERPLEXITY_API_KEY"
    base_url = "https://api.perplexity.ai"

    def get_priority(self, context: CallContext) -> int:
        if context.is_overloaded(self.kind):
            return -10
        if context.preferred_provider == self.kind:
            return 100
        if context.requires_research:
            return 90
        return 40
