"""Anthropic Claude adapter (Messages API, streamed)."""

from typing import Any, AsyncIterator

import anthropic

from ..errors import classify_error
from ..models import CallContext, ErrorCategory, ModelSettings, ProviderKind
from .base import ModelClient, ProviderAdapter, error_body_type

# Raises the output limit for long task lists
OUTPUT_128K_BETA = "output-128k-2025-02-19"


class ClaudeAdapter(ProviderAdapter):
    """Streams completions from Claude.

    Claude is the default provider. Its priority drops when it has been
    reported overloaded during the current request.
    """

    kind = ProviderKind.CLAUDE
    display_name = "Claude"
    api_key_env = "ANTHROPIC_API_KEY"

    def _create_client(self, api_key: str, settings: ModelSettings) -> Any:
        # Retries are handled by call_model, not the SDK
        return anthropic.AsyncAnthropic(
            api_key=api_key,
            default_headers={"anthropic-beta": OUTPUT_128K_BETA},
            max_retries=0,
        )

    async def close(self, client: ModelClient) -> None:
        await client.client.close()

    async def _open_stream(self, client: ModelClient, context: CallContext) -> Any:
        settings = client.settings
        return await client.client.messages.create(
            model=settings.model,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            system=context.system_prompt,
            messages=[{"role": "user", "content": self.user_message(context)}],
            stream=True,
            timeout=settings.timeout_seconds,
        )

    async def _iter_text(self, stream: Any) -> AsyncIterator[str]:
        async for event in stream:
            if getattr(event, "type", None) != "content_block_delta":
                continue
            text = getattr(event.delta, "text", None)
            if text:
                yield text

    def classify_error(self, error: BaseException) -> ErrorCategory:
        # APITimeoutError subclasses APIConnectionError, so check it first
        if isinstance(error, anthropic.APITimeoutError):
            return ErrorCategory.TIMEOUT
        if isinstance(error, anthropic.APIConnectionError):
            return ErrorCategory.NETWORK

        if isinstance(error, anthropic.APIStatusError):
            error_type = error_body_type(error.body)
            if error_type == "overloaded_error" or error.status_code == 529:
                return ErrorCategory.OVERLOADED
            if error_type == "rate_limit_error" or error.status_code == 429:
                return ErrorCategory.RATE_LIMITED
            if error_type in ("invalid_request_error", "authentication_error",
                              "permission_error") or error.status_code in (400, 401, 403, 422):
                return ErrorCategory.INVALID_REQUEST

        return classify_error(str(error))

    def get_priority(self, context: CallContext) -> int:
        overloaded = context.is_overloaded(self.kind)
        preferred = context.preferred_provider

        if preferred == self.kind:
            return 70 if overloaded else 100
        if preferred is not None:
            return -10 if overloaded else 50
        return -10 if overloaded else 100
