"""Base class for LLM provider adapters.

Architecture:
- ModelClient: vendor SDK client plus the settings resolved at initialization
- ProviderAdapter: abstract base with credential checks, the bounded local
  retry loop and stream accumulation
- Subclasses supply client construction, the vendor streaming call, text
  extraction from stream events, error classification and priority scoring
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, ClassVar, Optional

from ..errors import CredentialMissingError, ProviderError
from ..models import (
    CallContext,
    ErrorCategory,
    GenerationConfig,
    ModelCallResult,
    ModelSettings,
    ProviderKind,
    RetryConfig,
    StreamAccumulator,
)
from ..prompts import build_user_message
from ..reporting import Reporter, ensure_reporter
from ..retry import calculate_retry_delay


@dataclass(frozen=True)
class ModelClient:
    """An initialized vendor client, tagged with the adapter kind."""
    kind: ProviderKind
    client: Any
    settings: ModelSettings


def error_body_type(body: Any) -> Optional[str]:
    """Pull the vendor error ``type`` out of a structured error body.

    Handles both the wrapped ``{"type": "error", "error": {...}}`` shape and
    a bare ``{"type": ..., "message": ...}`` error object.
    """
    if not isinstance(body, dict):
        return None
    inner = body.get("error")
    if isinstance(inner, dict):
        return inner.get("type") or inner.get("code")
    return body.get("type") or body.get("code")


class ProviderAdapter(ABC):
    """Abstract base for one LLM vendor.

    Adapters hold no per-request state: the client returned by
    ``initialize`` is passed back into ``call_model``.
    """

    kind: ClassVar[ProviderKind]
    display_name: ClassVar[str]
    api_key_env: ClassVar[str]

    def __init__(
        self,
        config: Optional[GenerationConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the adapter.

        Args:
            config: Explicit generation config. When omitted, settings are
                resolved from the credential source at initialization.
            retry_config: Local retry policy (default: config.retry).
            sleep: Awaitable used between retries (injectable for tests).
        """
        self.config = config
        self.retry_config = retry_config or (config.retry if config else RetryConfig())
        self._sleep = sleep

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r})"

    # -------------------------------------------------------------------------
    # Availability and initialization
    # -------------------------------------------------------------------------

    def is_available(self, credentials: Mapping[str, str]) -> bool:
        """Check whether this provider's API key is configured."""
        return bool(credentials.get(self.api_key_env))

    def resolve_settings(self, credentials: Mapping[str, str]) -> ModelSettings:
        config = self.config or GenerationConfig.from_credentials(credentials)
        return config.settings_for(self.kind)

    async def initialize(self, credentials: Mapping[str, str]) -> ModelClient:
        """Create the vendor client.

        Raises:
            CredentialMissingError: If the API key is not configured.
        """
        api_key = credentials.get(self.api_key_env)
        if not api_key:
            raise CredentialMissingError(self.kind, self.api_key_env)

        settings = self.resolve_settings(credentials)
        client = self._create_client(api_key, settings)
        return ModelClient(kind=self.kind, client=client, settings=settings)

    @abstractmethod
    def _create_client(self, api_key: str, settings: ModelSettings) -> Any:
        """Construct the vendor SDK client."""

    async def close(self, client: ModelClient) -> None:
        """Release the vendor client once a request is done with it.

        Adapters whose SDK client holds connections override this.
        """

    # -------------------------------------------------------------------------
    # Model call
    # -------------------------------------------------------------------------

    async def call_model(
        self,
        client: ModelClient,
        context: CallContext,
        reporter: Optional[Reporter] = None,
    ) -> ModelCallResult:
        """Stream a completion for the context's document.

        Failed calls are retried locally while the attempt counter, which
        starts at ``context.retry_count``, is below the retry budget.

        Returns:
            ModelCallResult with the full text and the final attempt counter.

        Raises:
            ProviderError: Once the local budget is exhausted, or immediately
                for non-retryable categories.
        """
        if client.kind != self.kind:
            raise ValueError(
                f"{self.display_name} adapter cannot use a {client.kind.value} client"
            )

        reporter = ensure_reporter(reporter, __name__)
        max_retries = self.retry_config.max_retries
        attempt = context.retry_count

        reporter.info("Processing PRD with %s (%s)...", self.display_name, client.settings.model)

        while True:
            try:
                text = await self._collect_stream(client, context, reporter)
                return ModelCallResult(
                    text=text,
                    retry_count=attempt,
                    provider=self.kind,
                    model=client.settings.model,
                )
            except Exception as e:
                category = self.classify_error(e)
                message = self.describe_error(e, category)
                reporter.error("%s request failed: %s", self.display_name, message)

                retryable = category in self.retry_config.retryable_categories
                if attempt >= max_retries or not retryable:
                    raise ProviderError(
                        message,
                        category=category,
                        provider=self.kind,
                        attempts=attempt - context.retry_count + 1,
                    ) from e

                attempt += 1
                delay = calculate_retry_delay(attempt - 1, self.retry_config)
                reporter.warning(
                    "Retrying %s call (%d/%d) after %s error, waiting %.1fs...",
                    self.display_name, attempt, max_retries, category.value, delay,
                )
                await self._sleep(delay)

    async def _collect_stream(
        self,
        client: ModelClient,
        context: CallContext,
        reporter: Reporter,
    ) -> str:
        """Run one streaming request and join its fragments in arrival order."""
        accumulator = StreamAccumulator()
        stream = await self._open_stream(client, context)

        reporter.debug("Receiving streamed response from %s...", self.display_name)
        reporter.progress(0.0)

        budget = max(client.settings.max_tokens, 1)
        async for fragment in self._iter_text(stream):
            accumulator.append(fragment)
            reporter.progress(len(accumulator) / budget)

        reporter.progress(1.0)
        reporter.info(
            "Finished receiving %s response (%d chars in %d fragments)",
            self.display_name, len(accumulator), accumulator.fragment_count,
        )
        return accumulator.text

    def user_message(self, context: CallContext) -> str:
        if context.user_prompt:
            return context.user_prompt
        return build_user_message(context.document_text, context.target_task_count)

    @abstractmethod
    async def _open_stream(self, client: ModelClient, context: CallContext) -> Any:
        """Issue the vendor streaming request and return the stream object."""

    @abstractmethod
    def _iter_text(self, stream: Any) -> AsyncIterator[str]:
        """Yield the text fragments carried by the vendor stream events."""

    # -------------------------------------------------------------------------
    # Errors and ranking
    # -------------------------------------------------------------------------

    @abstractmethod
    def classify_error(self, error: BaseException) -> ErrorCategory:
        """Map a vendor exception onto the common taxonomy."""

    def describe_error(self, error: BaseException, category: ErrorCategory) -> str:
        """Build a user-friendly message for a classified error."""
        name = self.display_name
        if category == ErrorCategory.OVERLOADED:
            return (f"{name} is currently experiencing high demand and is overloaded. "
                    "Please wait a few minutes and try again.")
        if category == ErrorCategory.RATE_LIMITED:
            return (f"You have exceeded the {name} rate limit. "
                    "Please wait a few minutes before making more requests.")
        if category == ErrorCategory.INVALID_REQUEST:
            return (f"{name} rejected the request: {error}. "
                    "If this persists, please report it as a bug.")
        if category == ErrorCategory.TIMEOUT:
            return f"The request to {name} timed out. Please try again."
        if category == ErrorCategory.NETWORK:
            return (f"There was a network error connecting to {name}. "
                    "Please check your internet connection and try again.")
        return f"Error communicating with {name}: {error}"

    @abstractmethod
    def get_priority(self, context: CallContext) -> int:
        """Ranking score for this provider under ``context`` (higher wins)."""
