"""Tests for the provider adapters.

Vendor SDK clients are replaced with mocks returning scripted async streams;
errors are real SDK exception types built around httpx responses.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import openai
import pytest

from prd_taskgen.errors import CredentialMissingError, ProviderError
from prd_taskgen.models import (
    CallContext,
    ErrorCategory,
    GenerationConfig,
    ModelSettings,
    ProviderKind,
)
from prd_taskgen.protocols import ModelAdapter
from prd_taskgen.providers import (
    ClaudeAdapter,
    DeepSeekAdapter,
    ModelClient,
    PerplexityAdapter,
    ProviderAdapter,
)
from prd_taskgen.reporting import Reporter


ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
DEEPSEEK_URL = "https://api.deepseek.com/chat/completions"


def _response(status: int, url: str) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("POST", url))


def anthropic_error(cls, status: int, error_type: str):
    body = {"type": "error", "error": {"type": error_type, "message": error_type}}
    return cls(error_type, response=_response(status, ANTHROPIC_URL), body=body)


def openai_error(cls, status: int, error_type: str = "error"):
    body = {"error": {"type": error_type, "message": error_type}}
    return cls(error_type, response=_response(status, DEEPSEEK_URL), body=body)


async def claude_stream(*fragments):
    yield SimpleNamespace(type="message_start", message=SimpleNamespace(id="msg_1"))
    for text in fragments:
        yield SimpleNamespace(
            type="content_block_delta",
            delta=SimpleNamespace(type="text_delta", text=text),
        )
    yield SimpleNamespace(type="message_stop")


async def chat_stream(*fragments):
    for text in fragments:
        yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])
    # Usage chunk with no choices
    yield SimpleNamespace(choices=[])


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def claude(no_delay_retry, sleep):
    return ClaudeAdapter(GenerationConfig(), retry_config=no_delay_retry, sleep=sleep)


@pytest.fixture
def claude_client():
    fake = MagicMock()
    fake.messages.create = AsyncMock()
    return ModelClient(
        kind=ProviderKind.CLAUDE,
        client=fake,
        settings=ModelSettings(model="claude-sonnet-4-20250514", max_tokens=100),
    )


@pytest.fixture
def deepseek(no_delay_retry, sleep):
    return DeepSeekAdapter(GenerationConfig(), retry_config=no_delay_retry, sleep=sleep)


@pytest.fixture
def deepseek_client():
    fake = MagicMock()
    fake.chat.completions.create = AsyncMock()
    return ModelClient(
        kind=ProviderKind.DEEPSEEK,
        client=fake,
        settings=ModelSettings(model="deepseek-chat", max_tokens=100),
    )


class TestAdapterInterface:
    """Tests for the adapter capability interface."""

    def test_adapters_satisfy_protocol(self):
        """Test that all built-in adapters satisfy ModelAdapter."""
        for adapter in (ClaudeAdapter(), DeepSeekAdapter(), PerplexityAdapter()):
            assert isinstance(adapter, ModelAdapter)

    def test_incomplete_adapter_cannot_be_instantiated(self):
        """Test that missing abstract methods fail at construction."""
        class Incomplete(ProviderAdapter):
            kind = ProviderKind.CLAUDE
            display_name = "Incomplete"
            api_key_env = "X"

            def get_priority(self, context):
                return 1

        with pytest.raises(TypeError):
            Incomplete()

    def test_is_available(self, credentials):
        """Test availability only depends on the API key."""
        assert ClaudeAdapter().is_available(credentials)
        assert not ClaudeAdapter().is_available({"DEEPSEEK_API_KEY": "x"})
        assert not ClaudeAdapter().is_available({"ANTHROPIC_API_KEY": ""})


class TestClaudeAdapter:
    """Tests for ClaudeAdapter."""

    @pytest.mark.asyncio
    async def test_initialize_missing_key(self, claude):
        """Test that a missing key raises CredentialMissingError."""
        with pytest.raises(CredentialMissingError) as exc_info:
            await claude.initialize({})
        assert exc_info.value.env_var == "ANTHROPIC_API_KEY"

    @pytest.mark.asyncio
    async def test_initialize_builds_client(self, credentials):
        """Test client construction with the output beta header and no SDK retries."""
        adapter = ClaudeAdapter()
        with patch("prd_taskgen.providers.claude.anthropic.AsyncAnthropic") as mock_cls:
            client = await adapter.initialize({**credentials, "ANTHROPIC_MODEL": "claude-x"})

        mock_cls.assert_called_once_with(
            api_key="sk-ant-test",
            default_headers={"anthropic-beta": "output-128k-2025-02-19"},
            max_retries=0,
        )
        assert client.kind == ProviderKind.CLAUDE
        assert client.client is mock_cls.return_value
        assert client.settings.model == "claude-x"

    @pytest.mark.asyncio
    async def test_call_model_accumulates_stream(self, claude, claude_client, context):
        """Test that fragments are joined in arrival order."""
        claude_client.client.messages.create.return_value = claude_stream(
            '{"tasks": ', '[{"id": 1}', "]}"
        )

        result = await claude.call_model(claude_client, context)

        assert result.text == '{"tasks": [{"id": 1}]}'
        assert result.retry_count == 0
        assert result.provider == ProviderKind.CLAUDE
        assert result.model == "claude-sonnet-4-20250514"

        kwargs = claude_client.client.messages.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["system"] == context.system_prompt
        assert kwargs["max_tokens"] == 100
        assert kwargs["timeout"] == 180.0
        assert context.document_text in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_rate_limit_retried_until_success(self, claude, claude_client, context, sleep):
        """Test two rate limit errors followed by success give retry_count 2."""
        claude_client.client.messages.create.side_effect = [
            anthropic_error(anthropic.RateLimitError, 429, "rate_limit_error"),
            anthropic_error(anthropic.RateLimitError, 429, "rate_limit_error"),
            claude_stream("ok"),
        ]

        result = await claude.call_model(claude_client, context)

        assert result.text == "ok"
        assert result.retry_count == 2
        assert claude_client.client.messages.create.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_no_retry_when_budget_spent(self, claude, claude_client, context, sleep):
        """Test that a context at retry_count 3 fails on the first error."""
        claude_client.client.messages.create.side_effect = anthropic_error(
            anthropic.RateLimitError, 429, "rate_limit_error"
        )

        with pytest.raises(ProviderError) as exc_info:
            await claude.call_model(claude_client, context.with_retry_count(3))

        assert exc_info.value.category == ErrorCategory.RATE_LIMITED
        assert exc_info.value.attempts == 1
        assert claude_client.client.messages.create.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_overload_exhausts_local_budget(self, claude, claude_client, context):
        """Test that a persistently overloaded vendor is tried four times."""
        claude_client.client.messages.create.side_effect = anthropic_error(
            anthropic.InternalServerError, 529, "overloaded_error"
        )

        with pytest.raises(ProviderError) as exc_info:
            await claude.call_model(claude_client, context)

        error = exc_info.value
        assert error.category == ErrorCategory.OVERLOADED
        assert error.is_overload
        assert error.provider == ProviderKind.CLAUDE
        assert error.attempts == 4
        assert "overloaded" in str(error)
        assert isinstance(error.__cause__, anthropic.InternalServerError)

    @pytest.mark.asyncio
    async def test_invalid_request_not_retried(self, claude, claude_client, context):
        """Test that invalid requests fail immediately."""
        claude_client.client.messages.create.side_effect = anthropic_error(
            anthropic.BadRequestError, 400, "invalid_request_error"
        )

        with pytest.raises(ProviderError) as exc_info:
            await claude.call_model(claude_client, context)

        assert exc_info.value.category == ErrorCategory.INVALID_REQUEST
        assert claude_client.client.messages.create.await_count == 1

    @pytest.mark.asyncio
    async def test_progress_reported(self, claude, claude_client, context):
        """Test that progress starts at 0 and ends at 1."""
        claude_client.client.messages.create.return_value = claude_stream("a" * 10, "b" * 10)
        values = []

        await claude.call_model(claude_client, context, Reporter(on_progress=values.append))

        assert values[0] == 0.0
        assert values[-1] == 1.0
        assert values == sorted(values)

    @pytest.mark.asyncio
    async def test_prebuilt_user_prompt_sent_verbatim(self, claude, claude_client, context):
        """Test that a prebuilt user message replaces the PRD message."""
        claude_client.client.messages.create.return_value = claude_stream("[]")
        ctx = context.model_copy(update={"user_prompt": "Break task 3 into subtasks."})

        await claude.call_model(claude_client, ctx)

        kwargs = claude_client.client.messages.create.call_args.kwargs
        assert kwargs["messages"][0]["content"] == "Break task 3 into subtasks."

    @pytest.mark.asyncio
    async def test_close_releases_sdk_client(self, claude, claude_client):
        """Test that closing awaits the SDK client's close."""
        claude_client.client.close = AsyncMock()

        await claude.close(claude_client)

        claude_client.client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejects_foreign_client(self, claude, deepseek_client, context):
        """Test that a client of another kind is refused."""
        with pytest.raises(ValueError):
            await claude.call_model(deepseek_client, context)

    def test_classify_errors(self, claude):
        """Test classification of Anthropic SDK errors."""
        request = httpx.Request("POST", ANTHROPIC_URL)

        assert claude.classify_error(
            anthropic_error(anthropic.InternalServerError, 529, "overloaded_error")
        ) == ErrorCategory.OVERLOADED
        assert claude.classify_error(
            anthropic_error(anthropic.RateLimitError, 429, "rate_limit_error")
        ) == ErrorCategory.RATE_LIMITED
        assert claude.classify_error(
            anthropic_error(anthropic.AuthenticationError, 401, "authentication_error")
        ) == ErrorCategory.INVALID_REQUEST
        assert claude.classify_error(
            anthropic.APITimeoutError(request=request)
        ) == ErrorCategory.TIMEOUT
        assert claude.classify_error(
            anthropic.APIConnectionError(request=request)
        ) == ErrorCategory.NETWORK
        assert claude.classify_error(RuntimeError("boom")) == ErrorCategory.UNKNOWN

    def test_priority(self, claude):
        """Test Claude's context-dependent priority."""
        ctx = CallContext(document_text="PRD")
        preferred = ctx.model_copy(update={"preferred_provider": ProviderKind.CLAUDE})
        other = ctx.model_copy(update={"preferred_provider": ProviderKind.DEEPSEEK})

        assert claude.get_priority(ctx) == 100
        assert claude.get_priority(preferred) == 100
        assert claude.get_priority(preferred.mark_overloaded(ProviderKind.CLAUDE)) == 70
        assert claude.get_priority(ctx.mark_overloaded(ProviderKind.CLAUDE)) == -10
        assert claude.get_priority(other) == 50


class TestOpenAICompatibleAdapters:
    """Tests for DeepSeekAdapter and PerplexityAdapter."""

    @pytest.mark.asyncio
    async def test_initialize_uses_base_url(self, credentials):
        """Test that each adapter points the OpenAI client at its vendor."""
        with patch("prd_taskgen.providers.openai_compat.openai.AsyncOpenAI") as mock_cls:
            await DeepSeekAdapter().initialize(credentials)
            await PerplexityAdapter().initialize(credentials)

        first, second = mock_cls.call_args_list
        assert first.kwargs == {
            "api_key": "sk-deepseek-test",
            "base_url": "https://api.deepseek.com",
            "max_retries": 0,
        }
        assert second.kwargs["base_url"] == "https://api.perplexity.ai"
        assert second.kwargs["api_key"] == "pplx-test"

    @pytest.mark.asyncio
    async def test_initialize_missing_key(self):
        """Test that a missing key raises CredentialMissingError."""
        with pytest.raises(CredentialMissingError) as exc_info:
            await PerplexityAdapter().initialize({"ANTHROPIC_API_KEY": "x"})
        assert exc_info.value.provider == ProviderKind.PERPLEXITY

    @pytest.mark.asyncio
    async def test_call_model_accumulates_stream(self, deepseek, deepseek_client, context):
        """Test chat completion streaming with system and user messages."""
        deepseek_client.client.chat.completions.create.return_value = chat_stream(
            '{"tasks"', ": []}"
        )

        result = await deepseek.call_model(deepseek_client, context)

        assert result.text == '{"tasks": []}'
        assert result.provider == ProviderKind.DEEPSEEK

        kwargs = deepseek_client.client.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["model"] == "deepseek-chat"
        assert kwargs["messages"][0] == {"role": "system", "content": context.system_prompt}
        assert kwargs["messages"][1]["role"] == "user"

    @pytest.mark.asyncio
    async def test_retry_count_continues_from_context(self, deepseek, deepseek_client, context):
        """Test that the local counter starts from the context's retry count."""
        deepseek_client.client.chat.completions.create.side_effect = [
            openai.APIConnectionError(request=httpx.Request("POST", DEEPSEEK_URL)),
            chat_stream("ok"),
        ]

        result = await deepseek.call_model(deepseek_client, context.with_retry_count(1))

        assert result.retry_count == 2

    @pytest.mark.asyncio
    async def test_close_releases_sdk_client(self, deepseek, deepseek_client):
        """Test that closing awaits the SDK client's close."""
        deepseek_client.client.close = AsyncMock()

        await deepseek.close(deepseek_client)

        deepseek_client.client.close.assert_awaited_once()

    def test_classify_errors(self, deepseek):
        """Test classification of OpenAI SDK errors."""
        request = httpx.Request("POST", DEEPSEEK_URL)

        assert deepseek.classify_error(
            openai_error(openai.RateLimitError, 429, "rate_limit_exceeded")
        ) == ErrorCategory.RATE_LIMITED
        assert deepseek.classify_error(
            openai_error(openai.InternalServerError, 503, "service_unavailable")
        ) == ErrorCategory.OVERLOADED
        assert deepseek.classify_error(
            openai_error(openai.AuthenticationError, 401, "invalid_api_key")
        ) == ErrorCategory.INVALID_REQUEST
        assert deepseek.classify_error(
            openai_error(openai.BadRequestError, 400, "invalid_request_error")
        ) == ErrorCategory.INVALID_REQUEST
        assert deepseek.classify_error(
            openai.APITimeoutError(request=request)
        ) == ErrorCategory.TIMEOUT
        assert deepseek.classify_error(
            openai.APIConnectionError(request=request)
        ) == ErrorCategory.NETWORK

    def test_deepseek_priority(self, deepseek):
        """Test DeepSeek's priority rises when Claude is overloaded."""
        ctx = CallContext(document_text="PRD")

        assert deepseek.get_priority(ctx) == 50
        assert deepseek.get_priority(ctx.mark_overloaded(ProviderKind.CLAUDE)) == 80
        assert deepseek.get_priority(
            ctx.model_copy(update={"preferred_provider": ProviderKind.DEEPSEEK})
        ) == 100
        assert deepseek.get_priority(ctx.mark_overloaded(ProviderKind.DEEPSEEK)) == -10

    def test_perplexity_priority(self):
        """Test Perplexity's priority rises for research requests."""
        adapter = PerplexityAdapter()
        ctx = CallContext(document_text="PRD")

        assert adapter.get_priority(ctx) == 40
        assert adapter.get_priority(ctx.model_copy(update={"requires_research": True})) == 90
        assert adapter.get_priority(
            ctx.model_copy(update={"preferred_provider": ProviderKind.PERPLEXITY})
        ) == 100
