"""Pytest configuration and shared fixtures."""

import json
from typing import Any, AsyncIterator, Callable, Optional, Union
from unittest.mock import AsyncMock

import pytest

from prd_taskgen.errors import classify_error
from prd_taskgen.models import (
    CallContext,
    ErrorCategory,
    ModelSettings,
    ProviderKind,
    RetryConfig,
)
from prd_taskgen.providers.base import ModelClient, ProviderAdapter


def make_tasks_json(count: int, **extra: Any) -> str:
    """Serialized ``{"tasks": [...]}`` payload with ``count`` complete tasks."""
    tasks = [
        {
            "id": i,
            "title": f"Task {i}",
            "description": f"Description of task {i}",
            "status": "pending",
            "dependencies": [i - 1] if i > 1 else [],
            "priority": "high" if i == 1 else "medium",
            "details": f"Details for task {i}",
            "testStrategy": f"Test task {i}",
        }
        for i in range(1, count + 1)
    ]
    return json.dumps({"tasks": tasks, **extra})


API_KEY_ENVS = {
    ProviderKind.CLAUDE: "ANTHROPIC_API_KEY",
    ProviderKind.DEEPSEEK: "DEEPSEEK_API_KEY",
    ProviderKind.PERPLEXITY: "PERPLEXITY_API_KEY",
}

Script = Union[str, list[str], BaseException]


class ScriptedAdapter(ProviderAdapter):
    """Adapter double that streams scripted responses instead of calling a vendor.

    Each stream call consumes the next script entry; the last entry repeats.
    Strings are streamed in small fragments, lists fragment by fragment, and
    exceptions are raised when the stream is opened.
    """

    display_name = "Scripted"

    def __init__(
        self,
        kind: ProviderKind,
        priority: Union[int, Callable[[CallContext], int]] = 50,
        responses: Optional[list[Script]] = None,
        init_error: Optional[BaseException] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        super().__init__(
            retry_config=retry_config or RetryConfig(
                base_delay_seconds=0, max_delay_seconds=0, jitter_factor=0
            ),
            sleep=AsyncMock(),
        )
        self.kind = kind
        self.api_key_env = API_KEY_ENVS[kind]
        self.priority = priority
        self.responses: list[Script] = list(responses or [make_tasks_json(10)])
        self.init_error = init_error
        self.stream_calls = 0
        self.contexts: list[CallContext] = []
        self.closed = 0

    async def initialize(self, credentials):
        if self.init_error is not None:
            raise self.init_error
        return await super().initialize(credentials)

    def _create_client(self, api_key: str, settings: ModelSettings) -> Any:
        return object()

    async def close(self, client: ModelClient) -> None:
        self.closed += 1

    async def _open_stream(self, client: ModelClient, context: CallContext) -> Any:
        self.stream_calls += 1
        self.contexts.append(context)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def _iter_text(self, stream: Any) -> AsyncIterator[str]:
        if isinstance(stream, str):
            stream = [stream[i:i + 16] for i in range(0, len(stream), 16)]
        for fragment in stream:
            yield fragment

    def classify_error(self, error: BaseException) -> ErrorCategory:
        return classify_error(str(error))

    def get_priority(self, context: CallContext) -> int:
        if callable(self.priority):
            return self.priority(context)
        return self.priority


@pytest.fixture
def credentials():
    """Credential mapping with every provider configured."""
    return {
        "ANTHROPIC_API_KEY": "sk-ant-test",
        "DEEPSEEK_API_KEY": "sk-deepseek-test",
        "PERPLEXITY_API_KEY": "pplx-test",
    }


@pytest.fixture
def no_delay_retry():
    """Retry config with zero backoff."""
    return RetryConfig(base_delay_seconds=0, max_delay_seconds=0, jitter_factor=0)


@pytest.fixture
def context():
    """Request context asking for ten tasks."""
    return CallContext(
        document_text="Build a todo application with user accounts.",
        target_task_count=10,
        system_prompt="You are a helpful planner.",
    )


@pytest.fixture
def make_adapter():
    """Factory for ScriptedAdapter instances."""
    return ScriptedAdapter


@pytest.fixture
def tasks_json():
    """Factory for serialized task payloads."""
    return make_tasks_json
