"""Tests for data models."""

import json

import pytest
from pydantic import ValidationError

from prd_taskgen.models import (
    CallContext,
    ErrorCategory,
    GenerationConfig,
    ModelSettings,
    ProviderKind,
    RetryConfig,
    StreamAccumulator,
    SubtaskRecord,
    TaskBatch,
    TaskBatchMetadata,
    TaskPriority,
    TaskRecord,
    TaskStatus,
    parse_provider_kind,
)


class TestProviderKind:
    """Tests for provider name parsing."""

    def test_parse_known_names(self):
        """Test that canonical names map to their kind."""
        assert parse_provider_kind("claude") == ProviderKind.CLAUDE
        assert parse_provider_kind("deepseek") == ProviderKind.DEEPSEEK
        assert parse_provider_kind("perplexity") == ProviderKind.PERPLEXITY

    def test_parse_is_case_insensitive_with_aliases(self):
        """Test case-insensitive parsing and the anthropic alias."""
        assert parse_provider_kind("  Anthropic ") == ProviderKind.CLAUDE
        assert parse_provider_kind("DEEPSEEK") == ProviderKind.DEEPSEEK

    def test_parse_unknown_or_empty(self):
        """Test that unknown or empty names give None."""
        assert parse_provider_kind("gpt") is None
        assert parse_provider_kind("") is None
        assert parse_provider_kind(None) is None


class TestCallContext:
    """Tests for the immutable call context."""

    def test_defaults(self):
        """Test default context values."""
        ctx = CallContext(document_text="PRD")
        assert ctx.target_task_count == 10
        assert ctx.retry_count == 0
        assert ctx.excluded_provider_types == frozenset()
        assert ctx.preferred_provider is None
        assert ctx.user_prompt == ""

    def test_context_is_frozen(self):
        """Test that contexts cannot be mutated in place."""
        ctx = CallContext(document_text="PRD")
        with pytest.raises(ValidationError):
            ctx.retry_count = 2

    def test_with_retry_count_returns_new_context(self):
        """Test that with_retry_count leaves the original untouched."""
        ctx = CallContext(document_text="PRD")
        retried = ctx.with_retry_count(2)

        assert retried.retry_count == 2
        assert ctx.retry_count == 0
        assert retried.document_text == "PRD"

    def test_excluding_accumulates(self):
        """Test that exclusions add up across copies."""
        ctx = CallContext(document_text="PRD")
        ctx2 = ctx.excluding(ProviderKind.CLAUDE).excluding(ProviderKind.DEEPSEEK)

        assert ctx2.excluded_provider_types == {ProviderKind.CLAUDE, ProviderKind.DEEPSEEK}
        assert ctx.excluded_provider_types == frozenset()

    def test_mark_overloaded(self):
        """Test overload tracking."""
        ctx = CallContext(document_text="PRD").mark_overloaded(ProviderKind.CLAUDE)
        assert ctx.is_overloaded(ProviderKind.CLAUDE)
        assert not ctx.is_overloaded(ProviderKind.DEEPSEEK)

    def test_target_count_must_be_positive(self):
        """Test that a zero task count is rejected."""
        with pytest.raises(ValidationError):
            CallContext(document_text="PRD", target_task_count=0)


class TestStreamAccumulator:
    """Tests for StreamAccumulator."""

    def test_joins_in_arrival_order(self):
        """Test fragments are joined in the order they were appended."""
        acc = StreamAccumulator()
        for fragment in ['{"ta', 'sks"', ": []}"]:
            acc.append(fragment)

        assert acc.text == '{"tasks": []}'
        assert len(acc) == len('{"tasks": []}')
        assert acc.fragment_count == 3

    def test_empty_fragments_ignored(self):
        """Test that empty fragments are not counted."""
        acc = StreamAccumulator()
        acc.append("")
        acc.append("x")
        assert acc.fragment_count == 1
        assert acc.text == "x"


class TestTaskRecord:
    """Tests for TaskRecord."""

    def test_minimal_task(self):
        """Test creating a task with only required fields."""
        task = TaskRecord(id=1, title="Setup", description="Create the repo")
        assert task.status == TaskStatus.PENDING
        assert task.priority == TaskPriority.MEDIUM
        assert task.dependencies == []
        assert task.details == ""
        assert task.test_strategy == ""

    def test_string_dependencies_coerced(self):
        """Test that numeric string dependencies become ints."""
        task = TaskRecord(id=3, title="t", description="d", dependencies=["1", "2"])
        assert task.dependencies == [1, 2]

    def test_missing_dependencies_become_empty(self):
        """Test that null dependencies normalize to an empty list."""
        task = TaskRecord(id=1, title="t", description="d", dependencies=None)
        assert task.dependencies == []

    def test_unknown_priority_falls_back_to_medium(self):
        """Test that unrecognized priorities become medium."""
        task = TaskRecord(id=1, title="t", description="d", priority="urgent")
        assert task.priority == TaskPriority.MEDIUM

        task = TaskRecord(id=1, title="t", description="d", priority="HIGH")
        assert task.priority == TaskPriority.HIGH

    def test_id_must_be_positive(self):
        """Test that non-positive IDs are rejected."""
        with pytest.raises(ValidationError):
            TaskRecord(id=0, title="t", description="d")

    def test_test_strategy_alias(self):
        """Test that testStrategy is accepted and serialized in camelCase."""
        task = TaskRecord.model_validate(
            {"id": 1, "title": "t", "description": "d", "testStrategy": "Run it"}
        )
        assert task.test_strategy == "Run it"
        assert task.model_dump(by_alias=True)["testStrategy"] == "Run it"


class TestTaskBatch:
    """Tests for TaskBatch."""

    def test_requires_tasks(self):
        """Test that an empty batch is rejected."""
        with pytest.raises(ValidationError):
            TaskBatch(tasks=[])

    def test_duplicate_ids_rejected(self):
        """Test that task IDs must be unique within a batch."""
        with pytest.raises(ValidationError) as exc_info:
            TaskBatch(tasks=[
                TaskRecord(id=1, title="a", description="a"),
                TaskRecord(id=1, title="b", description="b"),
            ])
        assert "Duplicate task id" in str(exc_info.value)

    def test_batch_is_frozen(self):
        """Test that a batch cannot be reassigned after validation."""
        batch = TaskBatch(tasks=[TaskRecord(id=1, title="a", description="a")])
        with pytest.raises(ValidationError):
            batch.tasks = []

    def test_to_json_uses_tasks_json_shape(self):
        """Test serialization with camelCase keys."""
        batch = TaskBatch(
            tasks=[TaskRecord(id=1, title="a", description="b", testStrategy="c")],
            metadata=TaskBatchMetadata(totalTasks=1, sourceFile="prd.txt"),
        )
        data = json.loads(batch.to_json())

        assert data["tasks"][0]["testStrategy"] == "c"
        assert data["metadata"]["projectName"] == "PRD Implementation"
        assert data["metadata"]["totalTasks"] == 1
        assert data["metadata"]["sourceFile"] == "prd.txt"
        assert "generatedAt" in data["metadata"]
        assert "provider" not in data["metadata"]

    def test_save_creates_parent_dirs(self, tmp_path):
        """Test saving a batch to a nested path."""
        batch = TaskBatch(tasks=[TaskRecord(id=1, title="a", description="b")])
        path = batch.save(tmp_path / "tasks" / "tasks.json")

        assert path.exists()
        loaded = TaskBatch.model_validate_json(path.read_text())
        assert loaded.tasks[0].title == "a"

    def test_load_round_trip_and_lookup(self, tmp_path):
        """Test loading a saved batch and looking tasks up by ID."""
        batch = TaskBatch(tasks=[
            TaskRecord(id=1, title="a", description="b"),
            TaskRecord(id=2, title="c", description="d", dependencies=[1]),
        ])
        loaded = TaskBatch.load(batch.save(tmp_path / "tasks.json"))

        assert loaded.get_task(2).dependencies == [1]
        assert loaded.get_task(3) is None


class TestSubtaskRecord:
    """Tests for SubtaskRecord."""

    def test_camel_case_fields(self):
        """Test that parentTaskId and testStrategy use camelCase aliases."""
        subtask = SubtaskRecord.model_validate({
            "id": 2,
            "title": "Hash passwords",
            "dependencies": ["1"],
            "testStrategy": "Unit tests",
            "parentTaskId": 4,
        })

        assert subtask.dependencies == [1]
        assert subtask.parent_task_id == 4
        assert subtask.to_dict() == {
            "id": 2,
            "title": "Hash passwords",
            "description": "",
            "status": "pending",
            "dependencies": [1],
            "details": "",
            "testStrategy": "Unit tests",
            "parentTaskId": 4,
        }

    def test_null_text_fields_become_empty(self):
        """Test that null optional text is normalized."""
        subtask = SubtaskRecord(id=1, title="t", description=None, details=None)
        assert subtask.description == ""
        assert subtask.details == ""
        assert "parentTaskId" not in subtask.to_dict()

    def test_id_must_be_positive(self):
        """Test that non-positive IDs are rejected."""
        with pytest.raises(ValidationError):
            SubtaskRecord(id=0, title="t")


class TestRetryConfig:
    """Tests for RetryConfig defaults."""

    def test_defaults(self):
        """Test default retry budget and retryable categories."""
        config = RetryConfig()
        assert config.max_retries == 3
        assert ErrorCategory.RATE_LIMITED in config.retryable_categories
        assert ErrorCategory.OVERLOADED in config.retryable_categories
        assert ErrorCategory.INVALID_REQUEST not in config.retryable_categories


class TestGenerationConfig:
    """Tests for GenerationConfig."""

    def test_defaults(self):
        """Test default generation settings."""
        config = GenerationConfig()
        assert config.num_tasks == 10
        assert config.max_tokens == 64000
        assert config.temperature == 0.2
        assert config.timeout_ms == 180000
        assert config.llm_provider == ProviderKind.CLAUDE

    def test_from_credentials_reads_overrides(self):
        """Test environment overrides are applied."""
        config = GenerationConfig.from_credentials({
            "LLM_PROVIDER": "deepseek",
            "DEEPSEEK_MODEL": "deepseek-reasoner",
            "MAX_TOKENS": "8000",
            "TEMPERATURE": "0.7",
            "REQUEST_TIMEOUT_MS": "5000",
        })

        assert config.llm_provider == ProviderKind.DEEPSEEK
        assert config.deepseek_model == "deepseek-reasoner"
        assert config.max_tokens == 8000
        assert config.temperature == 0.7
        assert config.timeout_ms == 5000

    def test_from_credentials_ignores_invalid_numbers(self, caplog):
        """Test that unparseable numbers fall back to defaults with a warning."""
        config = GenerationConfig.from_credentials({"MAX_TOKENS": "lots"})

        assert config.max_tokens == 64000
        assert "MAX_TOKENS" in caplog.text

    @pytest.mark.parametrize("env", [
        {"TEMPERATURE": "5"},
        {"MAX_TOKENS": "-1"},
        {"REQUEST_TIMEOUT_MS": "0"},
    ])
    def test_from_credentials_ignores_out_of_range_numbers(self, env, caplog):
        """Test that parseable but out-of-range values keep the defaults."""
        config = GenerationConfig.from_credentials({**env, "ANTHROPIC_MODEL": "claude-x"})

        assert config == GenerationConfig(anthropic_model="claude-x")
        assert next(iter(env)) in caplog.text

    def test_explicit_overrides_win(self):
        """Test that keyword overrides beat environment values."""
        config = GenerationConfig.from_credentials(
            {"LLM_PROVIDER": "deepseek"},
            llm_provider=ProviderKind.PERPLEXITY,
            num_tasks=None,
        )
        assert config.llm_provider == ProviderKind.PERPLEXITY
        assert config.num_tasks == 10

    def test_settings_for_provider(self):
        """Test resolving per-provider model settings."""
        config = GenerationConfig(max_tokens=1000)
        settings = config.settings_for(ProviderKind.PERPLEXITY)

        assert isinstance(settings, ModelSettings)
        assert settings.model == "sonar-pro"
        assert settings.max_tokens == 1000
        assert settings.timeout_seconds == 180.0

    def test_json_round_trip(self):
        """Test config persistence as JSON."""
        config = GenerationConfig(num_tasks=15, llm_provider=ProviderKind.DEEPSEEK)
        restored = GenerationConfig.model_validate_json(config.model_dump_json())
        assert restored == config
