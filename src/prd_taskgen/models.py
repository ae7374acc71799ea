"""Data models for PRD task generation.

Uses Pydantic for validation. The task batch is the JSON artifact handed to
the persistence layer, so its serialized shape matches tasks.json.
"""

import json
import logging
import re
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    """LLM vendors the registry knows how to talk to."""
    CLAUDE = "claude"
    DEEPSEEK = "deepseek"
    PERPLEXITY = "perplexity"


# Accepted spellings for LLM_PROVIDER and --provider
PROVIDER_ALIASES: dict[str, ProviderKind] = {
    "claude": ProviderKind.CLAUDE,
    "anthropic": ProviderKind.CLAUDE,
    "deepseek": ProviderKind.DEEPSEEK,
    "perplexity": ProviderKind.PERPLEXITY,
}


def parse_provider_kind(value: Optional[str]) -> Optional[ProviderKind]:
    """Map a provider name (case-insensitive, with aliases) to a ProviderKind."""
    if not value:
        return None
    return PROVIDER_ALIASES.get(value.strip().lower())


class ErrorCategory(str, Enum):
    """Classification of provider errors for retry decisions."""
    OVERLOADED = "overloaded"            # Vendor at capacity - retry, then fail over
    RATE_LIMITED = "rate_limited"        # 429 - retry with longer delay
    INVALID_REQUEST = "invalid_request"  # Malformed request - do not retry
    TIMEOUT = "timeout"                  # Request budget exceeded - retry
    NETWORK = "network"                  # Connection problems - retry
    UNKNOWN = "unknown"                  # Unexpected - retry


class TaskStatus(str, Enum):
    """Status of a generated task."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    DEFERRED = "deferred"


class TaskPriority(str, Enum):
    """Priority of a generated task."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class OutputFormat(str, Enum):
    """How the caller consumes progress output."""
    TEXT = "text"
    JSON = "json"


class RetryConfig(BaseModel):
    """Configuration for retry logic with exponential backoff.

    Shared by the adapter-level call retries and the orchestration-level
    assembly retries. Each budget is counted separately.
    """
    max_retries: int = Field(
        default=3,
        description="Maximum retry attempts before giving up"
    )
    base_delay_seconds: float = Field(
        default=1.0,
        description="Initial delay between retries"
    )
    max_delay_seconds: float = Field(
        default=30.0,
        description="Maximum delay between retries"
    )
    exponential_base: float = Field(
        default=2.0,
        description="Multiplier for exponential backoff"
    )
    jitter_factor: float = Field(
        default=0.1,
        description="Random jitter factor (0.1 = +/- 10%)"
    )
    retryable_categories: list[ErrorCategory] = Field(
        default_factory=lambda: [
            ErrorCategory.OVERLOADED,
            ErrorCategory.RATE_LIMITED,
            ErrorCategory.TIMEOUT,
            ErrorCategory.NETWORK,
            ErrorCategory.UNKNOWN,
        ],
        description="Error categories that are retried locally by an adapter"
    )


class ModelSettings(BaseModel):
    """Resolved per-call model parameters for one provider."""
    model: str
    max_tokens: int = 64000
    temperature: float = 0.2
    timeout_ms: int = Field(
        default=180000,
        description="Vendor request timeout in milliseconds"
    )

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


class CallContext(BaseModel):
    """Per-request inputs flowing through selection, calling and assembly.

    Frozen: retry_count and the provider sets only change by building a new
    context with the helper methods below.
    """
    model_config = ConfigDict(frozen=True)

    document_text: str
    target_task_count: int = Field(default=10, ge=1)
    system_prompt: str = ""
    retry_count: int = Field(default=0, ge=0)
    output_format: OutputFormat = OutputFormat.TEXT
    excluded_provider_types: frozenset[ProviderKind] = frozenset()

    # Priority inputs
    overloaded_provider_types: frozenset[ProviderKind] = frozenset()
    requires_research: bool = False
    preferred_provider: Optional[ProviderKind] = None

    document_path: Optional[str] = None

    # Prebuilt user message; when empty the PRD message is built from
    # document_text and target_task_count
    user_prompt: str = ""

    def with_retry_count(self, retry_count: int) -> "CallContext":
        return self.model_copy(update={"retry_count": retry_count})

    def excluding(self, kind: ProviderKind) -> "CallContext":
        """Return a copy with ``kind`` added to the excluded providers."""
        return self.model_copy(
            update={"excluded_provider_types": self.excluded_provider_types | {kind}}
        )

    def mark_overloaded(self, kind: ProviderKind) -> "CallContext":
        """Return a copy recording that ``kind`` reported overload."""
        return self.model_copy(
            update={"overloaded_provider_types": self.overloaded_provider_types | {kind}}
        )

    def is_overloaded(self, kind: ProviderKind) -> bool:
        return kind in self.overloaded_provider_types


class StreamAccumulator:
    """Append-only buffer for the text fragments of one streaming call."""

    def __init__(self) -> None:
        self._fragments: list[str] = []
        self._length = 0

    def append(self, fragment: str) -> None:
        if fragment:
            self._fragments.append(fragment)
            self._length += len(fragment)

    @property
    def fragment_count(self) -> int:
        return len(self._fragments)

    def __len__(self) -> int:
        return self._length

    @property
    def text(self) -> str:
        return "".join(self._fragments)


class ModelCallResult(BaseModel):
    """Text produced by one successful adapter call."""
    text: str
    retry_count: int = 0
    provider: ProviderKind
    model: str = ""


_NUMERIC_RE = re.compile(r"^\s*\d+\s*$")


def _coerce_id_list(value: Any) -> list[Any]:
    """Turn a dependency field into a list, converting numeric strings to ints."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    coerced = []
    for dep in value:
        if isinstance(dep, str) and _NUMERIC_RE.match(dep):
            dep = int(dep)
        coerced.append(dep)
    return coerced


class TaskRecord(BaseModel):
    """A single generated development task.

    Serialized with the camelCase ``testStrategy`` key used by tasks.json.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(..., gt=0, description="Unique within one batch")
    title: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[int] = Field(
        default_factory=list,
        description="IDs of lower-numbered tasks this depends on"
    )
    priority: TaskPriority = TaskPriority.MEDIUM
    details: str = ""
    test_strategy: str = Field(default="", alias="testStrategy")

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> list[Any]:
        return _coerce_id_list(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value in {p.value for p in TaskPriority}:
                return value
        return TaskPriority.MEDIUM

    @field_validator("details", "test_strategy", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class SubtaskRecord(BaseModel):
    """A generated implementation step of an existing task.

    IDs are local to the parent task; dependencies reference lower subtask
    IDs of the same parent.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(..., gt=0)
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[int] = Field(default_factory=list)
    details: str = ""
    test_strategy: str = Field(default="", alias="testStrategy")
    parent_task_id: Optional[int] = Field(default=None, alias="parentTaskId")

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> list[Any]:
        return _coerce_id_list(value)

    @field_validator("description", "details", "test_strategy", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the camelCase keys used in tasks.json."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TaskBatchMetadata(BaseModel):
    """Provenance attached to a generated batch."""
    model_config = ConfigDict(populate_by_name=True)

    project_name: str = Field(default="PRD Implementation", alias="projectName")
    total_tasks: int = Field(default=0, alias="totalTasks")
    source_file: Optional[str] = Field(default=None, alias="sourceFile")
    generated_at: str = Field(
        default_factory=lambda: datetime.now().date().isoformat(),
        alias="generatedAt"
    )
    provider: Optional[ProviderKind] = None
    model: Optional[str] = None


class TaskBatch(BaseModel):
    """Validated output of one successful generation. Never mutated."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tasks: list[TaskRecord] = Field(..., min_length=1)
    metadata: TaskBatchMetadata = Field(default_factory=TaskBatchMetadata)

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "TaskBatch":
        seen: set[int] = set()
        for task in self.tasks:
            if task.id in seen:
                raise ValueError(f"Duplicate task id {task.id}")
            seen.add(task.id)
        return self

    @property
    def task_count(self) -> int:
        return len(self.tasks)

    def to_json(self, indent: int = 2) -> str:
        """Serialize in the tasks.json shape (camelCase keys)."""
        return json.dumps(
            self.model_dump(mode="json", by_alias=True, exclude_none=True),
            indent=indent,
        )

    def save(self, path: Path | str) -> Path:
        """Write the batch to ``path``, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: Path | str) -> "TaskBatch":
        """Read a batch previously written with ``save``."""
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))

    def get_task(self, task_id: int) -> Optional[TaskRecord]:
        return next((t for t in self.tasks if t.id == task_id), None)


class GenerationConfig(BaseModel):
    """Configuration for task generation."""
    num_tasks: int = Field(default=10, ge=1, description="Tasks to request per PRD")

    llm_provider: ProviderKind = Field(
        default=ProviderKind.CLAUDE,
        description="Preferred provider (LLM_PROVIDER); others are fallbacks"
    )

    # Model settings
    anthropic_model: str = Field(default="claude-sonnet-4-20250514")
    deepseek_model: str = Field(default="deepseek-chat")
    perplexity_model: str = Field(default="sonar-pro")
    max_tokens: int = Field(default=64000, gt=0)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    timeout_ms: int = Field(
        default=180000,
        gt=0,
        description="Per-request vendor timeout (3 minutes)"
    )

    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Retry configuration for provider calls and assembly"
    )

    @classmethod
    def from_credentials(cls, credentials: Any, **overrides: Any) -> "GenerationConfig":
        """Build a config from a credential source (anything with ``get``).

        Environment values override defaults; explicit ``overrides`` win over
        both. Numbers that do not parse or are out of range for their field
        are ignored with a warning and the default is kept.
        """
        values: dict[str, Any] = {}

        provider = parse_provider_kind(credentials.get("LLM_PROVIDER"))
        if provider is not None:
            values["llm_provider"] = provider
        elif credentials.get("LLM_PROVIDER"):
            logger.warning("Unknown LLM_PROVIDER %r, using default",
                           credentials.get("LLM_PROVIDER"))

        for env_key, field_name in (
            ("ANTHROPIC_MODEL", "anthropic_model"),
            ("DEEPSEEK_MODEL", "deepseek_model"),
            ("PERPLEXITY_MODEL", "perplexity_model"),
        ):
            if credentials.get(env_key):
                values[field_name] = credentials.get(env_key)

        for env_key, field_name in (
            ("MAX_TOKENS", "max_tokens"),
            ("TEMPERATURE", "temperature"),
            ("REQUEST_TIMEOUT_MS", "timeout_ms"),
        ):
            raw = credentials.get(env_key)
            if not raw:
                continue
            # Checked per field against its bounds
            try:
                checked = cls.model_validate({field_name: raw.strip()})
            except ValidationError:
                logger.warning("Ignoring invalid %s=%r", env_key, raw)
                continue
            values[field_name] = getattr(checked, field_name)

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def model_for(self, kind: ProviderKind) -> str:
        return {
            ProviderKind.CLAUDE: self.anthropic_model,
            ProviderKind.DEEPSEEK: self.deepseek_model,
            ProviderKind.PERPLEXITY: self.perplexity_model,
        }[kind]

    def settings_for(self, kind: ProviderKind) -> ModelSettings:
        return ModelSettings(
            model=self.model_for(kind),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            timeout_ms=self.timeout_ms,
        )
