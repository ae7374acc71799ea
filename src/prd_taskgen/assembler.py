"""Extraction and validation of task lists from model output.

The assembler turns the raw text accumulated from a streaming call into a
TaskBatch. Models often wrap the JSON in prose or markdown fences, so
extraction tries the whole text first and then every fenced block or
brace-delimited candidate in textual order.

States: PARSING -> VALIDATING -> ACCEPTED | RETRY_REQUESTED | REJECTED.
Use one assembler per request; it records the state of its last run.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from pydantic import ValidationError

from .errors import ExtractionError, TaskValidationError
from .models import (
    CallContext,
    ProviderKind,
    SubtaskRecord,
    TaskBatch,
    TaskBatchMetadata,
    TaskPriority,
    TaskRecord,
    TaskStatus,
)
from .reporting import Reporter, ensure_reporter

# Minimum share of the requested task count a response must contain
MIN_TASK_RATIO = (4, 5)

DEFAULT_MAX_RETRIES = 3

REQUIRED_TASK_FIELDS = ("id", "title", "description")

# Metadata the model may supply; totals, provider and model are always ours
MODEL_METADATA_KEYS = ("projectName", "generatedAt", "sourceFile")

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?([\s\S]*?)```")


class AssemblerState(str, Enum):
    PARSING = "parsing"
    VALIDATING = "validating"
    ACCEPTED = "accepted"
    RETRY_REQUESTED = "retry_requested"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RetryRequest:
    """Signal to re-run selection, call and assembly with a higher retry count."""
    retry_count: int
    reason: str = ""
    should_retry: bool = True


def _has_tasks(parsed: Any) -> bool:
    return isinstance(parsed, dict) and isinstance(parsed.get("tasks"), list)


def _subtask_list(parsed: Any) -> Optional[list]:
    if isinstance(parsed, dict):
        parsed = parsed.get("subtasks")
    if isinstance(parsed, list) and parsed and all(isinstance(item, dict) for item in parsed):
        return parsed
    return None


def _is_task_object(parsed: Any) -> bool:
    return isinstance(parsed, dict) and "title" in parsed and "tasks" not in parsed


def _iter_candidates(text: str, openers: str = "{") -> Iterator[tuple[int, str, bool]]:
    """Yield (position, source, is_fence) for every JSON candidate in order.

    Fenced blocks yield their inner text; every opening character yields the
    remainder of the text from there, to be decoded with ``raw_decode``.
    """
    fences = [(m.start(), m.group(1).strip(), True) for m in _FENCE_RE.finditer(text)]
    braces = [(i, "", False) for i, ch in enumerate(text) if ch in openers]
    yield from sorted(fences + braces, key=lambda item: (item[0], not item[2]))


def _find_json(
    raw_text: Optional[str],
    accept: Callable[[Any], bool],
    openers: str = "{",
) -> Any:
    """First JSON value in ``raw_text`` that ``accept`` approves, else None.

    The whole text is tried before the fenced and bracketed candidates.
    """
    if not raw_text:
        return None

    try:
        parsed = json.loads(raw_text.strip())
    except ValueError:
        parsed = None
    if accept(parsed):
        return parsed

    decoder = json.JSONDecoder()
    for position, source, is_fence in _iter_candidates(raw_text, openers):
        try:
            if is_fence:
                parsed = json.loads(source)
            else:
                parsed, _ = decoder.raw_decode(raw_text, position)
        except ValueError:
            continue
        if accept(parsed):
            return parsed

    return None


def extract_payload(raw_text: Optional[str]) -> Optional[dict]:
    """Find the first JSON object with a ``tasks`` list in ``raw_text``.

    Args:
        raw_text: Accumulated model output.

    Returns:
        The parsed object, or None if no candidate parses.
    """
    return _find_json(raw_text, _has_tasks)


def extract_subtasks(raw_text: Optional[str]) -> Optional[list]:
    """Find the first non-empty JSON array of subtask objects in ``raw_text``.

    A ``{"subtasks": [...]}`` wrapper is accepted as well.
    """
    return _subtask_list(
        _find_json(raw_text, lambda parsed: _subtask_list(parsed) is not None, "[{")
    )


def extract_task(raw_text: Optional[str]) -> Optional[dict]:
    """Find the first JSON object describing a single task (has a ``title``)."""
    return _find_json(raw_text, _is_task_object)


def validate(payload: Any, expected_count: int) -> bool:
    """Check that a payload holds enough structurally complete tasks.

    Rejects when fewer than 80% of ``expected_count`` tasks are present
    (exactly 80% passes) or when any task lacks id, title or description.
    """
    if not _has_tasks(payload):
        return False

    tasks = payload["tasks"]
    numerator, denominator = MIN_TASK_RATIO
    if len(tasks) * denominator < expected_count * numerator:
        return False

    for task in tasks:
        if not isinstance(task, dict):
            return False
        if not all(task.get(field) for field in REQUIRED_TASK_FIELDS):
            return False

    return True


def _as_int(value: Any) -> Optional[int]:
    """Integer value of an ID-like field, or None if it is not one.

    Accepts ints, integral floats (``1.0``) and ASCII digit strings.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        value = value.strip()
        if value.isascii() and value.isdecimal():
            return int(value)
    return None


class ResponseAssembler:
    """Turns raw model text into a validated TaskBatch or a retry signal."""

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        reporter: Optional[Reporter] = None,
    ):
        self.max_retries = max_retries
        self.reporter = ensure_reporter(reporter, __name__)
        self.state = AssemblerState.PARSING

    extract_payload = staticmethod(extract_payload)
    validate = staticmethod(validate)

    def process(
        self,
        raw_text: str,
        context: CallContext,
        provider: Optional[ProviderKind] = None,
        model: Optional[str] = None,
    ) -> TaskBatch | RetryRequest:
        """Extract, validate and normalize the tasks in ``raw_text``.

        Args:
            raw_text: Accumulated model output.
            context: Request context (target count, retry count, source path).
            provider: Provider that produced the text, for batch metadata.
            model: Model name, for batch metadata.

        Returns:
            TaskBatch when accepted, RetryRequest when validation failed and
            the retry budget allows another run.

        Raises:
            ExtractionError: If no task JSON can be found.
            TaskValidationError: If validation fails with no retries left.
        """
        self.state = AssemblerState.PARSING
        self.reporter.info("Parsing model response...")

        payload = self.extract_payload(raw_text)
        if payload is None:
            self.state = AssemblerState.REJECTED
            self.reporter.error("Could not extract task JSON from the model response")
            raise ExtractionError(
                "Failed to extract task JSON from the model response",
                raw_response=raw_text,
            )

        self.state = AssemblerState.VALIDATING
        reason = ""
        batch: Optional[TaskBatch] = None

        if self.validate(payload, context.target_task_count):
            try:
                batch = self._build_batch(payload, context, provider, model)
            except ValidationError as e:
                reason = f"task records are malformed: {e.error_count()} error(s)"
        else:
            count = len(payload["tasks"])
            reason = (f"got {count} task(s) for {context.target_task_count} requested "
                      f"or tasks are missing id/title/description")

        if batch is not None:
            self.state = AssemblerState.ACCEPTED
            if batch.task_count != context.target_task_count:
                self.reporter.warning(
                    "Expected %d tasks, but received %d",
                    context.target_task_count, batch.task_count,
                )
            self.reporter.info("Parsed %d tasks", batch.task_count)
            return batch

        return self._retry_or_reject(
            reason, raw_text, context, "Task generation failed to produce a valid task list"
        )

    def _retry_or_reject(
        self,
        reason: str,
        raw_text: str,
        context: CallContext,
        failure: str,
    ) -> RetryRequest:
        """Request another run while the budget lasts, else raise."""
        self.reporter.error("Validation failed: %s", reason)

        if context.retry_count < self.max_retries:
            self.state = AssemblerState.RETRY_REQUESTED
            next_count = context.retry_count + 1
            self.reporter.warning(
                "Will retry generation (%d/%d)...", next_count, self.max_retries
            )
            return RetryRequest(retry_count=next_count, reason=reason)

        self.state = AssemblerState.REJECTED
        raise TaskValidationError(f"{failure}: {reason}", raw_response=raw_text)

    def process_subtasks(
        self,
        raw_text: str,
        context: CallContext,
        start_id: int = 1,
        parent_task_id: Optional[int] = None,
    ) -> list[SubtaskRecord] | RetryRequest:
        """Extract and normalize the subtasks of one parent task.

        Subtask IDs are renumbered from ``start_id`` in response order and
        dependencies are kept only when they point at a lower subtask ID.
        A count different from ``context.target_task_count`` is only logged.

        Raises:
            ExtractionError: If no JSON array of subtasks can be found.
            TaskValidationError: If the subtasks stay malformed with no
                retries left.
        """
        self.state = AssemblerState.PARSING
        items = extract_subtasks(raw_text)
        if items is None:
            self.state = AssemblerState.REJECTED
            self.reporter.error("Could not locate a JSON array of subtasks in the response")
            raise ExtractionError(
                "Could not locate valid JSON array in the response",
                raw_response=raw_text,
            )

        self.state = AssemblerState.VALIDATING
        if len(items) != context.target_task_count:
            self.reporter.warning(
                "Expected %d subtasks, but parsed %d", context.target_task_count, len(items)
            )

        try:
            subtasks = [
                SubtaskRecord.model_validate(
                    self._normalize_subtask(item, start_id + index, parent_task_id)
                )
                for index, item in enumerate(items)
            ]
        except ValidationError as e:
            reason = f"subtasks are malformed: {e.error_count()} error(s)"
            return self._retry_or_reject(
                reason, raw_text, context, "Subtask generation failed"
            )

        self.state = AssemblerState.ACCEPTED
        self.reporter.info("Parsed %d subtasks", len(subtasks))
        return subtasks

    def _normalize_subtask(
        self,
        raw: dict,
        subtask_id: int,
        parent_task_id: Optional[int],
    ) -> dict:
        subtask = dict(raw)
        if _as_int(subtask.get("id")) != subtask_id:
            self.reporter.warning(
                "Correcting subtask ID from %s to %d", subtask.get("id", "undefined"), subtask_id
            )
        subtask["id"] = subtask_id

        normalized = self.normalize_task(subtask)
        if parent_task_id is not None:
            normalized["parentTaskId"] = parent_task_id
        return normalized

    def process_task(
        self,
        raw_text: str,
        context: CallContext,
        task_id: int,
        dependencies: Optional[list[int]] = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
    ) -> TaskRecord | RetryRequest:
        """Build one new task from a single-task response.

        The model only writes the text fields; ID, dependencies and
        priority come from the caller and status is always pending.

        Raises:
            ExtractionError: If no JSON task object can be found.
            TaskValidationError: If title or description stay missing with
                no retries left.
        """
        self.state = AssemblerState.PARSING
        data = extract_task(raw_text)
        if data is None:
            self.state = AssemblerState.REJECTED
            self.reporter.error("Could not locate a JSON task object in the response")
            raise ExtractionError(
                "Could not locate valid JSON object in the response",
                raw_response=raw_text,
            )

        self.state = AssemblerState.VALIDATING
        if not (data.get("title") and data.get("description")):
            return self._retry_or_reject(
                "Missing required fields in the generated task (title or description)",
                raw_text,
                context,
                "Task creation failed",
            )

        try:
            task = TaskRecord(
                id=task_id,
                title=data["title"],
                description=data["description"],
                details=data.get("details"),
                testStrategy=data.get("testStrategy", data.get("test_strategy")),
                dependencies=list(dependencies or []),
                priority=priority,
                status=TaskStatus.PENDING,
            )
        except ValidationError as e:
            return self._retry_or_reject(
                f"task is malformed: {e.error_count()} error(s)",
                raw_text,
                context,
                "Task creation failed",
            )

        self.state = AssemblerState.ACCEPTED
        self.reporter.info("Parsed new task #%d: %s", task.id, task.title)
        return task

    def normalize_task(self, raw: dict) -> dict:
        """Normalize one raw task dict before model validation.

        Dependencies become ints that reference lower task IDs (anything else
        is dropped with a warning), and status is reset to pending.
        """
        task = dict(raw)
        if "test_strategy" in task and "testStrategy" not in task:
            task["testStrategy"] = task.pop("test_strategy")

        task_id = _as_int(task.get("id"))
        if task_id is not None:
            task["id"] = task_id

        dependencies = task.get("dependencies")
        if dependencies is None:
            dependencies = []
        elif not isinstance(dependencies, (list, tuple)):
            dependencies = [dependencies]

        normalized: list[int] = []
        for dep in dependencies:
            dep_id = _as_int(dep)
            # Without a usable task ID the lower-ID rule cannot be checked
            if task_id is None or dep_id is None or dep_id <= 0 or dep_id >= task_id:
                self.reporter.warning(
                    "Dropping invalid dependency %r of task %r", dep, task.get("id")
                )
                continue
            if dep_id not in normalized:
                normalized.append(dep_id)

        task["dependencies"] = normalized
        task["status"] = TaskStatus.PENDING.value
        return task

    def _build_batch(
        self,
        payload: dict,
        context: CallContext,
        provider: Optional[ProviderKind],
        model: Optional[str],
    ) -> TaskBatch:
        tasks = [self.normalize_task(task) for task in payload["tasks"]]

        metadata = self._model_metadata(payload.get("metadata"))
        metadata["totalTasks"] = len(tasks)
        if context.document_path and not metadata.get("sourceFile"):
            metadata["sourceFile"] = context.document_path
        if provider is not None:
            metadata["provider"] = provider
        if model:
            metadata["model"] = model

        return TaskBatch(
            tasks=tasks,
            metadata=TaskBatchMetadata.model_validate(metadata),
        )

    def _model_metadata(self, raw: Any) -> dict[str, Any]:
        """Text metadata fields supplied by the model that are safe to keep.

        Anything else the model put under ``metadata`` is ignored so it can
        never cause an otherwise valid task list to be rejected.
        """
        if not isinstance(raw, dict):
            return {}

        kept: dict[str, Any] = {}
        for key, value in raw.items():
            if key in MODEL_METADATA_KEYS and isinstance(value, str) and value.strip():
                kept[key] = value.strip()
            elif key in MODEL_METADATA_KEYS:
                self.reporter.warning("Ignoring invalid metadata %s=%r", key, value)
        return kept
