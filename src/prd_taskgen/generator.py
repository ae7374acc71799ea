"""Task generation from PRDs across multiple LLM providers.

Runs the pipeline select -> initialize -> call -> assemble and applies the
orchestration-level policy on top of the adapters' local retries:

- Incomplete or unparseable output re-runs the whole pipeline with an
  incremented retry count until the retry budget is spent.
- A provider that still fails after its local retries is excluded and the
  next-best provider is selected.
- Missing credentials and an exhausted registry are fatal.

The same pipeline serves PRD parsing, subtask expansion (optionally backed
by a research provider) and single-task creation.
"""

import asyncio
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .assembler import ResponseAssembler, RetryRequest
from .credentials import CredentialSource
from .errors import ExtractionError, NoProviderAvailableError, ProviderError
from .models import (
    CallContext,
    GenerationConfig,
    ModelCallResult,
    OutputFormat,
    ProviderKind,
    SubtaskRecord,
    TaskBatch,
    TaskPriority,
    TaskRecord,
)
from .prd_parser import ParsedPrd, PrdParser
from .prompts import (
    ADD_TASK_SYSTEM_PROMPT,
    RESEARCH_SYSTEM_PROMPT,
    build_add_task_user_message,
    build_research_context,
    build_research_query,
    build_subtask_system_prompt,
    build_subtask_user_message,
    build_system_prompt,
)
from .registry import ProviderRegistry, create_default_registry
from .reporting import Reporter, ensure_reporter
from .retry import calculate_retry_delay

T = TypeVar("T")


class TaskGenerator:
    """Generates task batches from PRD text using the provider registry."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        credentials: Optional[Mapping[str, str]] = None,
        config: Optional[GenerationConfig] = None,
        reporter: Optional[Reporter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the generator.

        Args:
            registry: Provider registry (default: Claude, DeepSeek, Perplexity).
            credentials: Credential source (default: process environment).
            config: Generation config (default: resolved from credentials).
            reporter: Log/progress sink.
            sleep: Awaitable used between orchestration retries.
        """
        self.credentials = credentials if credentials is not None else CredentialSource()
        self.config = config or GenerationConfig.from_credentials(self.credentials)
        self.registry = registry if registry is not None else create_default_registry(self.config)
        self.reporter = ensure_reporter(reporter, __name__)
        self._sleep = sleep

    def build_context(
        self,
        document_text: str,
        num_tasks: Optional[int] = None,
        document_path: Optional[str] = None,
        requires_research: bool = False,
        output_format: OutputFormat = OutputFormat.TEXT,
    ) -> CallContext:
        """Build the initial context for one generation request."""
        if num_tasks is None:
            num_tasks = self.config.num_tasks
        return CallContext(
            document_text=document_text,
            target_task_count=num_tasks,
            system_prompt=build_system_prompt(num_tasks),
            output_format=output_format,
            requires_research=requires_research,
            preferred_provider=self.config.llm_provider,
            document_path=document_path,
        )

    async def generate(
        self,
        document_text: str,
        num_tasks: Optional[int] = None,
        *,
        document_path: Optional[str] = None,
        requires_research: bool = False,
        output_format: OutputFormat = OutputFormat.TEXT,
    ) -> TaskBatch:
        """Generate a task batch for a PRD.

        Args:
            document_text: PRD content.
            num_tasks: Number of tasks to request (default: config.num_tasks).
            document_path: Source path recorded in the batch metadata.
            requires_research: Prefer a research-capable provider.
            output_format: ``text`` for the CLI, ``json`` for integrations.

        Returns:
            Validated TaskBatch.

        Raises:
            NoProviderAvailableError: No provider could be used.
            ProviderError: The last provider failed with a non-retryable error.
            ExtractionError / TaskValidationError: Output stayed unusable
                after all retries.
        """
        context = self.build_context(
            document_text,
            num_tasks,
            document_path=document_path,
            requires_research=requires_research,
            output_format=output_format,
        )
        return await self.run(context)

    async def run(self, context: CallContext) -> TaskBatch:
        """Drive the pipeline for a prepared context until it resolves."""
        assembler = ResponseAssembler(
            max_retries=self.config.retry.max_retries, reporter=self.reporter
        )
        return await self._run_pipeline(
            context,
            lambda result, ctx: assembler.process(
                result.text, ctx, provider=result.provider, model=result.model
            ),
        )

    async def _run_pipeline(
        self,
        context: CallContext,
        assemble: Callable[[ModelCallResult, CallContext], T | RetryRequest],
    ) -> T:
        """Call and assemble until ``assemble`` accepts or the budget is spent.

        Extraction failures count against the same retry budget as
        validation failures.
        """
        max_retries = self.config.retry.max_retries

        while True:
            result, context = await self.call_with_failover(context)

            try:
                outcome = assemble(result, context)
            except ExtractionError as e:
                if context.retry_count >= max_retries:
                    raise
                outcome = RetryRequest(retry_count=context.retry_count + 1, reason=str(e))

            if not isinstance(outcome, RetryRequest):
                return outcome

            delay = calculate_retry_delay(outcome.retry_count - 1, self.config.retry)
            self.reporter.warning(
                "Retrying generation, attempt %d/%d: %s",
                outcome.retry_count, max_retries, outcome.reason,
            )
            await self._sleep(delay)
            context = context.with_retry_count(outcome.retry_count)

    async def call_with_failover(
        self,
        context: CallContext,
    ) -> tuple[ModelCallResult, CallContext]:
        """Select a provider and call it, moving on when it keeps failing.

        A provider whose call still fails after its local retries is
        excluded for the rest of the request (and marked overloaded when
        that was the cause) and the next-best provider is selected.

        Returns:
            The call result and the context with any exclusions applied.

        Raises:
            ProviderError: The last provider failure, once none are left.
            NoProviderAvailableError: No provider could be initialized.
        """
        last_provider_error: Optional[ProviderError] = None

        while True:
            try:
                selected = await self.registry.select_best_model(
                    self.credentials, context, self.reporter
                )
            except NoProviderAvailableError:
                if last_provider_error is not None:
                    # Every provider was tried; report the last real failure
                    raise last_provider_error
                raise

            try:
                result = await selected.adapter.call_model(
                    selected.client, context, self.reporter
                )
            except ProviderError as e:
                last_provider_error = e
                self.reporter.warning(
                    "%s failed after %d attempt(s) (%s); trying another provider",
                    selected.kind.value, e.attempts, e.category.value,
                )
                context = context.excluding(selected.kind)
                if e.is_overload:
                    context = context.mark_overloaded(selected.kind)
                continue
            finally:
                await selected.adapter.close(selected.client)

            return result, context

    async def generate_from_prd(
        self,
        prd: ParsedPrd,
        num_tasks: Optional[int] = None,
        requires_research: bool = False,
        output_format: OutputFormat = OutputFormat.TEXT,
    ) -> TaskBatch:
        """Generate tasks for an already parsed PRD.

        The PRD title becomes the batch's project name unless the model
        supplied one.
        """
        batch = await self.generate(
            prd.get_truncated_content(),
            num_tasks,
            document_path=str(prd.file_path),
            requires_research=requires_research,
            output_format=output_format,
        )
        if prd.title and "project_name" not in batch.metadata.model_fields_set:
            metadata = batch.metadata.model_copy(update={"project_name": prd.title})
            batch = batch.model_copy(update={"metadata": metadata})
        return batch

    async def generate_from_file(
        self,
        prd_path: Path | str,
        num_tasks: Optional[int] = None,
        requires_research: bool = False,
    ) -> TaskBatch:
        """Parse a PRD file and generate tasks for it."""
        prd = PrdParser(prd_path).parse()
        return await self.generate_from_prd(prd, num_tasks, requires_research)

    # -------------------------------------------------------------------------
    # Subtasks and single tasks
    # -------------------------------------------------------------------------

    async def research(self, title: str, description: str) -> str:
        """Ask a research-capable provider about implementing a task.

        Perplexity is requested as the preferred provider; any other
        available provider answers when it cannot be used.

        Returns:
            The provider's findings as plain text.
        """
        self.reporter.info("Researching context for: %s", title)
        context = CallContext(
            document_text=description,
            target_task_count=1,
            system_prompt=RESEARCH_SYSTEM_PROMPT,
            user_prompt=build_research_query(title, description),
            requires_research=True,
            preferred_provider=ProviderKind.PERPLEXITY,
        )
        result, _ = await self.call_with_failover(context)
        self.reporter.info("Research completed with %s", result.provider.value)
        return result.text

    async def expand_task(
        self,
        task: TaskRecord,
        num_subtasks: int = 3,
        next_subtask_id: int = 1,
        additional_context: str = "",
        research: bool = False,
    ) -> list[SubtaskRecord]:
        """Break an existing task into subtasks.

        Args:
            task: Parent task.
            num_subtasks: Number of subtasks to request.
            next_subtask_id: ID for the first subtask (after existing ones).
            additional_context: Extra instructions for the model.
            research: Gather research findings first and feed them into the
                subtask prompt.

        Returns:
            Subtasks numbered from ``next_subtask_id``, each linked to the
            parent through ``parent_task_id``.
        """
        self.reporter.info(
            "Generating %d subtasks for task %d: %s", num_subtasks, task.id, task.title
        )

        extra = f"Additional context to consider: {additional_context}" if additional_context else ""
        if research:
            findings = await self.research(task.title, task.description)
            extra = build_research_context(findings, additional_context)

        context = CallContext(
            document_text=task.description,
            target_task_count=num_subtasks,
            system_prompt=build_subtask_system_prompt(num_subtasks, research_backed=research),
            user_prompt=build_subtask_user_message(
                task.id,
                task.title,
                task.description,
                task.details,
                num_subtasks,
                next_subtask_id,
                extra,
            ),
            preferred_provider=self.config.llm_provider,
        )
        assembler = ResponseAssembler(
            max_retries=self.config.retry.max_retries, reporter=self.reporter
        )
        return await self._run_pipeline(
            context,
            lambda result, ctx: assembler.process_subtasks(
                result.text, ctx, start_id=next_subtask_id, parent_task_id=task.id
            ),
        )

    async def generate_task(
        self,
        prompt: str,
        existing_tasks: Optional[Sequence[TaskRecord]] = None,
        dependencies: Optional[Sequence[int]] = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        requires_research: bool = False,
    ) -> TaskRecord:
        """Create one new task from a free-text description.

        The task gets the next free ID after ``existing_tasks``. Dependencies
        that do not name an existing task are dropped with a warning.

        Returns:
            The new pending TaskRecord.
        """
        existing = list(existing_tasks or [])
        known_ids = {t.id for t in existing}
        new_task_id = max(known_ids, default=0) + 1

        valid_dependencies: list[int] = []
        for dep in dependencies or []:
            if dep in known_ids and dep not in valid_dependencies:
                valid_dependencies.append(dep)
            else:
                self.reporter.warning("Dropping unknown dependency %r of new task", dep)

        self.reporter.info(
            "Adding new task #%d with prompt: %r, dependencies: %s, priority: %s",
            new_task_id, prompt, valid_dependencies, priority.value,
        )

        context = CallContext(
            document_text=prompt,
            target_task_count=1,
            system_prompt=ADD_TASK_SYSTEM_PROMPT,
            user_prompt=build_add_task_user_message(
                prompt, _summarize_tasks(existing, valid_dependencies), new_task_id
            ),
            requires_research=requires_research,
            preferred_provider=self.config.llm_provider,
        )
        assembler = ResponseAssembler(
            max_retries=self.config.retry.max_retries, reporter=self.reporter
        )
        return await self._run_pipeline(
            context,
            lambda result, ctx: assembler.process_task(
                result.text, ctx, new_task_id, valid_dependencies, priority
            ),
        )


# Tasks listed in the add-task prompt when no dependencies are given
CONTEXT_TASK_LIMIT = 5


def _summarize_tasks(tasks: list[TaskRecord], dependencies: list[int]) -> str:
    """Describe the tasks the new one builds on (or the latest ones)."""
    if dependencies:
        related = [t for t in tasks if t.id in dependencies]
        heading = "This task depends on the following tasks:"
    else:
        related = tasks[-CONTEXT_TASK_LIMIT:]
        heading = "For context, here are some of the existing tasks:"
    if not related:
        return ""
    lines = [f"- Task {t.id}: {t.title} - {t.description}" for t in related]
    return heading + "\n" + "\n".join(lines)
