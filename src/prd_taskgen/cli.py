"""CLI interface for PRD task generation."""

import asyncio
import json
import logging
import sys
from contextlib import nullcontext
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .credentials import CredentialSource
from .errors import ExtractionError, TaskGenerationError, TaskValidationError
from .generator import TaskGenerator
from .models import (
    GenerationConfig,
    OutputFormat,
    TaskBatch,
    TaskPriority,
    parse_provider_kind,
)
from .prd_parser import PrdParser
from .registry import create_default_registry

console = Console()

# Windows-compatible symbols (cp1252 doesn't support Unicode checkmarks)
if sys.platform == "win32":
    SYM_OK = "[OK]"
    SYM_FAIL = "[X]"
else:
    SYM_OK = "✓"
    SYM_FAIL = "✗"


def _setup_logging(verbose: bool, quiet: bool) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load_config(
    config_file: Optional[str],
    credentials: CredentialSource,
    **overrides,
) -> GenerationConfig:
    """Resolve the generation config from a JSON file or the environment."""
    if config_file:
        config = GenerationConfig.model_validate_json(Path(config_file).read_text())
        updates = {k: v for k, v in overrides.items() if v is not None}
        return config.model_copy(update=updates) if updates else config
    return GenerationConfig.from_credentials(credentials, **overrides)


@click.group()
@click.version_option(package_name="prd-taskgen")
def main():
    """PRD task generator - turn product requirements into development tasks."""
    load_dotenv()


@main.command('parse-prd')
@click.argument('prd_file', type=click.Path(exists=True))
@click.option('--num-tasks', '-n', type=int, help='Number of tasks to generate (default: 10)')
@click.option('--output', '-o', default='tasks.json', help='Output file (default: tasks.json)')
@click.option('--provider', type=click.Choice(['claude', 'deepseek', 'perplexity']),
              help='Preferred provider (default: LLM_PROVIDER or claude)')
@click.option('--research', is_flag=True, help='Prefer a research-capable provider')
@click.option('--config', 'config_file', type=click.Path(exists=True),
              help='JSON generation config file')
@click.option('--dry-run', is_flag=True, help='Preview without saving')
@click.option('--force', '-f', is_flag=True, help='Overwrite the output file without asking')
@click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text',
              help='Output format: text (tables) or json (batch on stdout)')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging and raw response on error')
@click.option('--quiet', '-q', is_flag=True, help='Only log warnings and errors')
def parse_prd(
    prd_file: str,
    num_tasks: Optional[int],
    output: str,
    provider: Optional[str],
    research: bool,
    config_file: Optional[str],
    dry_run: bool,
    force: bool,
    output_format: str,
    verbose: bool,
    quiet: bool,
):
    """Generate development tasks from a PRD file.

    \b
    Examples:
        prd-taskgen parse-prd ./prd.md
        prd-taskgen parse-prd ./prd.txt --num-tasks 15 -o tasks/tasks.json
        prd-taskgen parse-prd ./prd.md --provider deepseek --dry-run
        prd-taskgen parse-prd ./prd.md --format json > tasks.json

    Supported file types: .txt, .md, .markdown, .prd
    """
    _setup_logging(verbose, quiet or output_format == 'json')
    prd_path = Path(prd_file).resolve()
    output_path = Path(output)
    as_json = output_format == 'json'

    is_valid, error = PrdParser.validate_path(prd_path)
    if not is_valid:
        console.print(f"[red]Invalid PRD file:[/red] {error}")
        sys.exit(1)

    credentials = CredentialSource()
    try:
        config = _load_config(
            config_file,
            credentials,
            num_tasks=num_tasks,
            llm_provider=parse_provider_kind(provider),
        )
    except (ValidationError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)

    if not as_json:
        console.print("\n[bold]Generating Tasks[/bold]")
        console.print(f"  PRD: {prd_path.name}")
        console.print(f"  Tasks: {config.num_tasks}")
        console.print(f"  Preferred provider: {config.llm_provider.value}")
        if research:
            console.print("  Research mode: on")
        if dry_run:
            console.print("  [yellow]DRY RUN - no files will be saved[/yellow]")
        console.print("")

    if not dry_run and not as_json and output_path.exists() and not force:
        if not click.confirm(f"{output} already exists. Overwrite?"):
            console.print("[yellow]Cancelled[/yellow]")
            return

    generator = TaskGenerator(
        registry=create_default_registry(config),
        credentials=credentials,
        config=config,
    )

    status = nullcontext() if as_json else console.status("[bold blue]Generating tasks from PRD...")
    with status:
        try:
            prd = PrdParser(prd_path).parse()
            batch = asyncio.run(generator.generate_from_prd(
                prd,
                config.num_tasks,
                requires_research=research,
                output_format=OutputFormat(output_format),
            ))
        except (ExtractionError, TaskValidationError) as e:
            console.print(f"[red]Generation failed:[/red] {e}")
            if verbose and e.raw_response:
                console.print("\n[yellow]Raw model response:[/yellow]")
                console.print(e.raw_response, markup=False)
            elif e.raw_response:
                console.print("[dim]Use --verbose to see the raw model response[/dim]")
            sys.exit(1)
        except TaskGenerationError as e:
            console.print(f"[red]Generation failed:[/red] {e}")
            sys.exit(1)
        except ValueError as e:
            console.print(f"[red]Invalid PRD file:[/red] {e}")
            sys.exit(1)

    if as_json:
        click.echo(batch.to_json())
        if not dry_run:
            batch.save(output_path)
        return

    console.print(f"[green]{SYM_OK}[/green] Generated {batch.task_count} tasks "
                  f"with {batch.metadata.provider.value if batch.metadata.provider else 'unknown'}"
                  f" ({batch.metadata.model or 'default model'})")
    console.print("")

    table = Table(title="Generated Tasks")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Title")
    table.add_column("Priority")
    table.add_column("Dependencies")

    for task in batch.tasks[:20]:  # Show first 20
        deps = ", ".join(str(d) for d in task.dependencies) if task.dependencies else "-"
        table.add_row(
            str(task.id),
            task.title[:50] + "..." if len(task.title) > 50 else task.title,
            task.priority.value,
            deps[:20] + "..." if len(deps) > 20 else deps,
        )

    if batch.task_count > 20:
        table.add_row("...", f"[dim]and {batch.task_count - 20} more[/dim]", "", "")

    console.print(table)

    if dry_run:
        console.print("\n[yellow]Dry run complete - no files saved[/yellow]")
        return

    saved = batch.save(output_path)
    console.print(f"\n[green]{SYM_OK}[/green] Saved {batch.task_count} tasks to {saved}")


def _load_batch(tasks_file: str) -> TaskBatch:
    try:
        return TaskBatch.load(tasks_file)
    except (OSError, ValidationError, ValueError) as e:
        console.print(f"[red]Cannot read tasks file:[/red] {e}")
        sys.exit(1)


def _make_generator(provider: Optional[str]) -> TaskGenerator:
    credentials = CredentialSource()
    config = GenerationConfig.from_credentials(
        credentials, llm_provider=parse_provider_kind(provider)
    )
    return TaskGenerator(
        registry=create_default_registry(config),
        credentials=credentials,
        config=config,
    )


@main.command('expand-task')
@click.option('--id', 'task_id', type=int, required=True, help='ID of the task to expand')
@click.option('--file', '-f', 'tasks_file', default='tasks.json', type=click.Path(exists=True),
              help='Tasks file (default: tasks.json)')
@click.option('--num', '-n', 'num_subtasks', type=click.IntRange(min=1), default=3,
              help='Number of subtasks (default: 3)')
@click.option('--next-id', type=click.IntRange(min=1), default=1,
              help='ID of the first new subtask (default: 1)')
@click.option('--context', 'additional_context', default='', help='Extra context for the model')
@click.option('--provider', type=click.Choice(['claude', 'deepseek', 'perplexity']),
              help='Preferred provider (default: LLM_PROVIDER or claude)')
@click.option('--research', is_flag=True, help='Research best practices before expanding')
@click.option('--json', 'as_json', is_flag=True, help='Output subtasks as JSON')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
def expand_task(
    task_id: int,
    tasks_file: str,
    num_subtasks: int,
    next_id: int,
    additional_context: str,
    provider: Optional[str],
    research: bool,
    as_json: bool,
    verbose: bool,
):
    """Break one task from a tasks file into subtasks.

    \b
    Examples:
        prd-taskgen expand-task --id 3
        prd-taskgen expand-task --id 3 --num 5 --research --json
    """
    _setup_logging(verbose, as_json)
    batch = _load_batch(tasks_file)
    task = batch.get_task(task_id)
    if task is None:
        console.print(f"[red]Task {task_id} not found in {tasks_file}[/red]")
        sys.exit(1)

    generator = _make_generator(provider)
    status = nullcontext() if as_json else console.status(
        f"[bold blue]Generating subtasks for task {task_id}..."
    )
    with status:
        try:
            subtasks = asyncio.run(generator.expand_task(
                task,
                num_subtasks,
                next_subtask_id=next_id,
                additional_context=additional_context,
                research=research,
            ))
        except TaskGenerationError as e:
            console.print(f"[red]Subtask generation failed:[/red] {e}")
            sys.exit(1)

    if as_json:
        click.echo(json.dumps([s.to_dict() for s in subtasks], indent=2))
        return

    table = Table(title=f"Subtasks for task {task.id}: {task.title}")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Title")
    table.add_column("Dependencies")
    for subtask in subtasks:
        deps = ", ".join(f"{task.id}.{d}" for d in subtask.dependencies) or "-"
        table.add_row(f"{task.id}.{subtask.id}", subtask.title, deps)
    console.print(table)


@main.command('add-task')
@click.option('--prompt', '-p', required=True, help='Description of the task to create')
@click.option('--file', '-f', 'tasks_file', default='tasks.json', type=click.Path(exists=True),
              help='Tasks file (default: tasks.json)')
@click.option('--dependencies', '-d', default='', help='Comma-separated IDs the task depends on')
@click.option('--priority', type=click.Choice(['high', 'medium', 'low']), default='medium',
              help='Task priority (default: medium)')
@click.option('--provider', type=click.Choice(['claude', 'deepseek', 'perplexity']),
              help='Preferred provider (default: LLM_PROVIDER or claude)')
@click.option('--research', is_flag=True, help='Prefer a research-capable provider')
@click.option('--json', 'as_json', is_flag=True, help='Output the task as JSON')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
def add_task(
    prompt: str,
    tasks_file: str,
    dependencies: str,
    priority: str,
    provider: Optional[str],
    research: bool,
    as_json: bool,
    verbose: bool,
):
    """Draft a new task from a description, numbered after the existing ones.

    \b
    Examples:
        prd-taskgen add-task -p "Add password reset by email" -d 2,3
    """
    _setup_logging(verbose, as_json)
    try:
        dependency_ids = [int(d) for d in dependencies.split(',') if d.strip()]
    except ValueError:
        console.print(f"[red]Invalid dependencies:[/red] {dependencies}")
        sys.exit(1)

    batch = _load_batch(tasks_file)
    generator = _make_generator(provider)
    status = nullcontext() if as_json else console.status("[bold blue]Creating task...")
    with status:
        try:
            task = asyncio.run(generator.generate_task(
                prompt,
                existing_tasks=batch.tasks,
                dependencies=dependency_ids,
                priority=TaskPriority(priority),
                requires_research=research,
            ))
        except TaskGenerationError as e:
            console.print(f"[red]Task creation failed:[/red] {e}")
            sys.exit(1)

    if as_json:
        click.echo(json.dumps(task.model_dump(mode="json", by_alias=True), indent=2))
        return

    console.print(f"[green]{SYM_OK}[/green] Drafted task #{task.id}: {task.title}")
    console.print(f"  {task.description}")
    if task.dependencies:
        console.print(f"  Depends on: {', '.join(str(d) for d in task.dependencies)}")
    console.print(f"  Priority: {task.priority.value}")


@main.command()
@click.option('--provider', type=click.Choice(['claude', 'deepseek', 'perplexity']),
              help='Preferred provider (default: LLM_PROVIDER or claude)')
@click.option('--research', is_flag=True, help='Rank as for a research request')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
def providers(provider: Optional[str], research: bool, as_json: bool):
    """Show configured providers, their availability and priority."""
    credentials = CredentialSource()
    config = GenerationConfig.from_credentials(
        credentials, llm_provider=parse_provider_kind(provider)
    )
    generator = TaskGenerator(credentials=credentials, config=config)
    context = generator.build_context("", requires_research=research)
    rows = generator.registry.describe(credentials, context)

    if as_json:
        click.echo(json.dumps([
            {**row, "kind": row["kind"].value, "model": config.model_for(row["kind"])}
            for row in rows
        ], indent=2))
        return

    table = Table(title="LLM Providers")
    table.add_column("Provider", style="cyan")
    table.add_column("Model")
    table.add_column("API key")
    table.add_column("Available")
    table.add_column("Priority", justify="right")
    table.add_column("Selected")

    for row in rows:
        available = f"[green]{SYM_OK}[/green]" if row["available"] else f"[red]{SYM_FAIL}[/red]"
        table.add_row(
            row["kind"].value,
            config.model_for(row["kind"]),
            row["api_key_env"],
            available,
            str(row["priority"]),
            f"[bold green]{SYM_OK}[/bold green]" if row["selected"] else "",
        )

    console.print(table)

    if not any(row["available"] for row in rows):
        console.print("\n[yellow]No provider is configured.[/yellow] "
                      "Set ANTHROPIC_API_KEY, DEEPSEEK_API_KEY or PERPLEXITY_API_KEY.")


if __name__ == '__main__':
    main()
