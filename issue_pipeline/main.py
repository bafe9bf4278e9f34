"""CLI entry point for the issue pipeline."""

import asyncio
import json
import sys
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
import structlog

from issue_pipeline.agents.backends import create_backend
from issue_pipeline.agents.runner import AgentExecutionEngine
from issue_pipeline.agents.sandbox import ToolSandbox
from issue_pipeline.config.settings import PipelineSettings
from issue_pipeline.decomposition.manager import DecompositionManager
from issue_pipeline.engine.hooks import StageHooks
from issue_pipeline.engine.orchestrator import PipelineOrchestrator
from issue_pipeline.engine.task_store import TaskStore
from issue_pipeline.engine.watcher import IssueWatcher
from issue_pipeline.exceptions import ConfigurationError, PipelineError
from issue_pipeline.models.domain import Task, make_task_id
from issue_pipeline.providers.base import DeploymentProvider, KnowledgeStore
from issue_pipeline.providers.deployment import VercelDeploymentProvider
from issue_pipeline.providers.github_rest import GitHubRestProvider
from issue_pipeline.providers.knowledge import MarkdownKnowledgeStore
from issue_pipeline.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default="pipeline.yaml", help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=True, help="Log format")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, json_logs: bool) -> None:
    """issue-pipeline: run issues through the multi-stage agent pipeline."""
    configure_logging(log_level, json_output=json_logs)

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = PipelineSettings.from_yaml(str(config_path))
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


def _execute(coro: Coroutine[Any, Any, None], event: str) -> None:
    """Run a command coroutine with the CLI's error conventions."""
    try:
        asyncio.run(coro)
    except PipelineError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(event, exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


@asynccontextmanager
async def _open_orchestrator(settings: PipelineSettings) -> AsyncIterator[PipelineOrchestrator]:
    """Build the orchestrator with every configured collaborator, then clean up."""
    settings.require_git_credentials()
    settings.require_reasoning_credentials()

    assert settings.git_provider.api_token is not None
    git = GitHubRestProvider(
        token=settings.git_provider.api_token.get_secret_value(),
        owner=settings.repository.owner,
        repo=settings.repository.name,
        base_url=settings.git_provider.base_url,
    )
    backend = create_backend(settings.reasoning)
    engine = AgentExecutionEngine(
        backend,
        settings.reasoning,
        settings.agents_dir,
        sandbox=ToolSandbox(settings.workspace_dir),
    )
    store = TaskStore(settings.tasks_dir)

    knowledge: KnowledgeStore | None = None
    if settings.knowledge.enabled:
        knowledge = MarkdownKnowledgeStore(settings.knowledge.directory)

    deployer: DeploymentProvider | None = None
    if settings.deployment.enabled:
        assert settings.deployment.token is not None and settings.deployment.project_id
        deployer = VercelDeploymentProvider(
            token=settings.deployment.token.get_secret_value(),
            project_id=settings.deployment.project_id,
            base_url=settings.deployment.base_url,
            team_id=settings.deployment.team_id,
            timeout=settings.deployment.timeout,
            poll_interval=settings.deployment.poll_interval,
        )

    decomposition: DecompositionManager | None = None
    if settings.decomposition.enabled:
        decomposition = DecompositionManager(git, engine, settings.decomposition, settings.labels)

    hooks = StageHooks(settings, git, store, decomposition=decomposition, deployer=deployer, knowledge=knowledge)

    await git.connect()
    try:
        yield PipelineOrchestrator(
            settings,
            git,
            engine,
            store,
            hooks=hooks,
            knowledge=knowledge,
            decomposition=decomposition,
        )
    finally:
        await backend.close()
        if deployer is not None:
            await deployer.close()
        await git.disconnect()


def _print_task(task: Task) -> None:
    click.echo(f"Task:    {task.task_id}  (issue #{task.issue.number}: {task.issue.title})")
    click.echo(f"Status:  {task.status.value}")
    click.echo(f"Branch:  {task.branch_name}")
    if task.pr_number is not None:
        click.echo(f"PR:      #{task.pr_number}")
    click.echo(f"Stage:   {min(task.current_stage_index + 1, len(task.stages))}/{len(task.stages)}")
    for index, stage in enumerate(task.stages):
        marker = ">" if index == task.current_stage_index else " "
        click.echo(f"  {marker} {stage.stage_name:<20} {stage.status.value:<12} {stage.tokens_used:>7} tokens")
    if task.error:
        click.echo(f"Error:   {task.error}")
    for override in task.overrides:
        click.echo(f"Override by {override.actor} at stage {override.stage_index}: {override.reason}")


@cli.command()
@click.option("--issue", type=int, required=True, help="Issue number to start")
@click.option("--run/--no-run", "run_stages", default=True, help="Run stages until the pipeline halts")
@click.pass_context
def start(ctx: click.Context, issue: int, run_stages: bool) -> None:
    """Start the pipeline for an issue."""

    async def _start() -> None:
        async with _open_orchestrator(ctx.obj["settings"]) as orchestrator:
            task = await orchestrator.start_task(issue)
            if run_stages:
                task = await orchestrator.run_pipeline(task.task_id)
            _print_task(task)

    _execute(_start(), "start_error")


@cli.command()
@click.option("--task-id", required=True, help="Task to continue")
@click.option("--single", is_flag=True, help="Run only the next stage")
@click.pass_context
def run(ctx: click.Context, task_id: str, single: bool) -> None:
    """Resume a task from its current stage."""

    async def _run() -> None:
        async with _open_orchestrator(ctx.obj["settings"]) as orchestrator:
            if single:
                task = await orchestrator.run_next_stage(task_id)
            else:
                task = await orchestrator.run_pipeline(task_id)
            _print_task(task)

    _execute(_run(), "run_error")


@cli.command()
@click.option("--task-id", required=True, help="Task awaiting approval")
@click.option("--actor", default="cli", help="Who approves")
@click.pass_context
def approve(ctx: click.Context, task_id: str, actor: str) -> None:
    """Approve the last stage so the pipeline can continue."""

    async def _approve() -> None:
        async with _open_orchestrator(ctx.obj["settings"]) as orchestrator:
            task = await orchestrator.approve(task_id, actor=actor)
            click.echo(f"Approved {task.task_id}; status is now {task.status.value}")

    _execute(_approve(), "approve_error")


@cli.command("approve-closure")
@click.option("--task-id", required=True, help="Task awaiting closure approval")
@click.option("--actor", default="cli", help="Who approves")
@click.pass_context
def approve_closure(ctx: click.Context, task_id: str, actor: str) -> None:
    """Accept an early-termination recommendation and close the issue."""

    async def _approve_closure() -> None:
        async with _open_orchestrator(ctx.obj["settings"]) as orchestrator:
            task = await orchestrator.approve_closure(task_id, actor=actor)
            click.echo(f"Closed issue #{task.issue.number}; task {task.task_id} completed")

    _execute(_approve_closure(), "approve_closure_error")


@cli.command()
@click.option("--task-id", required=True, help="Halted task")
@click.option("--actor", required=True, help="Who overrides")
@click.option("--reason", required=True, help="Why the halt is overridden")
@click.pass_context
def override(ctx: click.Context, task_id: str, actor: str, reason: str) -> None:
    """Override a halt and let the pipeline continue."""

    async def _override() -> None:
        async with _open_orchestrator(ctx.obj["settings"]) as orchestrator:
            task = await orchestrator.override(task_id, actor=actor, reason=reason)
            click.echo(f"Override recorded for {task.task_id}; status is now {task.status.value}")

    _execute(_override(), "override_error")


@cli.command()
@click.option("--task-id", required=True, help="Task to show")
@click.option("--json", "as_json", is_flag=True, help="Print the raw task document")
@click.pass_context
def status(ctx: click.Context, task_id: str, as_json: bool) -> None:
    """Show a task's progress."""

    async def _status() -> None:
        store = TaskStore(ctx.obj["settings"].tasks_dir)
        if as_json:
            click.echo(json.dumps(await store.load_document(task_id), indent=2))
        else:
            _print_task(await store.load(task_id))

    _execute(_status(), "status_error")


@cli.command("list-tasks")
@click.pass_context
def list_tasks(ctx: click.Context) -> None:
    """List every persisted task."""

    async def _list() -> None:
        store = TaskStore(ctx.obj["settings"].tasks_dir)
        task_ids = await store.list_task_ids()
        if not task_ids:
            click.echo("No tasks found")
            return
        for task_id in task_ids:
            task = await store.load(task_id)
            click.echo(f"{task.task_id:<14} {task.status.value:<26} {task.issue.title}")

    _execute(_list(), "list_tasks_error")


@cli.command()
@click.option("--interval", type=int, default=None, help="Polling interval in seconds")
@click.option("--once", is_flag=True, help="Poll a single time and exit")
@click.pass_context
def watch(ctx: click.Context, interval: int | None, once: bool) -> None:
    """Watch for new issues and run the pipeline for each."""

    async def _watch() -> None:
        async with _open_orchestrator(ctx.obj["settings"]) as orchestrator:
            watcher = IssueWatcher(orchestrator)
            if once:
                started = await watcher.poll_once()
                completed = await watcher.check_decomposed()
                click.echo(f"Started {len(started)} task(s); completed {len(completed)} decomposed parent(s)")
            else:
                await watcher.run(interval)

    _execute(_watch(), "watch_error")


@cli.command("check-parent")
@click.option("--issue", type=int, required=True, help="Decomposed parent issue number")
@click.pass_context
def check_parent(ctx: click.Context, issue: int) -> None:
    """Close a decomposed parent once all sub-issues are completed."""

    async def _check() -> None:
        async with _open_orchestrator(ctx.obj["settings"]) as orchestrator:
            task = await orchestrator.check_parent(make_task_id(issue))
            click.echo(f"Parent #{issue}: {task.status.value}")

    _execute(_check(), "check_parent_error")


if __name__ == "__main__":
    cli()
