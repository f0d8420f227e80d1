"""Command line interface for tracking governance workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import typer

from govflow import StartWorkflowOptions, WorkflowTracker, get_repository, load_config
from govflow.config import GovflowConfig
from govflow.contracts import (
    ExecutionMessage,
    Started,
    StepProgress,
    StepStatusChanged,
    WorkflowEnded,
)
from govflow.models import WorkflowExecution
from govflow.persistence import MessageLogRepository
from govflow.summary import summarize

app = typer.Typer(help="CLI for governance workflow executions")

# Command groups
workflow_app = typer.Typer(help="Commands for running and following workflows")
history_app = typer.Typer(help="Commands for inspecting recorded executions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(history_app, name="history")

Opener = Callable[[WorkflowTracker, StartWorkflowOptions], Awaitable[bool]]


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
) -> None:
    """Govflow CLI entry point."""
    settings = load_config(str(config) if config else None)
    level = (log_level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


def _settings(ctx: typer.Context) -> GovflowConfig:
    return ctx.obj if isinstance(ctx.obj, GovflowConfig) else load_config()


def _repository(config: GovflowConfig) -> MessageLogRepository:
    if config.database_url:
        return get_repository(config.database_url)
    return get_repository()


def _describe(message: ExecutionMessage) -> Optional[str]:
    prefix = f"[{message.task_id}]"
    if isinstance(message, Started):
        return f"{prefix} started"
    if isinstance(message, StepProgress):
        line = f"{prefix} {message.step_id}: {message.progress or 0}%"
        if message.total_records:
            line += f" ({message.processed_records or 0}/{message.total_records})"
        return line
    if isinstance(message, StepStatusChanged):
        line = f"{prefix} {message.step_id}: {message.status.value}"
        return f"{line} - {message.error}" if message.error else line
    if isinstance(message, WorkflowEnded):
        line = f"{prefix} finished: {message.outcome.value}"
        return f"{line} - {message.error}" if message.error else line
    return None


def _echo_execution(execution: WorkflowExecution) -> None:
    summary = summarize(execution)
    headline = f"Workflow {summary.task_id}: {summary.status.value} ({summary.progress}%)"
    if summary.awaiting_confirmation:
        headline += " - awaiting confirmation"
    typer.echo(headline)
    typer.echo(
        f"Records: {summary.processed_records}/{summary.total_records}"
        f"  Duration: {summary.duration}"
    )
    for step in execution.steps:
        marker = "" if step.enabled else " [disabled]"
        line = f"- {step.title}: {step.status.value} {step.progress}%{marker}"
        if step.error:
            line += f" - {step.error}"
        typer.echo(line)
    if summary.error:
        typer.secho(f"Error: {summary.error}", fg=typer.colors.RED)


async def _follow(
    config: GovflowConfig, opener: Opener, payload: Optional[Dict[str, Any]] = None
) -> bool:
    failed = False

    def on_success(task_id: str) -> None:
        typer.echo(f"Workflow started: {task_id}")

    def on_error(message: str) -> None:
        nonlocal failed
        failed = True
        typer.secho(f"Error: {message}", fg=typer.colors.RED)

    def on_message(message: ExecutionMessage) -> None:
        line = _describe(message)
        if line:
            typer.echo(line)

    options = StartWorkflowOptions(
        payload=payload, on_success=on_success, on_error=on_error, on_message=on_message
    )
    async with WorkflowTracker(config, repository=_repository(config)) as tracker:
        if not await opener(tracker, options):
            typer.secho("Could not open workflow stream", fg=typer.colors.RED)
            return False
        await tracker.wait_closed()
        for execution in tracker.store.list_executions():
            summary = summarize(execution)
            typer.echo(f"{summary.task_id}\t{summary.status.value}\t{summary.progress}%")
    return not failed


def _run(config: GovflowConfig, opener: Opener, payload: Optional[Dict[str, Any]] = None) -> None:
    try:
        ok = asyncio.run(_follow(config, opener, payload))
    except KeyboardInterrupt:
        typer.echo("Interrupted")
        raise typer.Exit(code=1)
    if not ok:
        raise typer.Exit(code=1)


@workflow_app.command("start")
def workflow_start(
    ctx: typer.Context,
    payload: Optional[str] = typer.Option(None, help="JSON request body for the start call"),
) -> None:
    """
    Start a governance workflow and follow its progress.

    Example:
        govflow workflow start
        govflow workflow start --payload '{"steps": ["data-cleaning"]}'
    """
    body: Optional[Dict[str, Any]] = None
    if payload:
        try:
            body = json.loads(payload)
        except ValueError as exc:
            typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        if not isinstance(body, dict):
            typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
            raise typer.Exit(code=1)

    _run(_settings(ctx), lambda tracker, options: tracker.start_workflow(options), body)


@workflow_app.command("continue")
def workflow_continue(ctx: typer.Context, task_id: str) -> None:
    """
    Resume a paused or failed workflow and follow its progress.

    Example:
        govflow workflow continue 7f3c2a
    """
    _run(
        _settings(ctx),
        lambda tracker, options: tracker.continue_workflow(task_id, options),
    )


@workflow_app.command("watch")
def workflow_watch(ctx: typer.Context, task_id: str) -> None:
    """Follow the progress stream of a running workflow."""
    _run(
        _settings(ctx),
        lambda tracker, options: tracker.watch_workflow(task_id, options),
    )


@history_app.command("list")
def history_list(ctx: typer.Context) -> None:
    """
    List recorded executions with their last reported status.

    Example:
        govflow history list
        # Output: 7f3c2a    end    42
    """
    repo = _repository(_settings(ctx))
    tasks = asyncio.run(repo.list_tasks())
    if not tasks:
        typer.echo("No executions found")
        return
    for task in tasks:
        typer.echo(
            f"{task.task_id}\t{task.last_execution_status}\t{task.message_count}"
        )


@history_app.command("show")
def history_show(ctx: typer.Context, task_id: str) -> None:
    """
    Rebuild an execution from its recorded messages and show it.

    Example:
        govflow history show 7f3c2a
    """
    config = _settings(ctx)
    repo = _repository(config)

    async def restore() -> Optional[WorkflowExecution]:
        async with WorkflowTracker(config, repository=repo) as tracker:
            return await tracker.restore_execution(task_id)

    execution = asyncio.run(restore())
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    _echo_execution(execution)


@history_app.command("delete")
def history_delete(ctx: typer.Context, task_id: str) -> None:
    """Drop the recorded messages of an execution."""
    repo = _repository(_settings(ctx))
    if not asyncio.run(repo.delete_task(task_id)):
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Deleted {task_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
