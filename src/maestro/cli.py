"""Command line interface for running and inspecting playbooks."""

from pathlib import Path
from typing import List, Optional

import typer

from maestro.application.adapter import configure_logging
from maestro.backend import BackendType
from maestro.client import Client
from maestro.config import load_config
from maestro.domain.entity import StepResult, WorkflowInstance
from maestro.domain.error import ConfigurationError, DuplicateWorkflowError, PlaybookNotFoundError
from maestro.domain.value_object import EnvironmentContext, ExecutionMode, StepStatus
from maestro.factory import create

app = typer.Typer(help="Run and manage orchestration playbooks")

_STATUS_COLORS = {
    StepStatus.COMPLETED: typer.colors.GREEN,
    StepStatus.FAILED: typer.colors.RED,
    StepStatus.SKIPPED: typer.colors.YELLOW,
}


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a maestro.yaml configuration file"),
) -> None:
    """Maestro CLI entry point."""
    ctx.obj = {"config": config}


def _client(ctx: typer.Context) -> Client:
    try:
        config = load_config(ctx.obj.get("config") if ctx.obj else None)
    except ConfigurationError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    configure_logging(config.log_level)
    return create(BackendType.FILESYSTEM, config=config)


def _parse_params(values: list[str]) -> dict[str, str]:
    params = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint="--param")
        params[key.strip()] = value
    return params


def _echo_step(result: StepResult, indent: int = 0) -> None:
    line = f"{'  ' * indent}- {result.name} [{result.status.value}]"
    if result.attempts > 1:
        line += f" after {result.attempts} attempts"
    typer.secho(line, fg=_STATUS_COLORS[result.status])
    if result.error:
        typer.echo(f"{'  ' * (indent + 1)}{result.error}")
    elif result.output not in (None, "", {}):
        typer.echo(f"{'  ' * (indent + 1)}{result.output}")
    for child in result.children:
        _echo_step(child, indent + 1)


@app.command("run")
def run(
    ctx: typer.Context,
    playbook: str = typer.Argument(..., help="Stored playbook name or path to a playbook file"),
    param: Optional[List[str]] = typer.Option(None, "--param", "-p", help="Parameter as KEY=VALUE, repeatable"),
    env: EnvironmentContext = typer.Option(EnvironmentContext.DEV, "--env", help="Environment context"),
    mode: ExecutionMode = typer.Option(ExecutionMode.SEQUENTIAL, "--mode", help="Execution mode"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Resolve the playbook without running any step"),
    continue_on_error: bool = typer.Option(False, "--continue-on-error", help="Keep going after a failed step"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Run a playbook and report every step result."""
    client = _client(ctx)
    try:
        result = client.run(
            playbook,
            _parse_params(param or []),
            execution_mode=mode,
            environment_context=env,
            dry_run=dry_run,
            continue_on_error=continue_on_error,
        )
    except (PlaybookNotFoundError, DuplicateWorkflowError) as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    finally:
        client.close()

    if as_json:
        typer.echo(result.to_json())
    else:
        label = f"{result.playbook} ({result.workflow_id})" if result.workflow_id else result.playbook
        typer.secho(
            f"{label}: {result.status.value}",
            fg=typer.colors.GREEN if result.success else typer.colors.RED,
        )
        for error in result.validation_errors:
            typer.echo(f"  {error}")
        for step in result.step_results:
            _echo_step(step)
        if result.error and not result.validation_errors:
            typer.echo(result.error)
    if not result.success:
        raise typer.Exit(code=1)


@app.command("validate")
def validate(
    ctx: typer.Context,
    playbook: str = typer.Argument(..., help="Stored playbook name or path to a playbook file"),
) -> None:
    """Validate a playbook without running it."""
    client = _client(ctx)
    try:
        report = client.validate(playbook)
    except PlaybookNotFoundError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    for error in report.errors:
        typer.secho(f"error: {error}", fg=typer.colors.RED)
    for warning in report.warnings:
        typer.secho(f"warning: {warning}", fg=typer.colors.YELLOW)
    if not report.is_valid:
        raise typer.Exit(code=1)
    typer.secho(f"{playbook} is valid", fg=typer.colors.GREEN)


@app.command("list")
def list_playbooks(ctx: typer.Context) -> None:
    """List stored playbooks."""
    names = _client(ctx).list_playbooks()
    if not names:
        typer.echo("No playbooks found")
        return
    for name in names:
        typer.echo(name)


def _history_line(instance: WorkflowInstance) -> str:
    ended = instance.end_time.isoformat() if instance.end_time else "-"
    return f"{instance.workflow_id}  {instance.playbook.name}  {instance.status.value}  {ended}"


@app.command("history")
def history(
    ctx: typer.Context,
    workflow_id: Optional[str] = typer.Argument(None, help="Show one workflow in full"),
) -> None:
    """List finished workflows, or show one of them as JSON."""
    client = _client(ctx)
    if workflow_id is None:
        instances = client.history()
        if not instances:
            typer.echo("No workflow history")
        for instance in instances:
            typer.echo(_history_line(instance))
        return
    instance = client.status(workflow_id)
    if instance is None:
        typer.secho(f"Workflow '{workflow_id}' not found", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(instance.to_json())


if __name__ == "__main__":
    app()
