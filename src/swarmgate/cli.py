from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import click

from swarmgate.config import ConfigError, SwarmgateConfig, load_config, save_config
from swarmgate.graph import Complexity, TaskGraph, TaskGraphError, load_tasks
from swarmgate.orchestrator import Orchestrator, RunSummary
from swarmgate.scheduler import Scheduler
from swarmgate.verify.gate import GateOutcome, QualityGatePipeline
from swarmgate.workers import ProcessWorker, WorkerExecutionError
from swarmgate.workspace import GitWorkspace, WorkspaceError

logger = logging.getLogger("swarmgate.cli")

DOMAIN_ERRORS = (ConfigError, TaskGraphError, WorkspaceError, WorkerExecutionError)
COMPLEXITY_CHOICE = click.Choice([str(item) for item in Complexity])


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _open_workspace(root: Path, config_value: str) -> tuple[GitWorkspace, SwarmgateConfig]:
    try:
        config = load_config(_resolve_config_path(root.resolve(), config_value))
        workspace = GitWorkspace(root, state_dir=config.workspace.state_dir)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    return workspace, config


def _load_graph(tasks_file: Path) -> TaskGraph:
    try:
        return load_tasks(tasks_file)
    except TaskGraphError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_outcome(outcome: GateOutcome, results_dir: Path) -> None:
    click.echo(f"Status: {outcome.status_token}")
    score = getattr(outcome, "score", None)
    if score is not None:
        click.echo(f"Score: {score.score}/10")
    for detail in getattr(outcome, "details", []):
        click.echo(f"  - {detail}")
    verification = outcome.verification
    if verification is not None and verification.reverted:
        click.echo(f"Reverted {len(verification.reverted)} path(s).")
    click.echo(f"Reports: {results_dir}")


def _run_gate(
    workspace_dir: Path,
    results_dir: Path,
    expected_files: str,
    complexity: str,
    config_value: str,
    *,
    phase0_only: bool,
) -> int:
    workspace, config = _open_workspace(workspace_dir, config_value)
    workspace.ignore_directory(results_dir)
    try:
        pipeline = QualityGatePipeline.from_config(workspace, config)
        declared = expected_files.split()
        if phase0_only:
            failure = pipeline.verify_diff(declared, complexity, results_dir=results_dir)
            if failure is None:
                click.echo("Status: PASSED")
                click.echo(f"Reports: {results_dir}")
                return 0
            outcome = failure
        else:
            outcome = pipeline.evaluate(declared, complexity, results_dir=results_dir)
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_outcome(outcome, results_dir)
    return outcome.exit_code


def _echo_summary(summary: RunSummary) -> None:
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Tasks: {len(summary.done)}/{summary.total_tasks} done")
    if summary.abandoned:
        click.echo(f"Abandoned: {', '.join(summary.abandoned)}")
    for task_id, culprits in summary.blocked.items():
        click.echo(f"Blocked: {task_id} (waiting on {', '.join(culprits)})")
    if summary.stalled:
        click.echo("Run stalled: non-terminal tasks remain with nothing dispatchable.")


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Swarmgate: run parallel worker tasks behind a diff and quality gate."""
    _configure_logging(verbose)


@cli.command("init")
@click.option("--config", "config_value", default="swarmgate.toml", show_default=True)
def init_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    (root / config.workspace.state_dir).mkdir(parents=True, exist_ok=True)
    click.echo(f"Initialized swarmgate in {root}")
    click.echo(f"Config: {config_path}")


@cli.command("verify")
@click.argument(
    "workspace_dir", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.argument("results_dir", type=click.Path(file_okay=False, path_type=Path))
@click.argument("expected_files")
@click.argument("complexity", required=False, default="medium", type=COMPLEXITY_CHOICE)
@click.option("--config", "config_value", default="swarmgate.toml", show_default=True)
@click.pass_context
def verify_command(
    ctx: click.Context,
    workspace_dir: Path,
    results_dir: Path,
    expected_files: str,
    complexity: str,
    config_value: str,
) -> None:
    """Diff verification then quality scoring. Exit 0 accept, 1 reject, 2 secrets."""
    code = _run_gate(
        workspace_dir,
        results_dir.resolve(),
        expected_files,
        complexity,
        config_value,
        phase0_only=False,
    )
    ctx.exit(code)


@cli.command("diff-verify")
@click.argument(
    "workspace_dir", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.argument("results_dir", type=click.Path(file_okay=False, path_type=Path))
@click.argument("expected_files")
@click.argument("complexity", required=False, default="medium", type=COMPLEXITY_CHOICE)
@click.option("--config", "config_value", default="swarmgate.toml", show_default=True)
@click.pass_context
def diff_verify_command(
    ctx: click.Context,
    workspace_dir: Path,
    results_dir: Path,
    expected_files: str,
    complexity: str,
    config_value: str,
) -> None:
    """Diff verification only. Exit 0 pass, 1 reject, 2 secrets."""
    code = _run_gate(
        workspace_dir,
        results_dir.resolve(),
        expected_files,
        complexity,
        config_value,
        phase0_only=True,
    )
    ctx.exit(code)


@cli.command("plan")
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="swarmgate.toml", show_default=True)
@click.pass_context
def plan_command(ctx: click.Context, tasks_file: Path, config_value: str) -> None:
    """Validate a task file and print the waves a fully successful run would take."""
    root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_config_path(root, config_value))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    graph = _load_graph(tasks_file)
    for task_id, unknown in graph.unknown_dependencies().items():
        click.echo(f"Unknown dependency: {task_id} -> {', '.join(unknown)}")
    cycle = graph.find_cycle()
    if cycle:
        click.echo(f"Dependency cycle: {' -> '.join(cycle)}")

    waves, unschedulable = Scheduler(config.scheduler.max_parallel).plan_waves(graph)
    for wave in waves:
        click.echo(f"Wave {wave.index}: {', '.join(wave.task_ids)}")
    if unschedulable:
        click.echo(f"Never schedulable: {', '.join(unschedulable)}")
        ctx.exit(1)


@cli.command("run")
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--workspace",
    "workspace_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
)
@click.option("--config", "config_value", default="swarmgate.toml", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context, tasks_file: Path, workspace_dir: Path, config_value: str
) -> None:
    """Run every task in TASKS_FILE through workers and the gate."""
    graph = _load_graph(tasks_file)
    workspace, config = _open_workspace(workspace_dir, config_value)

    def _log_event(event: dict[str, Any]) -> None:
        logger.debug("event %s", event)

    try:
        pipeline = QualityGatePipeline.from_config(workspace, config)
        worker = ProcessWorker(
            config.worker.command,
            workspace.root,
            kill_grace_seconds=config.worker.kill_grace_seconds,
            event_hook=_log_event,
        )
        orchestrator = Orchestrator(
            graph, workspace, worker, pipeline, config, event_hook=_log_event
        )
        summary = asyncio.run(orchestrator.run())
    except DOMAIN_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_summary(summary)
    click.echo(f"Summary: {orchestrator.run_dir / 'summary.json'}")
    ctx.exit(0 if summary.succeeded else 1)
