from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from conveyor.catalog import load_packs
from conveyor.config import ConveyorConfig, load_config
from conveyor.errors import ConveyorError
from conveyor.kernel import KernelBridge
from conveyor.orchestrator import Orchestrator
from conveyor.project import ProjectPaths, health_check, initialize, resolve_project_root
from conveyor.providers import get_provider
from conveyor.verify import VerifySummary

logger = logging.getLogger("conveyor.cli")


@dataclass(slots=True)
class Runtime:
    project_root: Path
    paths: ProjectPaths
    config: ConveyorConfig
    kernel: KernelBridge
    orchestrator: Orchestrator


def _log_event(event: dict[str, Any]) -> None:
    logger.debug("event %s", event)


def _load_runtime(worktree_root: Path | None = None) -> Runtime:
    project_root = resolve_project_root(Path.cwd())
    paths = ProjectPaths(project_root)
    try:
        config = load_config(paths.config)
        kernel = KernelBridge.from_env()
        kernel.resolve()
        provider = get_provider(config.backend, working_directory=project_root)
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc
    orchestrator = Orchestrator(
        project_root,
        config,
        provider,
        kernel=kernel,
        worktree_root=worktree_root.resolve() if worktree_root else None,
        event_hook=_log_event,
    )
    return Runtime(
        project_root=project_root,
        paths=paths,
        config=config,
        kernel=kernel,
        orchestrator=orchestrator,
    )


def _parse_packs(value: str | None) -> list[str] | None:
    if not value:
        return None
    packs = [item.strip() for item in value.split(",") if item.strip()]
    return packs or None


def _echo_verify(summary: VerifySummary) -> None:
    if not summary.commands:
        click.echo("Verify: no commands configured or detected")
    for command in summary.commands:
        mark = "OK " if command.ok else "BAD"
        click.echo(f"{mark}  {command.name}  (exit {command.exit_code})  {command.output_path}")


def _fail_verification(runtime: Runtime, run_id: str) -> None:
    report = runtime.orchestrator.store.paths(run_id).report_md
    raise click.ClickException(f"Verification failed for {run_id}. See {report}")


worktree_root_option = click.option(
    "--worktree-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory that holds run worktrees (default: $TMPDIR/conveyor-worktrees).",
)
keep_worktree_option = click.option(
    "--keep-worktree", is_flag=True, default=False, help="Keep the worktree after committing."
)
commit_option = click.option(
    "--commit", is_flag=True, default=False, help="Verify and commit the worktree changes."
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Conveyor: plan, apply and verify agent patches in isolated git worktrees."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("packs")
def packs_command() -> None:
    packs = load_packs()
    if not packs:
        click.echo("No packs found.")
        return
    click.echo("Packs\n=====\n")
    for pack in packs:
        tags = f" [{', '.join(pack.tags)}]" if pack.tags else ""
        click.echo(f"- {pack.id}: {pack.name}{tags}\n  {pack.description}")


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--packs", "packs_value", default=None, help="Comma-separated pack ids.")
def init_command(backend: str | None, packs_value: str | None) -> None:
    project_root = resolve_project_root(Path.cwd())
    try:
        result = initialize(
            project_root, backend=backend, packs=_parse_packs(packs_value)  # type: ignore[arg-type]
        )
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc

    paths = ProjectPaths(project_root)
    label = "Initialized" if result.created else "Already initialized"
    click.echo(f"{label} Conveyor: {paths.relative(result.config_path)}")
    click.echo(f"Backend: {result.config.backend}")
    click.echo(f"Packs:   {', '.join(result.config.packs)}")
    if result.lock_written:
        click.echo(f"Lock:    {paths.relative(paths.registry_lock)}")


@cli.command("doctor")
def doctor_command() -> None:
    project_root = resolve_project_root(Path.cwd())
    report = health_check(project_root, KernelBridge.from_env())
    click.echo("Conveyor Doctor\n===============\n")
    for check in report.checks:
        mark = "OK " if check.ok else "BAD"
        click.echo(f"{mark}  {check.name:<8}  {check.detail}")
    if not report.ok:
        raise click.ClickException("doctor found problems")


@cli.command("plan")
@click.argument("intent")
@click.option("--run-id", default=None, help="Requested run id (made unique if taken).")
def plan_command(intent: str, run_id: str | None) -> None:
    runtime = _load_runtime()
    try:
        run = asyncio.run(runtime.orchestrator.plan(intent, run_id=run_id))
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc

    root = runtime.orchestrator.store.paths(run.run_id).root
    click.echo(f"Planned runId: {run.run_id}")
    click.echo(f"Artifacts: {runtime.paths.relative(root)}")


@cli.command("exec")
@click.argument("run_id")
@commit_option
@worktree_root_option
@keep_worktree_option
def exec_command(
    run_id: str, commit: bool, worktree_root: Path | None, keep_worktree: bool
) -> None:
    runtime = _load_runtime(worktree_root)
    try:
        outcome = asyncio.run(
            runtime.orchestrator.execute(run_id, commit=commit, keep_worktree=keep_worktree)
        )
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Worktree: {outcome.worktree_path}")
    if outcome.verify_summary is not None:
        _echo_verify(outcome.verify_summary)
        if not outcome.verify_summary.ok:
            _fail_verification(runtime, run_id)
        if outcome.apply_result.commit is not None:
            click.echo(f"Commit: {outcome.apply_result.commit.sha}")
    click.echo(f"Status: {outcome.run.status}")


@cli.command("verify")
@click.argument("run_id")
@commit_option
@worktree_root_option
@keep_worktree_option
def verify_command(
    run_id: str, commit: bool, worktree_root: Path | None, keep_worktree: bool
) -> None:
    runtime = _load_runtime(worktree_root)
    try:
        summary = runtime.orchestrator.verify(run_id, commit=commit, keep_worktree=keep_worktree)
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_verify(summary)
    if not summary.ok:
        _fail_verification(runtime, run_id)
    click.echo(f"Status: {runtime.orchestrator.store.load(run_id).status}")


@cli.command("run")
@click.argument("intent")
@commit_option
@click.option("--run-id", default=None, help="Requested run id (made unique if taken).")
@worktree_root_option
@keep_worktree_option
def run_command(
    intent: str,
    commit: bool,
    run_id: str | None,
    worktree_root: Path | None,
    keep_worktree: bool,
) -> None:
    runtime = _load_runtime(worktree_root)
    try:
        summary = asyncio.run(
            runtime.orchestrator.run(
                intent, run_id=run_id, commit=commit, keep_worktree=keep_worktree
            )
        )
    except ConveyorError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"RunId: {summary.run.run_id}")
    click.echo(f"Worktree: {summary.worktree_path}")
    _echo_verify(summary.verify_summary)
    if not summary.verify_summary.ok:
        _fail_verification(runtime, summary.run.run_id)
    if summary.apply_result.commit is not None:
        click.echo(f"Commit: {summary.apply_result.commit.sha}")
    click.echo(f"Status: {summary.run.status}")

