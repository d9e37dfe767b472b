"""maestro CLI: inspect plans, tracks and execution mode from a shell.

Installed as ``maestro`` console_script via pip.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from pathlib import Path

import click
from rich.markup import escape

from maestro import __version__
from maestro.config import Config, resolve_project_root
from maestro.engines.composite import ComposingEngine
from maestro.io_utils import read_text
from maestro.storage import FileStateStore
from maestro.tasks.model import TaskStatus, WorkflowContext


CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])

_STATUS_STYLE: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "white",
    TaskStatus.IN_PROGRESS: "cyan",
    TaskStatus.COMPLETED: "green",
    TaskStatus.BLOCKED: "red",
    TaskStatus.CANCELLED: "dim",
    TaskStatus.SKIPPED: "dim",
}


@dataclass
class CliState:
    config: Config
    root: Path


def _open_engine(state: CliState, session_id: str = "") -> tuple[ComposingEngine, WorkflowContext]:
    """Build and initialize a composing engine rooted at the CLI's project root."""
    from maestro import log

    cfg = state.config
    engine = ComposingEngine(
        cfg.engine,
        store=FileStateStore(cfg.state_dir),
        strictness=cfg.scope_strictness,
        state_dir=cfg.state_dir,
    )
    ctx = WorkflowContext(session_id=session_id, project_root=state.root, config=cfg)
    result = engine.initialize(ctx)
    if not result.success:
        log.error(result.error)
        sys.exit(1)
    for warning in result.warnings:
        log.debug(warning)
    return engine, ctx


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project root (default: nearest dir with .maestro/ or conductor/)",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="maestro")
@click.pass_context
def main(ctx: click.Context, root: Path | None, verbose: bool) -> None:
    """maestro: plan tracking, execution-mode detection and TDD gating.

    \b
    EXAMPLES:
      maestro mode plan.md                 # Classify a plan
      maestro mode plan.md --json          # Same, as JSON
      maestro status                       # Active plan and its tasks
      maestro tracks                       # Tracks and parallel eligibility
      maestro handoff --session abc123     # Write a session handoff
      maestro install-deps --timeout 90    # Bounded dependency install
    """
    from maestro import log

    log.set_verbose(verbose)
    try:
        cfg = Config(verbose=verbose)
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc
    project_root = root.resolve() if root is not None else resolve_project_root()
    log.debug(f"Project root: {project_root}")
    ctx.obj = CliState(config=cfg, root=project_root)


# ── Subcommand: mode ─────────────────────────────────────────────


@main.command()
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the classification as JSON")
@click.option("--prefix-scopes", is_flag=True, help="Treat a directory scope as covering its files")
@click.option("--context", "show_context", is_flag=True, help="Print the context block instead")
@click.pass_obj
def mode(state: CliState, plan_file: Path, as_json: bool, prefix_scopes: bool, show_context: bool) -> None:
    """Classify PLAN_FILE as sequential, parallel or autonomous."""
    from maestro import log
    from maestro.mode import ScopeStrictness, detect_mode, parse_plan, render_context

    try:
        text = read_text(plan_file)
    except (OSError, UnicodeDecodeError) as exc:
        log.error(f"Cannot read {plan_file}: {exc}")
        sys.exit(1)

    strictness = ScopeStrictness.PREFIX if prefix_scopes else state.config.scope_strictness
    plan = parse_plan(text, str(plan_file))
    result = detect_mode(plan, strictness)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    if show_context:
        click.echo(render_context(result, plan))
        return

    log.console.print(f"Mode: [bold]{result.mode.value}[/bold]")
    log.console.print(f"Reason: {escape(result.reason)}")
    log.console.print(f"Epics: {result.epic_count}  Ready tasks: {result.ready_bead_count}")
    for i, group in enumerate(result.parallel_groups, 1):
        log.console.print(f"  group {i}: {escape(', '.join(group)) or '-'}")
    log.console.print(f"Skills: {', '.join(result.skills)}")


# ── Subcommand: status ───────────────────────────────────────────


@main.command()
@click.pass_obj
def status(state: CliState) -> None:
    """Show the active plan, its progress and its tasks."""
    from maestro import log

    engine, ctx = _open_engine(state)
    try:
        plan = engine.get_active_plan(ctx)
        if plan is None:
            log.warn("No active plan")
            return

        progress = plan.refresh_progress()
        ready = {t.id for t in engine.get_ready_tasks(plan.id)}
        log.console.print(f"[bold]{escape(plan.name)}[/bold] [dim]({plan.id})[/dim]")
        if plan.file_path is not None:
            log.console.print(f"[dim]{escape(str(plan.file_path))}[/dim]")
        log.console.print(
            f"Progress: {progress.completed}/{progress.total} ({progress.percentage}%)"
            f"  in progress: {progress.in_progress}  blocked: {progress.blocked}"
        )
        for task in plan.tasks:
            style = _STATUS_STYLE.get(task.status, "white")
            marker = " [yellow]ready[/yellow]" if task.id in ready else ""
            scope = f" [dim]({escape(', '.join(task.file_scope))})[/dim]" if task.file_scope else ""
            log.console.print(
                f"  - [{style}]{task.status.value:<11}[/{style}] {task.id}: {escape(task.title)}{scope}{marker}"
            )
    finally:
        engine.shutdown()


# ── Subcommand: tracks ───────────────────────────────────────────


@main.command()
@click.pass_obj
def tracks(state: CliState) -> None:
    """List tracks with their phase and parallel eligibility."""
    from maestro import log

    engine, _ = _open_engine(state)
    try:
        all_tracks = engine.get_tracks("")
        if not all_tracks:
            log.info("No tracks")
            return
        for track in all_tracks:
            flag = "[green]eligible[/green]" if track.eligible else "[dim]not eligible[/dim]"
            log.console.print(f"  - {track.id} \\[{track.phase.value}] {escape(track.name)} {flag}")
            if track.file_reservations:
                log.console.print(f"      [dim]scope: {escape(', '.join(track.file_reservations))}[/dim]")
        parallel = engine.can_execute_parallel("")
        log.console.print(f"Parallel execution possible: {'yes' if parallel else 'no'}")
    finally:
        engine.shutdown()


# ── Subcommand: handoff ──────────────────────────────────────────


@main.command()
@click.option("--session", "session_id", required=True, help="Session id to hand off")
@click.option("--decision", "decisions", multiple=True, help="Decision made (repeatable)")
@click.option("--blocker", "blockers", multiple=True, help="Open blocker (repeatable)")
@click.option("--next", "next_steps", multiple=True, help="Next step (repeatable)")
@click.pass_obj
def handoff(
    state: CliState,
    session_id: str,
    decisions: tuple[str, ...],
    blockers: tuple[str, ...],
    next_steps: tuple[str, ...],
) -> None:
    """Write a handoff for SESSION so a new session can resume."""
    from maestro import log

    engine, ctx = _open_engine(state, session_id)
    try:
        result = engine.create_handoff(
            ctx, decisions=decisions, blockers=blockers, next_steps=next_steps
        )
    finally:
        engine.shutdown()

    if not result.success or result.data is None:
        log.error(result.error or "Handoff failed")
        sys.exit(1)

    payload = result.data
    log.success(f"Handoff created for session {session_id}")
    log.console.print(f"Summary: {escape(payload.summary)}")
    if payload.recommended_action:
        log.console.print(f"Next: {escape(payload.recommended_action)}")


# ── Subcommand: install-deps ─────────────────────────────────────


@main.command("install-deps")
@click.option("--timeout", type=float, default=None, help="Seconds before giving up (default: 60)")
@click.option("--cmd", "command", default="bun install", show_default=True, help="Install command")
@click.pass_obj
def install_deps(state: CliState, timeout: float | None, command: str) -> None:
    """Install dependencies with a bounded wall-clock timeout."""
    from maestro import log
    from maestro.install import run_dependency_install

    limit = timeout if timeout is not None else state.config.install_timeout
    log.info(f"Running {command} (timeout {limit:g}s)")
    result = run_dependency_install(command.split(), cwd=state.root, timeout=limit)
    if not result.success:
        log.error(result.error)
        sys.exit(1)
    log.success("Dependencies installed")
