"""parabranch CLI.

Installed as the ``parabranch`` console_script; ``python -m parabranch`` works
too.
"""

from __future__ import annotations

import shutil
import sys
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import click

from parabranch import __version__
from parabranch.config import MAX_PARALLEL, MIN_PARALLEL, Config
from parabranch.engines.registry import ENGINE_NAMES
from parabranch.io_utils import read_text

if TYPE_CHECKING:
    from parabranch.scheduler import GroupScheduler


CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def parse_task_lines(text: str) -> list[str]:
    """One task per non-blank line; ``#`` comments and list bullets are dropped."""
    tasks: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line[:2] in ("- ", "* "):
            line = line[2:].strip()
        elif line[:1].isdigit() and ". " in line[:4]:
            line = line.split(". ", 1)[1].strip()
        if line:
            tasks.append(line)
    return tasks


def collect_tasks(args: tuple[str, ...], task_file: Path | None) -> list[str]:
    tasks = [a.strip() for a in args if a.strip()]
    if task_file is not None:
        tasks.extend(parse_task_lines(read_text(task_file)))
    return tasks


def _validate_parallel(ctx: click.Context, param: click.Parameter, value: int) -> int:
    if value and not MIN_PARALLEL <= value <= MAX_PARALLEL:
        raise click.BadParameter(f"must be between {MIN_PARALLEL} and {MAX_PARALLEL}")
    return value


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__, prog_name="parabranch")
def main() -> None:
    """parabranch: run development tasks in parallel git worktrees.

    Free-text tasks are classified and grouped into a dependency graph,
    ready groups run concurrently in isolated worktrees, and finished
    branches are merged back into the mainline one at a time.

    \b
    EXAMPLES:
      parabranch plan "Create project scaffold" "Add login" "Write tests"
      parabranch run -f tasks.txt --max-parallel 4
      parabranch run "Fix crash on startup" --verify "pytest -q"
      parabranch resume --days 14
    """


# ── Subcommand: run ──────────────────────────────────────────────────


@main.command(context_settings=CONTEXT_SETTINGS)
@click.argument("tasks", nargs=-1)
@click.option("-f", "--file", "task_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Read tasks from a file, one per line")
@click.option("--max-parallel", type=int, default=0, callback=_validate_parallel,
              help=f"Max concurrent workspaces ({MIN_PARALLEL}-{MAX_PARALLEL}, default 3)")
@click.option("--engine", type=click.Choice(ENGINE_NAMES), default=None, help="AI engine that implements tasks")
@click.option("--verify", "verify_command", default="", help="Command that must pass before a branch merges")
@click.option("--base-branch", default="", help="Mainline to branch from and merge into (default: current)")
@click.option("--merge-delay", type=float, default=-1.0, help="Seconds to wait between merges")
@click.option("--task-timeout", type=int, default=1800, help="Seconds before a task is killed")
@click.option("--no-merge", is_flag=True, help="Leave verified branches unmerged")
@click.option("--keep-failed", is_flag=True, help="Keep worktrees of failed workspaces")
@click.option("--resume/--no-resume", default=True, help="Re-admit recent unfinished branches")
@click.option("--resume-days", type=int, default=0, help="Resume window in days (default 7)")
@click.option("--artifacts-dir", default="", help="Write JSON reports to this directory")
@click.option("--dry-run", is_flag=True, help="Show the plan without executing")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
def run(
    tasks: tuple[str, ...],
    task_file: Path | None,
    max_parallel: int,
    engine: str | None,
    verify_command: str,
    base_branch: str,
    merge_delay: float,
    task_timeout: int,
    no_merge: bool,
    keep_failed: bool,
    resume: bool,
    resume_days: int,
    artifacts_dir: str,
    dry_run: bool,
    verbose: bool,
) -> None:
    """Group TASKS, run them in parallel worktrees and merge the results.

    Exits 0 when every group completed, 1 on a scheduling error or stall.
    """
    from parabranch import log

    log.set_verbose(verbose)
    cfg = Config(
        engine=engine or "",
        task_timeout=task_timeout,
        verify_command=verify_command,
        max_parallel=max_parallel,
        dry_run=dry_run,
        base_branch=base_branch,
        settle_delay=merge_delay,
        auto_merge=not no_merge,
        keep_failed=keep_failed,
        resume=resume,
        resume_window_days=resume_days,
        verbose=verbose,
        artifacts_dir=artifacts_dir,
    )
    descriptions = collect_tasks(tasks, task_file)
    sys.exit(_run_pipeline(cfg, descriptions))


def _run_pipeline(cfg: Config, descriptions: list[str]) -> int:
    """Tasks -> groups -> dispatch -> merge -> report.  Returns the exit code."""
    from parabranch import events, log
    from parabranch.config import resolve_repo_root
    from parabranch.dispatcher import ConcurrentDispatcher
    from parabranch.engines.registry import get_engine
    from parabranch.executor import CommandVerifier, EngineTaskExecutor
    from parabranch.git_ops import (
        GitMerger,
        GitWorkspaceProvider,
        current_branch,
        ensure_clean_git_state,
        tracked_changes,
    )
    from parabranch.hooks import AlwaysPassVerifier
    from parabranch.merge import MergeCoordinator
    from parabranch.report import print_report, save_report
    from parabranch.resume import ResumeScanner
    from parabranch.scheduler import GroupScheduler, SchedulingError, StallError
    from parabranch.tasks.grouping import group_tasks

    repo_root = resolve_repo_root()
    cfg.repo_root = str(repo_root)
    if not cfg.base_branch:
        cfg.base_branch = current_branch(cwd=repo_root)

    groups = group_tasks(descriptions)
    if cfg.resume:
        scanner = ResumeScanner(repo_root, cfg.base_branch, cfg.resume_window_days)
        resumable = scanner.resumable()
        if resumable:
            log.info(f"Resuming {len(resumable)} recent branch(es): {', '.join(i.name for i in resumable)}")
        groups.extend(ResumeScanner.to_groups(resumable))

    if not groups:
        log.info("Nothing to do: no tasks given and no branches to resume.")
        return 0

    try:
        scheduler = GroupScheduler(groups)
        scheduler.validate()
    except SchedulingError as e:
        log.error(str(e))
        return 1

    if cfg.dry_run:
        _show_plan(scheduler, cfg.max_parallel)
        return 0

    engine = get_engine(cfg.engine)
    err = engine.check_available()
    if err:
        log.error(err)
        return 1

    ensure_clean_git_state(cwd=repo_root)
    dirty = tracked_changes(cwd=repo_root)
    if dirty and cfg.auto_merge:
        log.error(f"Working tree of {cfg.base_branch} is dirty. Commit or stash changes before running parabranch.")
        log.console.print(f"[dim]Dirty entries: {', '.join(dirty[:8])}[/dim]")
        return 1

    _show_banner(cfg, len(groups))

    cfg.worktree_base = cfg.worktree_base or tempfile.mkdtemp(prefix="parabranch-")
    provider = GitWorkspaceProvider(repo_root, Path(cfg.worktree_base))
    bus = events.EventBus()
    bus.subscribe(events.ConsoleEventPrinter())
    verifier = CommandVerifier(cfg.verify_command) if cfg.verify_command else AlwaysPassVerifier()
    coordinator = None
    if cfg.auto_merge:
        coordinator = MergeCoordinator(
            GitMerger(repo_root),
            provider,
            mainline=cfg.base_branch,
            settle_delay=cfg.settle_delay,
            bus=bus,
        )

    dispatcher = ConcurrentDispatcher(
        scheduler,
        provider=provider,
        executor=EngineTaskExecutor(cfg.engine, timeout=cfg.task_timeout),
        verifier=verifier,
        merger=coordinator,
        max_parallel=cfg.max_parallel,
        mainline=cfg.base_branch,
        bus=bus,
    )

    exit_code = 0
    try:
        report = dispatcher.run()
    except StallError as e:
        report = e.report
        exit_code = 1
    finally:
        if not cfg.keep_failed:
            dispatcher.cleanup_failed()
        if not cfg.auto_merge:
            for lifecycle in dispatcher.lifecycles:
                if lifecycle.workspace.path is not None and lifecycle.workspace.is_active:
                    provider.destroy(lifecycle.workspace.name, lifecycle.workspace.path, delete_branch=False)
        if not cfg.keep_failed:
            shutil.rmtree(cfg.worktree_base, ignore_errors=True)

    if report is not None:
        print_report(report)
        if cfg.artifacts_dir:
            target = save_report(report, dispatcher.lifecycles, Path(cfg.artifacts_dir))
            log.info(f"Report written to {target}")
        if report.interrupted:
            exit_code = 1
    return exit_code


# ── Subcommand: plan ─────────────────────────────────────────────────


@main.command(context_settings=CONTEXT_SETTINGS)
@click.argument("tasks", nargs=-1)
@click.option("-f", "--file", "task_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Read tasks from a file, one per line")
@click.option("--max-parallel", type=int, default=3, callback=_validate_parallel,
              help="Capacity used to compute the initial ready set")
def plan(tasks: tuple[str, ...], task_file: Path | None, max_parallel: int) -> None:
    """Show the groups and initial ready set for TASKS without running anything."""
    from parabranch import log
    from parabranch.scheduler import GroupScheduler, SchedulingError
    from parabranch.tasks.grouping import group_tasks

    groups = group_tasks(collect_tasks(tasks, task_file))
    if not groups:
        log.info("Nothing to do: no tasks given.")
        return
    try:
        scheduler = GroupScheduler(groups)
        scheduler.validate()
    except SchedulingError as e:
        log.error(str(e))
        sys.exit(1)
    _show_plan(scheduler, max_parallel)


def _show_plan(scheduler: GroupScheduler, max_parallel: int) -> None:
    from parabranch import log
    from parabranch.report import groups_table
    from parabranch.scheduler import topological_order

    log.console.print(groups_table(scheduler.groups))
    order = topological_order(scheduler.groups)
    log.console.print(f"Order: {' -> '.join(order)}")
    ready = [g.id for g in scheduler.ready_groups(max_parallel)]
    log.console.print(f"Ready now (capacity {max_parallel}): [cyan]{', '.join(ready) or '-'}[/cyan]")


# ── Subcommand: resume ───────────────────────────────────────────────


@main.command(context_settings=CONTEXT_SETTINGS)
@click.option("--base-branch", default="", help="Mainline to exclude (default: current)")
@click.option("--days", type=int, default=0, help="Resume window in days (default 7)")
def resume(base_branch: str, days: int) -> None:
    """List local branches and whether they can be resumed."""
    from rich.table import Table

    from parabranch import log
    from parabranch.config import resolve_repo_root
    from parabranch.git_ops import current_branch
    from parabranch.resume import ResumeScanner

    cfg = Config(base_branch=base_branch, resume_window_days=days)
    repo_root = resolve_repo_root()
    mainline = cfg.base_branch or current_branch(cwd=repo_root)
    scanner = ResumeScanner(repo_root, mainline, cfg.resume_window_days)
    infos = scanner.scan()
    if not infos:
        log.info("No branches besides the mainline.")
        return

    table = Table(title=f"Branches (resume window {cfg.resume_window_days}d)")
    table.add_column("Branch", style="cyan")
    table.add_column("Intent")
    table.add_column("Last commit")
    table.add_column("Resumable")
    for info in infos:
        when = info.last_commit_date.strftime("%Y-%m-%d %H:%M") if info.last_commit_date else "-"
        ok = scanner.is_resumable(info)
        table.add_row(info.name, info.intent, when, "[green]yes[/green]" if ok else "[dim]no[/dim]")
    log.console.print(table)


def _show_banner(cfg: Config, group_count: int) -> None:
    from parabranch import log

    log.console.print("[bold]============================================[/bold]")
    log.console.print(f"[bold]parabranch[/bold]: {group_count} group(s) into [cyan]{cfg.base_branch}[/cyan]")
    log.console.print(f"Engine: [magenta]{cfg.engine}[/magenta]")
    parts = [f"parallel:{cfg.max_parallel}", f"merge-delay:{cfg.settle_delay:g}s"]
    if cfg.verify_command:
        parts.append(f"verify:{cfg.verify_command}")
    if not cfg.auto_merge:
        parts.append("no-merge")
    if cfg.keep_failed:
        parts.append("keep-failed")
    log.console.print(f"Mode: [yellow]{' '.join(parts)}[/yellow]")
    log.console.print("[bold]============================================[/bold]")
