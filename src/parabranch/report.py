"""Run reports: the data handed back to callers, console tables, JSON artifacts."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path

from rich.table import Table

from parabranch import log
from parabranch.failures import failure_type
from parabranch.io_utils import write_json
from parabranch.merge import MergeResult
from parabranch.scheduler import GroupScheduler
from parabranch.tasks.model import TaskGroup, utcnow
from parabranch.workspace import WorkspaceLifecycle, WorkspaceStatus


@dataclass
class GroupOutcome:
    group_id: str
    category: str
    priority: int
    workspace_id: str
    workspace_name: str
    status: str
    tasks_completed: int = 0
    tasks_failed: int = 0
    failed_phase: str = ""
    error: str = ""

    @classmethod
    def from_lifecycle(cls, group: TaskGroup, lifecycle: WorkspaceLifecycle) -> GroupOutcome:
        ws = lifecycle.workspace
        return cls(
            group_id=group.id,
            category=group.category.value,
            priority=group.priority,
            workspace_id=ws.id,
            workspace_name=ws.name,
            status=ws.status.value,
            tasks_completed=ws.tasks_completed,
            tasks_failed=ws.tasks_failed,
            failed_phase=ws.failed_phase,
            error=ws.error,
        )

    @property
    def succeeded(self) -> bool:
        return self.status == WorkspaceStatus.COMPLETED.value


@dataclass
class DispatchReport:
    outcomes: list[GroupOutcome] = field(default_factory=list)
    merges: list[MergeResult] = field(default_factory=list)
    pending_groups: list[str] = field(default_factory=list)
    interrupted: bool = False
    error: str = ""
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def completed_groups(self) -> list[str]:
        return [o.group_id for o in self.outcomes if o.succeeded]

    @property
    def failed_groups(self) -> list[str]:
        return [o.group_id for o in self.outcomes if o.status == WorkspaceStatus.FAILED.value]

    @property
    def ok(self) -> bool:
        return not self.error and not self.interrupted and not self.pending_groups

    def to_dict(self) -> dict[str, object]:
        failures = [
            {
                "groupId": o.group_id,
                "workspace": o.workspace_name,
                "phase": o.failed_phase,
                "error": o.error,
                "failureType": failure_type(o.error),
            }
            for o in self.outcomes
            if o.status == WorkspaceStatus.FAILED.value
        ]
        return {
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else "",
            "interrupted": self.interrupted,
            "error": self.error,
            "completedGroups": self.completed_groups,
            "failedGroups": self.failed_groups,
            "pendingGroups": self.pending_groups,
            "groups": [asdict(o) for o in self.outcomes],
            "merges": [asdict(m) for m in self.merges],
            "failures": failures,
        }


def groups_table(groups: list[TaskGroup], scheduler: GroupScheduler | None = None) -> Table:
    """Plan view: one row per group, highest priority first."""
    table = Table(title="Task groups", show_lines=False)
    table.add_column("Group", style="cyan")
    table.add_column("Category")
    table.add_column("Priority", justify="right")
    table.add_column("Tasks", justify="right")
    table.add_column("Est.", justify="right")
    table.add_column("Depends on")
    if scheduler is not None:
        table.add_column("State")
    for g in sorted(groups, key=lambda g: g.priority, reverse=True):
        row = [
            g.id,
            g.category.value,
            str(g.priority),
            str(len(g.tasks)),
            f"{g.estimated_minutes}m",
            ", ".join(g.dependencies) or "-",
        ]
        if scheduler is not None:
            row.append(scheduler.state(g.id).value)
        table.add_row(*row)
    return table


def outcome_table(report: DispatchReport) -> Table:
    table = Table(title="Run report")
    table.add_column("Group", style="cyan")
    table.add_column("Workspace")
    table.add_column("Status")
    table.add_column("Tasks ok/failed", justify="right")
    table.add_column("Failure")
    for o in report.outcomes:
        style = "green" if o.succeeded else ("red" if o.status == "failed" else "yellow")
        failure = f"{o.failed_phase}: {o.error}" if o.error else ""
        table.add_row(
            o.group_id,
            o.workspace_name,
            f"[{style}]{o.status}[/{style}]",
            f"{o.tasks_completed}/{o.tasks_failed}",
            failure,
        )
    return table


def print_report(report: DispatchReport) -> None:
    log.console.print()
    if report.outcomes:
        log.console.print(outcome_table(report))
    done, failed = len(report.completed_groups), len(report.failed_groups)
    log.console.print(
        f"[bold]Groups:[/bold] [green]{done} completed[/green], [red]{failed} failed[/red]"
        + (f", [yellow]{len(report.pending_groups)} not run[/yellow]" if report.pending_groups else "")
    )
    if report.interrupted:
        log.warn("Run interrupted; remaining groups were not started.")
    if report.error:
        log.error(report.error)


def save_report(report: DispatchReport, lifecycles: list[WorkspaceLifecycle], artifacts_dir: Path) -> Path:
    """Write ``run-report.json`` plus one JSON per workspace under *artifacts_dir*."""
    reports_dir = artifacts_dir / "reports"
    for lifecycle in lifecycles:
        ws = lifecycle.workspace
        payload = ws.to_dict()
        payload["taskResults"] = [
            {"id": t.id, "description": t.description, "status": t.status.value, "error": t.error}
            for t in ws.tasks
        ]
        if ws.error:
            payload["failureType"] = failure_type(ws.error)
        write_json(reports_dir / f"{ws.id}.json", payload)
    target = artifacts_dir / "run-report.json"
    write_json(target, report.to_dict())
    return target
