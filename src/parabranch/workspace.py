"""Workspace lifecycle: one isolated branch from creation to merge-or-fail."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable

from parabranch import events, log
from parabranch.git_ops import slugify
from parabranch.hooks import TaskExecutor, TaskOutcome, Verifier, WorkspaceProvider
from parabranch.tasks.classify import classify
from parabranch.tasks.model import (
    Task,
    TaskCategory,
    TaskGroup,
    TaskList,
    TaskPriority,
    TaskStatus,
    utcnow,
)


class WorkspaceStatus(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    EVOLVING = "evolving"
    TESTING = "testing"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({WorkspaceStatus.COMPLETED, WorkspaceStatus.FAILED})

# FAILED is additionally reachable from every non-terminal state.
_FORWARD: dict[WorkspaceStatus, WorkspaceStatus] = {
    WorkspaceStatus.IDLE: WorkspaceStatus.PLANNING,
    WorkspaceStatus.PLANNING: WorkspaceStatus.IMPLEMENTING,
    WorkspaceStatus.IMPLEMENTING: WorkspaceStatus.EVOLVING,
    WorkspaceStatus.EVOLVING: WorkspaceStatus.TESTING,
    WorkspaceStatus.TESTING: WorkspaceStatus.MERGING,
    WorkspaceStatus.MERGING: WorkspaceStatus.COMPLETED,
}

# Branch prefix per category; ResumeScanner recognizes the same prefixes.
CATEGORY_BRANCH_PREFIX: dict[TaskCategory, str] = {
    TaskCategory.SETUP: "setup",
    TaskCategory.FEATURE: "feature",
    TaskCategory.BUG_FIX: "fix",
    TaskCategory.TEST: "test",
    TaskCategory.DOCS: "docs",
    TaskCategory.OPTIMIZATION: "refactor",
}


def can_transition(current: WorkspaceStatus, new: WorkspaceStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if new == WorkspaceStatus.FAILED:
        return True
    return _FORWARD.get(current) == new


class InvalidTransition(Exception):
    """Raised for a state change the lifecycle does not allow."""


class PhaseError(Exception):
    """A phase could not produce a mergeable result."""


class WorkspaceStopped(Exception):
    """The workspace was stopped from outside while a phase was running."""


def branch_name_for(group: TaskGroup, workspace_id: str) -> str:
    """``<prefix>/<first-words-of-first-task>-<id suffix>``."""
    if group.branch:
        return group.branch
    prefix = CATEGORY_BRANCH_PREFIX.get(group.category, "feature")
    first = group.tasks[0] if group.tasks else group.id
    words = " ".join(first.split()[:4])
    slug = slugify(words, max_len=40) or slugify(group.id)
    return f"{prefix}/{slug}-{workspace_id[-6:]}"


@dataclass
class Workspace:
    id: str
    name: str
    group_id: str = ""
    priority: int = 0
    task_descriptions: list[str] = field(default_factory=list)
    category: TaskCategory | None = None
    status: WorkspaceStatus = WorkspaceStatus.IDLE
    tasks: TaskList = field(default_factory=TaskList)
    tasks_completed: int = 0
    tasks_failed: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    path: Path | None = None
    resumed: bool = False
    error: str = ""
    failed_phase: str = ""
    verify_output: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "groupId": self.group_id,
            "priority": self.priority,
            "status": self.status.value,
            "tasks": [t.description for t in self.tasks] or list(self.task_descriptions),
            "tasksCompleted": self.tasks_completed,
            "tasksFailed": self.tasks_failed,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "path": str(self.path) if self.path else "",
            "failedPhase": self.failed_phase,
            "error": self.error,
        }


class WorkspaceLifecycle:
    """Drives one :class:`Workspace` through its phases.

    ``IDLE -> PLANNING -> IMPLEMENTING -> EVOLVING -> TESTING -> MERGING ->
    COMPLETED``, with ``FAILED`` reachable from any non-terminal state.
    :meth:`run` is executed by exactly one worker thread; :meth:`stop` may be
    called from any thread.

    Phase failures never propagate: they move the workspace to ``FAILED``
    with ``failed_phase`` and ``error`` set.  Nothing is retried here.
    """

    def __init__(
        self,
        workspace: Workspace,
        *,
        provider: WorkspaceProvider,
        executor: TaskExecutor,
        verifier: Verifier,
        mainline: str = "main",
        bus: events.EventBus | None = None,
    ) -> None:
        self.workspace = workspace
        self.provider = provider
        self.executor = executor
        self.verifier = verifier
        self.mainline = mainline
        self.bus = bus or events.EventBus()
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    @classmethod
    def for_group(cls, group: TaskGroup, **kwargs) -> WorkspaceLifecycle:
        ws_id = f"ws-{uuid.uuid4().hex[:8]}"
        workspace = Workspace(
            id=ws_id,
            name=branch_name_for(group, ws_id),
            group_id=group.id,
            priority=group.priority,
            task_descriptions=list(group.tasks),
            category=group.category,
            resumed=bool(group.branch),
        )
        return cls(workspace, **kwargs)

    @property
    def status(self) -> WorkspaceStatus:
        return self.workspace.status

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    # ── transitions ──────────────────────────────────────────────

    def _transition(self, new: WorkspaceStatus) -> None:
        with self._lock:
            current = self.workspace.status
            if self.stopped and current == WorkspaceStatus.FAILED:
                raise WorkspaceStopped(self.workspace.error)
            if not can_transition(current, new):
                raise InvalidTransition(f"{self.workspace.name}: {current.value} -> {new.value}")
            self.workspace.status = new
            self.workspace.updated_at = utcnow()
        self._emit_phase()

    def _emit_phase(self) -> None:
        ws = self.workspace
        self.bus.emit(
            events.WORKSPACE_PHASE,
            workspace_id=ws.id,
            name=ws.name,
            group_id=ws.group_id,
            status=ws.status.value,
            error=ws.error,
        )

    def fail(self, phase: str, error: str) -> bool:
        """Force ``FAILED``; returns ``False`` if the workspace was already terminal."""
        with self._lock:
            if self.workspace.is_terminal:
                return False
            self.workspace.status = WorkspaceStatus.FAILED
            self.workspace.failed_phase = phase
            self.workspace.error = error
            self.workspace.updated_at = utcnow()
        log.debug(f"{self.workspace.name} failed in {phase}: {error}")
        self._emit_phase()
        return True

    def stop(self, reason: str = "stopped") -> bool:
        """Cancel from outside; the running phase ends at its next check."""
        self._stopped.set()
        return self.fail(self.workspace.status.value, reason)

    def _check_stopped(self) -> None:
        if self.stopped:
            raise WorkspaceStopped(self.workspace.error)

    # ── phases ───────────────────────────────────────────────────

    def enter_planning(self) -> None:
        """Materialize the worktree and record the task list."""
        self._transition(WorkspaceStatus.PLANNING)
        ws = self.workspace
        ws.path = self.provider.create(ws.name, base=self.mainline, existing=ws.resumed)
        for description in ws.task_descriptions:
            category = ws.category if ws.resumed and ws.category else classify(description)
            priority = TaskPriority.HIGH if category == TaskCategory.BUG_FIX else TaskPriority.MEDIUM
            ws.tasks.add_task(description, category=category, priority=priority)

    def enter_implementing(self) -> None:
        """Run every non-optimization task; fails only if none succeeded."""
        self._transition(WorkspaceStatus.IMPLEMENTING)
        attempted, succeeded = self._run_tasks(lambda t: t.category != TaskCategory.OPTIMIZATION)
        if attempted and not succeeded:
            raise PhaseError(f"all {attempted} task(s) failed")

    def enter_evolving(self) -> None:
        self._transition(WorkspaceStatus.EVOLVING)
        attempted, succeeded = self._run_tasks(lambda t: t.category == TaskCategory.OPTIMIZATION)
        if attempted and not succeeded and not self.workspace.tasks_completed:
            raise PhaseError(f"all {attempted} optimization task(s) failed")

    def enter_testing(self) -> None:
        self._transition(WorkspaceStatus.TESTING)
        outcome = self.verifier.verify(self.workspace)
        self.workspace.verify_output = outcome.output
        if not outcome.passed:
            detail = outcome.output.strip().splitlines()[-1] if outcome.output.strip() else "no output"
            raise PhaseError(f"verification failed: {detail}")

    def enter_merging(self) -> None:
        """Hand off to the merge coordinator; the workspace waits in MERGING."""
        self._transition(WorkspaceStatus.MERGING)

    def mark_merged(self) -> None:
        self._transition(WorkspaceStatus.COMPLETED)

    def mark_merge_failed(self, error: str) -> None:
        self.fail(WorkspaceStatus.MERGING.value, error)

    def run(self) -> Workspace:
        """Drive the workspace up to the merge hand-off.  Never raises."""
        phases: list[tuple[str, Callable[[], None]]] = [
            (WorkspaceStatus.PLANNING.value, self.enter_planning),
            (WorkspaceStatus.IMPLEMENTING.value, self.enter_implementing),
            (WorkspaceStatus.EVOLVING.value, self.enter_evolving),
            (WorkspaceStatus.TESTING.value, self.enter_testing),
            (WorkspaceStatus.MERGING.value, self.enter_merging),
        ]
        for name, phase in phases:
            try:
                self._check_stopped()
                phase()
            except WorkspaceStopped:
                break
            except Exception as e:  # noqa: BLE001
                self.fail(name, str(e) or type(e).__name__)
                break
        return self.workspace

    # ── task execution ───────────────────────────────────────────

    def _run_tasks(self, wanted: Callable[[Task], bool]) -> tuple[int, int]:
        """Execute matching tasks one at a time; returns (attempted, succeeded)."""
        tasks = self.workspace.tasks
        attempted = succeeded = 0
        while True:
            batch = [t for t in tasks.prioritized() if wanted(t)]
            if not batch:
                break
            self._check_stopped()
            task = batch[0]
            attempted += 1
            if self._execute(task):
                succeeded += 1
        return attempted, succeeded

    def _execute(self, task: Task) -> bool:
        ws = self.workspace
        ws.tasks.start_task(task.id)
        try:
            outcome = self.executor.execute(task, ws.path, cancel=self._stopped)
        except Exception as e:  # noqa: BLE001
            outcome = TaskOutcome(False, error=str(e) or type(e).__name__)

        if outcome.success:
            ws.tasks.complete_task(task.id, outcome.output)
            ws.tasks_completed += 1
        else:
            ws.tasks.fail_task(task.id, outcome.error or "task failed")
            ws.tasks_failed += 1
        ws.updated_at = utcnow()
        self.bus.emit(
            events.TASK_FINISHED,
            workspace=ws.name,
            task_id=task.id,
            description=task.description,
            success=outcome.success,
            error=outcome.error,
        )
        return task.status == TaskStatus.COMPLETED
