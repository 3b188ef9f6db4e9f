"""Task, TaskList and TaskGroup data models used across grouping and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskCategory(str, Enum):
    SETUP = "setup"
    FEATURE = "feature"
    BUG_FIX = "bug_fix"
    TEST = "test"
    DOCS = "docs"
    OPTIMIZATION = "optimization"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


_PRIORITY_ORDER = (TaskPriority.HIGH, TaskPriority.MEDIUM, TaskPriority.LOW)


@dataclass
class Task:
    id: str
    description: str
    category: TaskCategory = TaskCategory.FEATURE
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    tool: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str = ""
    output: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskList:
    """Ordered tasks owned by a single workspace.

    Only the workspace executing the list mutates it, so no locking is done
    here.  ``start_task``/``complete_task``/``fail_task`` are the only status
    transitions and unknown ids are ignored.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._counter = 0

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self):
        return iter(list(self._tasks.values()))

    # ── creation ────────────────────────────────────────────────

    def add_task(
        self,
        description: str,
        *,
        category: TaskCategory = TaskCategory.FEATURE,
        priority: TaskPriority = TaskPriority.MEDIUM,
        dependencies: list[str] | None = None,
        tool: str | None = None,
    ) -> Task:
        self._counter += 1
        task = Task(
            id=f"task-{self._counter}",
            description=description,
            category=category,
            priority=priority,
            dependencies=list(dependencies or []),
            tool=tool,
        )
        self._tasks[task.id] = task
        return task

    def add_tasks(self, descriptions: list[str], **kwargs) -> list[Task]:
        return [self.add_task(d, **kwargs) for d in descriptions]

    # ── transitions ─────────────────────────────────────────────

    def start_task(self, task_id: str) -> None:
        task = self._tasks.get(task_id)
        if task and task.status == TaskStatus.PENDING:
            task.status = TaskStatus.IN_PROGRESS
            task.started_at = utcnow()

    def complete_task(self, task_id: str, output: str = "") -> None:
        task = self._tasks.get(task_id)
        if task and not task.is_terminal:
            task.status = TaskStatus.COMPLETED
            task.completed_at = utcnow()
            task.output = output

    def fail_task(self, task_id: str, error: str) -> None:
        task = self._tasks.get(task_id)
        if task and not task.is_terminal:
            task.status = TaskStatus.FAILED
            task.completed_at = utcnow()
            task.error = error

    def remove_task(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None

    def clear(self) -> None:
        self._tasks.clear()

    # ── queries ─────────────────────────────────────────────────

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def all(self) -> list[Task]:
        return list(self._tasks.values())

    def by_status(self, status: TaskStatus) -> list[Task]:
        return [t for t in self._tasks.values() if t.status == status]

    def executable(self) -> list[Task]:
        """Pending tasks whose dependencies have all completed."""
        ready: list[Task] = []
        for task in self._tasks.values():
            if task.status != TaskStatus.PENDING:
                continue
            deps_done = all(
                (dep := self._tasks.get(dep_id)) is not None and dep.status == TaskStatus.COMPLETED
                for dep_id in task.dependencies
            )
            if deps_done:
                ready.append(task)
        return ready

    def prioritized(self) -> list[Task]:
        """Executable tasks, high priority first, insertion order within a level."""
        executable = self.executable()
        return [t for level in _PRIORITY_ORDER for t in executable if t.priority == level]

    def statistics(self) -> dict[str, float]:
        total = len(self._tasks)
        completed = len(self.by_status(TaskStatus.COMPLETED))
        return {
            "total": total,
            "pending": len(self.by_status(TaskStatus.PENDING)),
            "in_progress": len(self.by_status(TaskStatus.IN_PROGRESS)),
            "completed": completed,
            "failed": len(self.by_status(TaskStatus.FAILED)),
            "completion_rate": (completed / total) * 100 if total else 0.0,
        }


@dataclass
class TaskGroup:
    """A batch of task descriptions sharing a category, scheduled as one unit."""

    id: str
    tasks: list[str] = field(default_factory=list)
    category: TaskCategory = TaskCategory.FEATURE
    priority: int = 0
    dependencies: list[str] = field(default_factory=list)
    estimated_minutes: int = 0
    branch: str | None = None
