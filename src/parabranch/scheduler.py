"""Ready-queue scheduler over the TaskGroup dependency DAG."""

from __future__ import annotations

from enum import Enum

from parabranch import log
from parabranch.tasks.model import TaskGroup


class SchedulingError(Exception):
    """Raised when the group graph cannot be scheduled (cycle, dangling id)."""

    def __init__(self, message: str, *, cycles: list[list[str]] | None = None,
                 dangling: dict[str, list[str]] | None = None) -> None:
        super().__init__(message)
        self.cycles = cycles or []
        self.dangling = dangling or {}


class StallError(SchedulingError):
    """Raised by the dispatcher when no group can make progress."""

    def __init__(self, message: str, *, blocked: dict[str, str] | None = None, report=None) -> None:
        super().__init__(message)
        self.blocked = blocked or {}
        self.report = report


class GroupState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


def find_cycles(groups: list[TaskGroup]) -> list[list[str]]:
    """Return every dependency cycle among *groups* as a list of group ids.

    Unknown predecessor ids are ignored here; see :func:`find_dangling`.
    """
    deps = {g.id: [d for d in g.dependencies if d] for g in groups}
    white, grey, black = 0, 1, 2
    color = {gid: white for gid in deps}
    stack: list[str] = []
    cycles: list[list[str]] = []

    def visit(gid: str) -> None:
        color[gid] = grey
        stack.append(gid)
        for dep in deps[gid]:
            if dep not in color:
                continue
            if color[dep] == grey:
                cycles.append(stack[stack.index(dep):] + [dep])
            elif color[dep] == white:
                visit(dep)
        stack.pop()
        color[gid] = black

    for gid in deps:
        if color[gid] == white:
            visit(gid)
    return cycles


def find_dangling(groups: list[TaskGroup]) -> dict[str, list[str]]:
    """Map group id -> predecessor ids that name no known group."""
    known = {g.id for g in groups}
    dangling: dict[str, list[str]] = {}
    for g in groups:
        missing = [d for d in g.dependencies if d and d not in known]
        if missing:
            dangling[g.id] = missing
    return dangling


def topological_order(groups: list[TaskGroup]) -> list[str]:
    """Group ids ordered so every group follows its predecessors.

    Ties are broken by descending priority.  Raises :class:`SchedulingError`
    when the graph has a cycle or a dangling predecessor.
    """
    validate_groups(groups)
    remaining = {g.id: set(d for d in g.dependencies if d) for g in groups}
    by_id = {g.id: g for g in groups}
    order: list[str] = []
    while remaining:
        ready = sorted(
            (gid for gid, deps in remaining.items() if not deps),
            key=lambda gid: -by_id[gid].priority,
        )
        for gid in ready:
            order.append(gid)
            del remaining[gid]
        for deps in remaining.values():
            deps.difference_update(ready)
    return order


def validate_groups(groups: list[TaskGroup]) -> None:
    """Raise :class:`SchedulingError` for duplicate ids, dangling ids or cycles."""
    seen: set[str] = set()
    duplicates: list[str] = []
    for g in groups:
        if g.id in seen and g.id not in duplicates:
            duplicates.append(g.id)
        seen.add(g.id)
    if duplicates:
        raise SchedulingError(f"Duplicate group id(s): {', '.join(duplicates)}")

    dangling = find_dangling(groups)
    cycles = find_cycles(groups)
    if not dangling and not cycles:
        return

    parts: list[str] = []
    for gid, missing in dangling.items():
        parts.append(f"{gid} depends on unknown group(s) {', '.join(missing)}")
    for cycle in cycles:
        parts.append(f"cycle {' -> '.join(cycle)}")
    raise SchedulingError(
        "Unschedulable group graph: " + "; ".join(parts),
        cycles=cycles,
        dangling=dangling,
    )


class GroupScheduler:
    """Tracks group completion and computes the ready set on demand.

    Usage::

        sched = GroupScheduler(groups)
        sched.validate()                  # raises SchedulingError on cycles
        ready = sched.ready_groups(3)     # deps completed, priority-desc
        sched.mark_started(group.id)      # pending -> running
        sched.mark_completed(group.id)    # running -> completed (idempotent)
    """

    def __init__(self, groups: list[TaskGroup] | None = None) -> None:
        self._groups: dict[str, TaskGroup] = {}
        self._state: dict[str, GroupState] = {}
        for group in groups or []:
            self.add_group(group)

    def add_group(self, group: TaskGroup) -> None:
        """Register *group*; raises :class:`SchedulingError` if its id is taken."""
        if group.id in self._groups:
            raise SchedulingError(f"Duplicate group id: {group.id}")
        self._groups[group.id] = group
        self._state[group.id] = GroupState.PENDING

    def reset(self) -> None:
        self._groups.clear()
        self._state.clear()

    # ── state queries ────────────────────────────────────────────

    @property
    def groups(self) -> list[TaskGroup]:
        return list(self._groups.values())

    def get(self, group_id: str) -> TaskGroup | None:
        return self._groups.get(group_id)

    def state(self, group_id: str) -> GroupState:
        return self._state.get(group_id, GroupState.PENDING)

    def is_completed(self, group_id: str) -> bool:
        return self._state.get(group_id) == GroupState.COMPLETED

    def count(self, state: GroupState) -> int:
        return sum(1 for s in self._state.values() if s == state)

    def completed_ids(self) -> set[str]:
        return {gid for gid, s in self._state.items() if s == GroupState.COMPLETED}

    def is_all_completed(self) -> bool:
        return self.count(GroupState.COMPLETED) == len(self._groups)

    def progress_percent(self) -> int:
        if not self._groups:
            return 100
        return round(self.count(GroupState.COMPLETED) / len(self._groups) * 100)

    # ── readiness ────────────────────────────────────────────────

    def deps_satisfied(self, group_id: str) -> bool:
        group = self._groups.get(group_id)
        if group is None:
            return False
        return all(self.is_completed(dep) for dep in group.dependencies if dep)

    def ready_groups(self, max_count: int) -> list[TaskGroup]:
        """Pending groups whose predecessors are all completed.

        Sorted by descending priority and truncated to *max_count*.  A group
        waiting on an unknown id or on a member of a cycle is never returned.
        """
        if max_count <= 0:
            return []
        ready = [
            g for g in self._groups.values()
            if self._state[g.id] == GroupState.PENDING and self.deps_satisfied(g.id)
        ]
        ready.sort(key=lambda g: g.priority, reverse=True)
        return ready[:max_count]

    # ── transitions ──────────────────────────────────────────────

    def mark_started(self, group_id: str) -> None:
        if self._state.get(group_id) == GroupState.PENDING:
            self._state[group_id] = GroupState.RUNNING
            log.debug(f"Group {group_id}: pending -> running")

    def mark_completed(self, group_id: str) -> None:
        if group_id not in self._groups:
            raise KeyError(f"Unknown group: {group_id}")
        if self._state[group_id] == GroupState.COMPLETED:
            return
        self._state[group_id] = GroupState.COMPLETED
        log.debug(f"Group {group_id}: completed ({self.progress_percent()}%)")

    # ── diagnostics ──────────────────────────────────────────────

    def validate(self) -> None:
        validate_groups(self.groups)

    def check_stall(self) -> bool:
        """Return ``True`` if incomplete groups remain but none can ever start."""
        return (
            self.count(GroupState.PENDING) > 0
            and self.count(GroupState.RUNNING) == 0
            and not self.ready_groups(len(self._groups))
        )

    def explain_block(self, group_id: str) -> str:
        """Human-readable explanation of why *group_id* is blocked."""
        group = self._groups.get(group_id)
        if group is None:
            return "unknown group"
        blocked: list[str] = []
        for dep in group.dependencies:
            if not dep:
                continue
            if dep not in self._groups:
                blocked.append(f"{dep} (unknown)")
            elif not self.is_completed(dep):
                blocked.append(f"{dep} ({self.state(dep).value})")
        return f"waiting on: {' '.join(blocked)}" if blocked else ""

    def blocked_groups(self) -> dict[str, str]:
        return {
            gid: self.explain_block(gid)
            for gid, st in self._state.items()
            if st == GroupState.PENDING
        }

    def summary(self) -> str:
        total = len(self._groups)
        done = self.count(GroupState.COMPLETED)
        text = f"Task coordination: {done}/{total} groups completed ({self.progress_percent()}%)"
        pending = [gid for gid, st in self._state.items() if st != GroupState.COMPLETED]
        if pending:
            text += f"\nPending: {', '.join(pending)}"
        return text
