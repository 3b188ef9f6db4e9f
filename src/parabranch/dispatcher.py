"""Bounded concurrent dispatch of ready groups onto isolated workspaces."""

from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

from parabranch import events, log
from parabranch.config import clamp_parallel
from parabranch.hooks import TaskExecutor, Verifier, WorkspaceProvider
from parabranch.merge import MergeCoordinator
from parabranch.report import DispatchReport, GroupOutcome
from parabranch.scheduler import GroupScheduler, StallError
from parabranch.tasks.model import TaskGroup, utcnow
from parabranch.workspace import WorkspaceLifecycle, WorkspaceStatus


@dataclass(frozen=True)
class Capacity:
    current: int
    max: int

    @property
    def available(self) -> int:
        return max(self.max - self.current, 0)


class ConcurrentDispatcher:
    """Runs ready groups on at most ``max_parallel`` workspaces at once.

    The calling thread owns the scheduler: it admits groups, waits for
    workspace futures, hands verified workspaces to the merge coordinator
    and marks groups completed.  Worker threads only ever touch their own
    workspace.
    """

    def __init__(
        self,
        scheduler: GroupScheduler,
        *,
        provider: WorkspaceProvider,
        executor: TaskExecutor,
        verifier: Verifier,
        merger: MergeCoordinator | None,
        max_parallel: int = 3,
        mainline: str = "main",
        bus: events.EventBus | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.provider = provider
        self.executor = executor
        self.verifier = verifier
        self.merger = merger
        self.max_parallel = clamp_parallel(max_parallel)
        self.mainline = mainline
        self.bus = bus or events.EventBus()
        self._lock = threading.Lock()
        self._active: dict[str, WorkspaceLifecycle] = {}
        self._lifecycles: list[WorkspaceLifecycle] = []
        self._report = DispatchReport()

    # ── views ────────────────────────────────────────────────────

    @property
    def capacity(self) -> Capacity:
        with self._lock:
            return Capacity(current=len(self._active), max=self.max_parallel)

    def active_workspaces(self) -> list[WorkspaceLifecycle]:
        with self._lock:
            return list(self._active.values())

    @property
    def lifecycles(self) -> list[WorkspaceLifecycle]:
        return list(self._lifecycles)

    def summary(self) -> str:
        cap = self.capacity
        all_ws = [lc.workspace for lc in self._lifecycles]
        completed = sum(1 for ws in all_ws if ws.status == WorkspaceStatus.COMPLETED)
        failed = sum(1 for ws in all_ws if ws.status == WorkspaceStatus.FAILED)
        lines = [
            f"Workspaces: {len(all_ws)} total, {cap.current} active, "
            f"{completed} completed, {failed} failed",
            f"Capacity: {cap.current}/{cap.max}",
        ]
        for lc in self.active_workspaces():
            ws = lc.workspace
            elapsed = int((utcnow() - ws.created_at).total_seconds() // 60)
            lines.append(
                f"  {ws.name}: {ws.status.value}, "
                f"tasks {ws.tasks_completed}/{len(ws.task_descriptions)}, running {elapsed}m"
            )
        return "\n".join(lines)

    # ── control ──────────────────────────────────────────────────

    def stop(self, workspace_id: str, reason: str = "stopped by user") -> bool:
        with self._lock:
            lifecycle = self._active.get(workspace_id)
        if lifecycle is None:
            return False
        return lifecycle.stop(reason)

    def stop_all(self, reason: str = "stopped by user") -> int:
        stopped = 0
        for lifecycle in self.active_workspaces():
            if lifecycle.stop(reason):
                stopped += 1
        if stopped:
            log.warn(f"Stopped {stopped} active workspace(s)")
        return stopped

    def cleanup_failed(self) -> list[str]:
        """Remove worktrees of failed workspaces; their branches are kept."""
        cleaned: list[str] = []
        for lifecycle in self._lifecycles:
            ws = lifecycle.workspace
            if ws.status != WorkspaceStatus.FAILED or ws.path is None:
                continue
            try:
                self.provider.destroy(ws.name, ws.path, delete_branch=False)
            except Exception as e:  # noqa: BLE001
                log.warn(f"Failed to clean up {ws.name}: {e}")
                continue
            ws.path = None
            cleaned.append(ws.name)
        return cleaned

    # ── main loop ────────────────────────────────────────────────

    def run(self, groups: list[TaskGroup] | None = None, *, validate: bool = True) -> DispatchReport:
        """Admit and run every group; returns the per-group report.

        Raises :class:`SchedulingError` for an invalid graph and
        :class:`StallError` (with the partial report attached) when
        incomplete groups remain but none can start.
        """
        for group in groups or []:
            self.scheduler.add_group(group)
        if validate:
            self.scheduler.validate()

        self._report = DispatchReport()
        if not self.scheduler.groups:
            log.info("Nothing to do: no task groups")
            return self._finish()

        log.info(
            f"Dispatching {len(self.scheduler.groups)} group(s) "
            f"on up to {self.max_parallel} workspace(s)…"
        )
        inflight: dict[Future[object], tuple[TaskGroup, WorkspaceLifecycle]] = {}
        with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="parabranch") as pool:
            try:
                while True:
                    self._admit(pool, inflight)
                    if not inflight:
                        if self.scheduler.is_all_completed():
                            break
                        self._raise_stall()
                    done, _ = wait(list(inflight), return_when=FIRST_COMPLETED)
                    self._collect(done, inflight)
            except KeyboardInterrupt:
                self._report.interrupted = True
                self.stop_all("interrupted")
                if inflight:
                    done, _ = wait(list(inflight))
                    self._collect(done, inflight, merge=False)

        return self._finish()

    def _admit(self, pool: ThreadPoolExecutor, inflight: dict) -> None:
        available = self.capacity.available
        if available <= 0:
            return
        for group in self.scheduler.ready_groups(available):
            lifecycle = WorkspaceLifecycle.for_group(
                group,
                provider=self.provider,
                executor=self.executor,
                verifier=self.verifier,
                mainline=self.mainline,
                bus=self.bus,
            )
            self.scheduler.mark_started(group.id)
            with self._lock:
                self._active[lifecycle.workspace.id] = lifecycle
            self._lifecycles.append(lifecycle)
            self.bus.emit(
                events.GROUP_READY,
                group_id=group.id,
                priority=group.priority,
                workspace=lifecycle.workspace.name,
            )
            inflight[pool.submit(lifecycle.run)] = (group, lifecycle)

    def _collect(self, done, inflight: dict, *, merge: bool = True) -> None:
        finished = [inflight.pop(future) + (future,) for future in done]
        for _group, lifecycle, future in finished:
            exc = future.exception()
            if exc is not None:
                lifecycle.fail(lifecycle.status.value, f"worker crashed: {exc}")

        if merge and self.merger is not None:
            merge_report = self.merger.merge_all_completed([lc for _, lc, _ in finished])
            self._report.merges.extend(merge_report.results)

        for group, lifecycle, _future in finished:
            with self._lock:
                self._active.pop(lifecycle.workspace.id, None)
            self.scheduler.mark_completed(group.id)
            self._report.outcomes.append(GroupOutcome.from_lifecycle(group, lifecycle))

    def _raise_stall(self) -> None:
        blocked = self.scheduler.blocked_groups()
        detail = "; ".join(f"{gid} {why}".strip() for gid, why in blocked.items())
        message = f"Stalled: no group can start ({detail})"
        self._report.error = message
        report = self._finish()
        raise StallError(message, blocked=blocked, report=report)

    def _finish(self) -> DispatchReport:
        report = self._report
        report.pending_groups = [
            g.id for g in self.scheduler.groups if not self.scheduler.is_completed(g.id)
        ]
        report.finished_at = utcnow()
        self.bus.emit(
            events.RUN_FINISHED,
            completed=report.completed_groups,
            failed=report.failed_groups,
            pending=report.pending_groups,
            interrupted=report.interrupted,
            error=report.error,
        )
        return report
