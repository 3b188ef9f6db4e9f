"""Serial reintegration of verified workspaces into the mainline."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

from parabranch import events, log
from parabranch.failures import looks_like_merge_conflict
from parabranch.hooks import Merger, WorkspaceProvider
from parabranch.workspace import (
    InvalidTransition,
    Workspace,
    WorkspaceLifecycle,
    WorkspaceStatus,
    WorkspaceStopped,
)


@dataclass
class MergeResult:
    workspace_id: str
    name: str
    priority: int
    success: bool
    error: str = ""
    conflicts: list[str] = field(default_factory=list)


@dataclass
class MergeReport:
    results: list[MergeResult] = field(default_factory=list)

    @property
    def merged(self) -> list[str]:
        return [r.name for r in self.results if r.success]

    @property
    def failed(self) -> list[str]:
        return [r.name for r in self.results if not r.success]


class MergeCoordinator:
    """Merges workspaces into *mainline* strictly one at a time.

    Every merge runs inside a single lock, so even concurrent callers never
    have two merges in flight.  Every merge after the first starts no sooner
    than ``settle_delay`` seconds after the previous one ended, whichever
    call or batch the previous merge came from.
    """

    def __init__(
        self,
        merger: Merger,
        provider: WorkspaceProvider,
        *,
        mainline: str,
        settle_delay: float = 1.0,
        bus: events.EventBus | None = None,
        sleep=time.sleep,
        clock=time.monotonic,
    ) -> None:
        self.merger = merger
        self.provider = provider
        self.mainline = mainline
        self.settle_delay = settle_delay
        self.bus = bus or events.EventBus()
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._last_merge_end: float | None = None

    def merge_all_completed(self, lifecycles: list[WorkspaceLifecycle]) -> MergeReport:
        """Merge every lifecycle waiting in ``MERGING``, highest priority first.

        Workspaces in any other status are skipped.  A failed merge marks that
        workspace ``FAILED`` and the remaining merges still run.
        """
        report = MergeReport()
        pending = [lc for lc in lifecycles if lc.status == WorkspaceStatus.MERGING]
        if not pending:
            return report

        pending.sort(key=lambda lc: lc.workspace.priority, reverse=True)
        log.info(f"Merging {len(pending)} workspace(s) into {self.mainline}…")
        for lifecycle in pending:
            report.results.append(self.merge(lifecycle))
        return report

    def merge(self, lifecycle: WorkspaceLifecycle) -> MergeResult:
        ws = lifecycle.workspace
        with self._lock:
            if lifecycle.status != WorkspaceStatus.MERGING:
                return self._result(ws, False, f"not ready to merge (status: {ws.status.value})")
            self._wait_for_settle()
            try:
                outcome = self.merger.merge(ws.name, self.mainline)
            except Exception as e:  # noqa: BLE001
                lifecycle.mark_merge_failed(f"merge raised: {e}")
                return self._finish(ws, False, ws.error)
            finally:
                self._last_merge_end = self._clock()

            if not outcome.success:
                error = outcome.error or "merge failed"
                if outcome.conflicts and not looks_like_merge_conflict(error):
                    error = f"{error} (conflicts: {', '.join(outcome.conflicts)})"
                lifecycle.mark_merge_failed(error)
                return self._finish(ws, False, error, outcome.conflicts)

            try:
                lifecycle.mark_merged()
            except (WorkspaceStopped, InvalidTransition):
                # Stopped while git was merging; the merge itself stands.
                return self._finish(ws, False, ws.error)
            try:
                self.provider.destroy(ws.name, ws.path)
            except Exception as e:  # noqa: BLE001
                log.warn(f"Merged {ws.name} but could not remove its workspace: {e}")
            return self._finish(ws, True, "")

    def _wait_for_settle(self) -> None:
        # Caller holds self._lock.
        if self._last_merge_end is None or self.settle_delay <= 0:
            return
        remaining = self.settle_delay - (self._clock() - self._last_merge_end)
        if remaining > 0:
            log.debug(f"Waiting {remaining:.2f}s for {self.mainline} to settle")
            self._sleep(remaining)

    def _finish(self, ws: Workspace, success: bool, error: str,
                conflicts: list[str] | None = None) -> MergeResult:
        self.bus.emit(
            events.MERGE_OUTCOME,
            workspace_id=ws.id,
            name=ws.name,
            mainline=self.mainline,
            success=success,
            error=error,
        )
        return self._result(ws, success, error, conflicts)

    @staticmethod
    def _result(ws: Workspace, success: bool, error: str,
                conflicts: list[str] | None = None) -> MergeResult:
        return MergeResult(ws.id, ws.name, ws.priority, success, error, list(conflicts or []))
