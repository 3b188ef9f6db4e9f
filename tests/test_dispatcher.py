"""Tests for bounded concurrent dispatch of task groups."""

from __future__ import annotations

import threading
import time

import pytest

from parabranch import events
from parabranch.dispatcher import Capacity, ConcurrentDispatcher
from parabranch.merge import MergeCoordinator
from parabranch.scheduler import GroupScheduler, SchedulingError, StallError
from parabranch.tasks.grouping import group_tasks
from parabranch.workspace import WorkspaceStatus


def _dispatcher(provider, executor, verifier, merger, *, max_parallel=3, bus=None, merge=True):
    bus = bus or events.EventBus()
    coordinator = None
    if merge:
        coordinator = MergeCoordinator(merger, provider, mainline="main", settle_delay=0, bus=bus)
    return ConcurrentDispatcher(
        GroupScheduler(),
        provider=provider,
        executor=executor,
        verifier=verifier,
        merger=coordinator,
        max_parallel=max_parallel,
        mainline="main",
        bus=bus,
    )


class TestCapacity:
    def test_available(self) -> None:
        assert Capacity(current=2, max=5).available == 3
        assert Capacity(current=5, max=5).available == 0

    def test_max_parallel_clamped(self, provider, executor, verifier, merger) -> None:
        assert _dispatcher(provider, executor, verifier, merger, max_parallel=50).max_parallel == 10
        assert _dispatcher(provider, executor, verifier, merger, max_parallel=0).max_parallel == 1


# ═══════════════════════════════════════════════════════════════════
#  Admission and concurrency bound
# ═══════════════════════════════════════════════════════════════════


class TestDispatch:
    def test_empty_run(self, provider, executor, verifier, merger) -> None:
        report = _dispatcher(provider, executor, verifier, merger).run([])
        assert report.ok
        assert report.outcomes == []

    def test_full_plan_completes(self, provider, executor, verifier, merger) -> None:
        groups = group_tasks([
            "Create project scaffold", "Add login feature", "Add logout feature",
            "Write tests", "Fix crash on startup", "Update docs", "Optimize startup",
        ])
        dispatcher = _dispatcher(provider, executor, verifier, merger)
        report = dispatcher.run(groups)

        assert report.ok
        assert sorted(report.completed_groups) == sorted(g.id for g in groups)
        assert report.failed_groups == []
        assert len(merger.merged) == len(groups)
        assert dispatcher.scheduler.is_all_completed()
        assert dispatcher.capacity.current == 0

    def test_dependencies_run_in_order(self, provider, executor, verifier, merger, make_group) -> None:
        groups = [
            make_group("setup", priority=10),
            make_group("feature", priority=7, dependencies=["setup"]),
            make_group("tests", priority=6, dependencies=["feature"]),
        ]
        report = _dispatcher(provider, executor, verifier, merger).run(groups)
        assert [o.group_id for o in report.outcomes] == ["setup", "feature", "tests"]
        assert executor.calls == ["Implement setup", "Implement feature", "Implement tests"]

    def test_active_never_exceeds_max(self, provider, executor, verifier, merger, make_group) -> None:
        executor.delay = 0.03
        bus = events.EventBus()
        dispatcher = _dispatcher(provider, executor, verifier, merger, max_parallel=2, bus=bus)
        observed: list[int] = []
        bus.subscribe(lambda e: observed.append(dispatcher.capacity.current))

        report = dispatcher.run([make_group(f"g{i}") for i in range(7)])

        assert len(report.completed_groups) == 7
        assert max(observed) <= 2
        assert executor.gauge.peak <= 2

    def test_capacity_one_is_strictly_sequential(self, provider, executor, verifier, merger, make_group) -> None:
        executor.delay = 0.05
        groups = [make_group(g) for g in "ABC"]
        dispatcher = _dispatcher(provider, executor, verifier, merger, max_parallel=1)

        start = time.monotonic()
        report = dispatcher.run(groups)
        elapsed = time.monotonic() - start

        assert len(report.completed_groups) == 3
        assert executor.gauge.peak == 1
        assert elapsed >= 3 * 0.05

    def test_independent_groups_overlap(self, provider, executor, verifier, merger, make_group) -> None:
        executor.delay = 0.1
        _dispatcher(provider, executor, verifier, merger, max_parallel=3).run(
            [make_group(g) for g in "ABC"]
        )
        assert executor.gauge.peak > 1

    def test_admission_priority_order(self, provider, executor, verifier, merger, make_group) -> None:
        bus = events.EventBus()
        admitted: list[str] = []
        bus.subscribe(lambda e: admitted.append(e.data["group_id"]) if e.kind == events.GROUP_READY else None)
        _dispatcher(provider, executor, verifier, merger, max_parallel=1, bus=bus).run([
            make_group("low", priority=1), make_group("high", priority=9), make_group("mid", priority=5),
        ])
        assert admitted == ["high", "mid", "low"]

    def test_without_merge_coordinator(self, provider, executor, verifier, merger, make_group) -> None:
        dispatcher = _dispatcher(provider, executor, verifier, merger, merge=False)
        report = dispatcher.run([make_group("A")])
        assert report.outcomes[0].status == WorkspaceStatus.MERGING.value
        assert report.merges == []
        assert merger.merged == []

    def test_settle_delay_between_batches(self, provider, executor, verifier, merger, make_group, clock) -> None:
        """B finishes after A's batch merged; its merge still waits out the delay."""
        executor.delays = {"Implement B": 0.2}
        coordinator = MergeCoordinator(
            merger, provider, mainline="main", settle_delay=1.0, sleep=clock.sleep, clock=clock,
        )
        dispatcher = ConcurrentDispatcher(
            GroupScheduler(),
            provider=provider,
            executor=executor,
            verifier=verifier,
            merger=coordinator,
            max_parallel=2,
        )
        report = dispatcher.run([make_group("A", priority=9), make_group("B", priority=1)])

        assert len(merger.merged) == 2
        assert report.ok
        assert clock.sleeps == [1.0]


# ═══════════════════════════════════════════════════════════════════
#  Failure handling
# ═══════════════════════════════════════════════════════════════════


class TestFailures:
    def test_sibling_completes_when_one_fails(self, provider, executor, verifier, merger, make_group) -> None:
        executor.raise_on = {"Implement A"}
        executor.delays = {"Implement B": 0.05}
        dispatcher = _dispatcher(provider, executor, verifier, merger)
        report = dispatcher.run([make_group("A"), make_group("B")])

        by_group = {o.group_id: o for o in report.outcomes}
        assert by_group["A"].status == WorkspaceStatus.FAILED.value
        assert by_group["A"].failed_phase == "implementing"
        assert by_group["B"].status == WorkspaceStatus.COMPLETED.value
        assert report.completed_groups == ["B"]
        assert report.failed_groups == ["A"]
        # A failed group still counts as done for scheduling.
        assert dispatcher.scheduler.is_all_completed()

    def test_failed_group_releases_dependents(self, provider, executor, verifier, merger, make_group) -> None:
        verifier.fail_groups = {"setup"}
        report = _dispatcher(provider, executor, verifier, merger).run([
            make_group("setup"), make_group("feature", dependencies=["setup"]),
        ])
        assert report.failed_groups == ["setup"]
        assert report.completed_groups == ["feature"]

    def test_merge_failure_reported(self, provider, executor, verifier, merger, make_group) -> None:
        merger.fail = {"feature/a": "CONFLICT (content): Merge conflict in app.py"}
        report = _dispatcher(provider, executor, verifier, merger).run([
            make_group("A", priority=9, branch="feature/a"), make_group("B", priority=1),
        ])
        assert report.failed_groups == ["A"]
        assert report.completed_groups == ["B"]
        failed = next(o for o in report.outcomes if o.group_id == "A")
        assert failed.failed_phase == "merging"
        assert "Merge conflict" in failed.error

    def test_stop_one_workspace(self, provider, executor, verifier, merger, make_group) -> None:
        executor.delays = {"Implement B": 0.05}
        dispatcher = _dispatcher(provider, executor, verifier, merger)

        def _stop_a(event: events.Event) -> None:
            if (event.kind == events.WORKSPACE_PHASE and event.data["group_id"] == "A"
                    and event.data["status"] == "implementing"):
                dispatcher.stop(event.data["workspace_id"], "stopped by user")

        dispatcher.bus.subscribe(_stop_a)
        report = dispatcher.run([make_group("A"), make_group("B")])

        by_group = {o.group_id: o for o in report.outcomes}
        assert by_group["A"].status == WorkspaceStatus.FAILED.value
        assert by_group["A"].error == "stopped by user"
        assert by_group["B"].status == WorkspaceStatus.COMPLETED.value
        assert "Implement A" not in executor.calls

    def test_stop_all_cancels_running_tasks(self, provider, hanging_executor, verifier, merger, make_group) -> None:
        dispatcher = _dispatcher(provider, hanging_executor, verifier, merger)
        result: list = []
        worker = threading.Thread(target=lambda: result.append(dispatcher.run([make_group("A"), make_group("B")])))
        worker.start()
        assert hanging_executor.started.acquire(timeout=5)
        assert hanging_executor.started.acquire(timeout=5)

        start = time.monotonic()
        assert dispatcher.stop_all("interrupted") == 2
        worker.join(5)

        assert not worker.is_alive()
        assert time.monotonic() - start < 5
        assert sorted(hanging_executor.cancelled) == ["Implement A", "Implement B"]
        [report] = result
        assert sorted(report.failed_groups) == ["A", "B"]
        assert merger.merged == []

    def test_stop_unknown_workspace(self, provider, executor, verifier, merger) -> None:
        assert not _dispatcher(provider, executor, verifier, merger).stop("ws-missing")

    def test_cleanup_failed_keeps_branch(self, provider, executor, verifier, merger, make_group) -> None:
        verifier.fail_groups = {"A"}
        dispatcher = _dispatcher(provider, executor, verifier, merger)
        dispatcher.run([make_group("A")])
        name = dispatcher.lifecycles[0].workspace.name

        assert dispatcher.cleanup_failed() == [name]
        assert (name, False) in provider.destroyed
        assert dispatcher.lifecycles[0].workspace.path is None
        assert dispatcher.cleanup_failed() == []


# ═══════════════════════════════════════════════════════════════════
#  Graph errors
# ═══════════════════════════════════════════════════════════════════


class TestGraphErrors:
    def test_invalid_graph_rejected_up_front(self, provider, executor, verifier, merger, make_group) -> None:
        with pytest.raises(SchedulingError):
            _dispatcher(provider, executor, verifier, merger).run([
                make_group("A", dependencies=["B"]), make_group("B", dependencies=["A"]),
            ])
        assert executor.calls == []

    def test_duplicate_group_ids_rejected(self, provider, executor, verifier, merger, make_group) -> None:
        with pytest.raises(SchedulingError, match="Duplicate"):
            _dispatcher(provider, executor, verifier, merger).run([
                make_group("A", tasks=["one"]), make_group("A", tasks=["two"]),
            ])
        assert executor.calls == []

    def test_stall_raises_with_partial_report(self, provider, executor, verifier, merger, make_group) -> None:
        dispatcher = _dispatcher(provider, executor, verifier, merger)
        with pytest.raises(StallError) as exc_info:
            dispatcher.run(
                [make_group("A"), make_group("B", dependencies=["ghost"])],
                validate=False,
            )
        err = exc_info.value
        assert "B" in err.blocked
        assert "ghost (unknown)" in err.blocked["B"]
        assert err.report.completed_groups == ["A"]
        assert err.report.pending_groups == ["B"]
        assert not err.report.ok

    def test_summary(self, provider, executor, verifier, merger, make_group) -> None:
        dispatcher = _dispatcher(provider, executor, verifier, merger, max_parallel=4)
        dispatcher.run([make_group("A")])
        text = dispatcher.summary()
        assert "1 total, 0 active, 1 completed, 0 failed" in text
        assert "Capacity: 0/4" in text
