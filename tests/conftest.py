"""Shared fixtures for parabranch tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use parabranch.io_utils read_text/write_text for consistent UTF-8 I/O.

The fake hooks below stand in for git worktrees, AI engines, verification
and merges.  They are thread-safe and record how they were called, including
the peak number of concurrent callers.
"""

from __future__ import annotations

import subprocess
import threading
import time
from pathlib import Path

import pytest

from parabranch.git_ops import WorkspaceError, slugify
from parabranch.hooks import (
    Merger,
    MergeOutcome,
    TaskExecutor,
    TaskOutcome,
    Verifier,
    VerifyOutcome,
    WorkspaceProvider,
)
from parabranch.io_utils import write_text
from parabranch.tasks.model import TaskCategory, TaskGroup


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register opt-in switch for expensive end-to-end tests."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests marked with 'e2e'.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip e2e tests unless explicitly enabled."""
    if config.getoption("--run-e2e"):
        return

    skip_e2e = pytest.mark.skip(
        reason="E2E tests are skipped by default. Use --run-e2e to include them.",
    )
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo on branch ``main`` for testing."""
    repo = tmp_path / "repo"
    repo.mkdir()
    subprocess.run(["git", "init"], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=repo, capture_output=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=repo, capture_output=True)
    subprocess.run(["git", "config", "user.email", "test@test"], cwd=repo, capture_output=True)
    subprocess.run(["git", "config", "commit.gpgsign", "false"], cwd=repo, capture_output=True)
    write_text(repo / "README.md", "# Test\n")
    subprocess.run(["git", "add", "README.md"], cwd=repo, capture_output=True)
    subprocess.run(["git", "commit", "-m", "Initial"], cwd=repo, capture_output=True)
    return repo


# ── Fake hooks ──────────────────────────────────────────────────────


class _ConcurrencyGauge:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0

    def __enter__(self) -> _ConcurrencyGauge:
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)
        return self

    def __exit__(self, *exc: object) -> None:
        with self._lock:
            self.current -= 1


class FakeProvider(WorkspaceProvider):
    """Hands out fake paths; tracks live workspaces and rejects duplicates."""

    def __init__(self, base: Path) -> None:
        self.base = base
        self.fail_names: set[str] = set()
        self.live: dict[str, Path] = {}
        self.created: list[str] = []
        self.destroyed: list[tuple[str, bool]] = []
        self._lock = threading.Lock()

    def create(self, name: str, *, base: str, existing: bool = False) -> Path:
        with self._lock:
            if name in self.fail_names:
                raise WorkspaceError(f"cannot create {name}")
            if name in self.live:
                raise WorkspaceError(f"Branch {name} is already active in another worktree")
            path = self.base / slugify(name, max_len=80)
            self.live[name] = path
            self.created.append(name)
        return path

    def destroy(self, name: str, path: Path | None, *, delete_branch: bool = True) -> None:
        with self._lock:
            self.live.pop(name, None)
            self.destroyed.append((name, delete_branch))


class FakeExecutor(TaskExecutor):
    """Succeeds unless the description is listed in ``fail`` or ``raise_on``."""

    def __init__(self) -> None:
        self.fail: set[str] = set()
        self.raise_on: set[str] = set()
        self.delay = 0.0
        self.delays: dict[str, float] = {}
        self.calls: list[str] = []
        self.gauge = _ConcurrencyGauge()
        self._lock = threading.Lock()

    def execute(self, task, cwd, cancel=None):
        with self.gauge:
            with self._lock:
                self.calls.append(task.description)
            time.sleep(self.delays.get(task.description, self.delay))
            if task.description in self.raise_on:
                raise RuntimeError(f"engine crashed on {task.description}")
            if task.description in self.fail:
                return TaskOutcome(False, error=f"could not do {task.description}")
            return TaskOutcome(True, output=f"did {task.description}")


class HangingExecutor(TaskExecutor):
    """Blocks every task until its workspace is cancelled (or 10s pass)."""

    def __init__(self) -> None:
        self.started = threading.Semaphore(0)
        self.cancelled: list[str] = []
        self._lock = threading.Lock()

    def execute(self, task, cwd, cancel=None):
        self.started.release()
        if cancel is not None and cancel.wait(10):
            with self._lock:
                self.cancelled.append(task.description)
            return TaskOutcome(False, error="cancelled")
        return TaskOutcome(True)


class FakeVerifier(Verifier):
    """Fails any workspace whose group id is listed in ``fail_groups``."""

    def __init__(self) -> None:
        self.fail_groups: set[str] = set()
        self.verified: list[str] = []

    def verify(self, workspace):
        self.verified.append(workspace.group_id)
        if workspace.group_id in self.fail_groups:
            return VerifyOutcome(False, "2 failed, 10 passed")
        return VerifyOutcome(True, "10 passed")


class FakeMerger(Merger):
    """Records merge order and the peak number of merges in flight."""

    def __init__(self) -> None:
        self.fail: dict[str, str] = {}
        self.raise_on: set[str] = set()
        self.delay = 0.0
        self.merged: list[str] = []
        self.gauge = _ConcurrencyGauge()

    def merge(self, branch: str, mainline: str) -> MergeOutcome:
        with self.gauge:
            time.sleep(self.delay)
            if branch in self.raise_on:
                raise OSError("index.lock exists")
            if branch in self.fail:
                return MergeOutcome(False, error=self.fail[branch], conflicts=["app.py"])
            self.merged.append(branch)
            return MergeOutcome(True)


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(round(seconds, 6))
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider(tmp_path: Path) -> FakeProvider:
    return FakeProvider(tmp_path / "worktrees")


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def hanging_executor() -> HangingExecutor:
    return HangingExecutor()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def merger() -> FakeMerger:
    return FakeMerger()


def _make_group(
    id: str,
    tasks: list[str] | None = None,
    category: TaskCategory = TaskCategory.FEATURE,
    priority: int = 5,
    dependencies: list[str] | None = None,
    branch: str | None = None,
) -> TaskGroup:
    return TaskGroup(
        id=id,
        tasks=tasks if tasks is not None else [f"Implement {id}"],
        category=category,
        priority=priority,
        dependencies=dependencies or [],
        estimated_minutes=10,
        branch=branch,
    )


@pytest.fixture
def make_group():
    """Factory fixture that creates TaskGroup instances."""
    return _make_group
