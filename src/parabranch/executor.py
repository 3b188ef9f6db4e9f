"""Production hooks: run tasks through AI engines, verify with a shell command."""

from __future__ import annotations

import shlex
import subprocess
import threading
from pathlib import Path

from parabranch import log
from parabranch.engines.base import EngineBase
from parabranch.engines.registry import get_engine
from parabranch.git_ops import add_and_commit, has_dirty_worktree
from parabranch.hooks import TaskExecutor, TaskOutcome, Verifier, VerifyOutcome
from parabranch.tasks.model import Task
from parabranch.workspace import Workspace

_OUTPUT_TAIL = 2000


def build_task_prompt(task: Task) -> str:
    return f"""You are working on a specific task. Focus ONLY on this task:

TASK ID: {task.id}
CATEGORY: {task.category.value}
TASK: {task.description}

Instructions:
1. Implement this specific task completely by creating/editing the necessary code files.
2. Write tests if appropriate.
3. Commit your changes with a descriptive message.

Focus only on implementing: {task.description}"""


class EngineTaskExecutor(TaskExecutor):
    """Runs each task through an AI CLI engine inside the workspace.

    The engine is picked from the task's ``tool`` tag, falling back to
    *default_engine*.  Leftover changes are committed so the branch carries
    the task's work into the merge.
    """

    def __init__(self, default_engine: str = "claude", *, timeout: int | None = 1800) -> None:
        self.default_engine = default_engine
        self.timeout = timeout
        self._engines: dict[str, EngineBase] = {}

    def _engine_for(self, task: Task) -> EngineBase:
        name = task.tool or self.default_engine
        if name not in self._engines:
            self._engines[name] = get_engine(name)
        return self._engines[name]

    def execute(self, task: Task, cwd: Path | None, cancel: threading.Event | None = None) -> TaskOutcome:
        try:
            engine = self._engine_for(task)
        except ValueError as e:
            return TaskOutcome(False, error=str(e))

        result = engine.run_sync(build_task_prompt(task), cwd=cwd, timeout=self.timeout, cancel=cancel)
        if not result.ok:
            return TaskOutcome(False, output=result.text, error=result.error)

        if cwd is not None and has_dirty_worktree(cwd=cwd):
            add_and_commit(f"parabranch: {task.description}"[:72], cwd=cwd)
        log.debug(f"{task.id} done ({result.input_tokens} in / {result.output_tokens} out tokens)")
        return TaskOutcome(True, output=result.text)


class CommandVerifier(Verifier):
    """Passes when *command* exits 0 inside the workspace."""

    def __init__(self, command: str, *, timeout: int | None = 900) -> None:
        self.command = command
        self.timeout = timeout

    def verify(self, workspace: Workspace) -> VerifyOutcome:
        try:
            r = subprocess.run(
                shlex.split(self.command),
                cwd=workspace.path,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return VerifyOutcome(False, f"verification timed out after {self.timeout}s")
        except FileNotFoundError as e:
            return VerifyOutcome(False, f"verification command not found: {e.filename}")

        output = (r.stdout + r.stderr).strip()[-_OUTPUT_TAIL:]
        return VerifyOutcome(r.returncode == 0, output or f"exit code {r.returncode}")
