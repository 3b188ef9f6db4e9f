"""Boundary contracts with the collaborators that do the actual work.

The core never shells out directly.  It talks to four hooks:

* :class:`WorkspaceProvider` materializes and tears down isolated copies of
  the mainline (git worktrees in production, see :mod:`parabranch.git_ops`).
* :class:`TaskExecutor` runs one task inside a workspace (an AI CLI engine in
  production, see :mod:`parabranch.executor`).
* :class:`Verifier` decides whether a workspace may be merged.
* :class:`Merger` integrates a branch into the mainline.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from parabranch.tasks.model import Task
    from parabranch.workspace import Workspace


@dataclass
class TaskOutcome:
    success: bool
    output: str = ""
    error: str = ""


@dataclass
class VerifyOutcome:
    passed: bool
    output: str = ""


@dataclass
class MergeOutcome:
    success: bool
    error: str = ""
    conflicts: list[str] = field(default_factory=list)


class WorkspaceProvider(ABC):
    """Creates and destroys isolated workspaces."""

    @abstractmethod
    def create(self, name: str, *, base: str, existing: bool = False) -> Path:
        """Materialize *name* from *base* (or attach the existing branch).

        Must raise :class:`parabranch.git_ops.WorkspaceError` when *name*
        collides with a workspace that is already active.
        """

    @abstractmethod
    def destroy(self, name: str, path: Path | None, *, delete_branch: bool = True) -> None:
        """Reclaim the storage behind a workspace."""


class TaskExecutor(ABC):
    @abstractmethod
    def execute(self, task: Task, cwd: Path | None, cancel: threading.Event | None = None) -> TaskOutcome:
        """Run *task* in *cwd*; must not raise for ordinary task failures.

        Long-running executors should give up promptly once *cancel* is set.
        """


class Verifier(ABC):
    @abstractmethod
    def verify(self, workspace: Workspace) -> VerifyOutcome:
        ...


class Merger(ABC):
    @abstractmethod
    def merge(self, branch: str, mainline: str) -> MergeOutcome:
        ...


class AlwaysPassVerifier(Verifier):
    """Verifier used when no verification command is configured."""

    def verify(self, workspace: Workspace) -> VerifyOutcome:
        return VerifyOutcome(passed=True, output="no verification configured")
