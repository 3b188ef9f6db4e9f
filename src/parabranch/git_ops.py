"""Git operations: worktrees, branches, merges."""

from __future__ import annotations

import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from parabranch import log
from parabranch.hooks import Merger, MergeOutcome, WorkspaceProvider


class WorkspaceError(Exception):
    """Raised when a git worktree cannot be created or attached."""


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing output."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        check=check,
    )


def slugify(text: str, max_len: int = 40) -> str:
    """Convert text to a branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-")


def current_branch(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else "main"


def branch_exists(name: str, cwd: Path | None = None) -> bool:
    r = _git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=cwd)
    return r.returncode == 0


def checkout(branch: str, cwd: Path | None = None) -> bool:
    r = _git("checkout", branch, cwd=cwd)
    return r.returncode == 0


def merge_no_edit_result(branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Run merge and return the raw completed-process for error inspection."""
    return _git("merge", "--no-edit", branch, cwd=cwd)


def merge_abort(cwd: Path | None = None) -> None:
    _git("merge", "--abort", cwd=cwd)


def conflicted_files(cwd: Path | None = None) -> list[str]:
    r = _git("diff", "--name-only", "--diff-filter=U", cwd=cwd)
    if r.returncode != 0 or not r.stdout.strip():
        return []
    return [f.strip() for f in r.stdout.strip().splitlines() if f.strip()]


def has_dirty_worktree(cwd: Path | None = None) -> bool:
    r = _git("status", "--porcelain", cwd=cwd)
    return bool(r.stdout.strip())


def tracked_changes(cwd: Path | None = None) -> list[str]:
    """Modified or staged tracked files; untracked files are ignored."""
    r = _git("status", "--porcelain", "--untracked-files=no", cwd=cwd)
    return [line.strip() for line in r.stdout.splitlines() if line.strip()]


def add_and_commit(message: str, cwd: Path | None = None) -> bool:
    _git("add", ".", cwd=cwd)
    r = _git("commit", "-m", message, cwd=cwd)
    return r.returncode == 0


def delete_branch(name: str, force: bool = False, cwd: Path | None = None) -> None:
    flag = "-D" if force else "-d"
    _git("branch", flag, name, cwd=cwd)


# ── Branch inventory ─────────────────────────────────────────────────


@dataclass
class BranchRecord:
    name: str
    last_commit: str
    last_commit_message: str
    last_commit_date: datetime | None


def list_branches(cwd: Path | None = None) -> list[BranchRecord]:
    """Local branches with their most recent commit."""
    r = _git(
        "for-each-ref",
        "--format=%(refname:short)%00%(objectname)%00%(committerdate:iso-strict)%00%(subject)",
        "refs/heads",
        cwd=cwd,
    )
    if r.returncode != 0:
        return []
    records: list[BranchRecord] = []
    for line in r.stdout.splitlines():
        parts = line.split("\x00")
        if len(parts) < 4 or not parts[0]:
            continue
        try:
            when = datetime.fromisoformat(parts[2]) if parts[2] else None
        except ValueError:
            when = None
        records.append(BranchRecord(parts[0], parts[1], parts[3], when))
    return records


# ── Worktree management ─────────────────────────────────────────────

def worktree_prune(cwd: Path | None = None) -> None:
    _git("worktree", "prune", cwd=cwd)


def worktree_remove(worktree_dir: Path, cwd: Path | None = None) -> bool:
    r = _git("worktree", "remove", "--force", str(worktree_dir), cwd=cwd)
    return r.returncode == 0


def checked_out_branches(cwd: Path | None = None) -> set[str]:
    """Branches currently checked out in any worktree of the repository."""
    r = _git("worktree", "list", "--porcelain", cwd=cwd)
    branches: set[str] = set()
    for line in r.stdout.splitlines():
        if line.startswith("branch refs/heads/"):
            branches.add(line[len("branch refs/heads/"):])
    return branches


class GitWorkspaceProvider(WorkspaceProvider):
    """One git worktree per workspace, all under *worktree_base*.

    Worktree and branch bookkeeping touches the shared ``.git`` directory, so
    create/destroy run one at a time; everything done inside a worktree
    afterwards is fully parallel.
    """

    def __init__(self, repo_root: Path, worktree_base: Path) -> None:
        self.repo_root = repo_root
        self.worktree_base = worktree_base
        self._lock = threading.Lock()

    def path_for(self, name: str) -> Path:
        return self.worktree_base / slugify(name, max_len=80)

    def create(self, name: str, *, base: str, existing: bool = False) -> Path:
        path = self.path_for(name)
        with self._lock:
            worktree_prune(cwd=self.repo_root)
            if path.exists():
                raise WorkspaceError(f"Workspace directory already exists for {name}: {path}")
            if name in checked_out_branches(cwd=self.repo_root):
                raise WorkspaceError(f"Branch {name} is already active in another worktree")

            self.worktree_base.mkdir(parents=True, exist_ok=True)
            if existing:
                if not branch_exists(name, cwd=self.repo_root):
                    raise WorkspaceError(f"Branch {name} does not exist")
                r = _git("worktree", "add", str(path), name, cwd=self.repo_root)
            else:
                if branch_exists(name, cwd=self.repo_root):
                    raise WorkspaceError(f"Branch {name} already exists")
                r = _git("worktree", "add", "-b", name, str(path), base, cwd=self.repo_root)

            if r.returncode != 0:
                raise WorkspaceError(
                    f"Failed to create worktree for {name}: {r.stderr.strip() or r.stdout.strip()}"
                )
        log.debug(f"Worktree ready: {name} -> {path}")
        return path

    def destroy(self, name: str, path: Path | None, *, delete_branch: bool = True) -> None:
        with self._lock:
            if path is not None:
                if not worktree_remove(path, cwd=self.repo_root) and path.exists():
                    shutil.rmtree(path, ignore_errors=True)
                worktree_prune(cwd=self.repo_root)
            if delete_branch:
                _git("branch", "-D", name, cwd=self.repo_root)
        log.debug(f"Worktree removed: {name}")


# ── Merge ────────────────────────────────────────────────────────────


class GitMerger(Merger):
    """Merges branches into the mainline checked out at *repo_root*."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root

    def merge(self, branch: str, mainline: str) -> MergeOutcome:
        ensure_clean_git_state(cwd=self.repo_root)
        if current_branch(cwd=self.repo_root) != mainline and not checkout(mainline, cwd=self.repo_root):
            return MergeOutcome(False, error=f"Failed to checkout mainline {mainline}")

        r = merge_no_edit_result(branch, cwd=self.repo_root)
        if r.returncode == 0:
            return MergeOutcome(True)

        conflicts = conflicted_files(cwd=self.repo_root)
        merge_abort(cwd=self.repo_root)
        detail = (r.stdout.strip() + "\n" + r.stderr.strip()).strip()
        message = detail.splitlines()[-1] if detail else f"git merge exited with {r.returncode}"
        if conflicts:
            message = f"Merge conflict in {', '.join(conflicts)}"
        return MergeOutcome(False, error=message, conflicts=conflicts)


# ── Clean git state ──────────────────────────────────────────────────

def ensure_clean_git_state(cwd: Path | None = None) -> None:
    """Abort any interrupted merge/rebase/cherry-pick."""
    git_dir_r = _git("rev-parse", "--git-dir", cwd=cwd)
    if git_dir_r.returncode != 0:
        return
    git_dir = Path(git_dir_r.stdout.strip())
    if not git_dir.is_absolute():
        git_dir = (cwd or Path.cwd()) / git_dir

    if (git_dir / "MERGE_HEAD").exists():
        log.warn("Detected interrupted git merge. Aborting…")
        merge_abort(cwd=cwd)
    if (git_dir / "REBASE_HEAD").exists():
        log.warn("Detected interrupted git rebase. Aborting…")
        _git("rebase", "--abort", cwd=cwd)
    if (git_dir / "CHERRY_PICK_HEAD").exists():
        log.warn("Detected interrupted git cherry-pick. Aborting…")
        _git("cherry-pick", "--abort", cwd=cwd)
