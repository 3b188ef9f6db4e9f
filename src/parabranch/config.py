"""Configuration defaults, env vars, and runtime options for parabranch."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


VERSION = "1.0.0"

MIN_PARALLEL = 1
MAX_PARALLEL = 10

DEFAULT_ENGINE = "claude"
DEFAULT_RESUME_WINDOW_DAYS = 7
DEFAULT_SETTLE_DELAY = 1.0


def clamp_parallel(value: int) -> int:
    """Keep the concurrency budget inside ``1..10``."""
    return max(MIN_PARALLEL, min(value, MAX_PARALLEL))


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


@dataclass
class Config:
    """Runtime configuration; CLI flags win over ``PARABRANCH_*`` env vars."""

    # Tools
    engine: str = ""
    task_timeout: int = 1800
    verify_command: str = ""

    # Scheduling
    max_parallel: int = 0
    dry_run: bool = False

    # Git
    base_branch: str = ""
    settle_delay: float = -1.0
    auto_merge: bool = True
    keep_failed: bool = False

    # Resume
    resume: bool = True
    resume_window_days: int = 0

    # Misc
    verbose: bool = False
    artifacts_dir: str = ""

    # Derived / runtime state (not user-set)
    repo_root: str = ""
    worktree_base: str = ""

    def __post_init__(self) -> None:
        if not self.engine:
            self.engine = os.environ.get("PARABRANCH_ENGINE") or DEFAULT_ENGINE
        if not self.verify_command:
            self.verify_command = os.environ.get("PARABRANCH_VERIFY_CMD", "")
        if self.max_parallel <= 0:
            self.max_parallel = _env_int("PARABRANCH_MAX_PARALLEL") or 3
        self.max_parallel = clamp_parallel(self.max_parallel)
        if self.settle_delay < 0:
            env_delay = _env_float("PARABRANCH_MERGE_DELAY")
            self.settle_delay = env_delay if env_delay is not None and env_delay >= 0 else DEFAULT_SETTLE_DELAY
        if self.resume_window_days <= 0:
            self.resume_window_days = _env_int("PARABRANCH_RESUME_DAYS") or DEFAULT_RESUME_WINDOW_DAYS


def resolve_repo_root() -> Path:
    """Return the git repository root, falling back to cwd."""
    import subprocess

    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path.cwd()
