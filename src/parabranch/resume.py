"""Discover interrupted work on local branches and turn it back into groups."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from parabranch import log
from parabranch.config import DEFAULT_RESUME_WINDOW_DAYS
from parabranch.git_ops import BranchRecord, list_branches, slugify
from parabranch.tasks.grouping import GROUP_PRIORITIES
from parabranch.tasks.model import TaskCategory, TaskGroup
from parabranch.workspace import CATEGORY_BRANCH_PREFIX, WorkspaceStatus

MAINLINE_NAMES = ("main", "master")

_INTENT_PREFIX_RE = re.compile(r"^(feature|fix|docs|test|refactor|setup|config|ui)[/-]", re.IGNORECASE)
# Workspace-id tail that branch_name_for appends; needs a digit so words like "facade" survive.
_ID_SUFFIX_RE = re.compile(r"-(?=[a-f]*\d)[0-9a-f]{6}$")

PREFIX_CATEGORY: dict[str, TaskCategory] = {
    prefix: category for category, prefix in CATEGORY_BRANCH_PREFIX.items()
}
RESUMABLE_PREFIXES = tuple(PREFIX_CATEGORY)


def extract_intent(branch: str) -> str:
    """``feature/add-user_auth`` -> ``Add user auth``."""
    text = _INTENT_PREFIX_RE.sub("", branch)
    text = _ID_SUFFIX_RE.sub("", text)
    text = re.sub(r"[-_]+", " ", text).strip()
    return text[:1].upper() + text[1:]


def resume_group_id(branch: str) -> str:
    """Group id for a resumed branch; the hash keeps ids unique after slugging."""
    digest = hashlib.sha1(branch.encode("utf-8")).hexdigest()[:6]
    return f"resume-{slugify(branch, max_len=60)}-{digest}"


def branch_prefix(branch: str) -> str:
    match = re.match(r"^([a-z]+)[/-]", branch.lower())
    return match.group(1) if match else ""


@dataclass
class WorkspaceInfo:
    name: str
    last_commit: str
    last_commit_message: str
    last_commit_date: datetime | None
    intent: str
    status: WorkspaceStatus = WorkspaceStatus.IDLE

    @classmethod
    def from_record(cls, record: BranchRecord) -> WorkspaceInfo:
        return cls(
            name=record.name,
            last_commit=record.last_commit,
            last_commit_message=record.last_commit_message,
            last_commit_date=record.last_commit_date,
            intent=extract_intent(record.name),
        )

    @property
    def category(self) -> TaskCategory | None:
        return PREFIX_CATEGORY.get(branch_prefix(self.name))


class ResumeScanner:
    """Lists local branches and decides which are worth resuming.

    A branch is resumable when its name starts with a known category prefix
    and its last commit falls inside the resume window.
    """

    def __init__(self, repo_root: Path, mainline: str = "main",
                 window_days: int = DEFAULT_RESUME_WINDOW_DAYS) -> None:
        self.repo_root = repo_root
        self.mainline = mainline
        self.window_days = window_days

    def scan(self) -> list[WorkspaceInfo]:
        skip = {self.mainline, *MAINLINE_NAMES}
        infos = [
            WorkspaceInfo.from_record(r)
            for r in list_branches(cwd=self.repo_root)
            if r.name not in skip
        ]
        log.debug(f"Found {len(infos)} candidate branch(es) for resume")
        return infos

    def is_resumable(self, info: WorkspaceInfo, now: datetime | None = None) -> bool:
        if info.category is None or info.last_commit_date is None:
            return False
        now = now or datetime.now(timezone.utc)
        when = info.last_commit_date
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return now - when < timedelta(days=self.window_days)

    def resumable(self, now: datetime | None = None) -> list[WorkspaceInfo]:
        return [info for info in self.scan() if self.is_resumable(info, now=now)]

    @staticmethod
    def to_groups(infos: list[WorkspaceInfo]) -> list[TaskGroup]:
        """One independent group per branch, bound to that branch."""
        groups: list[TaskGroup] = []
        for info in infos:
            category = info.category or TaskCategory.FEATURE
            priority, minutes = GROUP_PRIORITIES[category]
            groups.append(
                TaskGroup(
                    id=resume_group_id(info.name),
                    tasks=[info.intent or info.last_commit_message or info.name],
                    category=category,
                    priority=priority,
                    dependencies=[],
                    estimated_minutes=minutes,
                    branch=info.name,
                )
            )
        return groups
