"""Partition task descriptions into prioritized, inter-dependent TaskGroups."""

from __future__ import annotations

from parabranch.tasks.classify import classify
from parabranch.tasks.model import TaskCategory, TaskGroup

SETUP_GROUP_ID = "group-setup"
FEATURE_GROUP_PREFIX = "group-feature-"
BUGFIX_GROUP_ID = "group-bugfix"
TESTS_GROUP_ID = "group-tests"
DOCS_GROUP_ID = "group-docs"
OPTIMIZATION_GROUP_ID = "group-optimization"

FEATURE_CHUNK_SIZE = 2

# category -> (priority, estimated minutes)
GROUP_PRIORITIES: dict[TaskCategory, tuple[int, int]] = {
    TaskCategory.SETUP: (10, 15),
    TaskCategory.BUG_FIX: (9, 20),
    TaskCategory.FEATURE: (7, 30),
    TaskCategory.TEST: (6, 25),
    TaskCategory.DOCS: (4, 10),
    TaskCategory.OPTIMIZATION: (3, 20),
}


def _chunk(items: list[str], size: int) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _group(group_id: str, category: TaskCategory, tasks: list[str], deps: list[str]) -> TaskGroup:
    priority, minutes = GROUP_PRIORITIES[category]
    return TaskGroup(
        id=group_id,
        tasks=list(tasks),
        category=category,
        priority=priority,
        dependencies=list(deps),
        estimated_minutes=minutes,
    )


def bucket_by_category(descriptions: list[str]) -> dict[TaskCategory, list[str]]:
    """Classify each description, keeping input order inside every bucket."""
    buckets: dict[TaskCategory, list[str]] = {c: [] for c in TaskCategory}
    for description in descriptions:
        buckets[classify(description)].append(description)
    return buckets


def group_tasks(descriptions: list[str]) -> list[TaskGroup]:
    """Build the group DAG for *descriptions*.

    Setup runs first, features are split into pairs that wait on setup, bug
    fixes and docs are independent, tests wait on every feature group, and
    optimization waits on everything emitted before it.  The result is acyclic
    by construction and deterministic for a given input.
    """
    buckets = bucket_by_category(descriptions)
    groups: list[TaskGroup] = []

    setup = buckets[TaskCategory.SETUP]
    if setup:
        groups.append(_group(SETUP_GROUP_ID, TaskCategory.SETUP, setup, []))

    feature_deps = [SETUP_GROUP_ID] if setup else []
    feature_ids: list[str] = []
    for index, chunk in enumerate(_chunk(buckets[TaskCategory.FEATURE], FEATURE_CHUNK_SIZE)):
        group_id = f"{FEATURE_GROUP_PREFIX}{index}"
        feature_ids.append(group_id)
        groups.append(_group(group_id, TaskCategory.FEATURE, chunk, feature_deps))

    bugs = buckets[TaskCategory.BUG_FIX]
    if bugs:
        groups.append(_group(BUGFIX_GROUP_ID, TaskCategory.BUG_FIX, bugs, []))

    tests = buckets[TaskCategory.TEST]
    if tests:
        groups.append(_group(TESTS_GROUP_ID, TaskCategory.TEST, tests, feature_ids))

    docs = buckets[TaskCategory.DOCS]
    if docs:
        groups.append(_group(DOCS_GROUP_ID, TaskCategory.DOCS, docs, []))

    optimizations = buckets[TaskCategory.OPTIMIZATION]
    if optimizations:
        all_ids = [g.id for g in groups]
        groups.append(
            _group(OPTIMIZATION_GROUP_ID, TaskCategory.OPTIMIZATION, optimizations, all_ids)
        )

    return groups


def describe_groups(groups: list[TaskGroup]) -> list[str]:
    """One human-readable line per group, in the order given."""
    lines: list[str] = []
    for g in groups:
        deps = ", ".join(g.dependencies) if g.dependencies else "none"
        lines.append(
            f"{g.id} [{g.category.value}] priority={g.priority} "
            f"tasks={len(g.tasks)} ~{g.estimated_minutes}m deps: {deps}"
        )
    return lines
