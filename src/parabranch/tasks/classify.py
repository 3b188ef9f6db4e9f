"""Keyword classification of free-text task descriptions."""

from __future__ import annotations

from parabranch.tasks.model import TaskCategory

# Checked in order; the first category with a matching keyword wins.
CATEGORY_RULES: tuple[tuple[TaskCategory, tuple[str, ...]], ...] = (
    (TaskCategory.SETUP, ("create", "initialize", "setup", "scaffold")),
    (TaskCategory.BUG_FIX, ("fix", "bug", "resolve", "repair")),
    (TaskCategory.TEST, ("test", "coverage", "spec")),
    (TaskCategory.DOCS, ("document", "readme", "docs", "comment")),
    (TaskCategory.OPTIMIZATION, ("optimi", "refactor", "improve", "enhance", "performance")),
)


def classify(description: str) -> TaskCategory:
    """Return the category of *description*; anything unmatched is a feature."""
    lower = description.lower()
    for category, keywords in CATEGORY_RULES:
        if any(keyword in lower for keyword in keywords):
            return category
    return TaskCategory.FEATURE
