"""Shared classification of failure text from tools, verification and merges."""

from __future__ import annotations

RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "usage limit",
    "quota",
    "429",
    "too many requests",
)

MERGE_CONFLICT_PATTERNS: tuple[str, ...] = (
    "automatic merge failed",
    "conflict (content)",
    "conflict in ",
    "merge conflict",
)

EXTERNAL_FAILURE_PATTERNS: tuple[str, ...] = (
    "command not found",
    "not found in path",
    "enoent",
    "eacces",
    "permission denied",
    "network",
    "timeout",
    "tls",
    "econnreset",
    "etimedout",
    "lockfile",
    "index.lock",
    "certificate",
    "ssl",
    "stalled",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def looks_like_rate_limit(text: str) -> bool:
    """Return ``True`` when text matches a rate/usage/quota limit."""
    if not text:
        return False
    return _contains_any(text, RATE_LIMIT_PATTERNS)


def looks_like_merge_conflict(text: str) -> bool:
    """Return ``True`` for textual git merge conflict failures."""
    if not text:
        return False
    return _contains_any(text, MERGE_CONFLICT_PATTERNS)


def looks_like_external_failure(text: str) -> bool:
    """Return ``True`` when failure looks infrastructural/external."""
    if not text:
        return False
    if looks_like_merge_conflict(text):
        return True
    if looks_like_rate_limit(text):
        return True
    return _contains_any(text, EXTERNAL_FAILURE_PATTERNS)


def failure_type(text: str) -> str:
    """``"external"`` or ``"internal"``, for reports."""
    return "external" if looks_like_external_failure(text) else "internal"
