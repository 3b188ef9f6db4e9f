"""Engine registry: get the right adapter by tool tag."""

from __future__ import annotations

from parabranch.engines.base import EngineBase
from parabranch.engines.claude import ClaudeEngine
from parabranch.engines.codex import CodexEngine


def get_engine(name: str) -> EngineBase:
    """Return an engine adapter for *name*."""
    match name:
        case "claude":
            return ClaudeEngine()
        case "codex":
            return CodexEngine()
        case _:
            raise ValueError(f"Unknown engine: {name}")


ENGINE_NAMES = ("claude", "codex")
