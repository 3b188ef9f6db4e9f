"""parabranch: dependency-ordered task groups run in parallel git worktrees."""

from parabranch.config import VERSION as __version__

__all__ = ["__version__"]
