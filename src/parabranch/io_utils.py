"""UTF-8 text and JSON file helpers."""

from __future__ import annotations

import json
from io import TextIOWrapper
from pathlib import Path
from typing import Any

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict") -> str:
    return Path(path).read_text(encoding="utf-8", errors=errors)


def write_text(path: PathLike, text: str) -> None:
    """Write *text*, creating parent directories as needed."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")


def write_json(path: PathLike, payload: Any) -> None:
    write_text(path, json.dumps(payload, indent=2, default=str) + "\n")


def open_text(path: PathLike, mode: str = "r", *, errors: str = "strict") -> TextIOWrapper:
    """Open path for text I/O with UTF-8 (append-mode log files)."""
    return open(Path(path), mode, encoding="utf-8", errors=errors)
