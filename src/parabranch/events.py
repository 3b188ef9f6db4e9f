"""Structured progress events for UI and notification subscribers."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from parabranch import log
from parabranch.tasks.model import utcnow

GROUP_READY = "group_ready"
WORKSPACE_PHASE = "workspace_phase"
TASK_FINISHED = "task_finished"
MERGE_OUTCOME = "merge_outcome"
RUN_FINISHED = "run_finished"


@dataclass
class Event:
    kind: str
    data: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utcnow)


Listener = Callable[[Event], None]


class EventBus:
    """Fan-out of events to subscribers.

    Emitters run on worker threads.  A failing subscriber is logged and
    skipped; it never reaches the emitter.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, kind: str, **data: Any) -> Event:
        event = Event(kind, data)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:  # noqa: BLE001
                log.debug(f"Event listener failed on {kind}: {e}")
        return event


class ConsoleEventPrinter:
    """Renders events as console progress lines."""

    _PHASE_STYLE = {
        "planning": "cyan",
        "implementing": "blue",
        "evolving": "magenta",
        "testing": "yellow",
        "merging": "cyan",
        "completed": "green",
        "failed": "red",
    }

    def __call__(self, event: Event) -> None:
        d = event.data
        if event.kind == GROUP_READY:
            log.console.print(f"  [cyan]●[/cyan] {d['group_id']} admitted (priority {d['priority']})")
        elif event.kind == WORKSPACE_PHASE:
            style = self._PHASE_STYLE.get(d["status"], "white")
            line = f"  [{style}]{d['status']:<12}[/{style}] {d['name']}"
            if d.get("error"):
                line += f" [dim]({d['error']})[/dim]"
            log.console.print(line)
        elif event.kind == TASK_FINISHED:
            mark = "[green]✓[/green]" if d["success"] else "[red]x[/red]"
            log.console.print(f"    {mark} {d['description'][:60]} ({d['workspace']})")
        elif event.kind == MERGE_OUTCOME:
            if d["success"]:
                log.success(f"Merged {d['name']} into {d['mainline']}")
            else:
                log.error(f"Merge failed for {d['name']}: {d['error']}")
