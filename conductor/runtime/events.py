"""
events.py - In-process typed event stream.

Components publish typed event dataclasses (see ``types.events``) to an
EventStream. Subscribers register a callback, optionally filtered by event
kind. A journal subscriber writes every run-scoped event to that run's
events.jsonl.

Usage:
    stream = EventStream()
    unsubscribe = stream.subscribe(print, kinds={"retry_exhausted"})
    stream.attach_journal(state_dir)
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Tuple

from . import storage
from .types import ConductorEvent, event_run_id, journal_entry_from_event

logger = logging.getLogger(__name__)

EventCallback = Callable[[ConductorEvent], None]


class EventStream:
    """Synchronous fan-out of typed events to subscribers.

    A subscriber that raises is logged and skipped; it never breaks the
    publisher or the other subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: List[Tuple[EventCallback, Optional[Set[str]]]] = []
        self._lock = threading.Lock()

    def subscribe(
        self, callback: EventCallback, kinds: Optional[Iterable[str]] = None
    ) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""
        entry = (callback, set(kinds) if kinds is not None else None)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: ConductorEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback, kinds in subscribers:
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.warning("Event subscriber failed on %s: %s", event.kind, e)

    def attach_journal(self, state_dir: Path) -> Callable[[], None]:
        """Append every run-scoped event to the run's events.jsonl."""

        def _journal(event: ConductorEvent) -> None:
            run_id = event_run_id(event)
            if run_id and storage.run_exists(run_id, state_dir):
                storage.append_event(journal_entry_from_event(run_id, event), state_dir)

        return self.subscribe(_journal)


class EventRecorder:
    """Collects published events; handy for tests and diagnostics."""

    def __init__(self, stream: EventStream, kinds: Optional[Iterable[str]] = None) -> None:
        self.events: List[ConductorEvent] = []
        self._unsubscribe = stream.subscribe(self.events.append, kinds)

    def kinds(self) -> List[str]:
        return [event.kind for event in self.events]

    def of_kind(self, kind: str) -> List[ConductorEvent]:
        return [event for event in self.events if event.kind == kind]

    def close(self) -> None:
        self._unsubscribe()
