"""Hand-off queue between producer threads and the host's affinity thread."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from host_relay.bus.errors import AffinityError

logger = logging.getLogger(__name__)

WorkItem = Callable[[], object]


@dataclass(slots=True)
class DrainSummary:
    """Counters for one drain pass; ``failed`` is a subset of ``executed``."""

    executed: int = 0
    failed: int = 0


class AffinityDispatcher:
    """Multi-producer, single-consumer FIFO of callables.

    Producers call ``enqueue`` from any thread.  ``drain`` runs everything that
    was queued when the pass began, in order, on the affinity thread; work
    enqueued while a pass is running waits for the next one.
    """

    def __init__(self) -> None:
        self._items: list[WorkItem] = []
        self._lock = threading.Lock()
        self._owner: int | None = None

    @property
    def owner(self) -> int | None:
        return self._owner

    def bind(self) -> None:
        """Make the calling thread the affinity thread."""

        current = threading.get_ident()
        with self._lock:
            if self._owner is not None and self._owner != current:
                raise AffinityError("Dispatcher is already bound to another thread")
            self._owner = current

    def enqueue(self, item: WorkItem) -> None:
        if item is None:
            raise TypeError("Cannot enqueue None")
        if not callable(item):
            raise TypeError(f"Work item must be callable, got {type(item).__name__}")
        with self._lock:
            self._items.append(item)

    def pending(self) -> int:
        with self._lock:
            return len(self._items)

    def drain(self) -> DrainSummary:
        current = threading.get_ident()
        with self._lock:
            if self._owner is None:
                self._owner = current
            elif self._owner != current:
                raise AffinityError("drain() called outside the affinity thread")
            batch, self._items = self._items, []

        summary = DrainSummary()
        for item in batch:
            summary.executed += 1
            try:
                item()
            except Exception:
                summary.failed += 1
                logger.exception("Dispatched work item %r failed", item)
        if batch:
            logger.debug("Drained %d work items (%d failed)", summary.executed, summary.failed)
        return summary
