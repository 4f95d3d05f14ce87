"""Host-side runtime: one context object owning watcher, dispatcher, ingestor and ledger."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from types import TracebackType

from watchdog.observers import Observer

from host_relay.bus.dispatcher import AffinityDispatcher, DrainSummary
from host_relay.bus.executor import BatchExecutor
from host_relay.bus.host import HostBackend
from host_relay.bus.ingestor import QueueEventHandler, QueueIngestor
from host_relay.bus.ledger import CompilationLedger
from host_relay.bus.locks import FileLockProvider, LockProvider
from host_relay.bus.models import BatchTranscript, FailurePolicy, utc_now
from host_relay.bus.project import ensure_project_id
from host_relay.config import Settings

logger = logging.getLogger(__name__)


class HostRuntime:
    """Wire the bus around a host backend and drive it from the host's tick.

    ``tick()`` must always be called from the same thread; that thread becomes
    the affinity thread on ``start()``.  The watchdog observer thread only ever
    claims files and enqueues work.
    """

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        host: HostBackend,
        *,
        lock_provider: LockProvider | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        recent_limit: int = 100,
    ) -> None:
        self.settings = settings
        self.host = host
        self.lock_provider = lock_provider or FileLockProvider()
        self.dispatcher = AffinityDispatcher()
        self.ledger = CompilationLedger(
            settings.ledger.ledger_path,
            lock_provider=self.lock_provider,
            no_compile_grace_seconds=settings.ledger.no_compile_grace_seconds,
            clock=clock,
        )
        self.executor = BatchExecutor(
            host,
            failure_policy=FailurePolicy(settings.executor.failure_policy),
            on_compile_requested=self.ledger.note_compile_request,
            clock=clock,
        )
        self.ingestor = QueueIngestor(
            queue_dir=settings.queue.queue_dir,
            archive_dir=settings.queue.archive_dir,
            dispatcher=self.dispatcher,
            executor=self.executor,
            lock_provider=self.lock_provider,
            pattern=settings.queue.pattern,
            clock=clock,
            on_consumed=self._record_consumed,
        )
        self.recent: deque[tuple[Path, BatchTranscript]] = deque(maxlen=recent_limit)
        self.project_id: str | None = None
        self.ticks = 0
        self._monotonic = monotonic
        self._observer: Observer | None = None
        self._last_sweep: float | None = None
        self._stop = threading.Event()

    def __enter__(self) -> HostRuntime:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.stop()

    @property
    def watching(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        queue = self.settings.queue
        queue.queue_dir.mkdir(parents=True, exist_ok=True)
        queue.archive_dir.mkdir(parents=True, exist_ok=True)
        self.settings.ledger.ledger_path.parent.mkdir(parents=True, exist_ok=True)
        self.project_id = ensure_project_id(self.settings)
        self.dispatcher.bind()
        self._stop.clear()

        if queue.watch:
            observer = Observer()
            observer.schedule(QueueEventHandler(self.ingestor), str(queue.queue_dir), recursive=False)
            observer.start()
            self._observer = observer

        swept = self.ingestor.sweep()
        self._last_sweep = self._monotonic()
        logger.info(
            "Host runtime started for project %s: queue=%s watch=%s startup_requests=%d",
            self.project_id,
            queue.queue_dir,
            queue.watch,
            swept,
        )

    def tick(self) -> DrainSummary:
        """One host tick: host housekeeping, periodic sweep, drain, ledger sample."""

        self.host.on_tick()
        now = self._monotonic()
        if self._last_sweep is None or now - self._last_sweep >= self.settings.queue.sweep_interval_seconds:
            self.ingestor.sweep()
            self._last_sweep = now
        summary = self.dispatcher.drain()
        self.ledger.observe(self.host.is_compiling(), self.host.compile_messages)
        self.ticks += 1
        return summary

    def run_forever(self, *, max_ticks: int | None = None) -> int:
        """Tick on the calling thread until ``request_stop`` or ``max_ticks``."""

        ran = 0
        while not self._stop.is_set():
            self.tick()
            ran += 1
            if max_ticks is not None and ran >= max_ticks:
                break
            self._stop.wait(timeout=self.settings.runtime.tick_interval_seconds)
        return ran

    def request_stop(self) -> None:
        self._stop.set()

    def stop(self) -> None:
        self._stop.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        self.ledger.close()
        logger.info("Host runtime stopped after %d ticks", self.ticks)

    def _record_consumed(self, archived: Path, transcript: BatchTranscript) -> None:
        self.recent.append((archived, transcript))
