"""Queue ingestor: discovers request files and hands them to the affinity thread."""

from __future__ import annotations

import fnmatch
import logging
import os
import sys
import threading
from collections.abc import Callable
from datetime import datetime
from functools import partial
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler

from host_relay.bus.contracts import archive_paths, decode_request, write_transcript
from host_relay.bus.dispatcher import AffinityDispatcher
from host_relay.bus.errors import RequestDecodeError
from host_relay.bus.executor import BatchExecutor
from host_relay.bus.locks import LockProvider
from host_relay.bus.models import BatchTranscript, utc_now

logger = logging.getLogger(__name__)

ConsumedHook = Callable[[Path, BatchTranscript], None]


def _rename(source: Path, target: Path) -> None:
    source.rename(target)


class QueueIngestor:
    """Turn request files into dispatcher work items, each file at most once.

    Watch events, the startup sweep and periodic sweeps all go through
    ``handle_candidate``.  A file is claimed before it is enqueued and the claim
    is only dropped after consumption, so two discovery paths racing on the
    same file enqueue it once.  Moving the file into the archive is what makes
    consumption final: a file that is already gone cannot be moved again.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue_dir: Path,
        archive_dir: Path,
        dispatcher: AffinityDispatcher,
        executor: BatchExecutor,
        lock_provider: LockProvider,
        pattern: str = "*.json",
        clock: Callable[[], datetime] = utc_now,
        move: Callable[[Path, Path], None] = _rename,
        on_consumed: ConsumedHook | None = None,
    ) -> None:
        self.queue_dir = queue_dir
        self.archive_dir = archive_dir
        self.dispatcher = dispatcher
        self.executor = executor
        self.lock_provider = lock_provider
        self.pattern = pattern
        self._clock = clock
        self._move = move
        self._on_consumed = on_consumed or (lambda _path, _transcript: None)
        self._claimed: set[Path] = set()
        self._unarchived: dict[Path, tuple[datetime, BatchTranscript]] = {}
        self._claim_lock = threading.Lock()

    def claimed(self) -> int:
        with self._claim_lock:
            return len(self._claimed)

    def sweep(self) -> int:
        """Enqueue every ready request currently in the queue directory, in name order."""

        if not self.queue_dir.is_dir():
            return 0
        enqueued = 0
        for path in sorted(self.queue_dir.glob(self.pattern)):
            if self.handle_candidate(path):
                enqueued += 1
        return enqueued

    def handle_candidate(self, path: Path) -> bool:
        """Claim and enqueue one file; False when it is not a ready, unclaimed request."""

        if not self._matches(path):
            return False
        key = path.absolute()
        with self._claim_lock:
            if key in self._claimed:
                return False
            if not path.is_file():
                return False
            if self.lock_provider.is_locked(path):
                logger.debug("Request %s is still being written; retrying on next scan", path.name)
                return False
            self._claimed.add(key)
        self.dispatcher.enqueue(partial(self._consume, path, key))
        logger.debug("Queued request %s", path.name)
        return True

    def _matches(self, path: Path) -> bool:
        if path.parent.absolute() != self.queue_dir.absolute():
            return False
        if self.archive_dir.absolute() in path.absolute().parents:
            return False
        return fnmatch.fnmatch(path.name, self.pattern)

    def _consume(self, path: Path, key: Path) -> None:
        try:
            self._process(path, key)
        finally:
            with self._claim_lock:
                self._claimed.discard(key)

    def _process(self, path: Path, key: Path) -> None:
        executed = self._unarchived.pop(key, None)
        if executed is not None:
            now, transcript = executed
            logger.info("Retrying archive of already executed request %s", path.name)
        else:
            now = self._clock()
            try:
                payload = path.read_bytes()
            except FileNotFoundError:
                logger.info("Request %s disappeared before it was consumed", path.name)
                return
            except OSError as error:
                logger.warning("Could not read request %s, will retry: %s", path.name, error)
                return
            transcript = self._execute(path.name, payload, now)

        archived, transcript_path = archive_paths(self.archive_dir, path.name, now)
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            self._move(path, archived)
        except FileNotFoundError:
            logger.warning("Request %s vanished before it could be archived", path.name)
            return
        except OSError as error:
            logger.warning(
                "Failed to archive %s, leaving it in the queue to retry the move: %s",
                path.name,
                error,
            )
            self._unarchived[key] = (now, transcript)
            return
        try:
            write_transcript(transcript_path, transcript)
        except OSError:
            logger.exception("Failed to write transcript for %s", archived.name)
        logger.info(
            "Consumed %s -> %s (%s)",
            path.name,
            archived.name,
            "ok" if transcript.ok else "failed",
        )
        self._on_consumed(archived, transcript)

    def _execute(self, name: str, payload: bytes, now: datetime) -> BatchTranscript:
        try:
            content = payload.decode("utf-8")
            request = decode_request(content)
        except UnicodeDecodeError as error:
            return _rejected(name, payload.decode("utf-8", errors="replace"), f"Invalid UTF-8: {error}", now)
        except RequestDecodeError as error:
            logger.warning("Request %s could not be decoded: %s", name, error)
            return _rejected(name, content, str(error), now)
        return self.executor.execute(request, request_name=name, raw_content=content)


def _rejected(name: str, content: str, error: str, now: datetime) -> BatchTranscript:
    return BatchTranscript(
        request_name=name,
        started_at=now,
        raw_content=content,
        error=error,
        ended_at=now,
    )


class QueueEventHandler(FileSystemEventHandler):
    """Forward new files in the queue directory to the ingestor.

    Where the observer reports close-after-write (inotify), a created file is
    only a candidate once its writer closes it; writers that never take the
    lock are then still read complete.  Elsewhere creation is the trigger and
    the lock probe alone decides readiness.
    """

    def __init__(self, ingestor: QueueIngestor, *, close_events: bool | None = None) -> None:
        super().__init__()
        self._ingestor = ingestor
        self._close_events = sys.platform.startswith("linux") if close_events is None else close_events

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory or self._close_events:
            return
        self._ingestor.handle_candidate(Path(os.fsdecode(event.src_path)))

    def on_closed(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._ingestor.handle_candidate(Path(os.fsdecode(event.src_path)))

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writers rename a temp file into place.
        if event.is_directory:
            return
        self._ingestor.handle_candidate(Path(os.fsdecode(event.dest_path)))
