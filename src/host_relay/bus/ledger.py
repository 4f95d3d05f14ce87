"""Compile ledger: host busy/idle state published through an exclusively locked file."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

from host_relay.bus.contracts import (
    ledger_record_to_payload,
    parse_ledger_record,
    write_json_atomic,
)
from host_relay.bus.errors import LedgerLockError
from host_relay.bus.locks import LockHandle, LockProvider
from host_relay.bus.models import (
    CompilerMessage,
    LedgerRecord,
    LedgerStatus,
    MessageSeverity,
    utc_now,
)

logger = logging.getLogger(__name__)

NO_COMPILE_DETAIL = "No compilation required - scripts are up to date"


class CompilationLedger:
    """Edge-triggered writer for the ledger file.

    The host's compile flag is sampled every tick through ``observe``; the file
    is only touched when the flag changes.  While compiling, the ledger file
    stays open and exclusively locked, so the lock itself tells readers the
    host is busy.
    """

    def __init__(
        self,
        path: Path,
        *,
        lock_provider: LockProvider,
        no_compile_grace_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.path = path
        self.lock_provider = lock_provider
        self.no_compile_grace_seconds = no_compile_grace_seconds
        self._clock = clock
        self._handle: LockHandle | None = None
        self._was_compiling = False
        self._active_correlation: str | None = None
        self._pending_correlation: str | None = None
        self._pending_since: datetime | None = None
        self._pending = False

    @property
    def status(self) -> LedgerStatus:
        return LedgerStatus.COMPILING if self._handle is not None else LedgerStatus.IDLE

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def note_compile_request(self, correlation_id: str | None) -> None:
        """Remember the request that asked for the next compile (one in flight)."""

        if self._pending and self._pending_correlation != correlation_id:
            logger.info(
                "Compile request %s supersedes pending request %s",
                correlation_id,
                self._pending_correlation,
            )
        self._pending = True
        self._pending_correlation = correlation_id
        self._pending_since = self._clock()

    def observe(
        self,
        compiling: bool,
        messages: Callable[[], Iterable[CompilerMessage]],
    ) -> LedgerRecord | None:
        """Sample the host compile flag; write the ledger only on a transition."""

        record: LedgerRecord | None = None
        if compiling and not self._was_compiling:
            self._active_correlation = self._take_pending()
            record = self.begin()
            if record is None:
                logger.warning(
                    "Ledger %s is locked by another holder; compile start not recorded yet",
                    self.path,
                )
        elif compiling and self._handle is None:
            # The lock may only have been held by a reader probing it.
            record = self.begin()
        elif not compiling and self._was_compiling:
            record = self.end(messages())
        elif not compiling and self._pending and self._pending_expired():
            record = self._complete_without_compile(messages())
        self._was_compiling = compiling
        return record

    def begin(self) -> LedgerRecord | None:
        try:
            handle = self.lock_provider.try_acquire(self.path)
        except OSError:
            logger.exception("Failed to open ledger %s", self.path)
            return None
        if handle is None:
            return None

        record = LedgerRecord(
            status=LedgerStatus.COMPILING,
            started_at=self._clock(),
            correlation_id=self._active_correlation,
        )
        try:
            handle.write_text(json.dumps(ledger_record_to_payload(record), indent=2, sort_keys=True))
        except OSError:
            logger.exception("Failed to write compile start to %s", self.path)
            self._release(handle)
            return None
        self._handle = handle
        logger.info(
            "Compilation started at %s (request %s)",
            record.started_at.isoformat(),
            self._active_correlation,
        )
        return record

    def end(self, messages: Iterable[CompilerMessage]) -> LedgerRecord | None:
        handle = self._handle
        if handle is None:
            logger.warning("Compile finished without a recorded start; ledger %s left untouched", self.path)
            self._active_correlation = None
            return None
        self._handle = None

        started_at: datetime | None = None
        try:
            started_at = parse_ledger_record(handle.read_text()).started_at
        except (OSError, ValueError) as error:
            logger.warning("Could not read compile start back from %s: %s", self.path, error)
        self._release(handle)

        ended_at = self._clock()
        started_at = started_at or ended_at
        record = _terminal_record(
            started_at=started_at,
            ended_at=max(ended_at, started_at),
            correlation_id=self._active_correlation,
            messages=messages,
        )
        self._active_correlation = None
        if not self._publish(record):
            return None
        logger.info(
            "Compilation finished: %d errors, %d warnings, %sms",
            record.errors,
            record.warnings,
            record.duration_ms,
        )
        return record

    def close(self) -> None:
        """Drop the lock on shutdown; a compiling record left behind is stale by definition."""

        if self._handle is None:
            return
        logger.warning("Host stopping during compilation; ledger %s left as compiling", self.path)
        handle, self._handle = self._handle, None
        self._release(handle)

    def _complete_without_compile(self, messages: Iterable[CompilerMessage]) -> LedgerRecord | None:
        correlation_id = self._take_pending()
        now = self._clock()
        record = _terminal_record(
            started_at=now,
            ended_at=now,
            correlation_id=correlation_id,
            messages=messages,
            extra_details=[NO_COMPILE_DETAIL],
        )
        if not self._publish(record):
            return None
        logger.info("No compilation observed for request %s; reported complete", correlation_id)
        return record

    def _publish(self, record: LedgerRecord) -> bool:
        try:
            write_json_atomic(self.path, ledger_record_to_payload(record))
        except OSError:
            logger.exception(
                "Failed to write terminal record for request %s to %s",
                record.correlation_id,
                self.path,
            )
            return False
        return True

    def _pending_expired(self) -> bool:
        if self._pending_since is None:
            return False
        elapsed = (self._clock() - self._pending_since).total_seconds()
        return elapsed >= self.no_compile_grace_seconds

    def _take_pending(self) -> str | None:
        correlation_id = self._pending_correlation
        self._pending = False
        self._pending_correlation = None
        self._pending_since = None
        return correlation_id

    def _release(self, handle: LockHandle) -> None:
        try:
            self.lock_provider.release(handle)
        except (LedgerLockError, OSError):
            logger.exception("Failed to close ledger handle %s", self.path)


def _terminal_record(
    *,
    started_at: datetime,
    ended_at: datetime,
    correlation_id: str | None,
    messages: Iterable[CompilerMessage],
    extra_details: list[str] | None = None,
) -> LedgerRecord:
    errors = 0
    warnings = 0
    details: list[str] = []
    for message in messages:
        if message.severity == MessageSeverity.ERROR:
            errors += 1
        elif message.severity == MessageSeverity.WARNING:
            warnings += 1
        else:
            continue
        details.append(message.format_detail())
    details.extend(extra_details or [])
    return LedgerRecord(
        status=LedgerStatus.COMPLETE,
        started_at=started_at,
        correlation_id=correlation_id,
        ended_at=ended_at,
        errors=errors,
        warnings=warnings,
        details=details,
    )
