"""External client: submit a compile request, nudge the host, poll the ledger for a verdict."""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from host_relay.bus.contracts import read_ledger
from host_relay.bus.errors import HostRelayError
from host_relay.bus.locks import FileLockProvider, LockProvider
from host_relay.bus.models import (
    LedgerRecord,
    LedgerStatus,
    Verdict,
    to_epoch_ms,
    utc_now,
)
from host_relay.bus.nudge import WakeNudger
from host_relay.bus.project import resolve_project_id
from host_relay.config import Settings

logger = logging.getLogger(__name__)

PREDATES_DETAIL = "No compilation was observed; this result may predate the request"


@dataclass(slots=True)
class ClientResult:
    """Terminal answer of one client invocation."""

    verdict: Verdict
    errors: int = 0
    warnings: int = 0
    details: list[str] = field(default_factory=list)
    correlation_id: str | None = None

    @property
    def exit_code(self) -> int:
        return self.verdict.exit_code

    def render_lines(self, *, include_warnings: bool, script_version: str) -> list[str]:
        lines = [
            f"STATUS: {self.verdict.value}",
            f"ERRORS: {self.errors}",
            f"WARNINGS: {self.warnings}",
        ]
        details = [
            detail for detail in self.details if include_warnings or "WARNING:" not in detail
        ]
        if details:
            lines.append("DETAILS:")
            lines.extend(f"  {detail}" for detail in details)
        lines.append(f"SCRIPT_VERSION: {script_version}")
        return lines


def request_file_name(project_id: str, correlation_id: str) -> str:
    return f"compile-request-{project_id}-{correlation_id}.json"


def place_request(path: Path, payload: dict[str, Any], lock_provider: LockProvider) -> Path:
    """Write a request under an exclusive lock, then rename it into the queue.

    The temp name never matches the queue pattern, so the ingestor only ever
    sees the complete document.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    handle = lock_provider.try_acquire(tmp)
    if handle is None:
        raise HostRelayError(f"Could not lock {tmp} for writing")
    try:
        handle.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))
    finally:
        lock_provider.release(handle)
    os.replace(tmp, path)
    return path


@dataclass(slots=True)
class _PollState:
    last_activity: float
    saw_compiling: bool = False
    grace_started: float | None = None
    nudges: int = 0
    request_consumed: bool = False
    last_signature: tuple[Any, ...] | None = None


def _signature(record: LedgerRecord | None) -> tuple[Any, ...] | None:
    if record is None:
        return None
    return (record.status, record.started_at_ms, record.ended_at_ms, record.correlation_id)


class ExternalClient:
    """Drive one compile check from outside the host process.

    Clock and sleep are injectable so the polling state machine can be run
    against a fake timeline.
    """

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        lock_provider: LockProvider | None = None,
        nudger: WakeNudger | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        correlation_factory: Callable[[], str] = lambda: uuid4().hex,
    ) -> None:
        self.settings = settings
        self.lock_provider = lock_provider or FileLockProvider()
        self.nudger = nudger
        self._clock = clock
        self._sleep = sleep
        self._correlation_factory = correlation_factory

    def check(self) -> ClientResult:
        project_id = resolve_project_id(self.settings)
        correlation_id = self._correlation_factory()
        baseline = read_ledger(self.settings.ledger.ledger_path)
        request_path = place_request(
            self.settings.queue.queue_dir / request_file_name(project_id, correlation_id),
            {
                "action": "force-compile",
                "correlationId": correlation_id,
                "projectId": project_id,
                "timestampMs": to_epoch_ms(utc_now()),
            },
            self.lock_provider,
        )
        logger.debug("Submitted %s", request_path.name)
        if self.nudger is not None:
            self.nudger.nudge()
        result = self.poll(correlation_id=correlation_id, request_path=request_path, baseline=baseline)
        result.correlation_id = correlation_id
        return result

    def poll(
        self,
        *,
        correlation_id: str,
        request_path: Path | None = None,
        baseline: LedgerRecord | None = None,
    ) -> ClientResult:
        """Poll the ledger until a terminal verdict or the overall budget runs out."""

        budget = self.settings.client
        ledger_path = self.settings.ledger.ledger_path
        now = self._clock()
        deadline = now + budget.timeout_seconds
        state = _PollState(last_activity=now, last_signature=_signature(baseline))

        while True:
            now = self._clock()
            locked = self.lock_provider.is_locked(ledger_path)
            record = read_ledger(ledger_path)
            self._track_activity(state, now, record, request_path)

            if locked or (record is not None and record.status == LedgerStatus.COMPILING):
                if not state.saw_compiling:
                    logger.debug("Host is compiling")
                state.saw_compiling = True
                state.grace_started = None
                state.last_activity = now
            elif record is not None and record.status == LedgerStatus.COMPLETE:
                accepted = self._accept_complete(state, now, record, correlation_id)
                if accepted is not None:
                    return accepted

            if now >= deadline:
                return self._timeout(locked, record, request_path)

            if (
                self.nudger is not None
                and state.nudges < budget.max_nudge_retries
                and now - state.last_activity >= budget.nudge_retry_seconds
            ):
                state.nudges += 1
                logger.debug("No host activity for %.1fs; nudge retry %d", now - state.last_activity, state.nudges)
                self.nudger.nudge()
                state.last_activity = now

            self._sleep(max(0.0, min(budget.poll_interval_seconds, deadline - now)))

    def _track_activity(
        self,
        state: _PollState,
        now: float,
        record: LedgerRecord | None,
        request_path: Path | None,
    ) -> None:
        signature = _signature(record)
        if signature != state.last_signature:
            state.last_signature = signature
            state.last_activity = now
        if request_path is not None and not state.request_consumed and not request_path.exists():
            logger.debug("Request %s consumed by the host", request_path.name)
            state.request_consumed = True
            state.last_activity = now
            if state.grace_started is not None:
                # The host's own no-compile answer is timed from consumption.
                state.grace_started = now

    def _accept_complete(
        self,
        state: _PollState,
        now: float,
        record: LedgerRecord,
        correlation_id: str,
    ) -> ClientResult | None:
        if record.correlation_id == correlation_id or state.saw_compiling:
            return _from_record(record)
        if state.grace_started is None:
            logger.debug("Complete record without observed compile; grace window opened")
            state.grace_started = now
        if now - state.grace_started >= self._grace_window():
            result = _from_record(record)
            result.details.append(PREDATES_DETAIL)
            return result
        return None

    def _grace_window(self) -> float:
        """Stale records wait at least until the host would have answered a no-op compile."""

        settings = self.settings
        return max(
            settings.client.grace_seconds,
            settings.ledger.no_compile_grace_seconds + settings.client.poll_interval_seconds,
        )

    def _timeout(
        self,
        locked: bool,
        record: LedgerRecord | None,
        request_path: Path | None,
    ) -> ClientResult:
        budget = self.settings.client.timeout_seconds
        details: list[str] = []
        if locked or (record is not None and record.status == LedgerStatus.COMPILING):
            age = ""
            if record is not None and record.status == LedgerStatus.COMPILING:
                seconds = max(0.0, (utc_now() - record.started_at).total_seconds())
                age = f" (compiling for {seconds:.0f}s)"
            details.append(f"Could not confirm host idle within {budget:g}s{age}")
        else:
            details.append(f"No terminal compile state observed within {budget:g}s")
        if request_path is not None and request_path.exists():
            details.append(f"Request {request_path.name} was not consumed; is the host running?")
        return ClientResult(verdict=Verdict.TIMEOUT, details=details)


def _from_record(record: LedgerRecord) -> ClientResult:
    return ClientResult(
        verdict=Verdict.ERRORS if record.errors > 0 else Verdict.SUCCESS,
        errors=record.errors,
        warnings=record.warnings,
        details=list(record.details),
        correlation_id=record.correlation_id,
    )
