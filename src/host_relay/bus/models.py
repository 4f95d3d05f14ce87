"""Domain models for requests, transcripts and the compile ledger."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_epoch_ms(value: datetime) -> int:
    """Milliseconds since epoch for a timezone-aware timestamp."""

    return calendar.timegm(value.utctimetuple()) * 1000 + value.microsecond // 1000


def from_epoch_ms(value: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=value)


class LedgerStatus(str, Enum):
    """Compile states published through the ledger file."""

    IDLE = "idle"
    COMPILING = "compiling"
    COMPLETE = "complete"


class CommandStatus(str, Enum):
    """Per-command outcome inside one batch."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailurePolicy(str, Enum):
    """What the executor does after a failed command."""

    CONTINUE = "continue"
    ABORT = "abort"


class Verdict(str, Enum):
    """Terminal answer of the external client."""

    SUCCESS = "SUCCESS"
    ERRORS = "ERRORS"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"

    @property
    def exit_code(self) -> int:
        return _VERDICT_EXIT_CODES[self]


_VERDICT_EXIT_CODES = {
    Verdict.SUCCESS: 0,
    Verdict.ERRORS: 1,
    Verdict.TIMEOUT: 2,
    Verdict.ERROR: 3,
}


class MessageSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(slots=True, frozen=True)
class CompilerMessage:
    """One diagnostic reported by the host compiler."""

    severity: MessageSeverity
    message: str
    file: str | None = None
    line: int | None = None

    def format_detail(self) -> str:
        label = self.severity.value.upper()
        if not self.file:
            return f"{label}: {self.message}"
        return f"[{self.file}:{self.line or 0}] {label}: {self.message}"


@dataclass(slots=True)
class LedgerRecord:
    """Contents of the compile ledger file."""

    status: LedgerStatus
    started_at: datetime
    correlation_id: str | None = None
    ended_at: datetime | None = None
    errors: int = 0
    warnings: int = 0
    details: list[str] = field(default_factory=list)

    @property
    def started_at_ms(self) -> int:
        return to_epoch_ms(self.started_at)

    @property
    def ended_at_ms(self) -> int | None:
        if self.ended_at is None:
            return None
        return to_epoch_ms(self.ended_at)

    @property
    def duration_ms(self) -> int | None:
        ended_ms = self.ended_at_ms
        if ended_ms is None:
            return None
        return max(0, ended_ms - self.started_at_ms)


@dataclass(slots=True)
class ContextSpec:
    """Target context to open, or create when missing, before any command runs."""

    name: str
    create: bool = True
    path: str = "contexts"
    template: str = "default"


@dataclass(slots=True)
class RawCommand:
    """Command as found in the request document, before typed decoding."""

    action: str
    fields: dict[str, Any]
    problem: str | None = None


@dataclass(slots=True)
class Request:
    """Decoded request document."""

    commands: list[RawCommand]
    context: ContextSpec | None = None
    correlation_id: str | None = None
    description: str = ""
    timestamp_ms: int | None = None


@dataclass(slots=True)
class CommandOutcome:
    """Result of one command for the transcript."""

    index: int
    action: str
    status: CommandStatus
    message: str
    duration_ms: int = 0
    inputs: dict[str, Any] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BatchTranscript:
    """Audit record of one consumed request."""

    request_name: str
    started_at: datetime
    correlation_id: str | None = None
    raw_content: str = ""
    error: str | None = None
    context_message: str | None = None
    outcomes: list[CommandOutcome] = field(default_factory=list)
    saved: bool = False
    aborted: bool = False
    ended_at: datetime | None = None

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.outcomes if item.status == CommandStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.outcomes if item.status == CommandStatus.FAILED)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.aborted and self.failed == 0
