"""Controllers for host-relay CLI commands."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from host_relay import __version__
from host_relay.bus.client import ClientResult, ExternalClient, place_request
from host_relay.bus.contracts import ARCHIVE_TIMESTAMP_FORMAT, decode_request, load_json, read_ledger
from host_relay.bus.errors import HostRelayError
from host_relay.bus.host import SimulatedHost
from host_relay.bus.locks import FileLockProvider
from host_relay.bus.models import BatchTranscript, Verdict, utc_now
from host_relay.bus.nudge import WakeNudger
from host_relay.bus.project import resolve_project_id
from host_relay.bus.runtime import HostRuntime
from host_relay.config import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CheckCommand:
    """CLI inputs for the external compile check."""

    project_root: Path | None
    include_warnings: bool
    timeout_seconds: float | None


@dataclass(slots=True)
class CheckResult:
    """Fixed stdout block and process exit code of one check."""

    lines: list[str]
    exit_code: int


@dataclass(slots=True)
class SubmitCommand:
    """CLI inputs for placing a request file into the queue."""

    project_root: Path | None
    request_file: Path


@dataclass(slots=True)
class LedgerCommand:
    """CLI inputs for ledger inspection."""

    project_root: Path | None


@dataclass(slots=True)
class HostServeCommand:
    """CLI inputs for running the reference host."""

    project_root: Path | None
    max_ticks: int | None


@dataclass(slots=True)
class HostSweepCommand:
    """CLI inputs for a single sweep-and-drain pass."""

    project_root: Path | None


class HostRelayCliController:
    """Coordinates client, queue and reference-host CLI operations."""

    def check(self, command: CheckCommand) -> CheckResult:
        try:
            settings = Settings.from_env(project_root=command.project_root)
            if command.timeout_seconds is not None:
                settings.client.timeout_seconds = command.timeout_seconds
            settings.validate()
            project_id = resolve_project_id(settings)
            nudger = WakeNudger(
                settings.client.wake_command,
                project_name=settings.project_root.name,
                project_id=project_id,
                timeout_seconds=settings.client.wake_timeout_seconds,
            )
            result = ExternalClient(settings, nudger=nudger).check()
        except (HostRelayError, OSError, ValueError) as error:
            logger.debug("Compile check failed", exc_info=True)
            result = ClientResult(verdict=Verdict.ERROR, details=[str(error)])
        return CheckResult(
            lines=result.render_lines(
                include_warnings=command.include_warnings,
                script_version=__version__,
            ),
            exit_code=result.exit_code,
        )

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = Settings.from_env(project_root=command.project_root)
        settings.validate()
        payload = load_json(command.request_file)
        request = decode_request(json.dumps(payload))
        stamp = utc_now().strftime(ARCHIVE_TIMESTAMP_FORMAT)
        target = place_request(
            settings.queue.queue_dir / f"{stamp}-{command.request_file.name}",
            payload,
            FileLockProvider(),
        )
        return [
            f"Request queued: {target}",
            f"Commands: {len(request.commands)} correlation_id={request.correlation_id or '-'}",
        ]

    def ledger(self, command: LedgerCommand) -> list[str]:
        settings = Settings.from_env(project_root=command.project_root)
        path = settings.ledger.ledger_path
        locked = FileLockProvider().is_locked(path)
        lines = [f"Ledger: {path}", f"Locked: {'yes' if locked else 'no'}"]
        record = read_ledger(path)
        if record is None:
            lines.append("Status: <none>")
            return lines
        lines.extend(
            [
                f"Status: {record.status.value}",
                f"Correlation: {record.correlation_id or '-'}",
                f"Started: {record.started_at.isoformat()}",
            ],
        )
        if record.ended_at is not None:
            lines.extend(
                [
                    f"Ended: {record.ended_at.isoformat()}",
                    f"Duration: {record.duration_ms}ms",
                    f"Errors: {record.errors} Warnings: {record.warnings}",
                ],
            )
            lines.extend(f"  {detail}" for detail in record.details)
        return lines

    def serve(self, command: HostServeCommand) -> list[str]:
        settings = Settings.from_env(project_root=command.project_root)
        settings.validate()
        runtime = HostRuntime(settings, SimulatedHost())
        with runtime:
            try:
                runtime.run_forever(max_ticks=command.max_ticks)
            except KeyboardInterrupt:
                logger.info("Interrupted")
        return [
            f"Host runtime stopped: project_id={runtime.project_id} ticks={runtime.ticks} "
            f"consumed={len(runtime.recent)}",
            *(_transcript_line(archived, transcript) for archived, transcript in runtime.recent),
        ]

    def sweep(self, command: HostSweepCommand) -> list[str]:
        settings = Settings.from_env(project_root=command.project_root)
        settings.queue.watch = False
        settings.validate()
        runtime = HostRuntime(settings, SimulatedHost())
        with runtime:
            summary = runtime.tick()
        lines = [f"Sweep: executed={summary.executed} failed={summary.failed}"]
        lines.extend(_transcript_line(archived, transcript) for archived, transcript in runtime.recent)
        return lines


def _transcript_line(archived: Path, transcript: BatchTranscript) -> str:
    return (
        f"{archived.name}: {'SUCCESS' if transcript.ok else 'FAILED'} "
        f"succeeded={transcript.succeeded} failed={transcript.failed} saved={transcript.saved}"
        + (f" error={transcript.error}" if transcript.error else "")
    )
