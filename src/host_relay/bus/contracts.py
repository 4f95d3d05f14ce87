"""File-based contracts for request, transcript and ledger documents."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any

from host_relay.bus.errors import RequestDecodeError
from host_relay.bus.models import (
    BatchTranscript,
    CommandStatus,
    ContextSpec,
    LedgerRecord,
    LedgerStatus,
    RawCommand,
    Request,
    from_epoch_ms,
    to_epoch_ms,
)

logger = logging.getLogger(__name__)

ENVELOPE_KEYS = frozenset(
    {"action", "correlationId", "timestampMs", "projectId", "version", "description", "context"},
)
ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S-%f"
TRANSCRIPT_SUFFIX = ".transcript.json"


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write JSON next to the target and swap it in, so readers never see a partial file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")
        tmp.replace(path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def decode_request(content: str) -> Request:
    """Decode a request document in batch form or single-action form."""

    try:
        raw = json.loads(content)
    except json.JSONDecodeError as error:
        raise RequestDecodeError(f"Failed to parse JSON: {error}") from error
    if not isinstance(raw, dict):
        raise RequestDecodeError("Request must be a JSON object")

    correlation_id = raw.get("correlationId")
    if correlation_id is not None and not isinstance(correlation_id, str):
        raise RequestDecodeError("correlationId must be a string when provided")
    timestamp_ms = raw.get("timestampMs")
    if timestamp_ms is not None and (
        not isinstance(timestamp_ms, int) or isinstance(timestamp_ms, bool)
    ):
        raise RequestDecodeError("timestampMs must be an integer when provided")
    description = raw.get("description", "")
    if not isinstance(description, str):
        raise RequestDecodeError("description must be a string")

    if "commands" in raw:
        raw_commands = raw["commands"]
        if not isinstance(raw_commands, list):
            raise RequestDecodeError("commands must be an array")
        if not raw_commands:
            raise RequestDecodeError("No commands found in request")
        commands = [_decode_raw_command(item) for item in raw_commands]
    elif "action" in raw:
        fields = {key: value for key, value in raw.items() if key not in ENVELOPE_KEYS}
        commands = [_decode_raw_command({"action": raw["action"], **fields})]
    else:
        raise RequestDecodeError("Request needs either a 'commands' array or an 'action'")

    return Request(
        commands=commands,
        context=_decode_context(raw.get("context")),
        correlation_id=correlation_id,
        description=description,
        timestamp_ms=timestamp_ms,
    )


def _decode_raw_command(item: Any) -> RawCommand:
    if not isinstance(item, dict):
        return RawCommand(action="", fields={}, problem="Command entry must be an object")
    action = item.get("action")
    if not isinstance(action, str) or not action.strip():
        return RawCommand(
            action="",
            fields=dict(item),
            problem="Command entry needs a non-empty string 'action'",
        )
    fields = {key: value for key, value in item.items() if key != "action"}
    return RawCommand(action=action.strip().lower(), fields=fields)


def _decode_context(raw: Any) -> ContextSpec | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {"name": raw}
    if not isinstance(raw, dict):
        raise RequestDecodeError("context must be a string or an object")
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise RequestDecodeError("context.name must be a non-empty string")
    create = raw.get("create", True)
    path = raw.get("path", "contexts")
    template = raw.get("template", "default")
    if not isinstance(create, bool):
        raise RequestDecodeError("context.create must be a boolean")
    if not isinstance(path, str) or not isinstance(template, str):
        raise RequestDecodeError("context.path and context.template must be strings")
    return ContextSpec(name=name.strip(), create=create, path=path, template=template)


def ledger_record_to_payload(record: LedgerRecord) -> dict[str, Any]:
    """Serialize a ledger record; end fields only appear once the compile finished."""

    payload: dict[str, Any] = {
        "status": record.status.value,
        "correlationId": record.correlation_id,
        "startedAt": record.started_at.isoformat(),
        "startedAtMs": record.started_at_ms,
    }
    if record.ended_at is not None:
        payload.update(
            {
                "endedAt": record.ended_at.isoformat(),
                "endedAtMs": record.ended_at_ms,
                "durationMs": record.duration_ms,
                "errors": record.errors,
                "warnings": record.warnings,
                "details": list(record.details),
            },
        )
    return payload


def parse_ledger_record(text: str) -> LedgerRecord:
    """Parse ledger JSON; raises ValueError on anything that is not a ledger record."""

    raw = json.loads(text)
    if not isinstance(raw, dict):
        raise ValueError("ledger record must be a JSON object")
    try:
        status = LedgerStatus(raw.get("status"))
    except ValueError as error:
        raise ValueError(f"Unknown ledger status: {raw.get('status')!r}") from error
    started_ms = raw.get("startedAtMs")
    if not isinstance(started_ms, int):
        raise ValueError("ledger.startedAtMs must be an integer")
    ended_ms = raw.get("endedAtMs")
    if ended_ms is not None and not isinstance(ended_ms, int):
        raise ValueError("ledger.endedAtMs must be an integer when provided")
    details = raw.get("details") or []
    if not isinstance(details, list):
        raise ValueError("ledger.details must be an array")
    correlation_id = raw.get("correlationId")
    return LedgerRecord(
        status=status,
        started_at=from_epoch_ms(started_ms),
        correlation_id=str(correlation_id) if correlation_id else None,
        ended_at=from_epoch_ms(ended_ms) if ended_ms is not None else None,
        errors=int(raw.get("errors") or 0),
        warnings=int(raw.get("warnings") or 0),
        details=[str(item) for item in details],
    )


def read_ledger(path: Path) -> LedgerRecord | None:
    """Read the ledger file; missing, unreadable or half-written files read as None."""

    try:
        text = path.read_text("utf-8")
    except FileNotFoundError:
        return None
    except OSError as error:
        logger.debug("Ledger %s unreadable: %s", path, error)
        return None
    if not text.strip():
        return None
    try:
        return parse_ledger_record(text)
    except ValueError as error:
        logger.debug("Ledger %s not parseable: %s", path, error)
        return None


def archive_paths(archive_dir: Path, original_name: str, now: datetime) -> tuple[Path, Path]:
    """Pick unused archive and transcript paths for one consumed request."""

    stamp = now.strftime(ARCHIVE_TIMESTAMP_FORMAT)
    stem = Path(original_name).stem
    counter = 0
    while True:
        prefix = stamp if counter == 0 else f"{stamp}-{counter}"
        archived = archive_dir / f"{prefix}-{original_name}"
        transcript = archive_dir / f"{prefix}-{stem}{TRANSCRIPT_SUFFIX}"
        if not archived.exists() and not transcript.exists():
            return archived, transcript
        counter += 1


def transcript_to_payload(transcript: BatchTranscript) -> dict[str, Any]:
    """Serialize a batch transcript for the archive."""

    ended_at = transcript.ended_at or transcript.started_at
    skipped = sum(1 for item in transcript.outcomes if item.status == CommandStatus.SKIPPED)
    return {
        "request": transcript.request_name,
        "correlationId": transcript.correlation_id,
        "result": "SUCCESS" if transcript.ok else "FAILED",
        "error": transcript.error,
        "context": transcript.context_message,
        "saved": transcript.saved,
        "aborted": transcript.aborted,
        "startedAt": transcript.started_at.isoformat(),
        "endedAt": ended_at.isoformat(),
        "durationMs": max(0, to_epoch_ms(ended_at) - to_epoch_ms(transcript.started_at)),
        "summary": {
            "total": len(transcript.outcomes),
            "succeeded": transcript.succeeded,
            "failed": transcript.failed,
            "skipped": skipped,
        },
        "commands": [
            {**asdict(item), "status": item.status.value} for item in transcript.outcomes
        ],
        "rawContent": transcript.raw_content,
    }


def write_transcript(path: Path, transcript: BatchTranscript) -> None:
    write_json(path, transcript_to_payload(transcript))
