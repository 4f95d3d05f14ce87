from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from host_relay.bus.contracts import (
    archive_paths,
    decode_request,
    ledger_record_to_payload,
    parse_ledger_record,
    read_ledger,
    transcript_to_payload,
    write_json_atomic,
)
from host_relay.bus.errors import RequestDecodeError
from host_relay.bus.models import (
    BatchTranscript,
    CommandOutcome,
    CommandStatus,
    LedgerRecord,
    LedgerStatus,
    from_epoch_ms,
    to_epoch_ms,
)

pytestmark = [
    allure.epic("Queue Ingestor"),
    allure.feature("Request & Ledger Contracts"),
]

_STARTED = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def test_decode_batch_form_with_context() -> None:
    request = decode_request(
        json.dumps(
            {
                "version": "1.0",
                "description": "menu",
                "context": {"name": "MainMenu", "create": False},
                "commands": [
                    {"action": "Add-Widget", "name": "Panel"},
                    {"action": "force-compile"},
                ],
            },
        ),
    )

    assert [command.action for command in request.commands] == ["add-widget", "force-compile"]
    assert request.commands[0].fields == {"name": "Panel"}
    assert request.context is not None
    assert request.context.name == "MainMenu"
    assert request.context.create is False
    assert request.description == "menu"


def test_decode_single_action_form_keeps_envelope_out_of_fields() -> None:
    request = decode_request(
        json.dumps(
            {
                "action": "force-compile",
                "correlationId": "abc123",
                "timestampMs": 1700000000000,
                "projectId": "DEADBEEF",
                "reason": "check",
            },
        ),
    )

    assert len(request.commands) == 1
    assert request.commands[0].action == "force-compile"
    assert request.commands[0].fields == {"reason": "check"}
    assert request.correlation_id == "abc123"
    assert request.timestamp_ms == 1700000000000


def test_decode_context_string_shorthand() -> None:
    request = decode_request(json.dumps({"context": "Lobby", "commands": [{"action": "check-status"}]}))

    assert request.context is not None
    assert request.context.name == "Lobby"
    assert request.context.create is True


def test_malformed_entries_fail_per_command_not_per_request() -> None:
    request = decode_request(json.dumps({"commands": [42, {"name": "x"}, {"action": "check-status"}]}))

    assert request.commands[0].problem == "Command entry must be an object"
    assert request.commands[1].problem is not None
    assert request.commands[2].problem is None


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("{not json", "Failed to parse JSON"),
        ("[]", "must be a JSON object"),
        ('{"commands": []}', "No commands found"),
        ('{"commands": {}}', "commands must be an array"),
        ('{"description": "nothing"}', "either a 'commands' array or an 'action'"),
        ('{"action": "force-compile", "correlationId": 5}', "correlationId must be a string"),
        ('{"context": 3, "commands": [{"action": "check-status"}]}', "context must be"),
    ],
)
def test_decode_request_rejects_invalid_documents(content: str, message: str) -> None:
    with pytest.raises(RequestDecodeError, match=message):
        decode_request(content)


def test_ledger_payload_omits_end_fields_while_compiling() -> None:
    payload = ledger_record_to_payload(
        LedgerRecord(status=LedgerStatus.COMPILING, started_at=_STARTED, correlation_id="c1"),
    )

    assert payload["status"] == "compiling"
    assert payload["correlationId"] == "c1"
    assert "endedAtMs" not in payload
    assert "durationMs" not in payload


def test_ledger_record_parses_back() -> None:
    record = LedgerRecord(
        status=LedgerStatus.COMPLETE,
        started_at=_STARTED,
        correlation_id="c1",
        ended_at=datetime(2026, 3, 1, 12, 0, 2, tzinfo=UTC),
        errors=1,
        warnings=2,
        details=["[a.cs:3] ERROR: boom"],
    )

    parsed = parse_ledger_record(json.dumps(ledger_record_to_payload(record)))

    assert parsed == record
    assert parsed.duration_ms == 2000


def test_read_ledger_tolerates_missing_empty_and_garbage(tmp_path: Path) -> None:
    path = tmp_path / "ledger.json"
    assert read_ledger(path) is None
    path.write_text("", "utf-8")
    assert read_ledger(path) is None
    path.write_text('{"status": "compil', "utf-8")
    assert read_ledger(path) is None
    path.write_text('{"status": "sleeping", "startedAtMs": 1}', "utf-8")
    assert read_ledger(path) is None


def test_write_json_atomic_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "status.json"

    write_json_atomic(target, {"status": "idle"})

    assert json.loads(target.read_text("utf-8")) == {"status": "idle"}
    assert [path.name for path in target.parent.iterdir()] == ["status.json"]


def test_failed_atomic_write_removes_its_temp_file(tmp_path: Path) -> None:
    target = tmp_path / "status.json"
    target.mkdir()

    with pytest.raises(OSError):
        write_json_atomic(target, {"status": "idle"})

    assert [path.name for path in tmp_path.iterdir()] == ["status.json"]


def test_epoch_milliseconds_survive_a_round_trip() -> None:
    base = to_epoch_ms(_STARTED)

    assert to_epoch_ms(_STARTED.replace(microsecond=999_999)) == base + 999
    for offset in range(1000):
        assert to_epoch_ms(from_epoch_ms(base + offset)) == base + offset


def test_archive_paths_add_suffix_on_collision(tmp_path: Path) -> None:
    now = datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=UTC)
    first, first_transcript = archive_paths(tmp_path, "req.json", now)
    assert first.name == "20260301-120000-123456-req.json"
    assert first_transcript.name == "20260301-120000-123456-req.transcript.json"

    first.write_text("{}", "utf-8")
    second, second_transcript = archive_paths(tmp_path, "req.json", now)

    assert second.name == "20260301-120000-123456-1-req.json"
    assert second_transcript.name == "20260301-120000-123456-1-req.transcript.json"


def test_transcript_payload_summarizes_outcomes() -> None:
    transcript = BatchTranscript(
        request_name="req.json",
        started_at=_STARTED,
        outcomes=[
            CommandOutcome(index=0, action="add-widget", status=CommandStatus.SUCCEEDED, message="ok"),
            CommandOutcome(index=1, action="explode", status=CommandStatus.FAILED, message="Unknown"),
            CommandOutcome(index=2, action="check-status", status=CommandStatus.SKIPPED, message="-"),
        ],
        aborted=True,
    )

    payload = transcript_to_payload(transcript)

    assert payload["result"] == "FAILED"
    assert payload["summary"] == {"total": 3, "succeeded": 1, "failed": 1, "skipped": 1}
    assert payload["commands"][1]["status"] == "failed"
    assert payload["durationMs"] == 0
