from __future__ import annotations

import json
from pathlib import Path

import allure
from watchdog.events import DirCreatedEvent, FileClosedEvent, FileCreatedEvent, FileMovedEvent

from host_relay.bus.contracts import TRANSCRIPT_SUFFIX, load_json
from host_relay.bus.dispatcher import AffinityDispatcher
from host_relay.bus.executor import BatchExecutor
from host_relay.bus.host import SimulatedHost
from host_relay.bus.ingestor import QueueEventHandler, QueueIngestor
from host_relay.bus.locks import FileLockProvider, LockProvider
from host_relay.config import Settings

pytestmark = [
    allure.epic("Queue Ingestor"),
    allure.feature("At-Most-Once Consumption"),
]

_WIDGET_REQUEST = {
    "context": {"name": "MainMenu"},
    "commands": [{"action": "add-widget", "name": "Panel"}],
}


def _ingestor(
    settings: Settings,
    *,
    lock_provider: LockProvider | None = None,
    **kwargs,
) -> tuple[QueueIngestor, AffinityDispatcher, SimulatedHost]:
    host = SimulatedHost()
    dispatcher = AffinityDispatcher()
    ingestor = QueueIngestor(
        queue_dir=settings.queue.queue_dir,
        archive_dir=settings.queue.archive_dir,
        dispatcher=dispatcher,
        executor=BatchExecutor(host),
        lock_provider=lock_provider or FileLockProvider(),
        **kwargs,
    )
    return ingestor, dispatcher, host


def _archived(settings: Settings) -> list[str]:
    if not settings.queue.archive_dir.exists():
        return []
    return sorted(path.name for path in settings.queue.archive_dir.iterdir())


def test_sweep_consumes_and_archives_each_request_once(settings: Settings, write_request) -> None:
    write_request("b.json", _WIDGET_REQUEST)
    write_request("a.json", {"commands": [{"action": "check-status"}]})
    ingestor, dispatcher, host = _ingestor(settings)

    assert ingestor.sweep() == 2
    summary = dispatcher.drain()

    assert summary.executed == 2
    assert list(settings.queue.queue_dir.glob("*.json")) == []
    archived = _archived(settings)
    assert len(archived) == 4
    assert archived[0].endswith("-a.json")
    assert sum(name.endswith(TRANSCRIPT_SUFFIX) for name in archived) == 2
    assert host.save_count == 1

    for _ in range(3):
        assert ingestor.sweep() == 0
        assert dispatcher.drain().executed == 0
    assert host.save_count == 1
    assert ingestor.claimed() == 0


def test_watch_event_and_sweep_enqueue_the_same_file_once(settings: Settings, write_request) -> None:
    path = write_request("race.json", _WIDGET_REQUEST)
    ingestor, dispatcher, host = _ingestor(settings)
    handler = QueueEventHandler(ingestor, close_events=False)

    handler.on_created(FileCreatedEvent(str(path)))
    assert ingestor.sweep() == 0
    assert ingestor.handle_candidate(path) is False
    assert dispatcher.pending() == 1

    dispatcher.drain()

    assert host.save_count == 1
    assert len([name for name in _archived(settings) if name.endswith("-race.json")]) == 1


def test_file_still_locked_by_writer_is_skipped(settings: Settings, write_request) -> None:
    provider = FileLockProvider()
    path = write_request("busy.json", _WIDGET_REQUEST)
    writer = provider.try_acquire(path)
    assert writer is not None
    ingestor, dispatcher, _host = _ingestor(settings, lock_provider=provider)

    assert ingestor.sweep() == 0
    assert dispatcher.pending() == 0

    provider.release(writer)

    assert ingestor.sweep() == 1


def test_failed_archive_move_is_retried_without_running_the_batch_again(
    settings: Settings,
    write_request,
    caplog,
) -> None:
    path = write_request("stuck.json", _WIDGET_REQUEST)
    attempts: list[Path] = []
    blocked = [True, True]

    def flaky_move(source: Path, target: Path) -> None:
        attempts.append(target)
        if blocked:
            blocked.pop()
            raise PermissionError("denied")
        source.rename(target)

    consumed: list[Path] = []
    ingestor, dispatcher, host = _ingestor(
        settings,
        move=flaky_move,
        on_consumed=lambda archived, _transcript: consumed.append(archived),
    )

    for _ in range(2):
        assert ingestor.sweep() == 1
        dispatcher.drain()
        assert path.exists()
        assert ingestor.claimed() == 0
        assert [name for name in _archived(settings) if name.endswith(TRANSCRIPT_SUFFIX)] == []

    assert "Failed to archive stuck.json" in caplog.text
    assert host.save_count == 1

    ingestor.sweep()
    dispatcher.drain()

    assert host.save_count == 1
    assert len(attempts) == 3
    assert not path.exists()
    assert consumed == [attempts[-1]]
    assert sum(name.endswith(TRANSCRIPT_SUFFIX) for name in _archived(settings)) == 1


def test_undecodable_request_is_archived_with_error_transcript(settings: Settings, write_request) -> None:
    write_request("broken.json", "{not json")
    consumed: list[tuple[Path, object]] = []
    ingestor, dispatcher, host = _ingestor(
        settings,
        on_consumed=lambda archived, transcript: consumed.append((archived, transcript)),
    )

    ingestor.sweep()
    dispatcher.drain()

    assert len(consumed) == 1
    archived, transcript = consumed[0]
    assert archived.read_text("utf-8") == "{not json"
    assert transcript.error.startswith("Failed to parse JSON")
    transcript_files = [
        path for path in settings.queue.archive_dir.iterdir() if path.name.endswith(TRANSCRIPT_SUFFIX)
    ]
    payload = load_json(transcript_files[0])
    assert payload["result"] == "FAILED"
    assert payload["rawContent"] == "{not json"
    assert host.save_count == 0


def test_non_matching_files_and_directories_are_ignored(settings: Settings, write_request) -> None:
    write_request("notes.txt", "hello")
    (settings.queue.queue_dir / "folder.json").mkdir()
    settings.queue.archive_dir.mkdir(parents=True, exist_ok=True)
    archived_request = settings.queue.archive_dir / "old.json"
    archived_request.write_text(json.dumps(_WIDGET_REQUEST), "utf-8")
    ingestor, dispatcher, _host = _ingestor(settings)
    handler = QueueEventHandler(ingestor, close_events=False)

    handler.on_created(DirCreatedEvent(str(settings.queue.queue_dir / "folder.json")))
    handler.on_created(FileCreatedEvent(str(archived_request)))

    assert ingestor.sweep() == 0
    assert ingestor.handle_candidate(archived_request) is False
    assert dispatcher.pending() == 0


def test_moved_into_queue_event_is_a_candidate(settings: Settings, write_request) -> None:
    path = write_request("renamed.json", _WIDGET_REQUEST)
    ingestor, dispatcher, _host = _ingestor(settings)

    QueueEventHandler(ingestor).on_moved(
        FileMovedEvent(str(settings.queue.queue_dir / ".renamed.json.1.tmp"), str(path)),
    )

    assert dispatcher.pending() == 1


def test_request_removed_before_consumption_is_not_archived(settings: Settings, write_request) -> None:
    path = write_request("gone.json", _WIDGET_REQUEST)
    ingestor, dispatcher, host = _ingestor(settings)
    ingestor.sweep()

    path.unlink()
    summary = dispatcher.drain()

    assert summary.failed == 0
    assert _archived(settings) == []
    assert ingestor.claimed() == 0
    assert host.save_count == 0


def test_unlocked_writer_is_only_picked_up_after_closing(settings: Settings) -> None:
    settings.queue.queue_dir.mkdir(parents=True)
    path = settings.queue.queue_dir / "plain.json"
    document = json.dumps({"commands": [{"action": "create-context", "name": "Foo"}]})
    ingestor, dispatcher, host = _ingestor(settings)
    handler = QueueEventHandler(ingestor, close_events=True)

    with path.open("w", encoding="utf-8") as writer:
        writer.write(document[:10])
        writer.flush()
        handler.on_created(FileCreatedEvent(str(path)))
        assert dispatcher.pending() == 0
        writer.write(document[10:])
    handler.on_closed(FileClosedEvent(str(path)))

    assert dispatcher.pending() == 1
    dispatcher.drain()
    assert "Foo" in host.contexts
    assert not path.exists()
