from __future__ import annotations

import threading

import allure
import pytest

from host_relay.bus.dispatcher import AffinityDispatcher
from host_relay.bus.errors import AffinityError

pytestmark = [
    allure.epic("Affinity Dispatcher"),
    allure.feature("Single-Consumer Drain"),
]


def test_drain_preserves_enqueue_order_across_producers() -> None:
    dispatcher = AffinityDispatcher()
    seen: list[tuple[int, int]] = []

    def produce(producer: int) -> None:
        for index in range(50):
            dispatcher.enqueue(lambda producer=producer, index=index: seen.append((producer, index)))

    threads = [threading.Thread(target=produce, args=(producer,)) for producer in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    summary = dispatcher.drain()

    assert summary.executed == 200
    assert summary.failed == 0
    assert len(seen) == 200
    for producer in range(4):
        assert [index for owner, index in seen if owner == producer] == list(range(50))


def test_items_enqueued_during_a_pass_run_in_the_next_pass() -> None:
    dispatcher = AffinityDispatcher()
    seen: list[str] = []

    def first() -> None:
        seen.append("first")
        dispatcher.enqueue(lambda: seen.append("late"))

    dispatcher.enqueue(first)
    dispatcher.enqueue(lambda: seen.append("second"))

    assert dispatcher.drain().executed == 2
    assert seen == ["first", "second"]
    assert dispatcher.pending() == 1

    dispatcher.drain()
    assert seen == ["first", "second", "late"]
    assert dispatcher.pending() == 0


def test_failing_item_does_not_stop_the_pass(caplog) -> None:
    dispatcher = AffinityDispatcher()
    seen: list[int] = []

    def boom() -> None:
        raise RuntimeError("boom")

    dispatcher.enqueue(lambda: seen.append(1))
    dispatcher.enqueue(boom)
    dispatcher.enqueue(lambda: seen.append(3))

    summary = dispatcher.drain()

    assert seen == [1, 3]
    assert summary.executed == 3
    assert summary.failed == 1
    assert "failed" in caplog.text


@pytest.mark.parametrize("item", [None, 42, "not callable"])
def test_enqueue_rejects_none_and_non_callables(item) -> None:
    dispatcher = AffinityDispatcher()

    with pytest.raises(TypeError):
        dispatcher.enqueue(item)
    assert dispatcher.pending() == 0


def test_drain_from_another_thread_is_refused() -> None:
    dispatcher = AffinityDispatcher()
    dispatcher.bind()
    dispatcher.enqueue(lambda: None)
    errors: list[BaseException] = []

    def foreign_drain() -> None:
        try:
            dispatcher.drain()
        except AffinityError as error:
            errors.append(error)

    thread = threading.Thread(target=foreign_drain)
    thread.start()
    thread.join()

    assert len(errors) == 1
    assert dispatcher.pending() == 1
    assert dispatcher.drain().executed == 1


def test_first_drain_binds_affinity() -> None:
    dispatcher = AffinityDispatcher()
    dispatcher.drain()

    assert dispatcher.owner == threading.get_ident()
