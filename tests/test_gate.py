from __future__ import annotations

import threading

import allure
import pytest

from comfy_bridge.generation import ConcurrencyConflict, ConcurrencyGate, ErrorKind

pytestmark = [
    allure.epic("Generation"),
    allure.feature("Admission Control"),
]


def test_second_acquire_for_same_actor_is_rejected() -> None:
    gate = ConcurrencyGate()

    assert gate.try_acquire("alice") is True
    assert gate.try_acquire("alice") is False
    assert gate.active_count() == 1


def test_global_cap_rejects_other_actors() -> None:
    gate = ConcurrencyGate(max_concurrent=1)

    assert gate.try_acquire("alice") is True
    assert gate.try_acquire("bob") is False
    gate.release("alice")
    assert gate.try_acquire("bob") is True


def test_zero_cap_means_unbounded() -> None:
    gate = ConcurrencyGate(max_concurrent=0)

    for index in range(50):
        assert gate.try_acquire(f"actor-{index}")
    assert gate.active_count() == 50


def test_release_of_unknown_actor_is_noop() -> None:
    gate = ConcurrencyGate()
    gate.try_acquire("alice")

    gate.release("bob")
    gate.release("alice")
    gate.release("alice")

    assert gate.active_count() == 0
    assert not gate.is_actor_active("alice")


def test_negative_cap_is_rejected() -> None:
    with pytest.raises(ValueError, match="max_concurrent"):
        ConcurrencyGate(max_concurrent=-1)


def test_hold_releases_slot_when_block_raises() -> None:
    gate = ConcurrencyGate()

    with pytest.raises(RuntimeError), gate.hold("alice"):
        assert gate.is_actor_active("alice")
        raise RuntimeError("boom")

    assert gate.active_count() == 0


def test_hold_raises_concurrency_conflict() -> None:
    gate = ConcurrencyGate()

    with gate.hold("alice"), pytest.raises(ConcurrencyConflict) as exc_info, gate.hold("alice"):
        pass

    assert exc_info.value.kind is ErrorKind.CONCURRENCY_CONFLICT
    assert exc_info.value.details == {"actor_id": "alice"}
    assert gate.active_count() == 0


def test_concurrent_acquires_respect_cap() -> None:
    gate = ConcurrencyGate(max_concurrent=3)
    start = threading.Barrier(20)
    results: list[bool] = []
    lock = threading.Lock()

    def _worker(index: int) -> None:
        start.wait()
        acquired = gate.try_acquire(f"actor-{index}")
        with lock:
            results.append(acquired)

    threads = [threading.Thread(target=_worker, args=(index,)) for index in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 3
    assert gate.active_count() == 3
