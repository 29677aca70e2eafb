"""
Unit tests for half-open range intersection and the keyed lock registry.
"""

from __future__ import annotations

import threading
import time
from datetime import date

import pytest

from rental_core.services.locks import KeyedLocks
from rental_core.services.overlap import ranges_overlap


@pytest.mark.unit
@pytest.mark.parametrize(
    "first,second,expected",
    [
        ((date(2024, 6, 1), date(2024, 6, 10)), (date(2024, 6, 5), date(2024, 6, 15)), True),
        ((date(2024, 6, 1), date(2024, 6, 10)), (date(2024, 6, 2), date(2024, 6, 3)), True),
        ((date(2024, 6, 1), date(2024, 6, 10)), (date(2024, 6, 10), date(2024, 6, 20)), False),
        ((date(2024, 6, 10), date(2024, 6, 20)), (date(2024, 6, 1), date(2024, 6, 10)), False),
        ((date(2024, 6, 1), date(2024, 6, 10)), (date(2024, 7, 1), date(2024, 7, 5)), False),
    ],
)
def test_ranges_overlap(first: tuple, second: tuple, expected: bool) -> None:
    """Back-to-back stays share a checkout/check-in day without overlapping."""
    assert ranges_overlap(first, second) is expected
    assert ranges_overlap(second, first) is expected


@pytest.mark.unit
def test_keyed_locks_serialize_same_key() -> None:
    """Two holders of the same key never run their blocks at the same time."""
    locks = KeyedLocks()
    active = []
    overlaps = []

    def worker() -> None:
        with locks.hold("property-1"):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.02)
            active.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []


@pytest.mark.unit
def test_keyed_locks_do_not_block_other_keys() -> None:
    locks = KeyedLocks()

    with locks.hold("a"):
        acquired = threading.Event()

        def other() -> None:
            with locks.hold("b"):
                acquired.set()

        thread = threading.Thread(target=other)
        thread.start()
        assert acquired.wait(timeout=1)
        thread.join()


@pytest.mark.unit
def test_keyed_locks_drop_idle_keys() -> None:
    locks = KeyedLocks()

    with locks.hold("a"):
        assert len(locks) == 1

    assert len(locks) == 0


@pytest.mark.unit
def test_keyed_locks_release_on_error() -> None:
    locks = KeyedLocks()

    with pytest.raises(RuntimeError):
        with locks.hold("a"):
            raise RuntimeError("boom")

    with locks.hold("a"):
        pass
    assert len(locks) == 0
