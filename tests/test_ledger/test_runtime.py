"""Tests for the transactional Ledger runtime.

Covers atomic rollback across participants, event buffering, pinned block
time, the reentrancy guard and amount/address validation.
"""

import threading

import pytest

from polyflux.constants import UINT256_MAX, ZERO_ADDRESS
from polyflux.exceptions import InvalidAddress, InvalidAmount, ReentrantCall
from polyflux.ledger import (
    Ledger,
    ManualClock,
    non_reentrant,
    require_address,
    require_amount,
    synchronized,
    transactional,
)
from polyflux.ledger.runtime import Snapshotable


class Counter(Snapshotable):
    """Minimal ledger participant used to observe commit/rollback."""

    _state_attrs = ("value", "history")

    def __init__(self, ledger: Ledger) -> None:
        self._ledger = ledger
        self.value = 0
        self.history: list[int] = []
        self._entered = False
        self.callback = None
        ledger.register(self)

    @transactional
    def add(self, amount: int) -> int:
        self.value += amount
        self.history.append(amount)
        self._ledger.emit("Added", amount=amount)
        if self.value < 0:
            raise ValueError("negative")
        return self.value

    @transactional
    @non_reentrant
    def guarded(self) -> None:
        self.value += 1
        if self.callback is not None:
            self.callback()

    @synchronized
    def read(self) -> int:
        return self.value


class TestManualClock:
    def test_advance_and_set(self) -> None:
        clock = ManualClock(start=100)
        assert clock() == 100
        assert clock.advance(50) == 150
        clock.set(10)
        assert clock() == 10


class TestTransactions:
    def test_commit_applies_state_and_publishes_events(self) -> None:
        ledger = Ledger(ManualClock(start=1_000))
        counter = Counter(ledger)

        assert counter.add(5) == 5

        assert counter.value == 5
        events = ledger.events("Added")
        assert len(events) == 1
        assert events[0].args == {"amount": 5}
        assert events[0].block_time == 1_000

    def test_failure_rolls_back_all_participants(self) -> None:
        ledger = Ledger(ManualClock())
        first = Counter(ledger)
        second = Counter(ledger)
        first.add(3)

        with pytest.raises(ValueError):
            with ledger.transaction("two_writes"):
                second.add(7)
                first.add(-10)  # drives first negative -> raises

        assert first.value == 3
        assert first.history == [3]
        assert second.value == 0
        assert second.history == []

    def test_failed_transaction_drops_buffered_events(self) -> None:
        ledger = Ledger(ManualClock())
        counter = Counter(ledger)

        with pytest.raises(ValueError):
            counter.add(-1)

        assert ledger.events() == []

    def test_nested_transaction_joins_outer(self) -> None:
        ledger = Ledger(ManualClock())
        counter = Counter(ledger)

        with ledger.transaction("outer"):
            counter.add(1)
            counter.add(2)
            assert ledger.in_transaction
            # Not yet committed
            assert ledger.events() == []

        assert not ledger.in_transaction
        assert [e.args["amount"] for e in ledger.events("Added")] == [1, 2]

    def test_block_time_pinned_inside_transaction(self) -> None:
        clock = ManualClock(start=500)
        ledger = Ledger(clock)

        with ledger.transaction("pinned"):
            clock.advance(60)
            assert ledger.now == 500

        assert ledger.now == 560

    def test_emit_outside_transaction_rejected(self) -> None:
        ledger = Ledger(ManualClock())
        with pytest.raises(RuntimeError):
            ledger.emit("Orphan")

    def test_register_is_idempotent(self) -> None:
        ledger = Ledger(ManualClock())
        counter = Counter(ledger)
        ledger.register(counter)

        with pytest.raises(ValueError):
            counter.add(-5)

        assert counter.value == 0


class TestReadIsolation:
    def test_reader_waits_for_in_flight_transaction(self) -> None:
        clock = ManualClock(start=1_000)
        ledger = Ledger(clock)
        counter = Counter(ledger)
        inside = threading.Event()
        release = threading.Event()
        errors: list[Exception] = []
        seen: list[tuple[int, int]] = []

        def hold_then_fail() -> None:
            inside.set()
            release.wait(5)
            raise RuntimeError("abort")

        def write() -> None:
            counter.callback = hold_then_fail
            try:
                counter.guarded()
            except RuntimeError as exc:
                errors.append(exc)

        writer = threading.Thread(target=write)
        writer.start()
        assert inside.wait(5)
        clock.advance(50)

        reader = threading.Thread(target=lambda: seen.append((counter.read(), ledger.now)))
        reader.start()
        reader.join(0.1)
        # Blocked on the writer lock, not reading the half-applied value
        assert reader.is_alive()

        release.set()
        writer.join(5)
        reader.join(5)
        assert len(errors) == 1
        # Rolled-back state and clock time, never the pinned block time 1_000
        assert seen == [(0, 1_050)]

    def test_same_thread_reads_inside_transaction(self) -> None:
        ledger = Ledger(ManualClock(start=1_000))
        counter = Counter(ledger)
        observed: list[int] = []
        counter.callback = lambda: observed.append(counter.read())

        counter.guarded()

        assert observed == [1]


class TestNonReentrant:
    def test_reentry_aborts_outer_call(self) -> None:
        ledger = Ledger(ManualClock())
        counter = Counter(ledger)
        counter.callback = counter.guarded

        with pytest.raises(ReentrantCall):
            counter.guarded()

        assert counter.value == 0
        # Guard released after the failure
        counter.callback = None
        counter.guarded()
        assert counter.value == 1


class TestRequireAmount:
    @pytest.mark.parametrize("amount", [0, 1, UINT256_MAX])
    def test_accepts_uint256(self, amount: int) -> None:
        assert require_amount(amount) == amount

    @pytest.mark.parametrize("amount", [-1, UINT256_MAX + 1, 1.5, "10", True])
    def test_rejects_out_of_range_or_non_int(self, amount: object) -> None:
        with pytest.raises(InvalidAmount):
            require_amount(amount)  # type: ignore[arg-type]


class TestRequireAddress:
    @pytest.mark.parametrize("address", ["", ZERO_ADDRESS])
    def test_rejects_empty_and_zero(self, address: str) -> None:
        with pytest.raises(InvalidAddress, match="Invalid address"):
            require_address(address)

    def test_accepts_regular_address(self) -> None:
        assert require_address("0xabc") == "0xabc"
