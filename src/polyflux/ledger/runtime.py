"""Single-writer transactional runtime shared by the oracle, engine and token.

Models the execution environment the contracts originally ran on:

- One global writer lock; state-changing calls are applied one at a time.
- The outermost transaction snapshots every registered participant. If the
  call raises, every participant is restored and buffered events are dropped,
  so a failed call leaves no trace.
- Block time is pinned for the duration of a transaction.
- Events are buffered and only become visible on commit.
- Public reads (``synchronized``) and ``Ledger.now`` take the same lock, so a
  reader on another thread sees either the state before a transaction or
  the state after it.

Snapshots are full deep copies of each participant's ``_state_attrs``, so
the cost of a write grows with the total number of markets and positions
(O(state) per outermost transaction). Fine for simulations and tests; a
long-lived deployment with a large history would want copy-on-write
snapshots instead.

Reentrancy (a token receive hook calling back into the engine mid-payout) is
rejected by the ``non_reentrant`` guard, which aborts the outer transaction.
"""

from __future__ import annotations

import copy
import functools
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Protocol, TypeVar

from polyflux.constants import UINT256_MAX, ZERO_ADDRESS
from polyflux.exceptions import InvalidAddress, InvalidAmount, ReentrantCall
from polyflux.logging import bound_context, get_logger
from polyflux.models import LedgerEvent

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def wall_clock() -> int:
    """Current unix time in whole seconds."""
    return int(time.time())


class ManualClock:
    """Deterministic clock for tests and simulations."""

    def __init__(self, start: int = 1_700_000_000) -> None:
        self._now = start

    def __call__(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        self._now += seconds
        return self._now

    def set(self, timestamp: int) -> None:
        self._now = timestamp


class Participant(Protocol):
    """Anything whose state must roll back with a failed transaction."""

    def snapshot(self) -> Any: ...

    def restore(self, state: Any) -> None: ...


class Snapshotable:
    """Mixin: snapshot/restore the attributes named in ``_state_attrs``."""

    _state_attrs: tuple[str, ...] = ()

    def snapshot(self) -> dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._state_attrs}

    def restore(self, state: dict[str, Any]) -> None:
        for name, value in state.items():
            setattr(self, name, value)


class Ledger:
    """Serializes all writes and gives them all-or-nothing semantics.

    Args:
        clock: Callable returning the current unix time in seconds.
    """

    def __init__(self, clock: Callable[[], int] | None = None) -> None:
        self._clock = clock or wall_clock
        self._lock = threading.RLock()
        self._participants: list[Participant] = []
        self._depth = 0
        self._block_time: int | None = None
        self._pending: list[LedgerEvent] = []
        self._events: list[LedgerEvent] = []

    def register(self, participant: Participant) -> None:
        """Include a component's state in every transaction snapshot."""
        with self._lock:
            if participant not in self._participants:
                self._participants.append(participant)

    @property
    def lock(self) -> threading.RLock:
        """The writer lock; public reads hold it too (see ``synchronized``)."""
        return self._lock

    @property
    def now(self) -> int:
        """Block time inside a transaction, wall/clock time outside.

        Another thread asking mid-transaction waits for the commit and then
        gets clock time, never the pinned block time.
        """
        with self._lock:
            if self._block_time is not None:
                return self._block_time
            return int(self._clock())

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self, name: str) -> Iterator[None]:
        """Run the block as one atomic transaction.

        Nested transactions join the enclosing one; only the outermost
        transaction snapshots, commits or rolls back.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshots = [(p, p.snapshot()) for p in self._participants]
            self._depth = 1
            self._block_time = int(self._clock())
            self._pending = []
            try:
                with bound_context(tx=name, block_time=self._block_time):
                    yield
            except BaseException as exc:
                for participant, state in snapshots:
                    participant.restore(state)
                logger.warning(
                    "transaction_rolled_back",
                    tx=name,
                    error=type(exc).__name__,
                    detail=str(exc),
                    dropped_events=len(self._pending),
                )
                raise
            else:
                self._events.extend(self._pending)
                for event in self._pending:
                    logger.info("event", name=event.name, tx=name, **event.args)
            finally:
                self._depth = 0
                self._block_time = None
                self._pending = []

    def emit(self, name: str, **args: Any) -> LedgerEvent:
        """Buffer an event; it is published when the transaction commits."""
        if self._depth == 0:
            raise RuntimeError("events can only be emitted inside a transaction")
        event = LedgerEvent(name=name, block_time=self.now, args=args)
        self._pending.append(event)
        return event

    def events(self, name: str | None = None) -> list[LedgerEvent]:
        """Committed event history, optionally filtered by event name."""
        with self._lock:
            if name is None:
                return list(self._events)
            return [e for e in self._events if e.name == name]


def transactional(method: F) -> F:
    """Run a method of a ledger-bound component inside a transaction.

    The component must expose its Ledger as ``self._ledger``.
    """

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        with self._ledger.transaction(f"{type(self).__name__}.{method.__name__}"):
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


def synchronized(method: F) -> F:
    """Run a read under the ledger's writer lock.

    Readers on other threads wait for an in-flight transaction to finish, so
    they never observe half-applied state. The component must expose its
    Ledger as ``self._ledger``.
    """

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        with self._ledger.lock:
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


def non_reentrant(method: F) -> F:
    """Reject re-entry into any guarded method of the same object.

    Shares one flag per instance, like a contract-wide reentrancy lock.
    """

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        if getattr(self, "_entered", False):
            raise ReentrantCall(f"{type(self).__name__}.{method.__name__} re-entered")
        self._entered = True
        try:
            return method(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper  # type: ignore[return-value]


def require_amount(amount: int, name: str = "amount") -> int:
    """Reject amounts that are not non-negative 256-bit integers."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"{name} must be an integer, got {type(amount).__name__}")
    if amount < 0 or amount > UINT256_MAX:
        raise InvalidAmount(f"{name} out of uint256 range: {amount}")
    return amount


def require_address(address: str) -> str:
    if not address or address == ZERO_ADDRESS:
        raise InvalidAddress("Invalid address")
    return address
