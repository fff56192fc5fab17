"""Leveraged position engine on top of the MarketOracle.

Position flow:
1. open_position: staleness gate, bounds checks, pull collateral, withhold fee
2. close_position: owner exits at the current directional price
3. liquidate_position: anyone closes a position below the equity floor for a reward
4. settle_position / settle_market_positions: anyone pays out resolved markets

Every value-moving entrypoint marks the position closed (or zeroes the fee
accumulator) before the token transfer and is guarded against re-entry, so a
recipient hook can neither re-enter nor observe a half-applied call. A guard
violation aborts the outer transaction and rolls everything back.

The engine only ever reads oracle state.
"""

from dataclasses import replace

from polyflux.config import DerivativesSettings
from polyflux.derivatives import pnl as pnl_math
from polyflux.exceptions import (
    CollateralTooLow,
    InvalidDirection,
    InvalidOraclePrice,
    LeverageTooHigh,
    LeverageTooLow,
    MarketNotResolved,
    MarketResolved,
    NotLiquidatable,
    NotOwner,
    OracleStale,
    PositionNotFound,
    PositionNotOpen,
)
from polyflux.ledger.runtime import (
    Ledger,
    Snapshotable,
    non_reentrant,
    require_address,
    require_amount,
    synchronized,
    transactional,
)
from polyflux.ledger.token import CollateralToken
from polyflux.logging import get_logger
from polyflux.models import Direction, Position
from polyflux.oracle.market_oracle import MarketOracle

logger = get_logger(__name__)

DEFAULT_ENGINE_ADDRESS = "0x00000000000000000000000000000000000d3e71"


class DerivativesEngine(Snapshotable):
    """Custodies collateral and drives the position state machine.

    State machine per position::

        Open --close--> Closed
        Open --liquidate--> Closed
        Open --settle--> Closed (settled=True)

    Args:
        ledger: Shared transactional runtime.
        oracle: Market data source (read-only).
        token: Collateral token; the engine holds custody at ``address``.
        owner: Administrative owner, also the initial fee recipient.
        settings: Leverage, collateral and fee parameters.
        address: The engine's own account on the collateral token.
    """

    _state_attrs = (
        "_positions",
        "_next_position_id",
        "_user_positions",
        "_market_positions",
        "_settle_cursor",
        "_fees_collected",
        "_total_deposited",
        "owner",
        "fee_recipient",
    )

    def __init__(
        self,
        ledger: Ledger,
        oracle: MarketOracle,
        token: CollateralToken,
        owner: str,
        settings: DerivativesSettings | None = None,
        address: str = DEFAULT_ENGINE_ADDRESS,
    ) -> None:
        self._ledger = ledger
        self._oracle = oracle
        self._token = token
        self._settings = settings or DerivativesSettings()
        self._fees = pnl_math.ProtocolFeeCalculator(self._settings)
        self.address = require_address(address)
        self.owner = require_address(owner)
        self.fee_recipient = owner

        self._positions: dict[int, Position] = {}
        self._next_position_id = 1
        self._user_positions: dict[str, list[int]] = {}
        self._market_positions: dict[str, list[int]] = {}
        self._settle_cursor: dict[str, int] = {}
        self._fees_collected = 0
        self._total_deposited = 0
        self._entered = False
        ledger.register(self)

    @property
    def settings(self) -> DerivativesSettings:
        return self._settings

    # -- Position lifecycle ---------------------------------------------------

    @transactional
    @non_reentrant
    def open_position(
        self,
        market_id: str,
        direction: Direction,
        collateral: int,
        leverage: int,
        caller: str,
    ) -> int:
        """Open a leveraged position, pulling ``collateral`` from the caller.

        Staleness is checked before any other validation; a market the
        oracle has never seen reports as stale.

        Args:
            market_id: Oracle market id.
            direction: One of the four Direction values (int accepted).
            collateral: Gross deposit, 1e6-scaled. The protocol fee is withheld.
            leverage: Leverage in bps (10000 = 1x).
            caller: Depositing account; must have approved the engine.

        Returns:
            The new position id.

        Raises:
            OracleStale: Market data missing or older than max_oracle_staleness.
            MarketResolved: The market already resolved.
            CollateralTooLow, LeverageTooLow, LeverageTooHigh: Bounds.
            InvalidOraclePrice: Directional price is zero.
            InsufficientAllowance, InsufficientBalanceError: Deposit failed.
        """
        if not self._oracle.is_market_data_fresh(market_id, self._settings.max_oracle_staleness):
            raise OracleStale(f"Oracle data stale for market {market_id!r}")
        if self._oracle.is_market_resolved(market_id):
            raise MarketResolved(f"Market {market_id} already resolved")

        direction = self._coerce_direction(direction)
        require_amount(collateral, "collateral")
        require_amount(leverage, "leverage")
        if collateral < self._settings.min_collateral:
            raise CollateralTooLow("Collateral too low")
        if leverage < self._settings.min_leverage:
            raise LeverageTooLow("Leverage too low")
        if leverage > self._settings.max_leverage:
            raise LeverageTooHigh("Leverage too high")

        yes_price, no_price, _ = self._oracle.get_latest_price(market_id)
        entry_price = pnl_math.directional_price(direction, yes_price, no_price)
        if entry_price == 0:
            raise InvalidOraclePrice(f"Zero {direction.name} price for market {market_id}")

        self._token.transfer_from(self.address, caller, self.address, collateral)
        net_collateral, fee = self._fees.net_collateral(collateral)
        self._fees_collected += fee
        self._total_deposited += collateral

        position_id = self._next_position_id
        self._next_position_id += 1
        position = Position(
            id=position_id,
            owner=caller,
            market_id=market_id,
            direction=direction,
            collateral=net_collateral,
            leverage=leverage,
            entry_price=entry_price,
            open_timestamp=self._ledger.now,
        )
        self._positions[position_id] = position
        self._user_positions.setdefault(caller, []).append(position_id)
        self._market_positions.setdefault(market_id, []).append(position_id)

        self._ledger.emit(
            "PositionOpened",
            position_id=position_id,
            owner=caller,
            market_id=market_id,
            direction=direction.name,
            collateral=net_collateral,
            leverage=leverage,
            size=position.size,
            entry_price=entry_price,
            fee=fee,
        )
        return position_id

    @transactional
    @non_reentrant
    def close_position(self, position_id: int, caller: str) -> int:
        """Close the caller's position at the current directional price.

        No liquidation check: the owner may always exit, even at a total loss
        and even on stale data.

        Returns:
            Signed PnL.

        Raises:
            PositionNotFound, NotOwner, PositionNotOpen.
        """
        position = self._require_position(position_id)
        if position.owner != caller:
            raise NotOwner("Not position owner")
        if not position.is_open:
            raise PositionNotOpen(f"Position {position_id} not open")

        pnl = self._current_pnl(position)
        payout = pnl_math.settlement_payout(position.collateral, position.size, pnl)
        position.is_open = False

        self._ledger.emit(
            "PositionClosed",
            position_id=position_id,
            owner=caller,
            pnl=pnl,
            payout=payout,
        )
        self._pay(position.owner, payout)
        return pnl

    @transactional
    @non_reentrant
    def liquidate_position(self, position_id: int, caller: str) -> int:
        """Force-close an under-collateralized position and reward the caller.

        The reward is a fixed share of the position's collateral; the rest of
        the collateral stays in custody. Negative equity beyond the collateral
        is not tracked.

        Returns:
            The reward paid to ``caller``.

        Raises:
            PositionNotFound: Unknown id.
            NotLiquidatable: Position closed or equity above the floor.
        """
        position = self._require_position(position_id)
        if not position.is_open:
            raise NotLiquidatable(f"Position {position_id} not open")
        pnl = self._current_pnl(position)
        if not pnl_math.is_liquidatable(
            position.collateral, pnl, self._settings.liquidation_threshold_bps
        ):
            raise NotLiquidatable(f"Position {position_id} not liquidatable")

        reward = self._fees.liquidation_reward(position.collateral)
        position.is_open = False

        logger.warning(
            "position_liquidated",
            position_id=position_id,
            owner=position.owner,
            liquidator=caller,
            equity=position.collateral + pnl,
        )
        self._ledger.emit(
            "PositionLiquidated",
            position_id=position_id,
            liquidator=caller,
            pnl=pnl,
            reward=reward,
        )
        self._pay(caller, reward)
        return reward

    @transactional
    @non_reentrant
    def settle_position(self, position_id: int, caller: str) -> int:
        """Pay out one position of a resolved market. Permissionless.

        Returns:
            The payout sent to the position owner.

        Raises:
            PositionNotFound, PositionNotOpen, MarketNotResolved.
        """
        position = self._require_position(position_id)
        if not position.is_open:
            raise PositionNotOpen(f"Position {position_id} not open")
        self._require_resolved(position.market_id)

        payout = self._settle(position, caller)
        self._pay(position.owner, payout)
        return payout

    @transactional
    @non_reentrant
    def settle_market_positions(self, market_id: str, max_positions: int, caller: str) -> int:
        """Settle up to ``max_positions`` open positions of a resolved market.

        Walks the per-market index from a persistent cursor, skipping
        positions already closed, so repeated calls make progress without
        rescanning or paying anything twice. All positions in the batch are
        marked settled before any payout is transferred.

        Returns:
            Number of positions settled by this call.

        Raises:
            MarketNotResolved: The market has not resolved.
        """
        require_amount(max_positions, "max_positions")
        self._require_resolved(market_id)

        ids = self._market_positions.get(market_id, [])
        cursor = self._settle_cursor.get(market_id, 0)
        payouts: list[tuple[str, int]] = []
        while cursor < len(ids) and len(payouts) < max_positions:
            position = self._positions[ids[cursor]]
            cursor += 1
            if position.is_open:
                payouts.append((position.owner, self._settle(position, caller)))
        self._settle_cursor[market_id] = cursor

        logger.info(
            "market_settlement_batch",
            market_id=market_id,
            settled=len(payouts),
            cursor=cursor,
            total=len(ids),
        )
        for owner, payout in payouts:
            self._pay(owner, payout)
        return len(payouts)

    # -- Reads ----------------------------------------------------------------

    @synchronized
    def get_position(self, position_id: int) -> Position:
        """Return a copy of a position.

        Raises:
            PositionNotFound: Unknown id.
        """
        return replace(self._require_position(position_id))

    @synchronized
    def calculate_pnl(self, position_id: int) -> int:
        """Signed PnL at the oracle's current price (0 for closed positions)."""
        position = self._require_position(position_id)
        if not position.is_open:
            return 0
        return self._current_pnl(position)

    @synchronized
    def is_liquidatable(self, position_id: int) -> bool:
        position = self._positions.get(position_id)
        if position is None or not position.is_open:
            return False
        return pnl_math.is_liquidatable(
            position.collateral,
            self._current_pnl(position),
            self._settings.liquidation_threshold_bps,
        )

    @synchronized
    def is_settleable(self, position_id: int) -> bool:
        position = self._positions.get(position_id)
        if position is None or not position.is_open:
            return False
        return self._oracle.is_market_resolved(position.market_id)

    @synchronized
    def get_user_positions(self, owner: str) -> list[int]:
        return list(self._user_positions.get(owner, []))

    @synchronized
    def get_market_positions(self, market_id: str) -> list[int]:
        return list(self._market_positions.get(market_id, []))

    @property
    def next_position_id(self) -> int:
        return self._next_position_id

    @property
    def total_fees_collected(self) -> int:
        """Fees accrued and not yet withdrawn."""
        return self._fees_collected

    @property
    def total_deposited(self) -> int:
        """Gross collateral ever deposited, fees included."""
        return self._total_deposited

    @property
    @synchronized
    def total_open_collateral(self) -> int:
        """Net collateral of all open positions."""
        return sum(p.collateral for p in self._positions.values() if p.is_open)

    # -- Admin ----------------------------------------------------------------

    @transactional
    def transfer_ownership(self, new_owner: str, caller: str) -> None:
        self._only_owner(caller)
        require_address(new_owner)
        previous, self.owner = self.owner, new_owner
        self._ledger.emit("OwnershipTransferred", previous_owner=previous, new_owner=new_owner)

    @transactional
    def set_fee_recipient(self, recipient: str, caller: str) -> None:
        self._only_owner(caller)
        require_address(recipient)
        self.fee_recipient = recipient
        self._ledger.emit("FeeRecipientUpdated", fee_recipient=recipient)

    @transactional
    @non_reentrant
    def withdraw_fees(self, caller: str) -> int:
        """Send the whole fee accumulator to the fee recipient.

        Returns:
            The amount withdrawn (0 if nothing accrued).
        """
        self._only_owner(caller)
        amount = self._fees_collected
        self._fees_collected = 0
        self._ledger.emit("FeesWithdrawn", recipient=self.fee_recipient, amount=amount)
        self._pay(self.fee_recipient, amount)
        return amount

    # -- Internals ------------------------------------------------------------

    def _settle(self, position: Position, caller: str) -> int:
        pnl = self._current_pnl(position)
        payout = pnl_math.settlement_payout(position.collateral, position.size, pnl)
        position.is_open = False
        position.settled = True
        self._ledger.emit(
            "PositionSettled",
            position_id=position.id,
            owner=position.owner,
            pnl=pnl,
            payout=payout,
            settled_by=caller,
        )
        return payout

    def _current_pnl(self, position: Position) -> int:
        yes_price, no_price, _ = self._oracle.get_latest_price(position.market_id)
        return pnl_math.position_pnl(position, yes_price, no_price)

    def _pay(self, recipient: str, amount: int) -> None:
        # Overdraw raises and aborts the whole transaction
        if amount > 0:
            self._token.transfer(self.address, recipient, amount)

    def _require_position(self, position_id: int) -> Position:
        position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFound(f"Position not found: {position_id}")
        return position

    def _require_resolved(self, market_id: str) -> None:
        if not self._oracle.is_market_resolved(market_id):
            raise MarketNotResolved(f"Market {market_id} not resolved")

    def _only_owner(self, caller: str) -> None:
        if caller != self.owner:
            raise NotOwner("Only owner")

    @staticmethod
    def _coerce_direction(direction: Direction | int) -> Direction:
        if isinstance(direction, bool):
            raise InvalidDirection(f"Invalid direction: {direction!r}")
        try:
            return Direction(direction)
        except ValueError:
            raise InvalidDirection(f"Invalid direction: {direction!r}") from None
