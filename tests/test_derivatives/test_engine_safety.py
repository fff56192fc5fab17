"""Safety tests for DerivativesEngine: staleness ordering, atomicity,
reentrancy through token receive hooks, custody solvency and admin access.
"""

import pytest

from polyflux.constants import USD, ZERO_ADDRESS
from polyflux.derivatives.engine import DerivativesEngine
from polyflux.exceptions import (
    InsufficientAllowance,
    InsufficientBalanceError,
    InvalidAddress,
    InvalidOraclePrice,
    LeverageTooHigh,
    MarketResolved,
    NotOwner,
    OracleStale,
    ReentrantCall,
)
from polyflux.ledger import CollateralToken, Ledger, ManualClock
from polyflux.models import Direction
from polyflux.oracle import MarketOracle

from conftest import ALICE, BOB, INITIAL_BALANCE, LIQUIDATOR, MARKET, OWNER


class TestOpenPreconditionOrder:
    def test_stale_market_rejected_without_side_effects(
        self,
        engine: DerivativesEngine,
        token: CollateralToken,
        seed_market,
        clock: ManualClock,
    ) -> None:
        seed_market()
        clock.advance(3601)

        with pytest.raises(OracleStale):
            engine.open_position(MARKET, Direction.LONG_YES, 100 * USD, 10_000, ALICE)

        assert token.balance_of(ALICE) == INITIAL_BALANCE
        assert engine.next_position_id == 1
        assert engine.get_user_positions(ALICE) == []

    def test_stale_reported_before_bound_errors(
        self, engine: DerivativesEngine, seed_market, clock: ManualClock
    ) -> None:
        seed_market()
        clock.advance(3601)
        with pytest.raises(OracleStale):
            engine.open_position(MARKET, Direction.LONG_YES, 0, 90_000, ALICE)

    def test_unknown_market_reports_stale(self, engine: DerivativesEngine) -> None:
        with pytest.raises(OracleStale):
            engine.open_position("never-seen", Direction.LONG_YES, 100 * USD, 10_000, ALICE)

    def test_fresh_at_exact_staleness_limit(
        self, engine: DerivativesEngine, seed_market, clock: ManualClock
    ) -> None:
        seed_market()
        clock.advance(3600)
        assert engine.open_position(MARKET, Direction.LONG_YES, 10 * USD, 10_000, ALICE) == 1

    def test_resolved_market_rejected_before_bounds(
        self, engine: DerivativesEngine, oracle: MarketOracle, seed_market
    ) -> None:
        seed_market()
        oracle.emergency_resolve_market(MARKET, True, OWNER)
        with pytest.raises(MarketResolved):
            engine.open_position(MARKET, Direction.LONG_YES, 10 * USD, 90_000, ALICE)

    def test_bounds_checked_before_price(self, engine: DerivativesEngine, seed_market) -> None:
        seed_market(MARKET, 0, 10_000)
        with pytest.raises(LeverageTooHigh):
            engine.open_position(MARKET, Direction.LONG_YES, 10 * USD, 60_000, ALICE)

    def test_zero_directional_price(self, engine: DerivativesEngine, seed_market) -> None:
        seed_market(MARKET, 0, 10_000)
        with pytest.raises(InvalidOraclePrice):
            engine.open_position(MARKET, Direction.LONG_YES, 10 * USD, 10_000, ALICE)
        # The other side is fine
        assert engine.open_position(MARKET, Direction.LONG_NO, 10 * USD, 10_000, ALICE) == 1

    def test_missing_allowance_leaves_no_position(
        self, engine: DerivativesEngine, token: CollateralToken, seed_market
    ) -> None:
        seed_market()
        token.mint(LIQUIDATOR, 100 * USD)
        with pytest.raises(InsufficientAllowance):
            engine.open_position(MARKET, Direction.LONG_YES, 100 * USD, 10_000, LIQUIDATOR)
        assert engine.next_position_id == 1
        assert engine.total_fees_collected == 0


class TestReentrancy:
    def test_payout_hook_cannot_reenter_close(
        self,
        engine: DerivativesEngine,
        token: CollateralToken,
        seed_market,
    ) -> None:
        seed_market()
        position_id = engine.open_position(MARKET, Direction.LONG_YES, 100 * USD, 10_000, ALICE)
        token.set_receive_hook(ALICE, lambda sender, amount: engine.close_position(position_id, ALICE))

        with pytest.raises(ReentrantCall):
            engine.close_position(position_id, ALICE)

        # Whole call rolled back: still open, nothing paid
        assert engine.get_position(position_id).is_open
        assert token.balance_of(ALICE) == INITIAL_BALANCE - 100 * USD

    def test_liquidation_reward_hook_cannot_open(
        self,
        engine: DerivativesEngine,
        token: CollateralToken,
        seed_market,
    ) -> None:
        seed_market()
        position_id = engine.open_position(MARKET, Direction.LONG_YES, 100 * USD, 50_000, ALICE)
        seed_market(MARKET, 4000, 6000)
        token.set_receive_hook(
            BOB,
            lambda sender, amount: engine.open_position(MARKET, Direction.LONG_NO, 10 * USD, 10_000, BOB),
        )

        with pytest.raises(ReentrantCall):
            engine.liquidate_position(position_id, BOB)

        assert engine.get_position(position_id).is_open
        assert token.balance_of(BOB) == INITIAL_BALANCE

    def test_hook_observes_closed_state(
        self,
        engine: DerivativesEngine,
        token: CollateralToken,
        seed_market,
    ) -> None:
        seed_market()
        position_id = engine.open_position(MARKET, Direction.LONG_YES, 100 * USD, 10_000, ALICE)
        observed: list[bool] = []
        token.set_receive_hook(
            ALICE, lambda sender, amount: observed.append(engine.get_position(position_id).is_open)
        )

        engine.close_position(position_id, ALICE)

        assert observed == [False]

    def test_fee_withdrawal_zeroes_before_transfer(
        self,
        engine: DerivativesEngine,
        token: CollateralToken,
        seed_market,
    ) -> None:
        seed_market()
        engine.open_position(MARKET, Direction.LONG_YES, 100 * USD, 10_000, ALICE)
        engine.set_fee_recipient(BOB, OWNER)
        observed: list[int] = []
        token.set_receive_hook(BOB, lambda sender, amount: observed.append(engine.total_fees_collected))

        assert engine.withdraw_fees(OWNER) == 100_000

        assert observed == [0]
        assert token.balance_of(BOB) == INITIAL_BALANCE + 100_000


class TestCustody:
    def test_payout_above_custody_aborts(
        self,
        engine: DerivativesEngine,
        token: CollateralToken,
        seed_market,
    ) -> None:
        seed_market()
        position_id = engine.open_position(MARKET, Direction.LONG_YES, 100 * USD, 50_000, ALICE)
        seed_market(MARKET, 9000, 1000)

        # Winning payout exceeds the 100 USD the engine holds
        with pytest.raises(InsufficientBalanceError):
            engine.close_position(position_id, ALICE)

        assert engine.get_position(position_id).is_open
        assert token.balance_of(engine.address) == 100 * USD

    def test_solvency_invariant(
        self,
        engine: DerivativesEngine,
        oracle: MarketOracle,
        token: CollateralToken,
        seed_market,
    ) -> None:
        seed_market()

        def check() -> None:
            assert engine.total_open_collateral + engine.total_fees_collected <= engine.total_deposited
            for position_id in engine.get_market_positions(MARKET):
                position = engine.get_position(position_id)
                assert position.size == position.collateral * position.leverage // 10_000

        a = engine.open_position(MARKET, Direction.LONG_YES, 100 * USD, 30_000, ALICE)
        check()
        b = engine.open_position(MARKET, Direction.SHORT_YES, 250 * USD, 50_000, BOB)
        check()
        engine.open_position(MARKET, Direction.LONG_NO, 40 * USD, 10_000, BOB)
        check()
        seed_market(MARKET, 6000, 4000)
        engine.close_position(b, BOB)
        check()
        seed_market(MARKET, 4000, 6000)
        engine.liquidate_position(a, LIQUIDATOR)
        check()
        engine.withdraw_fees(OWNER)
        check()
        oracle.emergency_resolve_market(MARKET, True, OWNER)
        engine.settle_market_positions(MARKET, 10, LIQUIDATOR)
        check()
        assert engine.total_open_collateral == 0


class TestAdmin:
    def test_fee_recipient(self, engine: DerivativesEngine, ledger: Ledger) -> None:
        assert engine.fee_recipient == OWNER
        engine.set_fee_recipient(ALICE, OWNER)
        assert engine.fee_recipient == ALICE
        assert ledger.events("FeeRecipientUpdated")[-1].args == {"fee_recipient": ALICE}

    def test_fee_recipient_zero_address(self, engine: DerivativesEngine) -> None:
        with pytest.raises(InvalidAddress, match="Invalid address"):
            engine.set_fee_recipient(ZERO_ADDRESS, OWNER)

    @pytest.mark.parametrize(
        "call",
        [
            lambda e: e.set_fee_recipient(ALICE, ALICE),
            lambda e: e.transfer_ownership(ALICE, ALICE),
            lambda e: e.withdraw_fees(ALICE),
        ],
        ids=["set_fee_recipient", "transfer_ownership", "withdraw_fees"],
    )
    def test_owner_only(self, engine: DerivativesEngine, call) -> None:
        with pytest.raises(NotOwner, match="Only owner"):
            call(engine)

    def test_transfer_ownership(self, engine: DerivativesEngine) -> None:
        engine.transfer_ownership(ALICE, OWNER)
        assert engine.owner == ALICE
        with pytest.raises(NotOwner):
            engine.withdraw_fees(OWNER)
        with pytest.raises(InvalidAddress):
            engine.transfer_ownership(ZERO_ADDRESS, ALICE)

    def test_withdraw_with_no_fees(self, engine: DerivativesEngine, token: CollateralToken) -> None:
        assert engine.withdraw_fees(OWNER) == 0
        assert token.balance_of(OWNER) == 0
