"""PnL, payout, liquidation and fee math for leveraged prediction positions.

All calculations use integer fixed point exclusively -- no float anywhere.
Prices are bps, amounts are 1e6-scaled. Division of signed quantities
truncates toward zero so results match the reference test vectors bit for bit.

PnL convention:
  priceDiff = long ? (current - entry) : (entry - current)
  pnl       = size * priceDiff / entry
Long directions profit when their side's probability rises, short directions
when it falls. The same function feeds close, liquidation and settlement.
"""

from polyflux.config import DerivativesSettings
from polyflux.constants import BPS
from polyflux.exceptions import InvalidOraclePrice
from polyflux.models import Direction, Position


def div_trunc(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero (not Python's floor)."""
    if denominator == 0:
        raise ZeroDivisionError("division by zero")
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def directional_price(direction: Direction, yes_price: int, no_price: int) -> int:
    """Yes price for LONG_YES/SHORT_NO, no price for LONG_NO/SHORT_YES."""
    return yes_price if direction.tracks_yes else no_price


def calculate_size(collateral: int, leverage: int) -> int:
    """Leveraged notional: collateral * leverage / BPS (floor)."""
    return collateral * leverage // BPS


def calculate_pnl(
    direction: Direction,
    size: int,
    entry_price: int,
    current_price: int,
) -> int:
    """Signed PnL of a position at ``current_price``.

    Raises:
        InvalidOraclePrice: If entry_price is zero (rejected at open, so this
            only fires on corrupted input).
    """
    if entry_price <= 0:
        raise InvalidOraclePrice("Entry price must be positive")
    if direction.is_long:
        price_diff = current_price - entry_price
    else:
        price_diff = entry_price - current_price
    return div_trunc(size * price_diff, entry_price)


def position_pnl(position: Position, yes_price: int, no_price: int) -> int:
    """PnL of a stored position against the oracle's current yes/no prices."""
    current = directional_price(position.direction, yes_price, no_price)
    return calculate_pnl(position.direction, position.size, position.entry_price, current)


def settlement_payout(collateral: int, size: int, pnl: int) -> int:
    """Amount returned to the owner: collateral + pnl, clamped to [0, collateral + size].

    The lower clamp means a position never owes more than its collateral.
    The upper clamp bounds any payout by the leveraged notional, which keeps
    low-entry long positions from draining the shared custody pool.
    """
    return max(0, min(collateral + pnl, collateral + size))


def is_liquidatable(collateral: int, pnl: int, liquidation_threshold_bps: int) -> bool:
    """True if equity has fallen below (BPS - threshold) / BPS of collateral.

    With the default 8000 bps threshold: equity < 20% of collateral.
    """
    equity = collateral + pnl
    floor = collateral * (BPS - liquidation_threshold_bps) // BPS
    return equity < floor


class ProtocolFeeCalculator:
    """Computes the protocol's cut on open and the liquidator's reward.

    Uses DerivativesSettings for bps rates. All results are floored.

    Args:
        settings: Engine settings (protocol_fee_bps, liquidation_reward_bps).
    """

    def __init__(self, settings: DerivativesSettings) -> None:
        self._settings = settings

    def opening_fee(self, collateral: int) -> int:
        """Fee withheld from deposited collateral.

        Example: 100e6 at 10 bps -> 100_000 (0.1 USD).
        """
        return collateral * self._settings.protocol_fee_bps // BPS

    def net_collateral(self, collateral: int) -> tuple[int, int]:
        """Split a deposit into (net collateral at risk, fee)."""
        fee = self.opening_fee(collateral)
        return collateral - fee, fee

    def liquidation_reward(self, collateral: int) -> int:
        """Fixed reward paid to the liquidator out of the position's collateral."""
        return collateral * self._settings.liquidation_reward_bps // BPS
