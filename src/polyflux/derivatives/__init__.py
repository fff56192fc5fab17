"""Derivatives layer -- leveraged positions priced off the MarketOracle."""

from polyflux.derivatives.engine import DerivativesEngine
from polyflux.derivatives.pnl import (
    ProtocolFeeCalculator,
    calculate_pnl,
    calculate_size,
    directional_price,
    is_liquidatable,
    settlement_payout,
)

__all__ = [
    "DerivativesEngine",
    "ProtocolFeeCalculator",
    "calculate_pnl",
    "calculate_size",
    "directional_price",
    "is_liquidatable",
    "settlement_payout",
]
