"""Ledger layer -- single-writer transactional runtime and collateral token."""

from polyflux.ledger.runtime import (
    Ledger,
    ManualClock,
    non_reentrant,
    require_address,
    require_amount,
    synchronized,
    transactional,
)
from polyflux.ledger.token import CollateralToken

__all__ = [
    "CollateralToken",
    "Ledger",
    "ManualClock",
    "non_reentrant",
    "require_address",
    "require_amount",
    "synchronized",
    "transactional",
]
