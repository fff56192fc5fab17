"""Keeper layer -- off-ledger service feeding attested Polymarket data to the oracle."""

from polyflux.keeper.attestation import (
    AttestationPipeline,
    LocalAttestationPipeline,
    PreparedRequest,
    RoundSubmitter,
    Web2JsonPipeline,
)
from polyflux.keeper.keeper import CycleReport, Keeper
from polyflux.keeper.polymarket import PolymarketClient

__all__ = [
    "AttestationPipeline",
    "CycleReport",
    "Keeper",
    "LocalAttestationPipeline",
    "PolymarketClient",
    "PreparedRequest",
    "RoundSubmitter",
    "Web2JsonPipeline",
]
