"""Oracle layer -- attested market data, validation and proof verification."""

from polyflux.oracle.market_oracle import MarketOracle
from polyflux.oracle.validation import check_record_invariants, resolution_outcome, validate_payload
from polyflux.oracle.verifier import (
    AttestationVerifier,
    MerkleAttestationVerifier,
    RoundRootRegistry,
    build_merkle_tree,
    leaf_hash,
)

__all__ = [
    "AttestationVerifier",
    "MarketOracle",
    "MerkleAttestationVerifier",
    "RoundRootRegistry",
    "build_merkle_tree",
    "check_record_invariants",
    "leaf_hash",
    "resolution_outcome",
    "validate_payload",
]
