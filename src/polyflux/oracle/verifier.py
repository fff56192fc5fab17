"""Attestation proof verification.

The oracle treats the attestation protocol as a black box: given a proof, a
verifier answers valid or invalid. ``AttestationVerifier`` is that boundary.

``MerkleAttestationVerifier`` is the reference implementation used by the
keeper and the tests. Each finalized voting round publishes one Merkle root
over the attested responses of that round; a proof is valid when its leaf
(SHA-256 of the canonical JSON of the attested body) folds up to the root
stored for its round. Pair hashing sorts the two children first, so proofs
carry sibling hashes only, no left/right flags.
"""

import hashlib
import json
from abc import ABC, abstractmethod

from polyflux.logging import get_logger
from polyflux.models import AttestationProof

logger = get_logger(__name__)


class AttestationVerifier(ABC):
    """Abstract proof verifier consumed by the MarketOracle."""

    @abstractmethod
    def verify(self, proof: AttestationProof) -> bool:
        """Return True if the proof is authentic for its voting round."""
        ...


def _h(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _to_hex(digest: bytes) -> str:
    return "0x" + digest.hex()


def _from_hex(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def leaf_hash(proof: AttestationProof) -> str:
    """Leaf for a proof: SHA-256 over sorted-key compact JSON of the attested body."""
    canonical = json.dumps(proof.attested_body(), sort_keys=True, separators=(",", ":"))
    return _to_hex(_h(canonical.encode("utf-8")))


def hash_pair(a: str, b: str) -> str:
    left, right = sorted((_from_hex(a), _from_hex(b)))
    return _to_hex(_h(left + right))


def build_merkle_tree(leaves: list[str]) -> tuple[str, list[tuple[str, ...]]]:
    """Build a sorted-pair Merkle tree.

    Odd nodes are promoted unchanged to the next level.

    Args:
        leaves: Leaf hashes as 0x-prefixed hex strings.

    Returns:
        Tuple of (root, proofs) where proofs[i] is the sibling path for leaves[i].
    """
    if not leaves:
        raise ValueError("Cannot build a Merkle tree without leaves")

    proofs: list[list[str]] = [[] for _ in leaves]
    positions = list(range(len(leaves)))  # leaf index -> node index at current level
    level = list(leaves)

    while len(level) > 1:
        next_level: list[str] = []
        for i in range(0, len(level), 2):
            if i + 1 < len(level):
                next_level.append(hash_pair(level[i], level[i + 1]))
            else:
                next_level.append(level[i])
        for leaf_idx, node_idx in enumerate(positions):
            sibling = node_idx ^ 1
            if sibling < len(level):
                proofs[leaf_idx].append(level[sibling])
            positions[leaf_idx] = node_idx // 2
        level = next_level

    return level[0], [tuple(p) for p in proofs]


def compute_root(leaf: str, path: tuple[str, ...]) -> str:
    node = leaf
    for sibling in path:
        node = hash_pair(node, sibling)
    return node


class RoundRootRegistry:
    """Finalized Merkle roots per voting round (the relay's view)."""

    def __init__(self) -> None:
        self._roots: dict[int, str] = {}

    def publish(self, voting_round: int, root: str) -> None:
        if voting_round in self._roots and self._roots[voting_round] != root:
            raise ValueError(f"Round {voting_round} already finalized with a different root")
        self._roots[voting_round] = root
        logger.info("round_root_published", voting_round=voting_round, root=root)

    def root_for(self, voting_round: int) -> str | None:
        return self._roots.get(voting_round)

    def is_finalized(self, voting_round: int) -> bool:
        return voting_round in self._roots


class MerkleAttestationVerifier(AttestationVerifier):
    """Verifies proofs against per-round roots from a RoundRootRegistry."""

    def __init__(self, registry: RoundRootRegistry) -> None:
        self._registry = registry

    def verify(self, proof: AttestationProof) -> bool:
        root = self._registry.root_for(proof.voting_round)
        if root is None:
            logger.debug("proof_round_not_finalized", voting_round=proof.voting_round)
            return False
        try:
            computed = compute_root(leaf_hash(proof), proof.merkle_proof)
        except ValueError:
            # Malformed hex in the sibling path
            return False
        return computed == root
