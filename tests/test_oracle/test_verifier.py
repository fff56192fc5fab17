"""Tests for the sorted-pair Merkle verifier and round registry."""

from dataclasses import replace

import pytest

from polyflux.models import AttestationProof
from polyflux.oracle.verifier import (
    MerkleAttestationVerifier,
    RoundRootRegistry,
    build_merkle_tree,
    compute_root,
    hash_pair,
    leaf_hash,
)

from conftest import ProofFactory, make_payload


def _leaf(n: int) -> str:
    return "0x" + f"{n:064x}"


class TestMerkleTree:
    @pytest.mark.parametrize("count", [1, 2, 3, 5, 8])
    def test_every_leaf_proves_to_root(self, count: int) -> None:
        leaves = [_leaf(i + 1) for i in range(count)]
        root, proofs = build_merkle_tree(leaves)
        for leaf, path in zip(leaves, proofs):
            assert compute_root(leaf, path) == root

    def test_single_leaf_is_root(self) -> None:
        root, proofs = build_merkle_tree([_leaf(7)])
        assert root == _leaf(7)
        assert proofs == [()]

    def test_pair_hash_is_order_independent(self) -> None:
        assert hash_pair(_leaf(1), _leaf(2)) == hash_pair(_leaf(2), _leaf(1))

    def test_empty_tree_rejected(self) -> None:
        with pytest.raises(ValueError):
            build_merkle_tree([])


class TestRoundRootRegistry:
    def test_publish_and_lookup(self) -> None:
        registry = RoundRootRegistry()
        registry.publish(5, _leaf(1))
        assert registry.is_finalized(5)
        assert registry.root_for(5) == _leaf(1)
        assert registry.root_for(6) is None

    def test_conflicting_root_rejected(self) -> None:
        registry = RoundRootRegistry()
        registry.publish(5, _leaf(1))
        registry.publish(5, _leaf(1))  # same root is idempotent
        with pytest.raises(ValueError):
            registry.publish(5, _leaf(2))


class TestMerkleAttestationVerifier:
    def test_valid_proof(self, registry: RoundRootRegistry, attest: ProofFactory) -> None:
        proof = attest(make_payload(), others=(make_payload("b"), make_payload("c")))
        assert len(proof.merkle_proof) == 2
        assert MerkleAttestationVerifier(registry).verify(proof)

    def test_tampered_response_rejected(self, registry: RoundRootRegistry, attest: ProofFactory) -> None:
        proof = attest(make_payload(yes_price=6500, no_price=3500))
        tampered = replace(proof, response=make_payload(yes_price=9900, no_price=100))
        assert not MerkleAttestationVerifier(registry).verify(tampered)

    def test_unknown_round_rejected(self, registry: RoundRootRegistry, attest: ProofFactory) -> None:
        proof = attest(make_payload())
        assert not MerkleAttestationVerifier(registry).verify(replace(proof, voting_round=1))

    def test_malformed_path_rejected(self, registry: RoundRootRegistry, attest: ProofFactory) -> None:
        proof = attest(make_payload(), others=(make_payload("b"),))
        broken: AttestationProof = replace(proof, merkle_proof=("0xnothex",))
        assert not MerkleAttestationVerifier(registry).verify(broken)

    def test_leaf_hash_is_deterministic(self, attest: ProofFactory) -> None:
        proof = attest(make_payload())
        assert leaf_hash(proof) == leaf_hash(replace(proof, merkle_proof=("0x00",)))
