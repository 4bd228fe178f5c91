"""
Tests for the Merkle tree: roots, padding, positional proofs and verification.

CHANGELOG:
- 2026-10-03: Cover proofs for right-hand leaves (STORY-104)
- 2026-10-02: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import itertools

import pytest

from iot_oracle.src.hashing import sha256_hex
from iot_oracle.src.merkle import (
    MerkleTree,
    build_proof,
    merkle_parent,
    merkle_root,
    verify_proof,
)
from iot_oracle.src.models import ProofPosition, ProofStep


def _leaves(n: int) -> list[str]:
    """Return n distinct row-hash-shaped leaves."""
    return [sha256_hex(f"row-{i}") for i in range(n)]


class TestRoot:
    """Root construction rules."""

    def test_single_leaf_root_is_leaf(self) -> None:
        leaf = _leaves(1)[0]
        assert merkle_root([leaf]) == leaf

    def test_two_leaves_sorted_then_hashed(self) -> None:
        a, b = sorted(_leaves(2))
        assert merkle_root([b, a]) == merkle_parent(a, b)

    def test_root_independent_of_order(self) -> None:
        leaves = _leaves(5)
        roots = {merkle_root(p) for p in itertools.permutations(leaves)}
        assert len(roots) == 1

    def test_odd_level_duplicates_last(self) -> None:
        leaves = sorted(_leaves(3))
        padded = [*leaves, leaves[-1]]
        assert merkle_root(leaves) == merkle_root(padded)

    def test_odd_root_matches_manual_construction(self) -> None:
        a, b, c = sorted(_leaves(3))
        expected = merkle_parent(merkle_parent(a, b), merkle_parent(c, c))
        assert merkle_root([c, a, b]) == expected

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError, match="zero leaves"):
            merkle_root([])

    def test_non_hex_leaf_rejected(self) -> None:
        with pytest.raises(ValueError, match="hex digest"):
            merkle_root(["not-a-hash"])

    def test_uppercase_leaf_rejected(self) -> None:
        with pytest.raises(ValueError):
            merkle_root([_leaves(1)[0].upper()])

    def test_depth(self) -> None:
        assert MerkleTree(_leaves(1)).depth == 0
        assert MerkleTree(_leaves(4)).depth == 2
        assert MerkleTree(_leaves(5)).depth == 3


class TestProof:
    """Every leaf has a proof that verifies against the root."""

    @pytest.mark.parametrize("n", [1, 2, 3, 4, 5, 7, 8, 13])
    def test_every_leaf_verifies(self, n: int) -> None:
        leaves = _leaves(n)
        tree = MerkleTree(leaves)
        for leaf in leaves:
            assert verify_proof(leaf, tree.proof(leaf), tree.root)

    def test_single_leaf_proof_is_empty(self) -> None:
        leaf = _leaves(1)[0]
        assert build_proof([leaf], leaf) == []

    def test_positions_recorded(self) -> None:
        a, b = sorted(_leaves(2))
        assert build_proof([a, b], a) == [ProofStep(sibling=b, position=ProofPosition.RIGHT)]
        assert build_proof([a, b], b) == [ProofStep(sibling=a, position=ProofPosition.LEFT)]

    def test_padded_leaf_is_its_own_sibling(self) -> None:
        leaves = sorted(_leaves(3))
        branch = build_proof(leaves, leaves[2])
        assert branch[0] == ProofStep(sibling=leaves[2], position=ProofPosition.RIGHT)

    def test_missing_leaf_raises(self) -> None:
        tree = MerkleTree(_leaves(4))
        with pytest.raises(ValueError, match="not found"):
            tree.proof(sha256_hex("absent"))

    def test_contains(self) -> None:
        leaves = _leaves(3)
        tree = MerkleTree(leaves)
        assert leaves[1] in tree
        assert sha256_hex("absent") not in tree


class TestVerification:
    """Tampered proofs and wrong leaves are rejected."""

    def test_wrong_leaf_rejected(self) -> None:
        leaves = _leaves(4)
        tree = MerkleTree(leaves)
        branch = tree.proof(leaves[0])
        assert not verify_proof(sha256_hex("forged"), branch, tree.root)

    def test_tampered_sibling_rejected(self) -> None:
        leaves = _leaves(4)
        tree = MerkleTree(leaves)
        branch = tree.proof(leaves[0])
        branch[0] = ProofStep(sibling=sha256_hex("forged"), position=branch[0].position)
        assert not verify_proof(leaves[0], branch, tree.root)

    def test_flipped_position_rejected(self) -> None:
        leaves = _leaves(4)
        tree = MerkleTree(leaves)
        leaf = tree.leaves[1]
        branch = tree.proof(leaf)
        left = branch[0].position is ProofPosition.LEFT
        flipped = ProofPosition.RIGHT if left else ProofPosition.LEFT
        branch[0] = ProofStep(sibling=branch[0].sibling, position=flipped)
        assert not verify_proof(leaf, branch, tree.root)

    def test_wrong_root_rejected(self) -> None:
        leaves = _leaves(4)
        tree = MerkleTree(leaves)
        assert not verify_proof(leaves[0], tree.proof(leaves[0]), sha256_hex("other"))
