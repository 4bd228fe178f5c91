"""
Deterministic Merkle tree over a period's row hashes.

Commitment rules:
1. Leaves are sorted lexicographically (hex strings) before building, so the
   root does not depend on ingestion or arrival order.
2. Parent hashing: sha256(left_hex + right_hex), same digest as row hashing.
3. Padding: a level with an odd number of nodes pairs its last node with
   itself.
4. Single leaf: root == leaf.
5. Empty leaf sets are rejected.

Proofs are ordered (sibling, position) steps from the leaf level upward. The
position says on which side the sibling was concatenated during
construction, so verification rebuilds exactly the same parent hashes for
both left and right children.

CHANGELOG:
- 2026-10-03: Record sibling position in every proof step (STORY-104)
- 2026-10-02: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import bisect
import re
from collections.abc import Iterable, Sequence

from iot_oracle.src.hashing import sha256_hex
from iot_oracle.src.models import ProofPosition, ProofStep

_HEX_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


def merkle_parent(left: str, right: str) -> str:
    """Hash two child nodes into their parent (left first)."""
    return sha256_hex(left + right)


def _next_level(level: Sequence[str]) -> list[str]:
    parents: list[str] = []
    for i in range(0, len(level), 2):
        left = level[i]
        right = level[i + 1] if i + 1 < len(level) else left
        parents.append(merkle_parent(left, right))
    return parents


class MerkleTree:
    """Binary hash tree built from a set of row hashes.

    Args:
        leaves: Row hashes (64-char lowercase hex). Order does not matter.

    Raises:
        ValueError: If *leaves* is empty or contains a non-hex-digest value.

    Usage::

        tree = MerkleTree(row_hashes)
        root = tree.root
        branch = tree.proof(row_hashes[0])
        assert verify_proof(row_hashes[0], branch, root)
    """

    def __init__(self, leaves: Iterable[str]) -> None:
        ordered = sorted(leaves)
        if not ordered:
            raise ValueError("Cannot build a Merkle tree from zero leaves")
        for leaf in ordered:
            if not _HEX_DIGEST_RE.match(leaf):
                raise ValueError(f"Leaf is not a 64-char lowercase hex digest: {leaf!r}")

        self._levels: list[list[str]] = [ordered]
        while len(self._levels[-1]) > 1:
            self._levels.append(_next_level(self._levels[-1]))

    @property
    def root(self) -> str:
        """The single hash at the top level."""
        return self._levels[-1][0]

    @property
    def leaves(self) -> list[str]:
        """Sorted leaf hashes (a copy)."""
        return list(self._levels[0])

    @property
    def depth(self) -> int:
        """Number of levels above the leaves."""
        return len(self._levels) - 1

    def index_of(self, leaf: str) -> int:
        """Return the sorted position of *leaf*, or -1 when absent."""
        leaves = self._levels[0]
        idx = bisect.bisect_left(leaves, leaf)
        if idx < len(leaves) and leaves[idx] == leaf:
            return idx
        return -1

    def __contains__(self, leaf: object) -> bool:
        return isinstance(leaf, str) and self.index_of(leaf) >= 0

    def proof(self, leaf: str) -> list[ProofStep]:
        """Build the inclusion path for *leaf*.

        Raises:
            ValueError: If *leaf* is not in the tree.
        """
        index = self.index_of(leaf)
        if index < 0:
            raise ValueError(f"Leaf not found in tree: {leaf}")

        branch: list[ProofStep] = []
        for level in self._levels[:-1]:
            if index % 2 == 0:
                sibling = level[index + 1] if index + 1 < len(level) else level[index]
                branch.append(ProofStep(sibling=sibling, position=ProofPosition.RIGHT))
            else:
                branch.append(ProofStep(sibling=level[index - 1], position=ProofPosition.LEFT))
            index //= 2
        return branch


def merkle_root(leaves: Iterable[str]) -> str:
    """Compute the root of *leaves* (any order)."""
    return MerkleTree(leaves).root


def build_proof(leaves: Iterable[str], leaf: str) -> list[ProofStep]:
    """Build the inclusion path of *leaf* within *leaves*."""
    return MerkleTree(leaves).proof(leaf)


def verify_proof(leaf: str, branch: Sequence[ProofStep], root: str) -> bool:
    """Check that *branch* leads from *leaf* to *root*.

    Each step concatenates the running hash with the sibling on the recorded
    side and hashes the result. An empty branch proves a single-leaf tree.
    """
    current = leaf
    for step in branch:
        if step.position is ProofPosition.LEFT:
            current = merkle_parent(step.sibling, current)
        else:
            current = merkle_parent(current, step.sibling)
    return current == root
