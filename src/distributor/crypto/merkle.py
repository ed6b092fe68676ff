"""Merkle tree over allocation leaves — construction and proof extraction.

Uses Keccak-256. Leaves keep their list position (no sorting); the leaf
index is the position in the recipient list.

Padding rule: when a level has an odd number of nodes, the last node is
paired with itself (duplicated, not dropped, not zero-filled). A proof
for such a node carries no sibling entry for that level, so proof length
depends on tree shape and leaf position. The verifier applies the same
rule; changing it changes every root.

The tree is stored as flat per-level lists. Siblings are found by index
arithmetic (index ^ 1) and the structure is never mutated after build.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from distributor.crypto.leaf import hash_pair, leaf_hash
from distributor.errors import EmptyInput, IndexOutOfRange
from distributor.models.allocation import Allocation


class MerkleTree:
    """A positional Merkle tree with duplicate-last padding.

    Usage:
        tree = MerkleTree.build([Allocation(a, 100), Allocation(b, 200)])
        root = tree.root
        proof = tree.proof(1)
    """

    def __init__(self, levels: list[list[bytes]]) -> None:
        if not levels or not levels[0]:
            raise EmptyInput("Cannot construct a Merkle tree with no leaves")
        if len(levels[-1]) != 1:
            raise ValueError("Top level must contain exactly one node (the root)")
        self._levels = levels

    @classmethod
    def build(cls, allocations: Iterable[Allocation]) -> MerkleTree:
        """Hash each allocation and fold levels until one node remains."""
        leaves = [leaf_hash(a.recipient, a.amount) for a in allocations]
        return cls.from_leaf_hashes(leaves)

    @classmethod
    def from_leaf_hashes(cls, leaves: Sequence[bytes]) -> MerkleTree:
        if not leaves:
            raise EmptyInput("Cannot build a Merkle tree from zero records")

        levels: list[list[bytes]] = [list(leaves)]
        current_level = levels[0]
        while len(current_level) > 1:
            next_level: list[bytes] = []
            for i in range(0, len(current_level), 2):
                left = current_level[i]
                right = current_level[i + 1] if i + 1 < len(current_level) else left
                next_level.append(hash_pair(left, right))
            levels.append(next_level)
            current_level = next_level
        return cls(levels)

    @property
    def root(self) -> bytes:
        return self._levels[-1][0]

    @property
    def root_hex(self) -> str:
        return "0x" + self.root.hex()

    @property
    def leaf_count(self) -> int:
        return len(self._levels[0])

    @property
    def height(self) -> int:
        """Number of hashing levels above the leaves: ceil(log2(n))."""
        return len(self._levels) - 1

    @property
    def levels(self) -> list[list[bytes]]:
        """Copy of the level lists, level 0 first."""
        return [list(level) for level in self._levels]

    def leaf(self, leaf_index: int) -> bytes:
        self._check_index(leaf_index)
        return self._levels[0][leaf_index]

    def proof(self, leaf_index: int) -> list[bytes]:
        """Sibling hashes from leaf to root for one leaf.

        At a level where the node is the unpaired last node, nothing is
        emitted, but the index still advances.
        """
        self._check_index(leaf_index)

        proof: list[bytes] = []
        index = leaf_index
        for level in self._levels[:-1]:
            sibling = index ^ 1
            if sibling < len(level):
                proof.append(level[sibling])
            index //= 2
        return proof

    def _check_index(self, leaf_index: int) -> None:
        if leaf_index < 0 or leaf_index >= self.leaf_count:
            raise IndexOutOfRange(
                f"Leaf index {leaf_index} out of range for {self.leaf_count} leaves"
            )


def build_tree(allocations: Iterable[Allocation]) -> tuple[bytes, MerkleTree]:
    """Build a tree and return (root, tree)."""
    tree = MerkleTree.build(allocations)
    return tree.root, tree


def level_widths(leaf_count: int) -> list[int]:
    """Widths of every level below the root for a tree of leaf_count leaves."""
    if leaf_count < 1:
        raise EmptyInput("A tree has at least one leaf")
    widths: list[int] = []
    width = leaf_count
    while width > 1:
        widths.append(width)
        width = (width + 1) // 2
    return widths


def expected_proof_length(leaf_index: int, leaf_count: int) -> int:
    """Number of sibling entries a valid proof for this leaf must carry."""
    if leaf_index < 0 or leaf_index >= leaf_count:
        raise IndexOutOfRange(
            f"Leaf index {leaf_index} out of range for {leaf_count} leaves"
        )
    length = 0
    index = leaf_index
    for width in level_widths(leaf_count):
        if index ^ 1 < width:
            length += 1
        index //= 2
    return length
