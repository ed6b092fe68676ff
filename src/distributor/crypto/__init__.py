"""Cryptographic primitives — leaf encoding, Merkle trees, claim verification, anchoring."""

from distributor.crypto.leaf import encode_leaf, leaf_hash
from distributor.crypto.merkle import MerkleTree, build_tree
from distributor.crypto.verifier import require_valid_claim, verify_claim

__all__ = [
    "MerkleTree",
    "build_tree",
    "encode_leaf",
    "leaf_hash",
    "require_valid_claim",
    "verify_claim",
]
