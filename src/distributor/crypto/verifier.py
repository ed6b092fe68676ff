"""Claim verifier — recomputes the root from one claimed leaf and its proof.

Pure and deterministic. The leaf is always hashed with the claimed flag
forced to 0x00, so a claimant can never present a "claimed" leaf; claim
status is proven by receipt existence, not leaf content.

The verifier does not trust the proof's length. From leaf_index and
leaf_count it reconstructs the width of every level and so knows exactly
where the builder paired a node with itself:

    sibling exists (index ^ 1 < width):
        consume one proof entry
        even index → keccak(running ++ entry)
        odd index  → keccak(entry ++ running)
    sibling missing (unpaired last node):
        consume nothing
        running → keccak(running ++ running)

A proof with too few or too many entries is rejected.
"""

from __future__ import annotations

import hmac
from typing import Sequence

from distributor.crypto.leaf import HASH_BYTES, hash_pair, leaf_hash
from distributor.crypto.merkle import level_widths
from distributor.errors import InvalidProof, MalformedInput


def compute_root(
    recipient: bytes,
    amount: int,
    leaf_index: int,
    proof: Sequence[bytes],
    leaf_count: int,
) -> bytes:
    """Fold a proof into the root it implies.

    Raises InvalidProof if the proof cannot belong to a tree of
    leaf_count leaves at leaf_index. Raises MalformedInput for bad leaf
    fields.
    """
    for label, value in (("Leaf index", leaf_index), ("Leaf count", leaf_count)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedInput(f"{label} must be an integer, got {value!r}")
    if not isinstance(proof, (list, tuple)):
        raise MalformedInput(f"Proof must be a sequence of hashes, got {type(proof).__name__}")

    if leaf_count < 1:
        raise InvalidProof(f"Commitment has no leaves (leaf_count={leaf_count})")
    if leaf_index < 0 or leaf_index >= leaf_count:
        raise InvalidProof(
            f"Leaf index {leaf_index} outside committed range [0, {leaf_count})"
        )

    running = leaf_hash(recipient, amount)
    index = leaf_index
    cursor = 0

    for width in level_widths(leaf_count):
        if index ^ 1 < width:
            if cursor >= len(proof):
                raise InvalidProof(
                    f"Proof too short: {len(proof)} entries for leaf {leaf_index}"
                )
            entry = proof[cursor]
            cursor += 1
            if not isinstance(entry, (bytes, bytearray)) or len(entry) != HASH_BYTES:
                raise InvalidProof(
                    f"Proof entry {cursor - 1} is not a {HASH_BYTES}-byte hash"
                )
            if index % 2 == 0:
                running = hash_pair(running, entry)
            else:
                running = hash_pair(entry, running)
        else:
            running = hash_pair(running, running)
        index //= 2

    if cursor != len(proof):
        raise InvalidProof(
            f"Proof too long: {len(proof)} entries, {cursor} expected for leaf {leaf_index}"
        )
    return running


def require_valid_claim(
    recipient: bytes,
    amount: int,
    leaf_index: int,
    proof: Sequence[bytes],
    expected_root: bytes,
    leaf_count: int,
) -> None:
    """Raise InvalidProof unless the claim reproduces expected_root exactly."""
    if not isinstance(expected_root, (bytes, bytearray)) or len(expected_root) != HASH_BYTES:
        raise MalformedInput(f"Expected root must be a {HASH_BYTES}-byte hash")
    computed = compute_root(recipient, amount, leaf_index, proof, leaf_count)
    if not hmac.compare_digest(computed, expected_root):
        raise InvalidProof(
            f"Computed root 0x{computed.hex()} does not match committed root "
            f"0x{expected_root.hex()}"
        )


def verify_claim(
    recipient: bytes,
    amount: int,
    leaf_index: int,
    proof: Sequence[bytes],
    expected_root: bytes,
    leaf_count: int,
) -> bool:
    """Accept (True) or reject (False) a claimed leaf.

    Never raises: ill-typed or malformed inputs are rejections.
    """
    try:
        require_valid_claim(
            recipient, amount, leaf_index, proof, expected_root, leaf_count,
        )
    except (InvalidProof, MalformedInput):
        return False
    return True
