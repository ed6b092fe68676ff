"""Leaf encoding — the byte layout every published root depends on.

Layout (41 bytes):
    recipient   32 bytes, raw
    amount       8 bytes, unsigned little-endian
    claimed      1 byte, always 0x00

The claimed byte is a structural constant. Leaves are only ever built in
the unclaimed state; claim status lives in settlement receipts, never in
the leaf. Changing any width or the order breaks every root already
published.
"""

from __future__ import annotations

from eth_utils import keccak

from distributor.errors import MalformedInput

RECIPIENT_BYTES = 32
AMOUNT_BYTES = 8
HASH_BYTES = 32
MAX_AMOUNT = 2**64 - 1
UNCLAIMED = b"\x00"

LEAF_FORMAT = "recipient_pubkey(32) + amount(8) + is_claimed(1)"
HASH_ALGORITHM = "keccak256"


def keccak256(data: bytes) -> bytes:
    """Keccak-256 (Ethereum variant, not NIST SHA3-256)."""
    return keccak(primitive=data)


def hash_pair(left: bytes, right: bytes) -> bytes:
    """Parent node hash: keccak(left ++ right)."""
    return keccak256(left + right)


def encode_amount(amount: int) -> bytes:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise MalformedInput(f"Amount must be an integer, got {type(amount).__name__}")
    if amount < 0 or amount > MAX_AMOUNT:
        raise MalformedInput(f"Amount out of u64 range: {amount}")
    return amount.to_bytes(AMOUNT_BYTES, "little")


def encode_leaf(recipient: bytes, amount: int) -> bytes:
    """Serialize one allocation record in canonical leaf order."""
    if not isinstance(recipient, (bytes, bytearray)):
        raise MalformedInput(
            f"Recipient must be bytes, got {type(recipient).__name__}"
        )
    if len(recipient) != RECIPIENT_BYTES:
        raise MalformedInput(
            f"Recipient must be exactly {RECIPIENT_BYTES} bytes, got {len(recipient)}"
        )
    return bytes(recipient) + encode_amount(amount) + UNCLAIMED


def leaf_hash(recipient: bytes, amount: int) -> bytes:
    """Hash of one allocation record — a level-0 tree node."""
    return keccak256(encode_leaf(recipient, amount))
