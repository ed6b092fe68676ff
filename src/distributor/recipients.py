"""Recipient list interchange — load, validate, build, and prove.

File format (``recipients.json``):

    {
      "airdropId": "...",
      "description": "...",
      "merkleRoot": "0x<64 hex>",          # written by generate_merkle_root
      "totalAmount": "<decimal string>",
      "network": "...",
      "programId": "...",
      "recipients": [
        {"publicKey": "<base58>", "amount": "<decimal>", "index": 0,
         "description": "optional"},
        ...
      ],
      "metadata": {"createdAt": "...", "version": "...",
                   "algorithm": "keccak256", "leafFormat": "..."}
    }

The root published at initialization must be the root of exactly this
recipient sequence, in this order. ``index`` must equal list position.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import base58

from distributor.crypto.leaf import (
    HASH_ALGORITHM,
    LEAF_FORMAT,
    MAX_AMOUNT,
    RECIPIENT_BYTES,
)
from distributor.crypto.merkle import MerkleTree
from distributor.errors import MalformedInput
from distributor.models.allocation import Allocation, RecipientEntry
from distributor.models.settlement import ClaimProof

logger = logging.getLogger(__name__)


def load_recipients(path: Path) -> dict[str, Any]:
    """Read a recipients file. Raises OSError / json.JSONDecodeError as-is."""
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    logger.debug("Loaded %d recipients from %s", len(data.get("recipients", [])), path)
    return data


def save_recipients(path: Path, data: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.write("\n")


def decode_public_key(public_key: str) -> bytes:
    """Base58 public key → 32 raw bytes. Raises MalformedInput."""
    try:
        raw = base58.b58decode(public_key)
    except ValueError as e:
        raise MalformedInput(f"Invalid base58 public key {public_key!r}: {e}") from e
    if len(raw) != RECIPIENT_BYTES:
        raise MalformedInput(
            f"Public key {public_key!r} decodes to {len(raw)} bytes, "
            f"expected {RECIPIENT_BYTES}"
        )
    return raw


def encode_public_key(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")


def _parse_amount(value: Any) -> Optional[int]:
    """Decimal digits only: no sign, whitespace, or underscores."""
    if isinstance(value, bool):
        return None
    text = str(value)
    if not (text.isascii() and text.isdigit()):
        return None
    return int(text)


def validate_recipients(data: dict[str, Any]) -> list[str]:
    """Return every problem with a recipients file. Empty list means valid."""
    errors: list[str] = []

    if not data.get("airdropId"):
        errors.append("Missing required field: airdropId")
    recipients = data.get("recipients")
    if not isinstance(recipients, list):
        errors.append("Missing required field: recipients (must be a list)")
        return errors
    if not recipients:
        errors.append("Recipient list is empty")

    calculated_total = 0
    first_seen: dict[bytes, int] = {}
    for position, entry in enumerate(recipients):
        public_key = entry.get("publicKey", "")
        try:
            raw_key = decode_public_key(public_key)
        except MalformedInput as e:
            errors.append(f"Invalid public key at index {position}: {e}")
        else:
            # One receipt per recipient: a second row could never be claimed
            if raw_key in first_seen:
                errors.append(
                    f"Duplicate public key at index {position}: {public_key} "
                    f"already listed at index {first_seen[raw_key]}"
                )
            else:
                first_seen[raw_key] = position

        amount = _parse_amount(entry.get("amount"))
        if amount is None or amount <= 0:
            errors.append(f"Invalid amount at index {position}: {entry.get('amount')!r}")
        elif amount > MAX_AMOUNT:
            errors.append(f"Amount exceeds u64 at index {position}: {amount}")
        else:
            calculated_total += amount

        if entry.get("index") != position:
            errors.append(
                f"Index mismatch at position {position}: "
                f"expected {position}, got {entry.get('index')!r}"
            )

    file_total = _parse_amount(data.get("totalAmount"))
    if file_total is None:
        errors.append(f"Invalid totalAmount: {data.get('totalAmount')!r}")
    elif file_total > MAX_AMOUNT:
        errors.append(f"totalAmount exceeds u64: {file_total}")
    elif file_total != calculated_total:
        errors.append(
            f"Total amount mismatch: calculated {calculated_total}, "
            f"file says {file_total}"
        )

    return errors


def entries(data: dict[str, Any]) -> list[RecipientEntry]:
    return [RecipientEntry.from_dict(r) for r in data["recipients"]]


def to_allocations(data: dict[str, Any]) -> list[Allocation]:
    """Recipients in file order as Allocation records."""
    return [
        Allocation(
            recipient=decode_public_key(entry.public_key),
            amount=int(entry.amount),
        )
        for entry in entries(data)
    ]


def build_tree(data: dict[str, Any]) -> MerkleTree:
    return MerkleTree.build(to_allocations(data))


def find_recipient(data: dict[str, Any], public_key: str) -> Optional[RecipientEntry]:
    for entry in entries(data):
        if entry.public_key == public_key:
            return entry
    return None


def generate_merkle_root(path: Path) -> MerkleTree:
    """Build the tree for a recipients file and write the root back into it.

    Also records the hash algorithm and leaf layout in the file's
    metadata so consumers know how the root was derived.
    """
    data = load_recipients(path)
    errors = validate_recipients(data)
    if errors:
        raise MalformedInput("; ".join(errors))

    tree = build_tree(data)
    data["merkleRoot"] = tree.root_hex
    metadata = data.setdefault("metadata", {})
    metadata["algorithm"] = HASH_ALGORITHM
    metadata["leafFormat"] = LEAF_FORMAT
    save_recipients(path, data)

    logger.info("Merkle tree generated: %d leaves, root %s", tree.leaf_count, tree.root_hex)
    return tree


def proof_for_recipient(
    data: dict[str, Any],
    public_key: str,
    tree: Optional[MerkleTree] = None,
) -> Optional[ClaimProof]:
    """Proof for one recipient, or None if they are not in the list."""
    entry = find_recipient(data, public_key)
    if entry is None:
        return None
    if tree is None:
        tree = build_tree(data)
    return ClaimProof(
        recipient=decode_public_key(entry.public_key),
        amount=int(entry.amount),
        leaf_index=entry.index,
        proof=tuple(tree.proof(entry.index)),
    )


def all_proofs(data: dict[str, Any]) -> dict[str, ClaimProof]:
    """Proofs for every recipient, keyed by base58 public key.

    The tree is built once and shared across all proofs.
    """
    tree = build_tree(data)
    return {
        entry.public_key: ClaimProof(
            recipient=decode_public_key(entry.public_key),
            amount=int(entry.amount),
            leaf_index=entry.index,
            proof=tuple(tree.proof(entry.index)),
        )
        for entry in entries(data)
    }


def parse_root(value: str) -> bytes:
    """'0x'-prefixed or bare hex root → 32 bytes. Raises MalformedInput."""
    try:
        raw = bytes.fromhex(value.removeprefix("0x"))
    except ValueError as e:
        raise MalformedInput(f"Invalid root hex {value!r}: {e}") from e
    if len(raw) != 32:
        raise MalformedInput(f"Root must be 32 bytes, got {len(raw)}")
    return raw
