"""Allocation models — what the issuer commits to.

An allocation is one (recipient, amount) pair at a fixed position in the
recipient list. Position is the leaf index; it is not derived from the
content, so reordering the list changes the root.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import base58


@dataclass(frozen=True)
class Allocation:
    """One committed (recipient, amount) record.

    Immutable once the tree is built. There is no ``claimed`` field:
    the leaf always encodes the unclaimed state.
    """
    recipient: bytes
    amount: int

    @property
    def recipient_b58(self) -> str:
        return base58.b58encode(self.recipient).decode("ascii")


@dataclass(frozen=True)
class RecipientEntry:
    """One row of the recipient list interchange file."""
    public_key: str
    amount: str
    index: int
    description: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "publicKey": self.public_key,
            "amount": self.amount,
            "index": self.index,
        }
        if self.description is not None:
            data["description"] = self.description
        return data

    @staticmethod
    def from_dict(data: dict) -> RecipientEntry:
        return RecipientEntry(
            public_key=data["publicKey"],
            amount=str(data["amount"]),
            index=data["index"],
            description=data.get("description"),
        )
