"""Settlement models — commitment state, receipts, and claim proofs.

CommitmentState is persisted once per commitment identifier. Only
total_settled changes after initialization, and only upward, until the
commitment is marked faulted; a faulted commitment settles nothing more.

ClaimReceipt exists at most once per (commitment, recipient). Its
existence is the double-claim guard; amount and leaf_index are carried
for auditing and conservation checks, never consulted for the guard.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

import base58


class CommitmentPhase(str, enum.Enum):
    """Macro-state of a commitment.

    State machine:
        UNINITIALIZED → ACTIVE   (initialize)
        ACTIVE → ACTIVE          (claim; only total_settled advances)
    """
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"


@dataclass
class CommitmentState:
    """Persistent state of one commitment.

    Mutable only through the settlement state machine, which advances
    total_settled on each successful claim and sets faulted when the
    escrow cannot cover a verified claim.
    """
    commitment_id: bytes
    root: bytes
    issuer: bytes
    total_allocated: int
    leaf_count: int
    total_settled: int = 0
    faulted: bool = False

    @property
    def remaining(self) -> int:
        return self.total_allocated - self.total_settled

    def to_dict(self) -> dict[str, Any]:
        return {
            "commitment_id": self.commitment_id.hex(),
            "root": self.root.hex(),
            "issuer": self.issuer.hex(),
            "total_allocated": self.total_allocated,
            "total_settled": self.total_settled,
            "leaf_count": self.leaf_count,
            "faulted": self.faulted,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> CommitmentState:
        return CommitmentState(
            commitment_id=bytes.fromhex(data["commitment_id"]),
            root=bytes.fromhex(data["root"]),
            issuer=bytes.fromhex(data["issuer"]),
            total_allocated=int(data["total_allocated"]),
            total_settled=int(data["total_settled"]),
            leaf_count=int(data["leaf_count"]),
            faulted=bool(data.get("faulted", False)),
        )


@dataclass(frozen=True)
class ClaimReceipt:
    """Existence marker for a settled claim. Never mutated or deleted."""
    commitment_id: bytes
    recipient: bytes
    amount: int
    leaf_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "commitment_id": self.commitment_id.hex(),
            "recipient": self.recipient.hex(),
            "amount": self.amount,
            "leaf_index": self.leaf_index,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ClaimReceipt:
        return ClaimReceipt(
            commitment_id=bytes.fromhex(data["commitment_id"]),
            recipient=bytes.fromhex(data["recipient"]),
            amount=int(data["amount"]),
            leaf_index=int(data["leaf_index"]),
        )


@dataclass(frozen=True)
class ClaimProof:
    """Proof interchange record: the sibling hashes plus the leaf they prove.

    Serialized form:
        {"recipient": "<base58>", "amount": "<decimal>",
         "leafIndex": <int>, "proof": ["0x<64 hex>", ...]}
    """
    recipient: bytes
    amount: int
    leaf_index: int
    proof: tuple[bytes, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient": base58.b58encode(self.recipient).decode("ascii"),
            "amount": str(self.amount),
            "leafIndex": self.leaf_index,
            "proof": ["0x" + p.hex() for p in self.proof],
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ClaimProof:
        return ClaimProof(
            recipient=base58.b58decode(data["recipient"]),
            amount=int(data["amount"]),
            leaf_index=int(data["leafIndex"]),
            proof=tuple(
                bytes.fromhex(p.removeprefix("0x")) for p in data["proof"]
            ),
        )
