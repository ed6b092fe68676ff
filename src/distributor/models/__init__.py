"""Data models — allocations, commitment state, receipts, proofs."""

from distributor.models.allocation import Allocation, RecipientEntry
from distributor.models.settlement import (
    ClaimProof,
    ClaimReceipt,
    CommitmentPhase,
    CommitmentState,
)

__all__ = [
    "Allocation",
    "ClaimProof",
    "ClaimReceipt",
    "CommitmentPhase",
    "CommitmentState",
    "RecipientEntry",
]
