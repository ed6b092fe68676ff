"""Settlement state machine — commitment initialization and claim settlement.

State machine (per commitment identifier):
    UNINITIALIZED → ACTIVE   initialize(): persist root, fund escrow
    ACTIVE → ACTIVE          claim(): verify, write receipt, pay out

Every operation runs inside one host transaction. A claim is a fixed
sequence of hard preconditions:

    1. commitment exists                      else NotInitialized
       and is not faulted                     else InsufficientEscrow
    2. proof reproduces the stored root       else InvalidProof
    3. receipt created exclusively            else AlreadyClaimed
    4. escrow covers the amount, transfer     else InsufficientEscrow
    5. total_settled += amount

InsufficientEscrow is fatal to the commitment. The failed claim rolls
back, and the caller then records the fault with mark_faulted(); from
then on every claim against the commitment is refused.

A failure at any step aborts the transaction, so a proof that verifies
but whose payout fails never leaves a consumed receipt behind.

Addresses:
    commitment account = derive_address(b"merkle_tree", commitment_id)
        (its balance is the escrow)
    receipt account    = derive_address(b"claim", commitment_account, recipient)
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from distributor.crypto.leaf import (
    HASH_BYTES,
    MAX_AMOUNT,
    RECIPIENT_BYTES,
    keccak256,
)
from distributor.crypto.verifier import require_valid_claim
from distributor.errors import (
    AccountExists,
    AlreadyClaimed,
    AlreadyInitialized,
    InsufficientEscrow,
    InsufficientFunds,
    MalformedInput,
    NotInitialized,
)
from distributor.models.settlement import (
    ClaimReceipt,
    CommitmentPhase,
    CommitmentState,
)
from distributor.settlement.ledger import LedgerHost, derive_address

logger = logging.getLogger(__name__)

COMMITMENT_SEED = b"merkle_tree"
RECEIPT_SEED = b"claim"
COMMITMENT_ID_SEED = b"commitment"

_COMMITMENT_KIND = "commitment"
_RECEIPT_KIND = "claim_receipt"


def commitment_id_for(issuer: bytes, nonce: bytes = b"") -> bytes:
    """Identifier for an issuer's commitment. The nonce separates commitments."""
    return keccak256(COMMITMENT_ID_SEED + issuer + nonce)


def commitment_address(commitment_id: bytes) -> bytes:
    return derive_address(COMMITMENT_SEED, commitment_id)


def receipt_address(commitment_id: bytes, recipient: bytes) -> bytes:
    return derive_address(RECEIPT_SEED, commitment_address(commitment_id), recipient)


class SettlementStateMachine:
    """Initializes commitments and settles claims against a LedgerHost.

    Usage:
        machine = SettlementStateMachine(ledger)
        state = machine.initialize(issuer, root, total_amount, leaf_count)
        receipt = machine.claim(
            state.commitment_id, recipient, amount, leaf_index, proof,
        )
    """

    def __init__(self, host: LedgerHost) -> None:
        self._host = host

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def initialize(
        self,
        issuer: bytes,
        root: bytes,
        total_amount: int,
        leaf_count: int,
        nonce: bytes = b"",
    ) -> CommitmentState:
        """UNINITIALIZED → ACTIVE. Persists the root and escrows total_amount.

        Raises AlreadyInitialized if the identifier is taken, and lets
        InsufficientFunds from the host abort the whole transaction if
        the issuer cannot fund the escrow.
        """
        _require_width(issuer, RECIPIENT_BYTES, "Issuer")
        _require_width(root, HASH_BYTES, "Root")
        _require_amount(total_amount, "Total amount")
        if isinstance(leaf_count, bool) or not isinstance(leaf_count, int) or leaf_count < 1:
            raise MalformedInput(f"Leaf count must be a positive integer, got {leaf_count!r}")

        commitment_id = commitment_id_for(issuer, nonce)
        address = commitment_address(commitment_id)
        state = CommitmentState(
            commitment_id=commitment_id,
            root=bytes(root),
            issuer=bytes(issuer),
            total_allocated=total_amount,
            leaf_count=leaf_count,
        )

        with self._host.transaction():
            try:
                self._host.create_account(address, _state_record(state))
            except AccountExists:
                raise AlreadyInitialized(
                    f"Commitment 0x{commitment_id.hex()} is already initialized"
                ) from None
            self._host.transfer(state.issuer, address, total_amount)

        logger.info(
            "Commitment 0x%s initialized: root=0x%s total=%d leaves=%d",
            commitment_id.hex(), root.hex(), total_amount, leaf_count,
        )
        return state

    def claim(
        self,
        commitment_id: bytes,
        recipient: bytes,
        amount: int,
        leaf_index: int,
        proof: Sequence[bytes],
    ) -> ClaimReceipt:
        """ACTIVE → ACTIVE. Verify, consume the receipt, pay out, account."""
        with self._host.transaction():
            state = self._require_state(commitment_id)
            if state.faulted:
                raise InsufficientEscrow(
                    f"Commitment 0x{commitment_id.hex()} is faulted; "
                    f"no further claims are settled"
                )

            require_valid_claim(
                recipient, amount, leaf_index, proof,
                expected_root=state.root,
                leaf_count=state.leaf_count,
            )
            recipient = bytes(recipient)

            receipt = ClaimReceipt(
                commitment_id=commitment_id,
                recipient=recipient,
                amount=amount,
                leaf_index=leaf_index,
            )
            try:
                self._host.create_account(
                    receipt_address(commitment_id, recipient),
                    _receipt_record(receipt),
                )
            except AccountExists:
                raise AlreadyClaimed(
                    f"Recipient 0x{recipient.hex()} has already claimed "
                    f"from commitment 0x{commitment_id.hex()}"
                ) from None

            escrow = commitment_address(commitment_id)
            if state.total_settled + amount > state.total_allocated:
                raise InsufficientEscrow(
                    f"Claim of {amount} would settle {state.total_settled + amount}, "
                    f"above the {state.total_allocated} allocated"
                )
            try:
                self._host.transfer(escrow, recipient, amount)
            except InsufficientFunds as e:
                raise InsufficientEscrow(
                    f"Escrow for commitment 0x{commitment_id.hex()} is short: {e}"
                ) from e

            state.total_settled += amount
            self._host.write_data(escrow, _state_record(state))

        logger.info(
            "Claim settled: commitment=0x%s recipient=0x%s amount=%d index=%d",
            commitment_id.hex(), recipient.hex(), amount, leaf_index,
        )
        return receipt

    def mark_faulted(self, commitment_id: bytes) -> CommitmentState:
        """Record that the commitment's escrow accounting is broken.

        Idempotent. Raises NotInitialized for an unknown commitment.
        """
        with self._host.transaction():
            state = self._require_state(commitment_id)
            if not state.faulted:
                state.faulted = True
                self._host.write_data(
                    commitment_address(commitment_id), _state_record(state),
                )
        logger.error(
            "Commitment 0x%s marked faulted: settled=%d allocated=%d escrow=%d",
            commitment_id.hex(), state.total_settled, state.total_allocated,
            self.escrow_balance(commitment_id),
        )
        return state

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def phase(self, commitment_id: bytes) -> CommitmentPhase:
        if self.get_commitment(commitment_id) is None:
            return CommitmentPhase.UNINITIALIZED
        return CommitmentPhase.ACTIVE

    def get_commitment(self, commitment_id: bytes) -> Optional[CommitmentState]:
        data = self._host.read_data(commitment_address(commitment_id))
        if data is None or data.get("kind") != _COMMITMENT_KIND:
            return None
        return CommitmentState.from_dict(data)

    def is_claimed(self, commitment_id: bytes, recipient: bytes) -> bool:
        return self._host.account_exists(receipt_address(commitment_id, recipient))

    def escrow_balance(self, commitment_id: bytes) -> int:
        return self._host.balance(commitment_address(commitment_id))

    def receipts(self, commitment_id: bytes) -> list[ClaimReceipt]:
        """All receipts for a commitment, ordered by leaf index."""
        found = [
            ClaimReceipt.from_dict(data)
            for _, data in self._host.iter_accounts()
            if data.get("kind") == _RECEIPT_KIND
            and data.get("commitment_id") == commitment_id.hex()
        ]
        return sorted(found, key=lambda r: r.leaf_index)

    def commitments(self) -> list[CommitmentState]:
        return [
            CommitmentState.from_dict(data)
            for _, data in self._host.iter_accounts()
            if data.get("kind") == _COMMITMENT_KIND
        ]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_state(self, commitment_id: bytes) -> CommitmentState:
        state = self.get_commitment(commitment_id)
        if state is None:
            raise NotInitialized(
                f"No commitment initialized for 0x{commitment_id.hex()}"
            )
        return state


def _state_record(state: CommitmentState) -> dict:
    return {"kind": _COMMITMENT_KIND, **state.to_dict()}


def _receipt_record(receipt: ClaimReceipt) -> dict:
    return {"kind": _RECEIPT_KIND, **receipt.to_dict()}


def _require_width(value: bytes, width: int, label: str) -> None:
    if not isinstance(value, (bytes, bytearray)) or len(value) != width:
        raise MalformedInput(f"{label} must be exactly {width} bytes")


def _require_amount(value: int, label: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedInput(f"{label} must be an integer")
    if value < 0 or value > MAX_AMOUNT:
        raise MalformedInput(f"{label} out of u64 range: {value}")
