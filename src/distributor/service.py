"""Distributor service — the facade the CLI and integrations talk to.

Wraps the settlement state machine with:
- an append-only audit trail (every settlement action becomes an event),
- durable host snapshots between process runs,
- ServiceResult values instead of exceptions, with a stable error code
  so clients can tell "already paid" (already_claimed) from "ineligible"
  (invalid_proof).

Ordering for every mutation (fail-closed):
1. State machine change, inside one ledger transaction.
2. Snapshot write, still inside the transaction. A failure rolls the
   ledger back before anything is audited, so the next process never
   loads a state older than a reported success.
3. Audit append. A failure rolls the ledger back and rewrites the
   snapshot, so disk never keeps an unaudited change. If that rewrite
   fails as well, persistence_degraded is set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from distributor.config import DistributorConfig
from distributor.crypto.anchor import anchor_to_chain, commitment_digest
from distributor.errors import (
    DistributorError,
    InsufficientEscrow,
    MalformedInput,
)
from distributor.models.settlement import ClaimProof, ClaimReceipt, CommitmentState
from distributor.persistence.event_log import EventKind, EventLog, EventRecord
from distributor.persistence.state_store import StateStore
from distributor.recipients import (
    build_tree,
    decode_public_key,
    parse_root,
    proof_for_recipient,
    validate_recipients,
)
from distributor.settlement.ledger import InMemoryLedger
from distributor.settlement.state_machine import (
    SettlementStateMachine,
    commitment_address,
)

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    code: Optional[str] = None


class _Aborted(Exception):
    """A mutation was rolled back after its host change succeeded."""


class DistributorService:
    """Settlement facade with audit trail and persistence.

    Usage:
        service = DistributorService(config, ledger=InMemoryLedger())
        service.fund_account(issuer, 1_000)
        result = service.initialize_commitment(issuer, root, 1_000, leaf_count=3)
        result = service.claim(commitment_id, recipient, 100, 0, proof)
        if result.code == "already_claimed":
            ...  # resubmission of a settled claim

    Persistence (optional):
        service = DistributorService(
            config, ledger=store.load_ledger(),
            event_log=EventLog(path), state_store=store,
        )
    """

    def __init__(
        self,
        config: Optional[DistributorConfig] = None,
        ledger: Optional[InMemoryLedger] = None,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
    ) -> None:
        self._config = config
        self._ledger = ledger if ledger is not None else InMemoryLedger()
        self._machine = SettlementStateMachine(self._ledger)
        self._event_log = event_log
        self._state_store = state_store
        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0
        self._persistence_degraded: bool = False

    @classmethod
    def from_config(cls, config: DistributorConfig) -> DistributorService:
        """Service with durable state under config.data_dir."""
        config.data_dir.mkdir(parents=True, exist_ok=True)
        store = StateStore(config.data_dir / "state.json")
        return cls(
            config,
            ledger=store.load_ledger(),
            event_log=EventLog(storage_path=config.data_dir / "events.jsonl"),
            state_store=store,
        )

    @property
    def machine(self) -> SettlementStateMachine:
        return self._machine

    @property
    def ledger(self) -> InMemoryLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    def fund_account(self, account: bytes, amount: int) -> ServiceResult:
        """Credit value to an account (issuer funding before initialize)."""
        def _audit(_: None) -> None:
            self._record(EventKind.ACCOUNT_FUNDED, account.hex(), {
                "account": account.hex(),
                "amount": amount,
            })

        try:
            _, err = self._apply(lambda: self._ledger.credit(account, amount), _audit)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        if err:
            return ServiceResult(success=False, errors=[err])
        return ServiceResult(success=True, data={
            "account": account.hex(),
            "balance": self._ledger.balance(account),
        })

    # ------------------------------------------------------------------
    # Commitment lifecycle
    # ------------------------------------------------------------------

    def initialize_commitment(
        self,
        issuer: bytes,
        root: bytes,
        total_amount: int,
        leaf_count: int,
        nonce: bytes = b"",
    ) -> ServiceResult:
        """Persist a root and escrow total_amount from the issuer."""
        def _audit(state: CommitmentState) -> None:
            self._record(EventKind.COMMITMENT_INITIALIZED, issuer.hex(), {
                **state.to_dict(),
            })
            self._record(EventKind.ESCROW_FUNDED, issuer.hex(), {
                "commitment_id": state.commitment_id.hex(),
                "escrow": commitment_address(state.commitment_id).hex(),
                "amount": total_amount,
            })

        try:
            state, err = self._apply(
                lambda: self._machine.initialize(
                    issuer, root, total_amount, leaf_count, nonce=nonce,
                ),
                _audit,
            )
        except DistributorError as e:
            return ServiceResult(success=False, errors=[str(e)], code=e.code)
        if err:
            return ServiceResult(success=False, errors=[err])

        return ServiceResult(success=True, data=self._commitment_summary(state))

    def initialize_from_recipients(
        self,
        data: dict[str, Any],
        issuer: bytes,
        nonce: bytes = b"",
    ) -> ServiceResult:
        """Build the tree for a recipients file and initialize its commitment.

        If the file already carries a merkleRoot, it must match the
        rebuilt root; a stale root would make every claim fail.
        """
        errors = validate_recipients(data)
        if errors:
            return ServiceResult(
                success=False, errors=errors, code=MalformedInput.code,
            )

        tree = build_tree(data)
        published = data.get("merkleRoot")
        if published:
            try:
                published_root = parse_root(published)
            except MalformedInput as e:
                return ServiceResult(success=False, errors=[str(e)], code=e.code)
            if published_root != tree.root:
                return ServiceResult(
                    success=False,
                    errors=[
                        f"merkleRoot in file ({published}) does not match the "
                        f"rebuilt root ({tree.root_hex}); regenerate the tree"
                    ],
                    code=MalformedInput.code,
                )

        return self.initialize_commitment(
            issuer,
            tree.root,
            int(data["totalAmount"]),
            tree.leaf_count,
            nonce=nonce,
        )

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def claim(
        self,
        commitment_id: bytes,
        recipient: bytes,
        amount: int,
        leaf_index: int,
        proof: Sequence[bytes],
    ) -> ServiceResult:
        """Settle one claim. Rejections are audited and returned with a code."""
        def _audit(receipt: ClaimReceipt) -> None:
            self._record(EventKind.CLAIM_SETTLED, receipt.recipient.hex(), {
                **receipt.to_dict(),
            })

        try:
            receipt, err = self._apply(
                lambda: self._machine.claim(
                    commitment_id, recipient, amount, leaf_index, proof,
                ),
                _audit,
            )
        except DistributorError as e:
            return self._rejected(commitment_id, recipient, amount, leaf_index, e)
        if err:
            return ServiceResult(success=False, errors=[err])

        state = self._machine.get_commitment(commitment_id)
        return ServiceResult(success=True, data={
            **receipt.to_dict(),
            "total_settled": state.total_settled if state else None,
        })

    def claim_proof(self, commitment_id: bytes, claim: ClaimProof) -> ServiceResult:
        """Settle a claim from its interchange record."""
        return self.claim(
            commitment_id, claim.recipient, claim.amount, claim.leaf_index, claim.proof,
        )

    def claim_from_recipients(
        self,
        data: dict[str, Any],
        commitment_id: bytes,
        public_key: str,
    ) -> ServiceResult:
        """Derive the proof for public_key from the recipient list and claim.

        Checks the receipt first so an already-paid recipient gets
        already_claimed without rebuilding the tree.
        """
        try:
            recipient = decode_public_key(public_key)
        except MalformedInput as e:
            return ServiceResult(success=False, errors=[str(e)], code=e.code)

        if self._machine.is_claimed(commitment_id, recipient):
            return ServiceResult(
                success=False,
                errors=[f"{public_key} has already claimed"],
                code="already_claimed",
            )

        claim = proof_for_recipient(data, public_key)
        if claim is None:
            return ServiceResult(
                success=False,
                errors=[f"Recipient {public_key} not found in recipients list"],
                code="not_in_list",
            )
        return self.claim_proof(commitment_id, claim)

    # ------------------------------------------------------------------
    # Anchoring
    # ------------------------------------------------------------------

    def anchor_commitment(
        self,
        commitment_id: bytes,
        anchor: Callable[..., Any] = anchor_to_chain,
    ) -> ServiceResult:
        """Publish the commitment digest on-chain using configured credentials."""
        state = self._machine.get_commitment(commitment_id)
        if state is None:
            return ServiceResult(
                success=False,
                errors=[f"No commitment initialized for 0x{commitment_id.hex()}"],
                code="not_initialized",
            )
        if self._config is None or not self._config.has_anchor_credentials:
            return ServiceResult(
                success=False,
                errors=["Missing ANCHOR_RPC_URL and/or ANCHOR_PRIVATE_KEY"],
            )

        digest = commitment_digest(state)
        try:
            record = anchor(
                digest=digest,
                rpc_url=self._config.anchor_rpc_url,
                private_key=self._config.anchor_private_key,
                chain_id=self._config.chain_id,
                gas=self._config.anchor_gas,
                gas_price_gwei=self._config.anchor_gas_price_gwei,
                explorer_tx_url=self._config.explorer_tx_url,
                commitment_id=commitment_id.hex(),
            )
            self._record(EventKind.ROOT_ANCHORED, state.issuer.hex(), {
                "commitment_id": commitment_id.hex(),
                "digest": digest,
                "tx_hash": record.tx_hash,
                "block_number": record.block_number,
                "chain_id": record.chain_id,
            })
        except (ValueError, OSError) as e:
            return ServiceResult(success=False, errors=[f"Anchor failed: {e}"])

        return ServiceResult(success=True, data={
            "commitment_id": commitment_id.hex(),
            "digest": digest,
            "tx_hash": record.tx_hash,
            "block_number": record.block_number,
            "explorer_url": record.explorer_url,
        })

    # ------------------------------------------------------------------
    # Status and queries
    # ------------------------------------------------------------------

    def commitment_status(self, commitment_id: bytes) -> ServiceResult:
        state = self._machine.get_commitment(commitment_id)
        if state is None:
            return ServiceResult(
                success=False,
                errors=[f"No commitment initialized for 0x{commitment_id.hex()}"],
                code="not_initialized",
            )
        return ServiceResult(success=True, data=self._commitment_summary(state))

    def status(self) -> dict[str, Any]:
        """Return a system-wide status summary."""
        return {
            "version": __version__,
            "commitments": [
                self._commitment_summary(s) for s in self._machine.commitments()
            ],
            "events": self._event_log.count if self._event_log is not None else 0,
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _commitment_summary(self, state: CommitmentState) -> dict[str, Any]:
        receipts = self._machine.receipts(state.commitment_id)
        return {
            **state.to_dict(),
            "phase": self._machine.phase(state.commitment_id).value,
            "escrow_address": commitment_address(state.commitment_id).hex(),
            "escrow_balance": self._machine.escrow_balance(state.commitment_id),
            "claims": len(receipts),
        }

    def _rejected(
        self,
        commitment_id: bytes,
        recipient: bytes,
        amount: int,
        leaf_index: int,
        error: DistributorError,
    ) -> ServiceResult:
        """Audit a rejected claim and convert it to a ServiceResult.

        InsufficientEscrow is fatal to the commitment: the fault marker
        is written to the commitment account (durably, like any other
        mutation) so every later claim is refused, across restarts too.
        """
        errors = [str(error)]
        if isinstance(error, InsufficientEscrow):
            logger.error(
                "Escrow invariant violated for commitment 0x%s: %s",
                commitment_id.hex(), error,
            )
            state = self._machine.get_commitment(commitment_id)
            if state is not None and not state.faulted:
                err = self._mark_faulted(commitment_id, str(error))
                if err:
                    errors.append(err)
        else:
            logger.info("Claim rejected (%s): %s", error.code, error)

        try:
            self._record(EventKind.CLAIM_REJECTED, _hex(recipient), {
                "commitment_id": commitment_id.hex(),
                "recipient": _hex(recipient),
                "amount": amount,
                "leaf_index": leaf_index,
                "code": error.code,
            })
        except (ValueError, OSError) as e:
            errors.append(f"Event log failure: {e}")
        return ServiceResult(success=False, errors=errors, code=error.code)

    def _mark_faulted(self, commitment_id: bytes, reason: str) -> Optional[str]:
        def _audit(state: CommitmentState) -> None:
            self._record(EventKind.COMMITMENT_FAULTED, state.issuer.hex(), {
                "commitment_id": commitment_id.hex(),
                "total_settled": state.total_settled,
                "escrow_balance": self._machine.escrow_balance(commitment_id),
                "reason": reason,
            })

        _, err = self._apply(lambda: self._machine.mark_faulted(commitment_id), _audit)
        return err

    def _apply(
        self,
        mutate: Callable[[], Any],
        audit: Callable[[Any], None],
    ) -> tuple[Any, Optional[str]]:
        """Run one mutation as ledger change, then snapshot, then audit.

        DistributorError (and ValueError from the host) raised by mutate
        propagate with the ledger untouched. Snapshot or audit failures
        roll back and return (None, error string).
        """
        snapshot_written = False
        try:
            with self._ledger.transaction():
                outcome = mutate()
                err = self._safe_persist()
                if err:
                    # Leaving the block by exception restores the ledger
                    raise _Aborted(err)
                snapshot_written = True
                try:
                    audit(outcome)
                except (ValueError, OSError) as e:
                    raise _Aborted(f"Event log failure: {e}") from e
        except _Aborted as e:
            message = str(e)
            if snapshot_written:
                warning = self._safe_persist_post_rollback()
                if warning:
                    message = f"{message}; {warning}"
            return None, message
        return outcome, None

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record(self, kind: EventKind, actor_id: str, payload: dict[str, Any]) -> None:
        """Append an audit event. Raises ValueError/OSError on failure."""
        if self._event_log is None:
            return
        event = EventRecord.create(
            event_id=self._next_event_id(),
            event_kind=kind,
            actor_id=actor_id,
            payload=payload,
        )
        self._event_log.append(event)

    def _persist_state(self) -> None:
        if self._state_store is None:
            return
        self._state_store.save_ledger(self._ledger)

    def _safe_persist(self) -> Optional[str]:
        """Persist state with fail-closed error handling (pre-audit mode).

        Use this BEFORE audit events have been committed. Returns an
        error string on failure; the caller must roll the mutation back.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            logger.warning("State snapshot write failed: %s", e)
            return f"Persistence failure: {e}"

    def _safe_persist_post_rollback(self) -> Optional[str]:
        """Rewrite the snapshot after a rollback whose state was already saved.

        On failure the snapshot on disk holds an unaudited change. Sets
        persistence_degraded and returns a warning string.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.error("State snapshot could not be restored after rollback: %s", e)
            return f"Persistence degraded: {e}; StateStore holds an unaudited change"


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return repr(value)
