"""Tests for DistributorService — proves the facade audits, persists, and reports error codes."""

from pathlib import Path
from typing import Optional

import pytest

from distributor.config import DistributorConfig
from distributor.crypto.anchor import AnchorRecord
from distributor.crypto.merkle import MerkleTree
from distributor.models.allocation import Allocation
from distributor.persistence.event_log import EventKind, EventLog, EventRecord
from distributor.persistence.state_store import StateStore
from distributor.recipients import build_tree, encode_public_key
from distributor.service import DistributorService
from distributor.settlement.ledger import InMemoryLedger
from distributor.settlement.state_machine import commitment_id_for


ISSUER = bytes([0x11]) * 32
A = bytes([0xA1]) * 32
B = bytes([0xB2]) * 32
C = bytes([0xC3]) * 32
ALLOCATIONS = [Allocation(A, 100), Allocation(B, 200), Allocation(C, 150)]


def _config(tmp_path: Path, rpc_url: Optional[str] = None) -> DistributorConfig:
    return DistributorConfig(
        network="localnet",
        chain_id=31337,
        base_unit_name="SOL",
        base_unit_decimals=9,
        data_dir=tmp_path / "data",
        anchor_rpc_url=rpc_url,
        anchor_private_key="0xabc" if rpc_url else None,
    )


def _recipients() -> dict:
    return {
        "airdropId": "svc-drop",
        "totalAmount": "450",
        "recipients": [
            {"publicKey": a.recipient_b58, "amount": str(a.amount), "index": i}
            for i, a in enumerate(ALLOCATIONS)
        ],
    }


class FailingStateStore(StateStore):
    def save_ledger(self, ledger: InMemoryLedger) -> None:
        raise OSError("disk full")


class FlakyStateStore(StateStore):
    """Fails the save calls whose 1-based number is in fail_on."""

    def __init__(self, storage_path: Path, fail_on: set[int]) -> None:
        super().__init__(storage_path)
        self.fail_on = fail_on
        self.calls = 0

    def save_ledger(self, ledger: InMemoryLedger) -> None:
        self.calls += 1
        if self.calls in self.fail_on:
            raise OSError("disk full")
        super().save_ledger(ledger)


class FailingEventLog(EventLog):
    def append(self, event: EventRecord) -> None:
        raise OSError("log volume unavailable")


@pytest.fixture
def tree() -> MerkleTree:
    return MerkleTree.build(ALLOCATIONS)


@pytest.fixture
def service(tmp_path: Path) -> DistributorService:
    return DistributorService.from_config(_config(tmp_path))


@pytest.fixture
def commitment_id(service: DistributorService, tree: MerkleTree) -> bytes:
    assert service.fund_account(ISSUER, 1_000).success
    result = service.initialize_commitment(ISSUER, tree.root, 450, 3)
    assert result.success
    return bytes.fromhex(result.data["commitment_id"])


class TestInitialize:
    def test_initialize_records_events(
        self, service: DistributorService, commitment_id: bytes,
    ) -> None:
        status = service.status()
        assert len(status["commitments"]) == 1
        summary = status["commitments"][0]
        assert summary["escrow_balance"] == 450
        assert summary["phase"] == "active"
        assert summary["faulted"] is False
        # fund + initialize + escrow
        assert status["events"] == 3

    def test_second_initialize_returns_code(
        self, service: DistributorService, tree: MerkleTree, commitment_id: bytes,
    ) -> None:
        result = service.initialize_commitment(ISSUER, tree.root, 450, 3)
        assert not result.success
        assert result.code == "already_initialized"

    def test_unfunded_issuer(self, service: DistributorService, tree: MerkleTree) -> None:
        result = service.initialize_commitment(ISSUER, tree.root, 450, 3)
        assert not result.success
        assert result.code == "insufficient_funds"
        assert service.status()["commitments"] == []

    def test_from_recipients(self, service: DistributorService) -> None:
        service.fund_account(ISSUER, 450)
        result = service.initialize_from_recipients(_recipients(), ISSUER)
        assert result.success
        assert result.data["leaf_count"] == 3
        assert result.data["root"] == build_tree(_recipients()).root.hex()

    def test_from_recipients_stale_root(self, service: DistributorService) -> None:
        service.fund_account(ISSUER, 450)
        data = _recipients()
        data["merkleRoot"] = "0x" + "00" * 32
        result = service.initialize_from_recipients(data, ISSUER)
        assert not result.success
        assert "does not match" in result.errors[0]

    def test_from_recipients_invalid_file(self, service: DistributorService) -> None:
        data = _recipients()
        data["totalAmount"] = "1"
        result = service.initialize_from_recipients(data, ISSUER)
        assert not result.success
        assert result.code == "malformed_input"


class TestClaim:
    def test_claim_succeeds(
        self, service: DistributorService, tree: MerkleTree, commitment_id: bytes,
    ) -> None:
        result = service.claim(commitment_id, B, 200, 1, tree.proof(1))
        assert result.success
        assert result.data["total_settled"] == 200
        assert service.ledger.balance(B) == 200

    def test_resubmission_reports_already_claimed(
        self, service: DistributorService, tree: MerkleTree, commitment_id: bytes,
    ) -> None:
        service.claim(commitment_id, B, 200, 1, tree.proof(1))
        result = service.claim(commitment_id, B, 200, 1, tree.proof(1))
        assert not result.success
        assert result.code == "already_claimed"

    def test_bad_proof_reports_invalid_proof(
        self, service: DistributorService, tree: MerkleTree, commitment_id: bytes,
    ) -> None:
        result = service.claim(commitment_id, B, 999, 1, tree.proof(1))
        assert not result.success
        assert result.code == "invalid_proof"

    def test_rejections_are_audited(
        self, service: DistributorService, tree: MerkleTree, commitment_id: bytes,
    ) -> None:
        service.claim(commitment_id, B, 999, 1, tree.proof(1))
        rejected = service._event_log.events(EventKind.CLAIM_REJECTED)
        assert len(rejected) == 1
        assert rejected[0].payload["code"] == "invalid_proof"

    def test_unknown_commitment(self, service: DistributorService, tree: MerkleTree) -> None:
        result = service.claim(commitment_id_for(ISSUER), A, 100, 0, tree.proof(0))
        assert result.code == "not_initialized"

    def test_claim_from_recipients(
        self, service: DistributorService, commitment_id: bytes,
    ) -> None:
        key = encode_public_key(C)
        first = service.claim_from_recipients(_recipients(), commitment_id, key)
        assert first.success
        second = service.claim_from_recipients(_recipients(), commitment_id, key)
        assert second.code == "already_claimed"

    def test_claim_from_recipients_unknown_key(
        self, service: DistributorService, commitment_id: bytes,
    ) -> None:
        key = encode_public_key(b"\x09" * 32)
        result = service.claim_from_recipients(_recipients(), commitment_id, key)
        assert result.code == "not_in_list"

    def test_underfunded_commitment_is_flagged(
        self, tmp_path: Path, service: DistributorService, tree: MerkleTree,
    ) -> None:
        service.fund_account(ISSUER, 250)
        cid = bytes.fromhex(
            service.initialize_commitment(ISSUER, tree.root, 250, 3).data["commitment_id"]
        )
        assert service.claim(cid, A, 100, 0, tree.proof(0)).success
        result = service.claim(cid, B, 200, 1, tree.proof(1))
        assert result.code == "insufficient_escrow"
        status = service.commitment_status(cid)
        assert status.data["faulted"] is True
        assert status.data["claims"] == 1

        # C's 150 would still fit the 250 allocated, but the commitment is dead
        refused = service.claim(cid, C, 150, 2, tree.proof(2))
        assert refused.code == "insufficient_escrow"
        assert service.ledger.balance(C) == 0
        assert service.machine.escrow_balance(cid) == 150
        assert len(service._event_log.events(EventKind.COMMITMENT_FAULTED)) == 1

        restarted = DistributorService.from_config(_config(tmp_path))
        assert restarted.commitment_status(cid).data["faulted"] is True
        again = restarted.claim(cid, C, 150, 2, tree.proof(2))
        assert again.code == "insufficient_escrow"
        assert restarted.ledger.balance(C) == 0


class TestPersistence:
    def test_restart_preserves_receipts_and_event_ids(
        self, tmp_path: Path, service: DistributorService,
        tree: MerkleTree, commitment_id: bytes,
    ) -> None:
        service.claim(commitment_id, A, 100, 0, tree.proof(0))

        restarted = DistributorService.from_config(_config(tmp_path))
        assert restarted.machine.is_claimed(commitment_id, A)
        again = restarted.claim(commitment_id, A, 100, 0, tree.proof(0))
        assert again.code == "already_claimed"
        assert restarted.claim(commitment_id, B, 200, 1, tree.proof(1)).success
        ids = [e.event_id for e in restarted._event_log.events()]
        assert len(ids) == len(set(ids))

    def test_snapshot_failure_rejects_mutation(self, tmp_path: Path) -> None:
        service = DistributorService(
            _config(tmp_path),
            event_log=EventLog(storage_path=tmp_path / "events.jsonl"),
            state_store=FailingStateStore(tmp_path / "state.json"),
        )
        result = service.fund_account(ISSUER, 1_000)
        assert not result.success
        assert "Persistence failure" in result.errors[0]
        assert service.ledger.balance(ISSUER) == 0
        status = service.status()
        assert status["events"] == 0
        assert status["persistence_degraded"] is False

    def test_unpersisted_claim_is_not_settled_after_restart(
        self, tmp_path: Path, tree: MerkleTree,
    ) -> None:
        config = _config(tmp_path)
        store = FlakyStateStore(config.data_dir / "state.json", fail_on={3})
        service = DistributorService(
            config,
            event_log=EventLog(storage_path=config.data_dir / "events.jsonl"),
            state_store=store,
        )
        assert service.fund_account(ISSUER, 450).success
        cid = bytes.fromhex(
            service.initialize_commitment(ISSUER, tree.root, 450, 3).data["commitment_id"]
        )

        result = service.claim(cid, A, 100, 0, tree.proof(0))
        assert not result.success
        assert "Persistence failure" in result.errors[0]
        assert not service.machine.is_claimed(cid, A)
        assert service.ledger.balance(A) == 0

        restarted = DistributorService.from_config(config)
        assert not restarted.machine.is_claimed(cid, A)
        assert restarted.claim(cid, A, 100, 0, tree.proof(0)).success

        again = DistributorService.from_config(config)
        assert again.claim(cid, A, 100, 0, tree.proof(0)).code == "already_claimed"
        assert again.ledger.balance(A) == 100
        assert len(again._event_log.events(EventKind.CLAIM_SETTLED)) == 1

    def test_audit_failure_restores_snapshot(self, tmp_path: Path) -> None:
        store = StateStore(tmp_path / "state.json")
        service = DistributorService(
            _config(tmp_path), event_log=FailingEventLog(), state_store=store,
        )
        result = service.fund_account(ISSUER, 1_000)
        assert not result.success
        assert "Event log failure" in result.errors[0]
        assert service.ledger.balance(ISSUER) == 0
        assert store.load_ledger().balance(ISSUER) == 0
        assert service.status()["persistence_degraded"] is False

    def test_failed_snapshot_restore_degrades(self, tmp_path: Path) -> None:
        store = FlakyStateStore(tmp_path / "state.json", fail_on={2})
        service = DistributorService(
            _config(tmp_path), event_log=FailingEventLog(), state_store=store,
        )
        result = service.fund_account(ISSUER, 1_000)
        assert not result.success
        assert "Persistence degraded" in result.errors[0]
        assert service.ledger.balance(ISSUER) == 0
        # The unaudited credit is still on disk
        assert store.load_ledger().balance(ISSUER) == 1_000
        assert service.status()["persistence_degraded"] is True

    def test_audit_failure_rolls_back_claim(self, tmp_path: Path, tree: MerkleTree) -> None:
        ledger = InMemoryLedger()
        ledger.credit(ISSUER, 450)
        bootstrap = DistributorService(ledger=ledger)
        cid = bytes.fromhex(
            bootstrap.initialize_commitment(ISSUER, tree.root, 450, 3).data["commitment_id"]
        )

        service = DistributorService(ledger=ledger, event_log=FailingEventLog())
        result = service.claim(cid, A, 100, 0, tree.proof(0))
        assert not result.success
        assert not service.machine.is_claimed(cid, A)
        assert ledger.balance(A) == 0
        assert service.machine.escrow_balance(cid) == 450


class TestAnchor:
    def test_requires_credentials(
        self, service: DistributorService, commitment_id: bytes,
    ) -> None:
        result = service.anchor_commitment(commitment_id)
        assert not result.success
        assert "ANCHOR_RPC_URL" in result.errors[0]

    def test_anchor_records_event(self, tmp_path: Path, tree: MerkleTree) -> None:
        service = DistributorService.from_config(_config(tmp_path, "http://localhost:8545"))
        service.fund_account(ISSUER, 450)
        cid = bytes.fromhex(
            service.initialize_commitment(ISSUER, tree.root, 450, 3).data["commitment_id"]
        )
        calls = []

        def fake_anchor(**kwargs) -> AnchorRecord:
            calls.append(kwargs)
            return AnchorRecord(
                commitment_id=kwargs["commitment_id"],
                digest=kwargs["digest"],
                tx_hash="0x" + "ee" * 32,
                block_number=7,
                chain_id=kwargs["chain_id"],
                timestamp_utc="2025-01-01T00:00:00Z",
                explorer_url="https://example.invalid/tx",
            )

        result = service.anchor_commitment(cid, anchor=fake_anchor)
        assert result.success
        assert calls[0]["rpc_url"] == "http://localhost:8545"
        assert calls[0]["chain_id"] == 31337
        anchored = service._event_log.events(EventKind.ROOT_ANCHORED)
        assert anchored[0].payload["block_number"] == 7

    def test_unknown_commitment(self, service: DistributorService) -> None:
        result = service.anchor_commitment(commitment_id_for(ISSUER))
        assert result.code == "not_initialized"
