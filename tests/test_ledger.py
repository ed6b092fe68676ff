"""Tests for the in-memory ledger host — proves atomic transactions and exclusive creation."""

import threading

import pytest

from distributor.errors import AccountExists, InsufficientFunds
from distributor.settlement.ledger import InMemoryLedger, LedgerHost, derive_address


ISSUER = bytes([0x11]) * 32
OTHER = bytes([0x22]) * 32
ACCOUNT = derive_address(b"test", b"account")


@pytest.fixture
def ledger() -> InMemoryLedger:
    ledger = InMemoryLedger()
    ledger.credit(ISSUER, 1_000)
    return ledger


class TestAddresses:
    def test_derive_address_deterministic(self) -> None:
        assert derive_address(b"claim", b"a", b"b") == derive_address(b"claim", b"a", b"b")
        assert len(derive_address(b"claim", b"a")) == 32

    def test_seed_separates_addresses(self) -> None:
        assert derive_address(b"claim", b"x") != derive_address(b"merkle_tree", b"x")

    def test_satisfies_protocol(self, ledger: InMemoryLedger) -> None:
        assert isinstance(ledger, LedgerHost)


class TestAccounts:
    def test_create_and_read(self, ledger: InMemoryLedger) -> None:
        ledger.create_account(ACCOUNT, {"kind": "example", "n": 1})
        assert ledger.account_exists(ACCOUNT)
        assert ledger.read_data(ACCOUNT) == {"kind": "example", "n": 1}

    def test_create_is_exclusive(self, ledger: InMemoryLedger) -> None:
        ledger.create_account(ACCOUNT, {"n": 1})
        with pytest.raises(AccountExists):
            ledger.create_account(ACCOUNT, {"n": 2})
        assert ledger.read_data(ACCOUNT) == {"n": 1}

    def test_read_returns_copy(self, ledger: InMemoryLedger) -> None:
        ledger.create_account(ACCOUNT, {"n": 1})
        data = ledger.read_data(ACCOUNT)
        data["n"] = 99
        assert ledger.read_data(ACCOUNT) == {"n": 1}

    def test_write_requires_existing_account(self, ledger: InMemoryLedger) -> None:
        with pytest.raises(KeyError):
            ledger.write_data(ACCOUNT, {"n": 1})

    def test_missing_account_reads_none(self, ledger: InMemoryLedger) -> None:
        assert ledger.read_data(ACCOUNT) is None


class TestValue:
    def test_transfer(self, ledger: InMemoryLedger) -> None:
        ledger.transfer(ISSUER, OTHER, 400)
        assert ledger.balance(ISSUER) == 600
        assert ledger.balance(OTHER) == 400

    def test_transfer_insufficient(self, ledger: InMemoryLedger) -> None:
        with pytest.raises(InsufficientFunds):
            ledger.transfer(ISSUER, OTHER, 1_001)
        assert ledger.balance(ISSUER) == 1_000

    def test_credit_must_be_positive(self, ledger: InMemoryLedger) -> None:
        with pytest.raises(ValueError):
            ledger.credit(OTHER, 0)

    def test_negative_transfer_rejected(self, ledger: InMemoryLedger) -> None:
        with pytest.raises(ValueError):
            ledger.transfer(ISSUER, OTHER, -1)


class TestTransactions:
    def test_commit(self, ledger: InMemoryLedger) -> None:
        with ledger.transaction():
            ledger.create_account(ACCOUNT, {"n": 1})
            ledger.transfer(ISSUER, ACCOUNT, 300)
        assert ledger.account_exists(ACCOUNT)
        assert ledger.balance(ACCOUNT) == 300

    def test_rollback_on_error(self, ledger: InMemoryLedger) -> None:
        with pytest.raises(InsufficientFunds):
            with ledger.transaction():
                ledger.create_account(ACCOUNT, {"n": 1})
                ledger.transfer(ISSUER, ACCOUNT, 300)
                ledger.transfer(ISSUER, ACCOUNT, 800)
        assert not ledger.account_exists(ACCOUNT)
        assert ledger.balance(ISSUER) == 1_000
        assert ledger.balance(ACCOUNT) == 0

    def test_nested_failure_rolls_back_outer(self, ledger: InMemoryLedger) -> None:
        with pytest.raises(RuntimeError):
            with ledger.transaction():
                ledger.transfer(ISSUER, OTHER, 100)
                with ledger.transaction():
                    ledger.create_account(ACCOUNT, {"n": 1})
                raise RuntimeError("abort")
        assert ledger.balance(OTHER) == 0
        assert not ledger.account_exists(ACCOUNT)

    def test_rollback_restores_overwritten_data(self, ledger: InMemoryLedger) -> None:
        ledger.create_account(ACCOUNT, {"state": {"settled": 0}, "tags": ["a"]})
        with pytest.raises(RuntimeError):
            with ledger.transaction():
                ledger.write_data(ACCOUNT, {"state": {"settled": 90}, "tags": ["a", "b"]})
                raise RuntimeError("abort")
        assert ledger.read_data(ACCOUNT) == {"state": {"settled": 0}, "tags": ["a"]}

    def test_caller_mutation_after_write_does_not_leak(self, ledger: InMemoryLedger) -> None:
        data = {"state": {"settled": 0}}
        ledger.create_account(ACCOUNT, data)
        with pytest.raises(RuntimeError):
            with ledger.transaction():
                data["state"]["settled"] = 50
                ledger.write_data(ACCOUNT, data)
                data["state"]["settled"] = 75
                raise RuntimeError("abort")
        assert ledger.read_data(ACCOUNT) == {"state": {"settled": 0}}

    def test_concurrent_creates_yield_one_account(self, ledger: InMemoryLedger) -> None:
        successes: list[int] = []
        failures: list[int] = []
        barrier = threading.Barrier(8)

        def worker(n: int) -> None:
            barrier.wait()
            try:
                with ledger.transaction():
                    ledger.create_account(ACCOUNT, {"winner": n})
                successes.append(n)
            except AccountExists:
                failures.append(n)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 1
        assert len(failures) == 7
        assert ledger.read_data(ACCOUNT) == {"winner": successes[0]}


class TestSnapshot:
    def test_round_trip(self, ledger: InMemoryLedger) -> None:
        ledger.create_account(ACCOUNT, {"kind": "example"})
        ledger.transfer(ISSUER, ACCOUNT, 250)
        restored = InMemoryLedger.from_snapshot(ledger.snapshot())
        assert restored.balance(ISSUER) == 750
        assert restored.balance(ACCOUNT) == 250
        assert restored.read_data(ACCOUNT) == {"kind": "example"}
