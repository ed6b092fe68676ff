"""Ledger host — the atomic account and transfer primitives settlement runs on.

The settlement state machine never touches balances or account storage
directly. It goes through the LedgerHost contract:

    transaction()      one all-or-nothing unit of work
    create_account()   exclusive create (compare-and-insert); AccountExists if occupied
    transfer()         moves value; InsufficientFunds if the source is short

Any host that satisfies the Protocol can carry settlement. InMemoryLedger
is the reference host: a re-entrant lock serialises transactions, and an
exception anywhere inside the outermost transaction restores the snapshot
taken when it began. Two racing claims for the same receipt address
therefore resolve to exactly one receipt; the loser sees AccountExists.

Account data is stored as JSON-compatible dicts so a host snapshot can be
persisted verbatim.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Protocol, runtime_checkable

from distributor.crypto.leaf import keccak256
from distributor.errors import AccountExists, InsufficientFunds


def derive_address(seed: bytes, *parts: bytes) -> bytes:
    """Deterministic 32-byte address from a seed and ordered parts."""
    return keccak256(seed + b"".join(parts))


@runtime_checkable
class LedgerHost(Protocol):
    """Contract for hosts that execute settlement.

    Implementations must guarantee that create_account is exclusive per
    address, even under concurrent transactions, and that a transaction
    which raises leaves no partial effects.
    """

    def transaction(self) -> Any:
        """Context manager wrapping one atomic unit of work."""
        ...

    def create_account(self, address: bytes, data: dict[str, Any]) -> None:
        ...

    def account_exists(self, address: bytes) -> bool:
        ...

    def read_data(self, address: bytes) -> Optional[dict[str, Any]]:
        ...

    def write_data(self, address: bytes, data: dict[str, Any]) -> None:
        ...

    def iter_accounts(self) -> Iterator[tuple[bytes, dict[str, Any]]]:
        ...

    def balance(self, address: bytes) -> int:
        ...

    def credit(self, address: bytes, amount: int) -> None:
        ...

    def transfer(self, source: bytes, destination: bytes, amount: int) -> None:
        ...


class InMemoryLedger:
    """Reference LedgerHost with snapshot/rollback transactions.

    Usage:
        ledger = InMemoryLedger()
        ledger.credit(issuer, 1_000)
        with ledger.transaction():
            ledger.create_account(address, {"kind": "example"})
            ledger.transfer(issuer, address, 600)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._balances: dict[bytes, int] = {}
        self._accounts: dict[bytes, dict[str, Any]] = {}

    @contextmanager
    def transaction(self) -> Iterator[InMemoryLedger]:
        """Serialise and make atomic everything done inside the block.

        Nested transactions join the outermost one; only the outermost
        takes and restores the snapshot. Taking it copies the account
        index, so each transaction costs O(accounts): fine for a reference
        host, not for a ledger holding millions of receipts.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                saved_balances = dict(self._balances)
                # Stored dicts are replaced, never mutated, so a shallow copy suffices
                saved_accounts = dict(self._accounts)
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._balances = saved_balances
                    self._accounts = saved_accounts
                raise
            finally:
                self._depth -= 1

    # ------------------------------------------------------------------
    # Account storage
    # ------------------------------------------------------------------

    def create_account(self, address: bytes, data: dict[str, Any]) -> None:
        with self._lock:
            if address in self._accounts:
                raise AccountExists(f"Account 0x{address.hex()} already in use")
            self._accounts[address] = copy.deepcopy(data)

    def account_exists(self, address: bytes) -> bool:
        with self._lock:
            return address in self._accounts

    def read_data(self, address: bytes) -> Optional[dict[str, Any]]:
        with self._lock:
            data = self._accounts.get(address)
            return copy.deepcopy(data) if data is not None else None

    def write_data(self, address: bytes, data: dict[str, Any]) -> None:
        with self._lock:
            if address not in self._accounts:
                raise KeyError(f"No account at 0x{address.hex()}")
            self._accounts[address] = copy.deepcopy(data)

    def iter_accounts(self) -> Iterator[tuple[bytes, dict[str, Any]]]:
        with self._lock:
            items = [(a, copy.deepcopy(d)) for a, d in self._accounts.items()]
        return iter(items)

    # ------------------------------------------------------------------
    # Value
    # ------------------------------------------------------------------

    def balance(self, address: bytes) -> int:
        with self._lock:
            return self._balances.get(address, 0)

    def credit(self, address: bytes, amount: int) -> None:
        """Mint value into an address (funding outside the distributor)."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        with self._lock:
            self._balances[address] = self._balances.get(address, 0) + amount

    def transfer(self, source: bytes, destination: bytes, amount: int) -> None:
        if amount < 0:
            raise ValueError("Transfer amount must be non-negative")
        with self._lock:
            available = self._balances.get(source, 0)
            if available < amount:
                raise InsufficientFunds(
                    f"0x{source.hex()} holds {available}, transfer needs {amount}"
                )
            self._balances[source] = available - amount
            self._balances[destination] = self._balances.get(destination, 0) + amount

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """JSON-compatible copy of the whole host state."""
        with self._lock:
            return {
                "balances": {a.hex(): v for a, v in self._balances.items()},
                "accounts": {
                    a.hex(): copy.deepcopy(d) for a, d in self._accounts.items()
                },
            }

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> InMemoryLedger:
        ledger = cls()
        ledger._balances = {
            bytes.fromhex(a): int(v)
            for a, v in snapshot.get("balances", {}).items()
        }
        ledger._accounts = {
            bytes.fromhex(a): copy.deepcopy(d)
            for a, d in snapshot.get("accounts", {}).items()
        }
        return ledger
