"""Settlement subsystem — ledger host primitives and the claim state machine."""

from distributor.settlement.ledger import InMemoryLedger, LedgerHost, derive_address
from distributor.settlement.state_machine import (
    SettlementStateMachine,
    commitment_address,
    commitment_id_for,
    receipt_address,
)

__all__ = [
    "InMemoryLedger",
    "LedgerHost",
    "SettlementStateMachine",
    "commitment_address",
    "commitment_id_for",
    "derive_address",
    "receipt_address",
]
