"""Persistence — append-only audit log and durable ledger snapshots."""

from distributor.persistence.event_log import EventKind, EventLog, EventRecord
from distributor.persistence.state_store import StateStore

__all__ = ["EventKind", "EventLog", "EventRecord", "StateStore"]
