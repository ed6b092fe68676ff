"""State store — durable JSON snapshot of the ledger host.

The CLI runs one command per process, so host state (balances,
commitment accounts, receipts) has to survive between invocations. The
store writes the whole snapshot to a temporary file and renames it over
the previous one, so a crash mid-write never leaves a torn file.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from distributor.settlement.ledger import InMemoryLedger

SNAPSHOT_VERSION = 1


class StateStore:
    """Load and save InMemoryLedger snapshots at a fixed path."""

    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path

    @property
    def path(self) -> Path:
        return self._storage_path

    def load_ledger(self) -> InMemoryLedger:
        """Return the persisted ledger, or an empty one if nothing is stored."""
        snapshot = self._read()
        if snapshot is None:
            return InMemoryLedger()
        version = snapshot.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(
                f"Unsupported state snapshot version {version!r} in {self._storage_path}"
            )
        return InMemoryLedger.from_snapshot(snapshot["ledger"])

    def save_ledger(self, ledger: InMemoryLedger) -> None:
        """Atomically replace the stored snapshot. Raises OSError on failure."""
        payload = {"version": SNAPSHOT_VERSION, "ledger": ledger.snapshot()}
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, sort_keys=True, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self._storage_path)

    def _read(self) -> Optional[dict[str, Any]]:
        if not self._storage_path.exists():
            return None
        with self._storage_path.open("r", encoding="utf-8") as f:
            return json.load(f)
