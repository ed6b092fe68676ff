"""Distributor configuration — JSON config directory plus environment secrets.

Non-secret settings live in ``config/distributor.json``. Secrets and
per-machine paths come from the environment, optionally loaded from a
``.env`` file at the project root:

    ANCHOR_RPC_URL          JSON-RPC endpoint for root anchoring
    ANCHOR_PRIVATE_KEY      signing key for the anchor transaction
    DISTRIBUTOR_DATA_DIR    overrides ``data_dir`` from the JSON config
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

CONFIG_FILENAME = "distributor.json"

_REQUIRED_KEYS = (
    "network",
    "chain_id",
    "base_unit_name",
    "base_unit_decimals",
    "data_dir",
)


@dataclass(frozen=True)
class DistributorConfig:
    """Resolved configuration. Immutable once loaded."""
    network: str
    chain_id: int
    base_unit_name: str
    base_unit_decimals: int
    data_dir: Path
    anchor_gas: int = 30_000
    anchor_gas_price_gwei: str = "2"
    explorer_tx_url: str = "https://sepolia.etherscan.io/tx/{tx_hash}"
    anchor_rpc_url: Optional[str] = None
    anchor_private_key: Optional[str] = None

    @classmethod
    def from_config_dir(
        cls,
        config_dir: Path,
        env_file: Optional[Path] = None,
    ) -> DistributorConfig:
        """Load ``distributor.json`` from config_dir and overlay the environment.

        Relative data_dir values resolve against the config directory's
        parent (the project root).
        """
        if env_file is not None:
            load_dotenv(env_file)
        else:
            load_dotenv(config_dir.parent / ".env")

        path = config_dir / CONFIG_FILENAME
        with path.open("r", encoding="utf-8") as handle:
            raw: dict[str, Any] = json.load(handle)

        missing = [k for k in _REQUIRED_KEYS if k not in raw]
        if missing:
            raise ValueError(f"{path} missing required keys: {', '.join(missing)}")

        data_dir = Path(os.getenv("DISTRIBUTOR_DATA_DIR") or raw["data_dir"])
        if not data_dir.is_absolute():
            data_dir = config_dir.parent / data_dir

        decimals = int(raw["base_unit_decimals"])
        if decimals < 0:
            raise ValueError(f"base_unit_decimals must be >= 0, got {decimals}")

        return cls(
            network=str(raw["network"]),
            chain_id=int(raw["chain_id"]),
            base_unit_name=str(raw["base_unit_name"]),
            base_unit_decimals=decimals,
            data_dir=data_dir,
            anchor_gas=int(raw.get("anchor_gas", 30_000)),
            anchor_gas_price_gwei=str(raw.get("anchor_gas_price_gwei", "2")),
            explorer_tx_url=str(
                raw.get("explorer_tx_url", "https://sepolia.etherscan.io/tx/{tx_hash}")
            ),
            anchor_rpc_url=os.getenv("ANCHOR_RPC_URL"),
            anchor_private_key=os.getenv("ANCHOR_PRIVATE_KEY"),
        )

    @property
    def has_anchor_credentials(self) -> bool:
        return bool(self.anchor_rpc_url and self.anchor_private_key)

    def format_amount(self, amount: int) -> str:
        """Render a base-unit amount in whole units, e.g. 100000000 → '0.1 SOL'."""
        if self.base_unit_decimals == 0:
            return f"{amount} {self.base_unit_name}"
        whole, frac = divmod(amount, 10 ** self.base_unit_decimals)
        frac_str = str(frac).rjust(self.base_unit_decimals, "0").rstrip("0")
        value = f"{whole}.{frac_str}" if frac_str else str(whole)
        return f"{value} {self.base_unit_name}"
