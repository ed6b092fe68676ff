"""Root anchoring — publishes a commitment digest on an EVM chain.

Anchoring embeds the keccak digest of a commitment (identifier, root,
issuer, total, leaf count) in the data field of a 0-value self-send
transaction. Anyone holding the recipient list can then check that the
root they rebuild is the one the issuer published, and when.

This is NOT a smart contract. No code executes on-chain; the chain is a
timestamped witness only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from distributor.crypto.leaf import keccak256
from distributor.models.settlement import CommitmentState

logger = logging.getLogger(__name__)

SEPOLIA_CHAIN_ID = 11155111
DEFAULT_EXPLORER_TX_URL = "https://sepolia.etherscan.io/tx/{tx_hash}"


@dataclass(frozen=True)
class AnchorRecord:
    """A record of a successful chain anchor."""
    commitment_id: str
    digest: str
    tx_hash: str
    block_number: int
    chain_id: int
    timestamp_utc: str
    explorer_url: str


def commitment_digest(state: CommitmentState) -> str:
    """Keccak digest (hex, no prefix) over the immutable commitment fields.

    total_settled is excluded: it changes with every claim, and the
    anchor attests to what was committed, not to settlement progress.
    """
    canonical = b"".join((
        state.commitment_id,
        state.root,
        state.issuer,
        state.total_allocated.to_bytes(8, "little"),
        state.leaf_count.to_bytes(8, "little"),
    ))
    return keccak256(canonical).hex()


def anchor_to_chain(
    digest: str,
    rpc_url: str,
    private_key: str,
    chain_id: int = SEPOLIA_CHAIN_ID,
    gas: int = 30_000,
    gas_price_gwei: str = "2",
    explorer_tx_url: str = DEFAULT_EXPLORER_TX_URL,
    commitment_id: str = "",
) -> AnchorRecord:
    """Anchor a digest by embedding it in a transaction.

    Sends a 0-value self-send with the digest in the data field and
    waits for one confirmation.

    Args:
        digest: Hex digest to anchor (no 0x prefix).
        rpc_url: JSON-RPC endpoint URL.
        private_key: Hex-encoded private key for signing.
        chain_id: Network chain ID (default: Sepolia).
        gas: Gas limit for the transaction.
        gas_price_gwei: Gas price in gwei.
        explorer_tx_url: Template with a ``{tx_hash}`` placeholder.
        commitment_id: Hex identifier recorded on the returned record.

    Returns:
        AnchorRecord with transaction details.
    """
    from web3 import Web3, HTTPProvider
    from eth_account import Account

    w3 = Web3(HTTPProvider(rpc_url))
    acct = Account.from_key(private_key)

    nonce = w3.eth.get_transaction_count(acct.address)
    tx = {
        "to": acct.address,  # self-send, 0 value
        "value": 0,
        "gas": gas,
        "gasPrice": w3.to_wei(gas_price_gwei, "gwei"),
        "nonce": nonce,
        "chainId": chain_id,
        "data": bytes.fromhex(digest),
    }

    signed = acct.sign_transaction(tx)
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    logger.info("Anchor tx sent: %s, waiting for confirmation", tx_hash.hex())

    receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=300)

    explorer_url = explorer_tx_url.format(tx_hash=tx_hash.hex())
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    logger.info("Anchor confirmed in block %s", receipt.blockNumber)

    return AnchorRecord(
        commitment_id=commitment_id,
        digest=digest,
        tx_hash=tx_hash.hex(),
        block_number=receipt.blockNumber,
        chain_id=chain_id,
        timestamp_utc=now,
        explorer_url=explorer_url,
    )
