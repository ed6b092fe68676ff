"""Distributor CLI — build trees, issue proofs, and settle claims.

Usage:
    python -m distributor validate --recipients recipients.json
    python -m distributor build-tree --recipients recipients.json
    python -m distributor proof --recipients recipients.json --public-key <base58>
    python -m distributor proof --recipients recipients.json --all
    python -m distributor verify --recipients recipients.json --public-key <base58>
    python -m distributor fund --account <base58> --amount 450
    python -m distributor initialize --recipients recipients.json --issuer <base58>
    python -m distributor claim --recipients recipients.json --public-key <base58> --commitment <hex>
    python -m distributor status
    python -m distributor anchor-root --commitment <hex>
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path

from distributor.config import DistributorConfig
from distributor.crypto.verifier import verify_claim
from distributor.errors import MalformedInput
from distributor.recipients import (
    all_proofs,
    decode_public_key,
    generate_merkle_root,
    load_recipients,
    parse_root,
    proof_for_recipient,
    validate_recipients,
)
from distributor.service import DistributorService, ServiceResult


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"


def _load_config(args: argparse.Namespace) -> DistributorConfig:
    config = DistributorConfig.from_config_dir(args.config)
    if args.data_dir is not None:
        config = dataclasses.replace(config, data_dir=args.data_dir)
    return config


def _make_service(args: argparse.Namespace) -> DistributorService:
    """Create a DistributorService with durable persistence."""
    return DistributorService.from_config(_load_config(args))


def _report(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2))
        return 0
    code = f" [{result.code}]" if result.code else ""
    print(f"Failed{code}: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def _parse_commitment(value: str) -> bytes:
    try:
        return parse_root(value)
    except MalformedInput as e:
        raise argparse.ArgumentTypeError(f"invalid commitment id: {e}") from e


def cmd_validate(args: argparse.Namespace) -> int:
    data = load_recipients(args.recipients)
    errors = validate_recipients(data)
    if errors:
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        print(f"Validation failed with {len(errors)} error(s)", file=sys.stderr)
        return 1
    print(f"Recipients file valid: {len(data['recipients'])} recipients, "
          f"total {data['totalAmount']}")
    return 0


def cmd_build_tree(args: argparse.Namespace) -> int:
    try:
        tree = generate_merkle_root(args.recipients)
    except MalformedInput as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(json.dumps({
        "merkleRoot": tree.root_hex,
        "leafCount": tree.leaf_count,
        "height": tree.height,
    }, indent=2))
    return 0


def cmd_proof(args: argparse.Namespace) -> int:
    data = load_recipients(args.recipients)
    errors = validate_recipients(data)
    if errors:
        print(f"Failed: {'; '.join(errors)}", file=sys.stderr)
        return 1

    if args.all:
        proofs = {key: claim.to_dict() for key, claim in all_proofs(data).items()}
        output = json.dumps(proofs, indent=2)
    else:
        claim = proof_for_recipient(data, args.public_key)
        if claim is None:
            print(f"Recipient {args.public_key} not found in recipients list", file=sys.stderr)
            return 1
        output = json.dumps(claim.to_dict(), indent=2)

    if args.output:
        args.output.write_text(output + "\n", encoding="utf-8")
        print(f"Proofs written to {args.output}")
    else:
        print(output)
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Check a recipient's proof against a root without touching the ledger."""
    data = load_recipients(args.recipients)
    claim = proof_for_recipient(data, args.public_key)
    if claim is None:
        print(f"Recipient {args.public_key} not found in recipients list", file=sys.stderr)
        return 1

    root_hex = args.root or data.get("merkleRoot")
    if not root_hex:
        print("No root given and recipients file has no merkleRoot", file=sys.stderr)
        return 1
    try:
        root = parse_root(root_hex)
    except MalformedInput as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1

    leaf_count = len(data["recipients"])
    if verify_claim(
        claim.recipient, claim.amount, claim.leaf_index, claim.proof,
        expected_root=root, leaf_count=leaf_count,
    ):
        print(f"Proof valid for {args.public_key} against root {root_hex}")
        return 0
    print(f"Proof INVALID for {args.public_key} against root {root_hex}", file=sys.stderr)
    return 1


def cmd_fund(args: argparse.Namespace) -> int:
    service = _make_service(args)
    try:
        account = decode_public_key(args.account)
    except MalformedInput as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    return _report(service.fund_account(account, args.amount))


def cmd_initialize(args: argparse.Namespace) -> int:
    service = _make_service(args)
    data = load_recipients(args.recipients)
    try:
        issuer = decode_public_key(args.issuer)
    except MalformedInput as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    result = service.initialize_from_recipients(
        data, issuer, nonce=args.nonce.encode("utf-8"),
    )
    return _report(result)


def cmd_claim(args: argparse.Namespace) -> int:
    service = _make_service(args)
    data = load_recipients(args.recipients)
    result = service.claim_from_recipients(data, args.commitment, args.public_key)
    return _report(result)


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if args.commitment is not None:
        return _report(service.commitment_status(args.commitment))
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_anchor_root(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.anchor_commitment(args.commitment))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="distributor",
        description="Merkle distributor — commitment and claim settlement CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Override the state directory from config",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    # validate
    p_val = sub.add_parser("validate", help="Validate a recipients file")
    p_val.add_argument("--recipients", type=Path, required=True)

    # build-tree
    p_build = sub.add_parser("build-tree", help="Build the tree and write merkleRoot")
    p_build.add_argument("--recipients", type=Path, required=True)

    # proof
    p_proof = sub.add_parser("proof", help="Generate claim proofs")
    p_proof.add_argument("--recipients", type=Path, required=True)
    which = p_proof.add_mutually_exclusive_group(required=True)
    which.add_argument("--public-key", help="Recipient public key (base58)")
    which.add_argument("--all", action="store_true", help="Proofs for every recipient")
    p_proof.add_argument("--output", type=Path, help="Write JSON here instead of stdout")

    # verify
    p_verify = sub.add_parser("verify", help="Verify a proof off-ledger")
    p_verify.add_argument("--recipients", type=Path, required=True)
    p_verify.add_argument("--public-key", required=True)
    p_verify.add_argument("--root", help="Root to check against (default: file's merkleRoot)")

    # fund
    p_fund = sub.add_parser("fund", help="Credit an account on the local ledger")
    p_fund.add_argument("--account", required=True, help="Account public key (base58)")
    p_fund.add_argument("--amount", type=int, required=True, help="Base units")

    # initialize
    p_init = sub.add_parser("initialize", help="Commit a root and fund its escrow")
    p_init.add_argument("--recipients", type=Path, required=True)
    p_init.add_argument("--issuer", required=True, help="Issuer public key (base58)")
    p_init.add_argument("--nonce", default="", help="Separates commitments by one issuer")

    # claim
    p_claim = sub.add_parser("claim", help="Settle a recipient's claim")
    p_claim.add_argument("--recipients", type=Path, required=True)
    p_claim.add_argument("--public-key", required=True)
    p_claim.add_argument("--commitment", type=_parse_commitment, required=True)

    # status
    p_status = sub.add_parser("status", help="Show ledger and commitment status")
    p_status.add_argument("--commitment", type=_parse_commitment)

    # anchor-root
    p_anchor = sub.add_parser("anchor-root", help="Anchor a commitment digest on-chain")
    p_anchor.add_argument("--commitment", type=_parse_commitment, required=True)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "validate": cmd_validate,
        "build-tree": cmd_build_tree,
        "proof": cmd_proof,
        "verify": cmd_verify,
        "fund": cmd_fund,
        "initialize": cmd_initialize,
        "claim": cmd_claim,
        "status": cmd_status,
        "anchor-root": cmd_anchor_root,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
