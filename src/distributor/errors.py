"""Error taxonomy for the distributor.

Every failure the core can produce is a DistributorError subclass with a
stable ``code``. The service layer converts these to ServiceResult
values; everything below the service layer raises.

Categories:
- Caller input errors (MalformedInput) — fix the input, then retry.
- Builder/extractor misuse (EmptyInput, IndexOutOfRange) — fatal to the call.
- Cryptographic rejection (InvalidProof) — never retried with the same input.
- State-machine misuse (AlreadyInitialized, NotInitialized).
- Idempotence signal (AlreadyClaimed) — the expected outcome of a resubmitted claim.
- Bookkeeping violation (InsufficientEscrow) — fatal to the commitment.
- Host primitives (AccountExists, InsufficientFunds).
"""

from __future__ import annotations


class DistributorError(Exception):
    """Base class for all distributor failures."""

    code = "distributor_error"


class MalformedInput(DistributorError, ValueError):
    """Leaf inputs are not well-formed (wrong identifier width, bad amount)."""

    code = "malformed_input"


class EmptyInput(DistributorError, ValueError):
    """A tree was requested over zero allocation records."""

    code = "empty_input"


class IndexOutOfRange(DistributorError, IndexError):
    """A leaf index does not address a leaf of the tree."""

    code = "index_out_of_range"


class InvalidProof(DistributorError):
    """The recomputed root does not match the committed root."""

    code = "invalid_proof"


class AlreadyInitialized(DistributorError):
    """A commitment already exists for this identifier."""

    code = "already_initialized"


class NotInitialized(DistributorError):
    """No commitment exists for this identifier."""

    code = "not_initialized"


class AlreadyClaimed(DistributorError):
    """A claim receipt already exists for this (commitment, recipient)."""

    code = "already_claimed"


class InsufficientEscrow(DistributorError):
    """Escrow cannot cover a verified claim.

    Unreachable when initialization accounting is correct. Seeing this
    means the commitment's bookkeeping is broken.
    """

    code = "insufficient_escrow"


class AccountExists(DistributorError):
    """Host refused to create an account at an occupied address."""

    code = "account_exists"


class InsufficientFunds(DistributorError):
    """Host refused a transfer that exceeds the source balance."""

    code = "insufficient_funds"
