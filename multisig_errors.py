"""
Error kinds raised by the multisig coordinator.

Every error carries a ``kind`` (stable string used by the MCP layer) and a
``context`` dict with the offending field or the current/expected state.
"""

from __future__ import annotations

from typing import Any


class MultisigConfigError(Exception):
    """Configuration error for the multisig coordinator."""

    pass


class MultisigError(Exception):
    kind = "MultisigError"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "error_kind": self.kind, "context": self.context}


class InvalidParameter(MultisigError):
    kind = "InvalidParameter"


class UnknownSigner(InvalidParameter):
    kind = "UnknownSigner"


class InvalidThreshold(MultisigError):
    kind = "InvalidThreshold"


class ParticipantCountMismatch(MultisigError):
    kind = "ParticipantCountMismatch"


class DuplicateParticipant(MultisigError):
    kind = "DuplicateParticipant"


class WalletNotFound(MultisigError):
    kind = "WalletNotFound"


class TransactionNotFound(MultisigError):
    kind = "TransactionNotFound"


class DuplicateTransaction(MultisigError):
    kind = "DuplicateTransaction"


class InvalidStateTransition(MultisigError):
    kind = "InvalidStateTransition"


class DuplicateSigner(MultisigError):
    kind = "DuplicateSigner"


class NoFundsAvailable(MultisigError):
    kind = "NoFundsAvailable"


class InsufficientFunds(MultisigError):
    kind = "InsufficientFunds"


class UnsupportedScriptType(MultisigError):
    kind = "UnsupportedScriptType"


class SignatureRejected(MultisigError):
    """The script engine refused a signature for an input."""

    kind = "SignatureRejected"


class UpstreamUnavailable(MultisigError):
    """A blockchain backend (node RPC or indexer) call failed."""

    kind = "UpstreamUnavailable"
