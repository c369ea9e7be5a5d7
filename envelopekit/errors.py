"""Error taxonomy and program error codes for the envelope program."""

from __future__ import annotations

from typing import Optional

# Custom codes declared by the envelope program (Anchor offsets them by 6000).
PROGRAM_ERRORS = {
    6000: "InvalidOwner - You are not the owner of this envelope",
    6001: "AlreadyClaimed - You have already claimed this envelope",
    6002: "NotAllowed - You are not allowed to claim this envelope",
    6003: "QuotaFull - Maximum claimers reached",
    6004: "Expired - Envelope has expired",
    6005: "NotExpired - Envelope not expired yet (cannot refund)",
    6006: "ExceedMaxCreate - Amount exceeds maximum allowed",
    6007: "NotExpired - Envelope not expired yet",
    6008: "MathOverflow - Math calculation overflow",
    6009: "InsufficientFunds - Insufficient funds in envelope",
    6010: "NothingToRefund - Nothing to refund",
}

# Framework codes raised by Anchor before the handler runs.
ANCHOR_ERRORS = {
    100: "InstructionMissing - 8 byte instruction identifier not provided",
    101: "InstructionFallbackNotFound - Fallback functions are not supported",
    102: "InstructionDidNotDeserialize - The program could not deserialize the given instruction",
    2000: "ConstraintMut - A mut constraint was violated",
    2002: "ConstraintSigner - A signer constraint was violated",
    2003: "ConstraintRaw - A raw constraint was violated",
    2006: "ConstraintSeeds - A seeds constraint was violated",
    3001: "AccountDiscriminatorNotFound - No 8 byte discriminator was found on the account",
    3002: "AccountDiscriminatorMismatch - 8 byte discriminator did not match what was expected",
    3003: "AccountDidNotDeserialize - Failed to deserialize the account",
    3007: "AccountOwnedByWrongProgram - The given account is owned by a different program than expected",
    3010: "AccountNotSigner - The given account did not sign",
    3012: "AccountNotInitialized - The program expected this account to be already initialized",
}

CONSTRAINT_SEEDS = 2006
# System program "account already in use" when init hits an existing address.
SYSTEM_ACCOUNT_IN_USE = 0


class EnvelopeKitError(Exception):
    """Base class for every error raised by EnvelopeKit."""


class ValidationError(EnvelopeKitError, ValueError):
    """Raised when operation parameters fail validation before encoding."""


class DecodeError(EnvelopeKitError, ValueError):
    """Raised when bytes are malformed or shorter than their layout requires."""


class MissingSignatureError(DecodeError):
    """Raised when a supposedly signed transaction still carries a placeholder."""


class AddressDerivationExhausted(EnvelopeKitError, RuntimeError):
    """Raised when no bump in 255..0 yields an off-curve address."""


class TransportError(EnvelopeKitError):
    """Network or RPC failure talking to the ledger."""

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail if detail is not None else message


class SubmissionRejected(TransportError):
    """The RPC node answered, but rejected the transaction."""

    def __init__(self, message: str, detail: Optional[str] = None, logs: Optional[list] = None) -> None:
        super().__init__(message, detail)
        self.logs = list(logs or [])


class StaleFreshnessToken(EnvelopeKitError):
    """The recent blockhash anchoring the transaction is no longer valid."""


class RemoteProgramError(EnvelopeKitError):
    """The envelope program rejected the instruction with a numeric code."""

    def __init__(self, code: int, message: Optional[str] = None) -> None:
        text = message or f"Custom program error code: {code}"
        super().__init__(text)
        self.code = code
        self.known_message = message


class PredictedIdConflict(RemoteProgramError):
    """The locally predicted envelope id was taken by a concurrent create."""


class UnknownFlowError(EnvelopeKitError, KeyError):
    """No pending flow is registered under the given correlation id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown flow"
