"""Unsigned transaction assembly and signed transaction parsing."""

from __future__ import annotations

from dataclasses import dataclass
import base64
import binascii
import logging
from typing import List, Sequence

from solders.errors import BincodeError
from solders.instruction import Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from .errors import DecodeError, MissingSignatureError, ValidationError
from .rpc import Checkpoint, Ledger

logger = logging.getLogger(__name__)

PLACEHOLDER_SIGNATURE = Signature.default()


@dataclass(frozen=True)
class UnsignedTransaction:
    raw: bytes
    message: Message
    fee_payer: Pubkey
    checkpoint: Checkpoint

    def to_base64(self) -> str:
        return base64.b64encode(self.raw).decode("ascii")


@dataclass(frozen=True)
class SignedTransaction:
    raw: bytes
    transaction: Transaction

    @property
    def message(self) -> Message:
        return self.transaction.message

    @property
    def fee_payer(self) -> Pubkey:
        return self.transaction.message.account_keys[0]

    @property
    def signature(self) -> Signature:
        """Fee-payer signature; the ledger identifies the transaction by it."""
        return self.transaction.signatures[0]

    def missing_signers(self) -> List[Pubkey]:
        required = self.message.header.num_required_signatures
        keys = self.message.account_keys[:required]
        return [
            key
            for key, sig in zip(keys, self.transaction.signatures)
            if sig == PLACEHOLDER_SIGNATURE
        ]


class TransactionBuilder:
    """Assembles instructions into a transaction nobody has signed yet."""

    def __init__(self, ledger: Ledger) -> None:
        self.ledger = ledger

    def build_unsigned(self, instructions: Sequence[Instruction], fee_payer: Pubkey) -> UnsignedTransaction:
        if not instructions:
            raise ValidationError("a transaction needs at least one instruction")
        # Fetched last so the blockhash is as fresh as possible when signing starts.
        checkpoint = self.ledger.get_recent_checkpoint()
        message = Message.new_with_blockhash(list(instructions), fee_payer, checkpoint.blockhash)
        tx = Transaction.new_unsigned(message)
        raw = bytes(tx)
        logger.debug(
            "built unsigned transaction payer=%s instructions=%d size=%d blockhash=%s",
            fee_payer,
            len(instructions),
            len(raw),
            checkpoint.blockhash,
        )
        return UnsignedTransaction(raw, message, fee_payer, checkpoint)


def decode_base64(text: str, what: str = "transaction") -> bytes:
    try:
        return base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"{what} is not valid base64") from exc


def parse_transaction(raw: bytes) -> Transaction:
    try:
        return Transaction.from_bytes(bytes(raw))
    except (BincodeError, ValueError) as exc:
        raise DecodeError(f"failed to decode transaction: {exc}") from exc


def parse_signed(raw: bytes) -> SignedTransaction:
    """Decode an externally signed transaction.

    Raises :class:`MissingSignatureError` when the fee payer's slot still holds
    the all-zero placeholder.
    """
    tx = parse_transaction(raw)
    if not tx.signatures:
        raise MissingSignatureError("transaction carries no signature slots")
    signed = SignedTransaction(bytes(raw), tx)
    if signed.signature == PLACEHOLDER_SIGNATURE:
        raise MissingSignatureError(f"transaction is not signed by fee payer {signed.fee_payer}")
    missing = signed.missing_signers()
    if missing:
        logger.warning("transaction still lacks signatures from: %s", ", ".join(map(str, missing)))
    return signed
