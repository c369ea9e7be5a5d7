"""Instruction payload encoding for the envelope program."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import struct
from typing import ClassVar, Mapping, Optional, Tuple, Union

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from . import accounts
from .constants import (
    DISCRIMINATOR_SIZE,
    PUBKEY_SIZE,
    VARIANT_DIRECT_FIXED,
    VARIANT_GROUP_FIXED,
    VARIANT_GROUP_RANDOM,
    VARIANT_NAMES,
)
from .errors import DecodeError, ValidationError
from .schema import DEFAULT_SCHEMA_VERSION, get_schema
from .tables import ProgramTables
from .util import ensure_u64, to_pubkey

logger = logging.getLogger(__name__)

_CREATE_TAIL = struct.Struct("<QQQ")


@dataclass(frozen=True)
class DirectFixed:
    allowed: Pubkey
    tag: ClassVar[int] = VARIANT_DIRECT_FIXED


@dataclass(frozen=True)
class GroupFixed:
    tag: ClassVar[int] = VARIANT_GROUP_FIXED


@dataclass(frozen=True)
class GroupRandom:
    tag: ClassVar[int] = VARIANT_GROUP_RANDOM


EnvelopeVariant = Union[DirectFixed, GroupFixed, GroupRandom]

_VARIANT_ALIASES = {
    "direct_fixed": VARIANT_DIRECT_FIXED,
    "directfixed": VARIANT_DIRECT_FIXED,
    "group_fixed": VARIANT_GROUP_FIXED,
    "groupfixed": VARIANT_GROUP_FIXED,
    "group_random": VARIANT_GROUP_RANDOM,
    "grouprandom": VARIANT_GROUP_RANDOM,
}


def variant_name(variant: EnvelopeVariant) -> str:
    return VARIANT_NAMES[variant.tag]


def make_variant(kind: str, allowed: Optional[object] = None) -> EnvelopeVariant:
    tag = _VARIANT_ALIASES.get(kind.strip().lower())
    if tag is None:
        raise ValidationError(
            f"unsupported envelope type '{kind}' (expected direct_fixed|group_fixed|group_random)"
        )
    if tag == VARIANT_DIRECT_FIXED:
        if allowed is None:
            raise ValidationError("allowed address required for DirectFixed")
        return DirectFixed(to_pubkey(allowed, "allowed"))
    if allowed is not None:
        raise ValidationError("allowed address is only valid for DirectFixed")
    return GroupFixed() if tag == VARIANT_GROUP_FIXED else GroupRandom()


@dataclass(frozen=True)
class CreateParams:
    variant: EnvelopeVariant
    total_amount: int
    total_slots: int
    # Expiry duration in the deployment's configured unit.
    expiry: int

    def validate(self) -> "CreateParams":
        if not isinstance(self.variant, (DirectFixed, GroupFixed, GroupRandom)):
            raise ValidationError("variant must be DirectFixed, GroupFixed or GroupRandom")
        ensure_u64(self.total_amount, "total_amount")
        ensure_u64(self.total_slots, "total_slots")
        ensure_u64(self.expiry, "expiry")
        if self.total_amount == 0:
            raise ValidationError("total_amount must be greater than zero")
        if self.total_slots == 0:
            raise ValidationError("total_slots must be greater than zero")
        if self.expiry == 0:
            raise ValidationError("expiry must be greater than zero")
        if isinstance(self.variant, DirectFixed) and self.total_slots != 1:
            raise ValidationError("DirectFixed envelopes require exactly one claimer slot")
        return self


@dataclass(frozen=True)
class DecodedInstruction:
    operation: str
    params: Optional[CreateParams] = None


def encode_variant(variant: EnvelopeVariant) -> bytes:
    if isinstance(variant, DirectFixed):
        return bytes([variant.tag]) + bytes(variant.allowed)
    return bytes([variant.tag])


def decode_variant(data: bytes, offset: int) -> Tuple[EnvelopeVariant, int]:
    """Decode a compact variant at ``offset``; return it and the bytes consumed."""
    if offset >= len(data):
        raise DecodeError("variant tag missing")
    tag = data[offset]
    if tag == VARIANT_DIRECT_FIXED:
        end = offset + 1 + PUBKEY_SIZE
        if end > len(data):
            raise DecodeError("DirectFixed variant truncated")
        return DirectFixed(Pubkey(bytes(data[offset + 1 : end]))), 1 + PUBKEY_SIZE
    if tag == VARIANT_GROUP_FIXED:
        return GroupFixed(), 1
    if tag == VARIANT_GROUP_RANDOM:
        return GroupRandom(), 1
    raise DecodeError(f"unknown envelope type: {tag}")


@dataclass
class InstructionCodec:
    """Builds envelope program instructions from typed parameters."""

    tables: ProgramTables
    program_id: Pubkey
    mint: Pubkey
    schema_version: str = DEFAULT_SCHEMA_VERSION

    def encode(self, operation: str, params: Optional[CreateParams] = None) -> bytes:
        disc = self.tables.instruction(operation)
        if operation == "create":
            if params is None:
                raise ValidationError("create requires parameters")
            params.validate()
            return (
                disc
                + encode_variant(params.variant)
                + _CREATE_TAIL.pack(params.total_amount, params.total_slots, params.expiry)
            )
        if params is not None:
            raise ValidationError(f"{operation} takes no payload parameters")
        return disc

    def decode(self, data: bytes) -> DecodedInstruction:
        if len(data) < DISCRIMINATOR_SIZE:
            raise DecodeError(f"instruction data too short: {len(data)} bytes")
        operation = self.tables.operation_for(bytes(data[:DISCRIMINATOR_SIZE]))
        if operation is None:
            raise DecodeError(f"unknown instruction discriminator: {bytes(data[:8]).hex()}")
        if operation != "create":
            if len(data) != DISCRIMINATOR_SIZE:
                raise DecodeError(f"{operation} carries unexpected payload bytes")
            return DecodedInstruction(operation)
        variant, used = decode_variant(data, DISCRIMINATOR_SIZE)
        offset = DISCRIMINATOR_SIZE + used
        if len(data) != offset + _CREATE_TAIL.size:
            raise DecodeError(
                f"create payload must be {offset + _CREATE_TAIL.size} bytes, got {len(data)}"
            )
        total_amount, total_slots, expiry = _CREATE_TAIL.unpack_from(data, offset)
        return DecodedInstruction(
            "create",
            CreateParams(variant, total_amount, total_slots, expiry),
        )

    def instruction(
        self,
        operation: str,
        accounts_by_role: Mapping[str, Pubkey],
        params: Optional[CreateParams] = None,
    ) -> Instruction:
        schema = get_schema(operation, self.schema_version)
        metas = schema.metas(accounts_by_role)
        data = self.encode(operation, params)
        logger.debug("%s instruction data (%d bytes): %s", operation, len(data), data.hex())
        return Instruction(self.program_id, data, metas)

    # Per-operation builders deriving every program-owned account.

    def init_user_state(self, user: Pubkey) -> Instruction:
        user_state = accounts.derive_user_state(self.program_id, user).address
        return self.instruction("init_user_state", {"user_state": user_state, "user": user})

    def create(self, user: Pubkey, envelope_id: int, params: CreateParams) -> Instruction:
        addresses = accounts.derive_addresses(self.program_id, user, envelope_id)
        return self.instruction(
            "create",
            {
                "user_state": addresses.user_state.address,
                "envelope": addresses.envelope.address,
                "vault": addresses.vault.address,
                "user_token_account": accounts.derive_token_account(user, self.mint),
                "mint": self.mint,
                "user": user,
            },
            params,
        )

    def claim(self, owner: Pubkey, claimer: Pubkey, envelope_id: int) -> Instruction:
        addresses = accounts.derive_addresses(self.program_id, owner, envelope_id, claimer)
        return self.instruction(
            "claim",
            {
                "envelope": addresses.envelope.address,
                "vault": addresses.vault.address,
                "claimer_token_account": accounts.derive_token_account(claimer, self.mint),
                "claim_record": addresses.claim_record.address,
                "claimer": claimer,
            },
        )

    def refund(self, owner: Pubkey, envelope_id: int) -> Instruction:
        addresses = accounts.derive_addresses(self.program_id, owner, envelope_id)
        return self.instruction(
            "refund",
            {
                "envelope": addresses.envelope.address,
                "vault": addresses.vault.address,
                "owner_token_account": accounts.derive_token_account(owner, self.mint),
                "owner": owner,
            },
        )

    def cancel(self, owner: Pubkey, envelope_id: int) -> Instruction:
        addresses = accounts.derive_addresses(self.program_id, owner, envelope_id)
        return self.instruction(
            "cancel",
            {
                "envelope": addresses.envelope.address,
                "user_state": addresses.user_state.address,
                "owner": owner,
            },
        )

    def close(self, owner: Pubkey, envelope_id: int) -> Instruction:
        envelope = accounts.derive_envelope(self.program_id, owner, envelope_id).address
        return self.instruction("close", {"envelope": envelope, "owner": owner})
