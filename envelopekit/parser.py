"""Account state decoding for the envelope program.

Every record starts with an 8-byte account discriminator, followed by
little-endian fields in declaration order. Decoders skip the discriminator
unless given the expected value to compare against. The envelope record holds
one irregular field: the variant. How many bytes it occupies depends on
the deployed build, so the decoder takes an :class:`EnvelopeLayout`:

``compact``
    Tag byte plus the active arm only (1 byte, or 33 for DirectFixed).
``padded``
    Fixed 33-byte slot; smaller arms are followed by zero filler.
``aligned``
    Fixed 40-byte slot (33 rounded up to an 8-byte boundary).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import struct
import time
from typing import Any, Dict, Optional

from solders.pubkey import Pubkey

from .constants import (
    ACCOUNT_LAYOUTS,
    CLAIM_RECORD_SIZE,
    DISCRIMINATOR_SIZE,
    PUBKEY_SIZE,
    USER_STATE_SIZE,
    VARIANT_MAX_ARM,
)
from .errors import DecodeError, ValidationError
from .instructions import DirectFixed, EnvelopeVariant, decode_variant, encode_variant, variant_name

_HEAD = DISCRIMINATOR_SIZE + PUBKEY_SIZE + 8
_ENVELOPE_TAIL = struct.Struct("<QQQQq?")
_CLAIM_TAIL = struct.Struct("<QQq")
_ZERO_DISC = bytes(DISCRIMINATOR_SIZE)


@dataclass(frozen=True)
class EnvelopeLayout:
    name: str
    # None: the variant takes only as many bytes as its active arm.
    variant_slot: Optional[int]

    @property
    def min_envelope_size(self) -> int:
        slot = self.variant_slot if self.variant_slot is not None else 1
        return _HEAD + slot + _ENVELOPE_TAIL.size


def layout_for(name: str) -> EnvelopeLayout:
    if name not in ACCOUNT_LAYOUTS:
        allowed = ", ".join(sorted(ACCOUNT_LAYOUTS))
        raise ValidationError(f"account layout must be one of: {allowed}")
    slot = ACCOUNT_LAYOUTS[name]
    if slot is not None and slot < VARIANT_MAX_ARM:
        raise ValidationError(f"variant slot {slot} is smaller than the largest arm")
    return EnvelopeLayout(name, slot)


@dataclass(frozen=True)
class UserState:
    owner: Pubkey
    last_envelope_id: int

    @property
    def next_envelope_id(self) -> int:
        # Advisory only: the program assigns the id when create executes.
        return self.last_envelope_id + 1


@dataclass(frozen=True)
class EnvelopeAccount:
    owner: Pubkey
    envelope_id: int
    variant: EnvelopeVariant
    total_amount: int
    total_slots: int
    withdrawn_amount: int
    claimed_count: int
    expiry: int
    cancelled: bool

    @property
    def remaining(self) -> int:
        return self.total_amount - self.withdrawn_amount

    @property
    def slots_left(self) -> int:
        return self.total_slots - self.claimed_count

    @property
    def expiry_at(self) -> Optional[datetime]:
        """Expiry as a UTC datetime; None when it falls outside the platform range."""
        try:
            return datetime.fromtimestamp(self.expiry, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expiry

    def is_claimable(self, now: Optional[float] = None) -> bool:
        return (
            not self.cancelled
            and not self.is_expired(now)
            and self.slots_left > 0
            and self.remaining > 0
        )

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        allowed = str(self.variant.allowed) if isinstance(self.variant, DirectFixed) else None
        expiry_at = self.expiry_at
        return {
            "owner": str(self.owner),
            "envelope_id": self.envelope_id,
            "envelope_type": variant_name(self.variant),
            "allowed_address": allowed,
            "total_amount": self.total_amount,
            "total_users": self.total_slots,
            "withdrawn_amount": self.withdrawn_amount,
            "claimed_count": self.claimed_count,
            "remaining_amount": self.remaining,
            "is_cancelled": self.cancelled,
            "expiry": self.expiry,
            "expiry_time": expiry_at.isoformat() if expiry_at else None,
            "is_expired": self.is_expired(now),
        }


@dataclass(frozen=True)
class ClaimRecord:
    claimer: Pubkey
    envelope_id: int
    amount: int
    claimed_at: int


def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise DecodeError(f"invalid {what} data length: {len(data)} (need {size})")


def _check_discriminator(data: bytes, expected: Optional[bytes], what: str) -> None:
    if expected is not None and bytes(data[:DISCRIMINATOR_SIZE]) != expected:
        raise DecodeError(f"{what} account discriminator mismatch")


def parse_user_state(data: bytes, discriminator: Optional[bytes] = None) -> UserState:
    _require(data, USER_STATE_SIZE, "user state")
    _check_discriminator(data, discriminator, "user state")
    offset = DISCRIMINATOR_SIZE
    owner = Pubkey(bytes(data[offset : offset + PUBKEY_SIZE]))
    (last_id,) = struct.unpack_from("<Q", data, offset + PUBKEY_SIZE)
    return UserState(owner, last_id)


def parse_envelope(
    data: bytes,
    layout: EnvelopeLayout,
    discriminator: Optional[bytes] = None,
) -> EnvelopeAccount:
    _require(data, layout.min_envelope_size, "envelope")
    _check_discriminator(data, discriminator, "envelope")
    offset = DISCRIMINATOR_SIZE
    owner = Pubkey(bytes(data[offset : offset + PUBKEY_SIZE]))
    offset += PUBKEY_SIZE
    (envelope_id,) = struct.unpack_from("<Q", data, offset)
    offset += 8

    variant, used = decode_variant(data, offset)
    if layout.variant_slot is None:
        offset += used
    else:
        # Skip filler after a short arm so the tail sits at a fixed offset.
        offset += layout.variant_slot
    _require(data, offset + _ENVELOPE_TAIL.size, "envelope")

    total, slots, withdrawn, claimed, expiry, cancelled = _ENVELOPE_TAIL.unpack_from(data, offset)
    return EnvelopeAccount(
        owner=owner,
        envelope_id=envelope_id,
        variant=variant,
        total_amount=total,
        total_slots=slots,
        withdrawn_amount=withdrawn,
        claimed_count=claimed,
        expiry=expiry,
        cancelled=cancelled,
    )


def parse_claim_record(data: bytes, discriminator: Optional[bytes] = None) -> ClaimRecord:
    _require(data, CLAIM_RECORD_SIZE, "claim record")
    _check_discriminator(data, discriminator, "claim record")
    offset = DISCRIMINATOR_SIZE
    claimer = Pubkey(bytes(data[offset : offset + PUBKEY_SIZE]))
    envelope_id, amount, claimed_at = _CLAIM_TAIL.unpack_from(data, offset + PUBKEY_SIZE)
    return ClaimRecord(claimer, envelope_id, amount, claimed_at)


# Packing mirrors the decoders. Used to build fixtures and golden bytes.


def pack_user_state(state: UserState, disc: bytes = _ZERO_DISC) -> bytes:
    return disc + bytes(state.owner) + struct.pack("<Q", state.last_envelope_id)


def pack_envelope(account: EnvelopeAccount, layout: EnvelopeLayout, disc: bytes = _ZERO_DISC) -> bytes:
    variant = encode_variant(account.variant)
    if layout.variant_slot is not None:
        variant = variant.ljust(layout.variant_slot, b"\x00")
    return (
        disc
        + bytes(account.owner)
        + struct.pack("<Q", account.envelope_id)
        + variant
        + _ENVELOPE_TAIL.pack(
            account.total_amount,
            account.total_slots,
            account.withdrawn_amount,
            account.claimed_count,
            account.expiry,
            account.cancelled,
        )
    )


def pack_claim_record(record: ClaimRecord, disc: bytes = _ZERO_DISC) -> bytes:
    return (
        disc
        + bytes(record.claimer)
        + _CLAIM_TAIL.pack(record.envelope_id, record.amount, record.claimed_at)
    )
