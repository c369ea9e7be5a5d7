"""Utility helpers for EnvelopeKit."""

from __future__ import annotations

from typing import Any, Optional

from solders.pubkey import Pubkey

from .constants import U64_MAX
from .errors import ValidationError


def ensure_u64(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    if value < 0 or value > U64_MAX:
        raise ValidationError(f"{name} must be within u64 range")
    return value


def parse_u64(raw: Any, name: str) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, int):
        return ensure_u64(raw, name)
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            value = int(text, 0)
        except ValueError as exc:
            raise ValidationError(f"{name} must be an integer or string") from exc
        return ensure_u64(value, name)
    raise ValidationError(f"{name} must be an integer or string")


def u64_le(value: int) -> bytes:
    return ensure_u64(value, "value").to_bytes(8, "little")


def to_pubkey(value: Any, name: str) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValidationError(f"{name} must be 32 bytes")
        return Pubkey(bytes(value))
    if isinstance(value, str) and value.strip():
        try:
            return Pubkey.from_string(value.strip())
        except ValueError as exc:
            raise ValidationError(f"{name} must be a base58 public key") from exc
    raise ValidationError(f"{name} must be a public key")
