"""Discriminator and error-message tables.

Tables are built once by :func:`build_tables` and handed to the codec and the
error classifier explicitly. Nothing here is computed at import time.
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from .constants import (
    ACCOUNT_NAMESPACE,
    ACCOUNT_TYPES,
    DISCRIMINATOR_SIZE,
    INSTRUCTION_NAMESPACE,
    OPERATIONS,
)
from .errors import ANCHOR_ERRORS, PROGRAM_ERRORS, ValidationError


def discriminator(namespace: str, name: str) -> bytes:
    """First 8 bytes of sha256("<namespace>:<name>"), as Anchor computes it."""
    return hashlib.sha256(f"{namespace}:{name}".encode("ascii")).digest()[:DISCRIMINATOR_SIZE]


@dataclass(frozen=True)
class ProgramTables:
    instructions: Mapping[str, bytes]
    accounts: Mapping[str, bytes]
    error_messages: Mapping[int, str]

    def instruction(self, name: str) -> bytes:
        try:
            return self.instructions[name]
        except KeyError:
            raise ValidationError(f"unknown operation: {name}") from None

    def operation_for(self, disc: bytes) -> Optional[str]:
        for name, value in self.instructions.items():
            if value == disc:
                return name
        return None

    def message_for(self, code: int) -> Optional[str]:
        return self.error_messages.get(code)


def build_tables(
    operations: Iterable[str] = OPERATIONS,
    account_types: Iterable[str] = ACCOUNT_TYPES,
    extra_errors: Optional[Mapping[int, str]] = None,
) -> ProgramTables:
    errors = dict(ANCHOR_ERRORS)
    errors.update(PROGRAM_ERRORS)
    if extra_errors:
        errors.update(extra_errors)
    return ProgramTables(
        instructions=MappingProxyType(
            {name: discriminator(INSTRUCTION_NAMESPACE, name) for name in operations}
        ),
        accounts=MappingProxyType(
            {name: discriminator(ACCOUNT_NAMESPACE, name) for name in account_types}
        ),
        error_messages=MappingProxyType(errors),
    )
