"""Ordered account schemas for envelope program instructions.

The remote program reads accounts by position. Each operation therefore has
an explicit, versioned list of roles; callers supply accounts by role name and
the schema decides the order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from solders.instruction import AccountMeta
from solders.pubkey import Pubkey

from .constants import SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID
from .errors import ValidationError

DEFAULT_SCHEMA_VERSION = "token-v1"


@dataclass(frozen=True)
class AccountRole:
    name: str
    writable: bool = False
    signer: bool = False
    fixed: Optional[str] = None


@dataclass(frozen=True)
class InstructionSchema:
    operation: str
    version: str
    roles: Tuple[AccountRole, ...]

    @property
    def arity(self) -> int:
        return len(self.roles)

    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]

    def metas(self, accounts: Mapping[str, Pubkey]) -> List[AccountMeta]:
        """Order ``accounts`` by role, filling fixed program roles."""
        supplied = dict(accounts)
        metas: List[AccountMeta] = []
        for role in self.roles:
            pubkey = supplied.pop(role.name, None)
            if pubkey is None and role.fixed is not None:
                pubkey = Pubkey.from_string(role.fixed)
            if pubkey is None:
                raise ValidationError(f"{self.operation}: missing account '{role.name}'")
            if role.fixed is not None and str(pubkey) != role.fixed:
                raise ValidationError(
                    f"{self.operation}: account '{role.name}' must be {role.fixed}"
                )
            metas.append(AccountMeta(pubkey, role.signer, role.writable))
        if supplied:
            extra = ", ".join(sorted(supplied))
            raise ValidationError(f"{self.operation}: unexpected accounts: {extra}")
        if len(metas) != self.arity:
            raise ValidationError(
                f"{self.operation}: expected {self.arity} accounts, got {len(metas)}"
            )
        return metas


def _w(name: str) -> AccountRole:
    return AccountRole(name, writable=True)


def _signer(name: str) -> AccountRole:
    return AccountRole(name, writable=True, signer=True)


_SYSTEM = AccountRole("system_program", fixed=SYSTEM_PROGRAM_ID)
_TOKEN = AccountRole("token_program", fixed=TOKEN_PROGRAM_ID)

_TOKEN_V1 = (
    InstructionSchema(
        "init_user_state",
        "token-v1",
        (_w("user_state"), _signer("user"), _SYSTEM),
    ),
    InstructionSchema(
        "create",
        "token-v1",
        (
            _w("user_state"),
            _w("envelope"),
            _w("vault"),
            _w("user_token_account"),
            AccountRole("mint"),
            _signer("user"),
            _TOKEN,
            _SYSTEM,
        ),
    ),
    InstructionSchema(
        "claim",
        "token-v1",
        (
            _w("envelope"),
            _w("vault"),
            _w("claimer_token_account"),
            _w("claim_record"),
            _signer("claimer"),
            _TOKEN,
            _SYSTEM,
        ),
    ),
    InstructionSchema(
        "refund",
        "token-v1",
        (
            _w("envelope"),
            _w("vault"),
            _w("owner_token_account"),
            _signer("owner"),
            _TOKEN,
            _SYSTEM,
        ),
    ),
    InstructionSchema(
        "cancel",
        "token-v1",
        (_w("envelope"), _w("user_state"), _signer("owner")),
    ),
    InstructionSchema(
        "close",
        "token-v1",
        (_w("envelope"), _signer("owner")),
    ),
)

SCHEMAS: Dict[str, Dict[str, InstructionSchema]] = {
    "token-v1": {schema.operation: schema for schema in _TOKEN_V1},
}


def get_schema(operation: str, version: str = DEFAULT_SCHEMA_VERSION) -> InstructionSchema:
    schemas = SCHEMAS.get(version)
    if schemas is None:
        raise ValidationError(f"unknown account schema version: {version}")
    schema = schemas.get(operation)
    if schema is None:
        raise ValidationError(f"schema {version} has no operation '{operation}'")
    return schema
