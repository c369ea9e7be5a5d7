"""Caller-facing envelope operations.

:class:`EnvelopeService` wires the codec, builder, classifier and lifecycle
manager together from one :class:`EnvelopeConfig`. Program tables are built
once here and handed to every component that needs them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.signature import Signature

from . import accounts
from .classify import ErrorClassifier
from .config import EnvelopeConfig
from .constants import EXPLORER_URLS
from .errors import ValidationError
from .instructions import CreateParams, EnvelopeVariant, InstructionCodec
from .lifecycle import LifecycleManager, PendingFlow, TransactionResult
from .parser import (
    ClaimRecord,
    EnvelopeAccount,
    UserState,
    layout_for,
    parse_claim_record,
    parse_envelope,
    parse_user_state,
)
from .rpc import Ledger
from .tables import build_tables
from .transaction import TransactionBuilder, decode_base64
from .util import ensure_u64, to_pubkey

logger = logging.getLogger(__name__)

Expiry = Union[int, timedelta]


@dataclass(frozen=True)
class UnsignedFlow:
    """What the caller hands to the remote signer."""

    correlation_id: str
    action: str
    transaction: str
    blockhash: str
    last_valid_block_height: int
    envelope_id: Optional[int] = None
    addresses: Optional[accounts.EnvelopeAddresses] = None
    includes_init: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "action": self.action,
            "transaction": self.transaction,
            "blockhash": self.blockhash,
            "last_valid_block_height": self.last_valid_block_height,
            "envelope_id": self.envelope_id,
            "addresses": self.addresses.to_dict() if self.addresses else None,
            "includes_init": self.includes_init,
        }


class EnvelopeService:
    def __init__(
        self,
        config: EnvelopeConfig,
        ledger: Ledger,
        *,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.program_id = to_pubkey(config.program_id, "program_id")
        self.mint = to_pubkey(config.mint, "mint")
        self.layout = layout_for(config.account_layout)
        self.tables = build_tables()
        self.codec = InstructionCodec(self.tables, self.program_id, self.mint, config.schema_version)
        self.builder = TransactionBuilder(ledger)
        self.classifier = ErrorClassifier(self.tables)
        manager_kwargs: Dict[str, Any] = {}
        if sleep is not None:
            manager_kwargs["sleep"] = sleep
        if clock is not None:
            manager_kwargs["clock"] = clock
        self.manager = LifecycleManager(
            self.builder,
            ledger,
            self.classifier,
            confirm_attempts=config.confirm_attempts,
            confirm_interval=config.confirm_interval,
            commitment=config.commitment,
            flow_ttl=config.flow_ttl,
            explorer_url=self.explorer_url,
            **manager_kwargs,
        )

    # Addresses and reads

    def derive_addresses(
        self,
        owner: Any,
        envelope_id: int,
        claimer: Optional[Any] = None,
    ) -> accounts.EnvelopeAddresses:
        owner_key = to_pubkey(owner, "owner")
        claimer_key = to_pubkey(claimer, "claimer") if claimer is not None else None
        return accounts.derive_addresses(
            self.program_id,
            owner_key,
            ensure_u64(envelope_id, "envelope_id"),
            claimer_key,
        )

    def get_user_state(self, owner: Any) -> Optional[UserState]:
        address = accounts.derive_user_state(self.program_id, to_pubkey(owner, "owner")).address
        data = self.ledger.get_account_bytes(address)
        if not data:
            return None
        return parse_user_state(data, self._discriminator("UserState"))

    def get_envelope(self, owner: Any, envelope_id: int) -> Optional[EnvelopeAccount]:
        """Fetch and decode an envelope; ``None`` when the account does not exist."""
        address = self.derive_addresses(owner, envelope_id).envelope.address
        data = self.ledger.get_account_bytes(address)
        if not data:
            logger.debug("envelope %s not found", address)
            return None
        return parse_envelope(data, self.layout, self._discriminator("EnvelopeAccount"))

    def get_claim_record(self, owner: Any, envelope_id: int, claimer: Any) -> Optional[ClaimRecord]:
        addresses = self.derive_addresses(owner, envelope_id, claimer)
        data = self.ledger.get_account_bytes(addresses.claim_record.address)
        if not data:
            return None
        return parse_claim_record(data, self._discriminator("ClaimRecord"))

    def _discriminator(self, account_type: str) -> Optional[bytes]:
        if not self.config.verify_discriminators:
            return None
        return self.tables.accounts[account_type]

    # Unsigned builders

    def build_unsigned_init(self, owner: Any) -> UnsignedFlow:
        user = to_pubkey(owner, "owner")
        return self._open("init", [self.codec.init_user_state(user)], user)

    def build_unsigned_create(
        self,
        owner: Any,
        variant: EnvelopeVariant,
        total_amount: int,
        total_slots: int,
        expiry: Expiry,
    ) -> UnsignedFlow:
        user = to_pubkey(owner, "owner")
        params = CreateParams(variant, total_amount, total_slots, self._expiry_units(expiry)).validate()
        self._check_limits(params)

        state = self.get_user_state(user)
        instructions: List[Instruction] = []
        if state is None:
            logger.info("owner %s has no user state; prepending init_user_state", user)
            instructions.append(self.codec.init_user_state(user))
            envelope_id = 1
        else:
            envelope_id = state.next_envelope_id
        instructions.append(self.codec.create(user, envelope_id, params))
        return self._open(
            "create",
            instructions,
            user,
            envelope_id=envelope_id,
            addresses=accounts.derive_addresses(self.program_id, user, envelope_id),
            includes_init=state is None,
        )

    def build_unsigned_claim(self, owner: Any, claimer: Any, envelope_id: int) -> UnsignedFlow:
        owner_key = to_pubkey(owner, "owner")
        claimer_key = to_pubkey(claimer, "claimer")
        envelope_id = ensure_u64(envelope_id, "envelope_id")
        return self._open(
            "claim",
            [self.codec.claim(owner_key, claimer_key, envelope_id)],
            claimer_key,
            envelope_id=envelope_id,
            addresses=accounts.derive_addresses(self.program_id, owner_key, envelope_id, claimer_key),
        )

    def build_unsigned_refund(self, owner: Any, envelope_id: int) -> UnsignedFlow:
        return self._owner_flow("refund", self.codec.refund, owner, envelope_id)

    def build_unsigned_cancel(self, owner: Any, envelope_id: int) -> UnsignedFlow:
        return self._owner_flow("cancel", self.codec.cancel, owner, envelope_id)

    def build_unsigned_close(self, owner: Any, envelope_id: int) -> UnsignedFlow:
        return self._owner_flow("close", self.codec.close, owner, envelope_id)

    def _owner_flow(
        self,
        action: str,
        build: Callable[[Pubkey, int], Instruction],
        owner: Any,
        envelope_id: int,
    ) -> UnsignedFlow:
        owner_key = to_pubkey(owner, "owner")
        envelope_id = ensure_u64(envelope_id, "envelope_id")
        return self._open(
            action,
            [build(owner_key, envelope_id)],
            owner_key,
            envelope_id=envelope_id,
            addresses=accounts.derive_addresses(self.program_id, owner_key, envelope_id),
        )

    def _open(
        self,
        action: str,
        instructions: List[Instruction],
        fee_payer: Pubkey,
        *,
        envelope_id: Optional[int] = None,
        addresses: Optional[accounts.EnvelopeAddresses] = None,
        includes_init: bool = False,
    ) -> UnsignedFlow:
        flow: PendingFlow = self.manager.open_flow(action, instructions, fee_payer, envelope_id=envelope_id)
        checkpoint = flow.unsigned.checkpoint
        return UnsignedFlow(
            correlation_id=flow.correlation_id,
            action=action,
            transaction=flow.unsigned.to_base64(),
            blockhash=str(checkpoint.blockhash),
            last_valid_block_height=checkpoint.last_valid_block_height,
            envelope_id=envelope_id,
            addresses=addresses,
            includes_init=includes_init,
        )

    def _expiry_units(self, expiry: Expiry) -> int:
        if isinstance(expiry, timedelta):
            seconds = int(expiry.total_seconds())
            unit = self.config.expiry_unit_seconds
            if seconds <= 0 or seconds % unit:
                raise ValidationError(
                    f"expiry must be a positive whole number of {self.config.expiry_unit}"
                )
            return seconds // unit
        return ensure_u64(expiry, "expiry")

    def _check_limits(self, params: CreateParams) -> None:
        if params.total_amount > self.config.max_create_amount:
            raise ValidationError(
                f"total_amount {params.total_amount} exceeds the maximum of {self.config.max_create_amount}"
            )
        per_slot = params.total_amount // params.total_slots
        if per_slot < self.config.min_amount_per_user:
            raise ValidationError(
                f"amount per claimer {per_slot} is below the minimum of {self.config.min_amount_per_user}"
            )

    # Submission and status

    def submit(self, correlation_id: str, signed: Union[bytes, str], *, wait: bool = True) -> TransactionResult:
        raw = decode_base64(signed) if isinstance(signed, str) else signed
        return self.manager.submit(correlation_id, raw, wait=wait)

    def submit_raw(self, signed: Union[bytes, str], *, wait: bool = True) -> TransactionResult:
        raw = decode_base64(signed) if isinstance(signed, str) else signed
        return self.manager.submit_raw(raw, wait=wait)

    def get_transaction_status(self, signature: Union[Signature, str]) -> TransactionResult:
        return self.manager.status(signature)

    def explorer_url(self, signature: Union[Signature, str]) -> str:
        return EXPLORER_URLS[self.config.network].format(signature=signature)
