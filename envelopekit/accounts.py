"""Program-derived address helpers for the envelope program."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, NamedTuple, Optional, Sequence

from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from .constants import SEED_CLAIM, SEED_ENVELOPE, SEED_ENVELOPE_VAULT, SEED_USER_STATE
from .errors import AddressDerivationExhausted, ValidationError
from .util import u64_le

logger = logging.getLogger(__name__)

# Runtime limits; one seed slot is reserved for the bump.
_MAX_SEED_LEN = 32
_MAX_SEEDS = 16


class ProgramAddress(NamedTuple):
    address: Pubkey
    bump: int


def _check_seeds(seeds: Sequence[bytes]) -> None:
    if len(seeds) + 1 > _MAX_SEEDS:
        raise ValidationError(f"at most {_MAX_SEEDS - 1} seeds are allowed")
    for idx, seed in enumerate(seeds):
        if not isinstance(seed, (bytes, bytearray)):
            raise ValidationError(f"seed {idx} must be bytes")
        if len(seed) > _MAX_SEED_LEN:
            raise ValidationError(f"seed {idx} exceeds {_MAX_SEED_LEN} bytes")


def find_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> ProgramAddress:
    """Return the first valid program address probing bumps from 255 down to 0.

    ``Pubkey.create_program_address`` rejects candidates that land on the
    curve, since those could have a private key. Exhausting all 256 bumps is a
    configuration error, not a normal outcome, and raises
    :class:`AddressDerivationExhausted`.
    """
    _check_seeds(seeds)
    base = [bytes(seed) for seed in seeds]
    for bump in range(255, -1, -1):
        try:
            address = Pubkey.create_program_address([*base, bytes([bump])], program_id)
        except Exception:  # solders PubkeyError: candidate is on the curve
            continue
        return ProgramAddress(address, bump)
    raise AddressDerivationExhausted(
        f"no off-curve address for seeds under program {program_id}"
    )


def derive(tag: bytes, parts: Sequence[bytes], program_id: Pubkey) -> ProgramAddress:
    return find_program_address([tag, *parts], program_id)


def derive_user_state(program_id: Pubkey, owner: Pubkey) -> ProgramAddress:
    return derive(SEED_USER_STATE, [bytes(owner)], program_id)


def derive_envelope(program_id: Pubkey, owner: Pubkey, envelope_id: int) -> ProgramAddress:
    return derive(SEED_ENVELOPE, [bytes(owner), u64_le(envelope_id)], program_id)


def derive_vault(program_id: Pubkey, owner: Pubkey, envelope_id: int) -> ProgramAddress:
    return derive(SEED_ENVELOPE_VAULT, [bytes(owner), u64_le(envelope_id)], program_id)


def derive_claim_record(program_id: Pubkey, envelope: Pubkey, claimer: Pubkey) -> ProgramAddress:
    return derive(SEED_CLAIM, [bytes(envelope), bytes(claimer)], program_id)


def derive_token_account(wallet: Pubkey, mint: Pubkey) -> Pubkey:
    """Associated token account of ``wallet`` for ``mint``."""
    return get_associated_token_address(wallet, mint)


@dataclass(frozen=True)
class EnvelopeAddresses:
    user_state: ProgramAddress
    envelope: ProgramAddress
    vault: ProgramAddress
    claim_record: Optional[ProgramAddress] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "user_state": str(self.user_state.address),
            "envelope": str(self.envelope.address),
            "vault": str(self.vault.address),
            "claim_record": str(self.claim_record.address) if self.claim_record else None,
        }


def derive_addresses(
    program_id: Pubkey,
    owner: Pubkey,
    envelope_id: int,
    claimer: Optional[Pubkey] = None,
) -> EnvelopeAddresses:
    envelope = derive_envelope(program_id, owner, envelope_id)
    claim_record = None
    if claimer is not None:
        claim_record = derive_claim_record(program_id, envelope.address, claimer)
    addresses = EnvelopeAddresses(
        user_state=derive_user_state(program_id, owner),
        envelope=envelope,
        vault=derive_vault(program_id, owner, envelope_id),
        claim_record=claim_record,
    )
    logger.debug("derived addresses owner=%s id=%d: %s", owner, envelope_id, addresses.to_dict())
    return addresses
