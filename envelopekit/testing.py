"""Test-only helpers: local signing and an in-memory ledger.

Nothing in the library imports this module. Production signing always
happens outside this process; :func:`sign_locally` exists so tests and local
demos can produce signed bytes from a keypair file.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from .errors import SubmissionRejected, TransportError
from .rpc import PENDING, Checkpoint, SignatureStatus
from .transaction import parse_transaction


def load_keypair(path: Path) -> Keypair:
    raw = json.loads(Path(path).read_text())
    return Keypair.from_bytes(bytes(raw))


def sign_locally(unsigned: bytes, signers: Sequence[Keypair]) -> bytes:
    """TEST ONLY. Sign unsigned transaction bytes with local keypairs."""
    tx = parse_transaction(unsigned)
    tx.sign(list(signers), tx.message.recent_blockhash)
    return bytes(tx)


class FakeLedger:
    """In-memory :class:`~envelopekit.rpc.Ledger`.

    ``statuses`` maps a signature to the sequence of states successive status
    queries return; the last one repeats.
    """

    def __init__(self, blockhash: Optional[Hash] = None, slot: int = 100) -> None:
        self.blockhash = blockhash if blockhash is not None else Hash.new_unique()
        self.last_valid_block_height = 1_000
        self.slot = slot
        self.accounts: Dict[Pubkey, bytes] = {}
        self.statuses: Dict[Signature, List[SignatureStatus]] = {}
        self.submitted: List[bytes] = []
        self.reject_with: Optional[TransportError] = None
        self.checkpoint_calls = 0
        self.status_calls = 0

    def get_recent_checkpoint(self) -> Checkpoint:
        self.checkpoint_calls += 1
        return Checkpoint(self.blockhash, self.last_valid_block_height)

    def get_account_bytes(self, address: Pubkey) -> Optional[bytes]:
        return self.accounts.get(address)

    def submit_signed_transaction(self, raw: bytes) -> Signature:
        if self.reject_with is not None:
            raise self.reject_with
        self.submitted.append(raw)
        return parse_transaction(raw).signatures[0]

    def get_signature_status(self, signature: Signature) -> SignatureStatus:
        self.status_calls += 1
        queue = self.statuses.get(signature)
        if not queue:
            return SignatureStatus(PENDING)
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    def get_current_slot(self) -> int:
        return self.slot

    def reject(self, detail: str, logs: Optional[List[str]] = None) -> None:
        self.reject_with = SubmissionRejected("transaction rejected by RPC node", detail, logs)
