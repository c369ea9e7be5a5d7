"""Ledger collaborator: the request/response surface EnvelopeKit consumes."""

from __future__ import annotations

from dataclasses import dataclass
import base64
import logging
from typing import Optional, Protocol

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Commitment, Confirmed, Finalized
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from .errors import SubmissionRejected, TransportError

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSED = "processed"
CONFIRMED = "confirmed"
FINALIZED = "finalized"
ERRORED = "errored"


@dataclass(frozen=True)
class Checkpoint:
    """A recent blockhash and the last block height at which it is accepted."""

    blockhash: Hash
    last_valid_block_height: int


@dataclass(frozen=True)
class SignatureStatus:
    state: str
    slot: Optional[int] = None
    confirmations: Optional[int] = None
    error: Optional[str] = None


class Ledger(Protocol):
    def get_recent_checkpoint(self) -> Checkpoint: ...

    def get_account_bytes(self, address: Pubkey) -> Optional[bytes]: ...

    def submit_signed_transaction(self, raw: bytes) -> Signature: ...

    def get_signature_status(self, signature: Signature) -> SignatureStatus: ...

    def get_current_slot(self) -> int: ...


def _rejection_detail(exc: RPCException) -> tuple[str, list[str]]:
    payload = exc.args[0] if exc.args else exc
    parts = [str(getattr(payload, "message", payload))]
    data = getattr(payload, "data", None)
    err = getattr(data, "err", None)
    if err is not None:
        parts.append(f"err: {err}")
    logs = list(getattr(data, "logs", None) or [])
    if logs:
        parts.append("logs: " + "\n".join(logs))
    return " | ".join(parts), logs


def _status_state(confirmation: Optional[TransactionConfirmationStatus]) -> str:
    if confirmation == TransactionConfirmationStatus.Finalized:
        return FINALIZED
    if confirmation == TransactionConfirmationStatus.Confirmed:
        return CONFIRMED
    if confirmation == TransactionConfirmationStatus.Processed:
        return PROCESSED
    return PENDING


class SolanaLedger:
    """:class:`Ledger` backed by a solana-py JSON-RPC client."""

    def __init__(
        self,
        rpc_url: str,
        *,
        commitment: Commitment = Finalized,
        preflight_commitment: Commitment = Confirmed,
        client: Optional[Client] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.preflight_commitment = preflight_commitment
        self.client = client if client is not None else Client(rpc_url)

    def get_recent_checkpoint(self) -> Checkpoint:
        try:
            resp = self.client.get_latest_blockhash(commitment=self.commitment)
        except (SolanaRpcException, RPCException, httpx.HTTPError) as exc:
            raise TransportError(f"failed to get recent blockhash: {exc}") from exc
        value = resp.value
        logger.debug("recent blockhash %s (valid to height %d)", value.blockhash, value.last_valid_block_height)
        return Checkpoint(value.blockhash, value.last_valid_block_height)

    def get_account_bytes(self, address: Pubkey) -> Optional[bytes]:
        try:
            resp = self.client.get_account_info(address, encoding="base64")
        except (SolanaRpcException, RPCException, httpx.HTTPError) as exc:
            raise TransportError(f"failed to get account {address}: {exc}") from exc
        info = resp.value
        if info is None:
            return None
        data = info.data
        if isinstance(data, (list, tuple)):
            return base64.b64decode(data[0])
        return bytes(data)

    def submit_signed_transaction(self, raw: bytes) -> Signature:
        opts = TxOpts(skip_preflight=False, preflight_commitment=self.preflight_commitment)
        try:
            resp = self.client.send_raw_transaction(raw, opts=opts)
        except RPCException as exc:
            detail, logs = _rejection_detail(exc)
            raise SubmissionRejected("transaction rejected by RPC node", detail, logs) from exc
        except (SolanaRpcException, httpx.HTTPError) as exc:
            raise TransportError(f"failed to send transaction: {exc}") from exc
        return resp.value

    def get_signature_status(self, signature: Signature) -> SignatureStatus:
        try:
            resp = self.client.get_signature_statuses([signature], search_transaction_history=True)
        except (SolanaRpcException, RPCException, httpx.HTTPError) as exc:
            raise TransportError(f"failed to get signature status: {exc}") from exc
        status = resp.value[0] if resp.value else None
        if status is None:
            return SignatureStatus(PENDING)
        if status.err is not None:
            return SignatureStatus(ERRORED, status.slot, status.confirmations, str(status.err))
        return SignatureStatus(
            _status_state(status.confirmation_status),
            status.slot,
            status.confirmations,
        )

    def get_current_slot(self) -> int:
        try:
            return self.client.get_slot().value
        except (SolanaRpcException, RPCException, httpx.HTTPError) as exc:
            raise TransportError(f"failed to get slot: {exc}") from exc
