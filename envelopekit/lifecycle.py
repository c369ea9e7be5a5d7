"""Transaction lifecycle: build unsigned, hand off, submit, confirm.

A flow moves through::

    BUILT -> AWAITING_SIGNATURE -> SUBMITTED -> CONFIRMED | FAILED | EXPIRED

Signing happens outside this process. The manager only correlates the
unsigned bytes it handed out with the signed bytes that come back, then
submits them and polls for the outcome. Pending flows live in memory for one
round trip: they are dropped once the ledger has answered, or after
``flow_ttl`` seconds if the signed bytes never come back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Any, Callable, Dict, Optional, Sequence
import uuid

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.signature import Signature

from . import rpc
from .classify import Classification, ErrorClassifier, ErrorKind
from .constants import (
    DEFAULT_COMMITMENT,
    DEFAULT_CONFIRM_ATTEMPTS,
    DEFAULT_CONFIRM_INTERVAL,
    DEFAULT_FLOW_TTL,
)
from .errors import (
    CONSTRAINT_SEEDS,
    SYSTEM_ACCOUNT_IN_USE,
    PredictedIdConflict,
    RemoteProgramError,
    StaleFreshnessToken,
    TransportError,
    UnknownFlowError,
    ValidationError,
)
from .transaction import SignedTransaction, TransactionBuilder, UnsignedTransaction, parse_signed

logger = logging.getLogger(__name__)

ACTIONS = {"init", "create", "claim", "refund", "cancel", "close"}
_CONFLICT_CODES = {CONSTRAINT_SEEDS, SYSTEM_ACCOUNT_IN_USE}


class FlowState(str, Enum):
    BUILT = "built"
    AWAITING_SIGNATURE = "awaiting_signature"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


class TxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    FAILED = "failed"
    EXPIRED = "expired"
    # Polling gave up; the transaction may still land.
    TIMEOUT = "timeout"


@dataclass
class PendingFlow:
    correlation_id: str
    action: str
    unsigned: UnsignedTransaction
    envelope_id: Optional[int] = None
    state: FlowState = FlowState.BUILT
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TransactionResult:
    signature: Optional[str]
    status: TxStatus
    correlation_id: Optional[str] = None
    action: Optional[str] = None
    error: Optional[Classification] = None
    predicted_id_conflict: bool = False
    slot: Optional[int] = None
    confirmation_depth: Optional[int] = None
    explorer_url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (TxStatus.CONFIRMED, TxStatus.FINALIZED)

    def raise_for_status(self) -> "TransactionResult":
        """Raise the taxonomy exception matching a failed or expired result."""
        if self.status == TxStatus.EXPIRED:
            raise StaleFreshnessToken(self.error.message if self.error else "blockhash expired")
        if self.status != TxStatus.FAILED:
            return self
        error = self.error
        if error is None:
            raise TransportError("transaction failed")
        if error.kind == ErrorKind.PROGRAM_ERROR and error.code is not None:
            known = error.message if error.known else None
            if self.predicted_id_conflict:
                raise PredictedIdConflict(error.code, known)
            raise RemoteProgramError(error.code, known)
        raise TransportError(error.message, error.detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "status": self.status.value,
            "correlation_id": self.correlation_id,
            "action": self.action,
            "error": self.error.to_dict() if self.error else None,
            "predicted_id_conflict": self.predicted_id_conflict,
            "slot": self.slot,
            "confirmation_depth": self.confirmation_depth,
            "explorer_url": self.explorer_url,
        }


class LifecycleManager:
    def __init__(
        self,
        builder: TransactionBuilder,
        ledger: rpc.Ledger,
        classifier: ErrorClassifier,
        *,
        confirm_attempts: int = DEFAULT_CONFIRM_ATTEMPTS,
        confirm_interval: float = DEFAULT_CONFIRM_INTERVAL,
        commitment: str = DEFAULT_COMMITMENT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        flow_ttl: float = DEFAULT_FLOW_TTL,
        explorer_url: Optional[Callable[[str], str]] = None,
    ) -> None:
        if confirm_attempts < 1:
            raise ValidationError("confirm_attempts must be at least 1")
        if flow_ttl <= 0:
            raise ValidationError("flow_ttl must be positive")
        self.builder = builder
        self.ledger = ledger
        self.classifier = classifier
        self.confirm_attempts = confirm_attempts
        self.confirm_interval = confirm_interval
        self.commitment = commitment
        self._sleep = sleep
        self._clock = clock
        self.flow_ttl = flow_ttl
        self._explorer_url = explorer_url
        self._flows: Dict[str, PendingFlow] = {}

    # Build

    def open_flow(
        self,
        action: str,
        instructions: Sequence[Instruction],
        fee_payer: Pubkey,
        *,
        envelope_id: Optional[int] = None,
    ) -> PendingFlow:
        if action not in ACTIONS:
            raise ValidationError(f"unknown action: {action}")
        self._evict_stale()
        unsigned = self.builder.build_unsigned(instructions, fee_payer)
        flow = PendingFlow(
            f"{action}_{uuid.uuid4().hex}",
            action,
            unsigned,
            envelope_id,
            created_at=self._clock(),
        )
        # The unsigned bytes leave our hands as soon as the caller has them.
        flow.state = FlowState.AWAITING_SIGNATURE
        self._flows[flow.correlation_id] = flow
        logger.info("flow %s built (%s, payer=%s)", flow.correlation_id, action, fee_payer)
        return flow

    def get_flow(self, correlation_id: str) -> PendingFlow:
        self._evict_stale()
        flow = self._flows.get(correlation_id)
        if flow is None:
            raise UnknownFlowError(f"no pending flow with id {correlation_id} (unknown or expired)")
        return flow

    def discard(self, correlation_id: str) -> None:
        self._flows.pop(correlation_id, None)

    def pending(self) -> int:
        self._evict_stale()
        return len(self._flows)

    def _evict_stale(self) -> None:
        cutoff = self._clock() - self.flow_ttl
        stale = [cid for cid, flow in self._flows.items() if flow.created_at < cutoff]
        for cid in stale:
            del self._flows[cid]
        if stale:
            logger.info("dropped %d unsubmitted flow(s) older than %.0fs", len(stale), self.flow_ttl)

    # Submit

    def submit(self, correlation_id: str, signed_raw: bytes, *, wait: bool = True) -> TransactionResult:
        flow = self.get_flow(correlation_id)
        # A decode failure leaves the flow open so the caller can resend.
        signed = parse_signed(signed_raw)
        if signed.message != flow.unsigned.message:
            logger.warning("flow %s: signed message differs from the one built", correlation_id)
        self.discard(correlation_id)
        result = self._submit(signed, flow.action, correlation_id, wait)
        flow.state = _flow_state(result.status, flow.state)
        return result

    def submit_raw(self, signed_raw: bytes, *, action: Optional[str] = None, wait: bool = True) -> TransactionResult:
        """Submit signed bytes that were not built through :meth:`open_flow`."""
        return self._submit(parse_signed(signed_raw), action, None, wait)

    def _submit(
        self,
        signed: SignedTransaction,
        action: Optional[str],
        correlation_id: Optional[str],
        wait: bool,
    ) -> TransactionResult:
        try:
            signature = self.ledger.submit_signed_transaction(signed.raw)
        except TransportError as exc:
            classification = self.classifier.classify(exc)
            return self._failure(classification, str(signed.signature), action, correlation_id, sent=False)

        sig_text = str(signature)
        logger.info("submitted %s (%s)", sig_text, action or "raw")
        if not wait:
            return TransactionResult(
                sig_text,
                TxStatus.PENDING,
                correlation_id,
                action,
                explorer_url=self._explorer(sig_text),
            )
        return self.confirm(signature, action=action, correlation_id=correlation_id)

    def _failure(
        self,
        classification: Classification,
        signature: Optional[str],
        action: Optional[str],
        correlation_id: Optional[str],
        *,
        sent: bool,
        slot: Optional[int] = None,
    ) -> TransactionResult:
        if classification.kind == ErrorKind.EXPIRED:
            logger.warning("transaction %s expired: %s", signature, classification.message)
            status = TxStatus.EXPIRED
        else:
            logger.info("transaction %s failed: %s", signature, classification.message)
            status = TxStatus.FAILED
        conflict = (
            action == "create"
            and classification.kind == ErrorKind.PROGRAM_ERROR
            and classification.code in _CONFLICT_CODES
        )
        if conflict:
            logger.warning("transaction %s: predicted envelope id was already taken", signature)
        return TransactionResult(
            signature if sent else None,
            status,
            correlation_id,
            action,
            error=classification,
            predicted_id_conflict=conflict,
            slot=slot,
            explorer_url=self._explorer(signature) if sent and signature else None,
        )

    # Confirm

    def status(self, signature: Signature | str) -> TransactionResult:
        """Single status query, no waiting."""
        sig = _as_signature(signature)
        status = self.ledger.get_signature_status(sig)
        return self._from_status(str(sig), status, None, None, final=False)

    def confirm(
        self,
        signature: Signature | str,
        *,
        action: Optional[str] = None,
        correlation_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> TransactionResult:
        """Poll until the target commitment, a failure, or the attempt cap."""
        sig = _as_signature(signature)
        sig_text = str(sig)
        attempts = max_attempts if max_attempts is not None else self.confirm_attempts
        delay = interval if interval is not None else self.confirm_interval
        for attempt in range(1, attempts + 1):
            try:
                status = self.ledger.get_signature_status(sig)
            except TransportError as exc:
                logger.warning("status query %d/%d for %s failed: %s", attempt, attempts, sig_text, exc)
                status = None
            if status is not None and self._is_final(status):
                return self._from_status(sig_text, status, action, correlation_id, final=True)
            if attempt < attempts:
                self._sleep(delay)
        logger.warning("gave up on %s after %d status checks", sig_text, attempts)
        return TransactionResult(
            sig_text,
            TxStatus.TIMEOUT,
            correlation_id,
            action,
            explorer_url=self._explorer(sig_text),
        )

    def _is_final(self, status: rpc.SignatureStatus) -> bool:
        if status.state == rpc.ERRORED:
            return True
        if self.commitment == "finalized":
            return status.state == rpc.FINALIZED
        return status.state in (rpc.CONFIRMED, rpc.FINALIZED)

    def _from_status(
        self,
        sig_text: str,
        status: rpc.SignatureStatus,
        action: Optional[str],
        correlation_id: Optional[str],
        *,
        final: bool,
    ) -> TransactionResult:
        if status.state == rpc.ERRORED:
            classification = self.classifier.classify(status.error or "")
            return self._failure(classification, sig_text, action, correlation_id, sent=True, slot=status.slot)
        if status.state == rpc.FINALIZED:
            tx_status = TxStatus.FINALIZED
        elif status.state == rpc.CONFIRMED:
            tx_status = TxStatus.CONFIRMED
        else:
            tx_status = TxStatus.PENDING
        if final:
            logger.info("transaction %s %s at slot %s", sig_text, tx_status.value, status.slot)
        return TransactionResult(
            sig_text,
            tx_status,
            correlation_id,
            action,
            slot=status.slot,
            confirmation_depth=self._depth(status.slot),
            explorer_url=self._explorer(sig_text),
        )

    def _depth(self, slot: Optional[int]) -> Optional[int]:
        if slot is None:
            return None
        try:
            current = self.ledger.get_current_slot()
        except TransportError as exc:
            logger.debug("slot query failed: %s", exc)
            return None
        return max(current - slot, 0)

    def _explorer(self, signature: str) -> Optional[str]:
        return self._explorer_url(signature) if self._explorer_url else None


def _as_signature(value: Signature | str) -> Signature:
    if isinstance(value, Signature):
        return value
    try:
        return Signature.from_string(value)
    except ValueError as exc:
        raise ValidationError(f"invalid signature: {value}") from exc


def _flow_state(status: TxStatus, current: FlowState) -> FlowState:
    if status in (TxStatus.CONFIRMED, TxStatus.FINALIZED):
        return FlowState.CONFIRMED
    if status == TxStatus.FAILED:
        return FlowState.FAILED
    if status == TxStatus.EXPIRED:
        return FlowState.EXPIRED
    if status in (TxStatus.PENDING, TxStatus.TIMEOUT):
        return FlowState.SUBMITTED
    return current
