"""EnvelopeKit: keyless transaction building for the envelope program."""

from __future__ import annotations

from .config import EnvelopeConfig, load_config
from .instructions import CreateParams, DirectFixed, GroupFixed, GroupRandom, make_variant
from .lifecycle import TransactionResult, TxStatus
from .service import EnvelopeService, UnsignedFlow

__all__ = [
    "CreateParams",
    "DirectFixed",
    "EnvelopeConfig",
    "EnvelopeService",
    "GroupFixed",
    "GroupRandom",
    "TransactionResult",
    "TxStatus",
    "UnsignedFlow",
    "load_config",
    "make_variant",
]
