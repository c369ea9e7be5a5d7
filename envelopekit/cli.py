from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from .accounts import derive_token_account
from .classify import ErrorClassifier
from .config import EnvelopeConfig, load_config
from .constants import CLUSTER_URLS
from .errors import DecodeError, EnvelopeKitError, ValidationError
from .instructions import make_variant
from .lifecycle import TxStatus
from .rpc import SolanaLedger
from .service import EnvelopeService
from .tables import build_tables
from .util import to_pubkey


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _load_cli_config(args: argparse.Namespace) -> EnvelopeConfig:
    env = dict(os.environ)
    network = getattr(args, "network", None)
    rpc_url = getattr(args, "rpc_url", None)
    program_id = getattr(args, "program_id", None)
    if network:
        env["ENVELOPEKIT_NETWORK"] = network
        if not rpc_url:
            env["ENVELOPEKIT_RPC_URL"] = CLUSTER_URLS[network]
    if rpc_url:
        env["ENVELOPEKIT_RPC_URL"] = rpc_url
    if program_id:
        env["ENVELOPEKIT_PROGRAM_ID"] = program_id
    return load_config(getattr(args, "config", None), env)


def _service(args: argparse.Namespace) -> EnvelopeService:
    config = _load_cli_config(args)
    return EnvelopeService(config, SolanaLedger(config.rpc_url))


def _cmd_derive(args: argparse.Namespace) -> int:
    service = _service(args)
    addresses = service.derive_addresses(args.owner, args.envelope_id, args.claimer)
    payload = addresses.to_dict()
    payload["owner_token_account"] = str(derive_token_account(to_pubkey(args.owner, "owner"), service.mint))
    _print_json(payload)
    return 0


def _cmd_show(args: argparse.Namespace) -> int:
    service = _service(args)
    envelope = service.get_envelope(args.owner, args.envelope_id)
    if envelope is None:
        print(f"Envelope {args.envelope_id} for {args.owner} not found")
        return 1
    payload = envelope.to_dict()
    if args.claimer:
        record = service.get_claim_record(args.owner, args.envelope_id, args.claimer)
        payload["claim"] = (
            {
                "claimer": str(record.claimer),
                "amount": record.amount,
                "claimed_at": record.claimed_at,
            }
            if record
            else None
        )
    _print_json(payload)
    return 0


def _cmd_build_init(args: argparse.Namespace) -> int:
    _print_json(_service(args).build_unsigned_init(args.owner).to_dict())
    return 0


def _cmd_build_create(args: argparse.Namespace) -> int:
    variant = make_variant(args.type, args.allowed)
    flow = _service(args).build_unsigned_create(
        args.owner,
        variant,
        args.amount,
        args.slots,
        args.expiry,
    )
    _print_json(flow.to_dict())
    return 0


def _cmd_build_claim(args: argparse.Namespace) -> int:
    _print_json(_service(args).build_unsigned_claim(args.owner, args.claimer, args.envelope_id).to_dict())
    return 0


def _cmd_build_owner_action(args: argparse.Namespace) -> int:
    service = _service(args)
    build = {
        "refund": service.build_unsigned_refund,
        "cancel": service.build_unsigned_cancel,
        "close": service.build_unsigned_close,
    }[args.action]
    _print_json(build(args.owner, args.envelope_id).to_dict())
    return 0


def _read_signed(args: argparse.Namespace) -> str:
    if args.tx_file:
        return Path(args.tx_file).read_text().strip()
    if args.tx:
        return args.tx
    text = sys.stdin.read().strip()
    if not text:
        raise ValidationError("no signed transaction given (use --tx, --tx-file or stdin)")
    return text


def _cmd_submit(args: argparse.Namespace) -> int:
    # Pending flows do not outlive a process, so the CLI submits uncorrelated.
    result = _service(args).submit_raw(_read_signed(args), wait=not args.no_wait)
    _print_json(result.to_dict())
    return 0 if result.ok or result.status in (TxStatus.PENDING, TxStatus.TIMEOUT) else 1


def _cmd_status(args: argparse.Namespace) -> int:
    result = _service(args).get_transaction_status(args.signature)
    _print_json(result.to_dict())
    return 1 if result.status in (TxStatus.FAILED, TxStatus.EXPIRED) else 0


def _cmd_classify(args: argparse.Namespace) -> int:
    text = args.text if args.text is not None else sys.stdin.read()
    classification = ErrorClassifier(build_tables()).classify(text)
    _print_json(classification.to_dict())
    return 0


def _add_cluster_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", help="Path to envelopekit.toml")
    p.add_argument("--network", choices=sorted(CLUSTER_URLS), help="Cluster name")
    p.add_argument("--rpc-url", help="Override RPC endpoint")
    p.add_argument("--program-id", help="Override envelope program id")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="envelopekit")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_derive = sub.add_parser("derive", help="Derive program addresses for an envelope")
    _add_cluster_args(p_derive)
    p_derive.add_argument("owner", help="Envelope owner public key")
    p_derive.add_argument("envelope_id", type=int, help="Envelope id")
    p_derive.add_argument("--claimer", help="Also derive the claim record for this claimer")
    p_derive.set_defaults(func=_cmd_derive)

    p_show = sub.add_parser("show", help="Fetch and decode an envelope account")
    _add_cluster_args(p_show)
    p_show.add_argument("owner", help="Envelope owner public key")
    p_show.add_argument("envelope_id", type=int, help="Envelope id")
    p_show.add_argument("--claimer", help="Also show this claimer's claim record")
    p_show.set_defaults(func=_cmd_show)

    p_init = sub.add_parser("build-init", help="Build an unsigned init_user_state transaction")
    _add_cluster_args(p_init)
    p_init.add_argument("owner", help="Owner public key (fee payer)")
    p_init.set_defaults(func=_cmd_build_init)

    p_create = sub.add_parser("build-create", help="Build an unsigned create transaction")
    _add_cluster_args(p_create)
    p_create.add_argument("owner", help="Owner public key (fee payer)")
    p_create.add_argument(
        "--type",
        required=True,
        choices=["direct_fixed", "group_fixed", "group_random"],
        help="Envelope type",
    )
    p_create.add_argument("--allowed", help="Designated claimer (direct_fixed only)")
    p_create.add_argument("--amount", type=int, required=True, help="Total amount in base units")
    p_create.add_argument("--slots", type=int, default=1, help="Number of claimers")
    p_create.add_argument(
        "--expiry",
        type=int,
        required=True,
        help="Expiry duration in the configured program.expiry_unit",
    )
    p_create.set_defaults(func=_cmd_build_create)

    p_claim = sub.add_parser("build-claim", help="Build an unsigned claim transaction")
    _add_cluster_args(p_claim)
    p_claim.add_argument("owner", help="Envelope owner public key")
    p_claim.add_argument("claimer", help="Claimer public key (fee payer)")
    p_claim.add_argument("envelope_id", type=int, help="Envelope id")
    p_claim.set_defaults(func=_cmd_build_claim)

    for action, text in (
        ("refund", "Build an unsigned refund transaction"),
        ("cancel", "Build an unsigned cancel transaction"),
        ("close", "Build an unsigned close transaction"),
    ):
        p_action = sub.add_parser(f"build-{action}", help=text)
        _add_cluster_args(p_action)
        p_action.add_argument("owner", help="Envelope owner public key (fee payer)")
        p_action.add_argument("envelope_id", type=int, help="Envelope id")
        p_action.set_defaults(func=_cmd_build_owner_action, action=action)

    p_submit = sub.add_parser("submit", help="Submit a signed transaction")
    _add_cluster_args(p_submit)
    p_submit.add_argument("--tx", help="Base64 signed transaction")
    p_submit.add_argument("--tx-file", help="File holding the base64 signed transaction")
    p_submit.add_argument("--no-wait", action="store_true", help="Return after sending")
    p_submit.set_defaults(func=_cmd_submit)

    p_status = sub.add_parser("status", help="Query a transaction signature")
    _add_cluster_args(p_status)
    p_status.add_argument("signature", help="Transaction signature")
    p_status.set_defaults(func=_cmd_status)

    p_classify = sub.add_parser("classify", help="Classify RPC error text")
    p_classify.add_argument("text", nargs="?", help="Error text (stdin when omitted)")
    p_classify.set_defaults(func=_cmd_classify)

    args = parser.parse_args(argv)
    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        return args.func(args)
    except FileNotFoundError as exc:
        print(str(exc))
        return 1
    except DecodeError as exc:
        print(f"decode error: {exc}")
        return 1
    except EnvelopeKitError as exc:
        print(str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
