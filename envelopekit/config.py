"""Configuration loading for EnvelopeKit.

Precedence, lowest first: built-in defaults, the Solana CLI config
(``json_rpc_url`` only), an ``envelopekit.toml`` file, then ``ENVELOPEKIT_*``
environment variables.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .constants import (
    ACCOUNT_LAYOUTS,
    ALLOWED_COMMITMENTS,
    CLUSTER_URLS,
    DEFAULT_ACCOUNT_LAYOUT,
    DEFAULT_COMMITMENT,
    DEFAULT_CONFIRM_ATTEMPTS,
    DEFAULT_CONFIRM_INTERVAL,
    DEFAULT_FLOW_TTL,
    DEFAULT_PROGRAM_ID,
    EXPIRY_UNITS,
    MAX_CREATE_AMOUNT,
    MIN_AMOUNT_PER_USER,
    MINT_DEVNET,
    MINT_MAINNET,
)
from .errors import ValidationError
from .schema import DEFAULT_SCHEMA_VERSION, SCHEMAS
from .util import parse_u64

DEFAULT_CONFIG_NAME = "envelopekit.toml"
ENV_PREFIX = "ENVELOPEKIT_"


@dataclass(frozen=True)
class EnvelopeConfig:
    network: str = "devnet"
    rpc_url: str = CLUSTER_URLS["devnet"]
    program_id: str = DEFAULT_PROGRAM_ID
    mint: str = MINT_DEVNET
    # Unit of the create instruction's expiry field; a property of the deployed build.
    expiry_unit: str = "seconds"
    account_layout: str = DEFAULT_ACCOUNT_LAYOUT
    schema_version: str = DEFAULT_SCHEMA_VERSION
    # Compare the 8-byte account discriminator before decoding.
    verify_discriminators: bool = False
    confirm_attempts: int = DEFAULT_CONFIRM_ATTEMPTS
    confirm_interval: float = DEFAULT_CONFIRM_INTERVAL
    commitment: str = DEFAULT_COMMITMENT
    flow_ttl: float = DEFAULT_FLOW_TTL
    max_create_amount: int = MAX_CREATE_AMOUNT
    min_amount_per_user: int = MIN_AMOUNT_PER_USER

    @property
    def expiry_unit_seconds(self) -> int:
        return EXPIRY_UNITS[self.expiry_unit]


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        import tomllib  # Python 3.11+
    except ImportError:  # pragma: no cover
        import tomli as tomllib  # type: ignore
    return tomllib.loads(path.read_text())


def load_solana_cli_config(env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = os.environ if env is None else env
    path = env.get("SOLANA_CONFIG") or env.get("SOLANA_CONFIG_FILE")
    if path:
        cfg_path = Path(path)
    else:
        cfg_path = Path.home() / ".config" / "solana" / "cli" / "config.yml"
    try:
        text = cfg_path.read_text()
    except OSError:
        return {}
    cfg: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        value = value.strip().strip("\"'")
        if key:
            cfg[key] = value
    return cfg


def _table(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ValidationError(f"[{name}] must be a table")
    return value


def _str(table: Dict[str, Any], key: str, section: str) -> Optional[str]:
    value = table.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{section}.{key} must be a non-empty string")
    return value.strip()


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{name} must be a positive integer")
    return value


def _positive_float(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValidationError(f"{name} must be a positive number")
    return float(value)


def load_config(
    path: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> EnvelopeConfig:
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    solana_cfg = load_solana_cli_config(env)
    if solana_cfg.get("json_rpc_url"):
        values["rpc_url"] = solana_cfg["json_rpc_url"]

    config_path: Optional[Path] = None
    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    elif env.get(f"{ENV_PREFIX}CONFIG"):
        config_path = Path(env[f"{ENV_PREFIX}CONFIG"]).expanduser()
    elif Path(DEFAULT_CONFIG_NAME).exists():
        config_path = Path(DEFAULT_CONFIG_NAME)
    if config_path is not None:
        values.update(_values_from_toml(_load_toml(config_path)))

    for key in ("network", "rpc_url", "program_id", "mint"):
        raw = env.get(f"{ENV_PREFIX}{key.upper()}")
        if raw:
            values[key] = raw.strip()

    return _finalize(values)


def _values_from_toml(data: Dict[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    cluster = _table(data, "cluster")
    for key in ("network", "rpc_url", "program_id"):
        value = _str(cluster, key, "cluster")
        if value is not None:
            values[key] = value

    program = _table(data, "program")
    for key in ("mint", "expiry_unit", "account_layout", "schema_version"):
        value = _str(program, key, "program")
        if value is not None:
            values[key] = value
    if "verify_discriminators" in program:
        flag = program["verify_discriminators"]
        if not isinstance(flag, bool):
            raise ValidationError("program.verify_discriminators must be a boolean")
        values["verify_discriminators"] = flag

    confirm = _table(data, "confirm")
    if "attempts" in confirm:
        values["confirm_attempts"] = _positive_int(confirm["attempts"], "confirm.attempts")
    if "interval_seconds" in confirm:
        values["confirm_interval"] = _positive_float(confirm["interval_seconds"], "confirm.interval_seconds")
    if "flow_ttl_seconds" in confirm:
        values["flow_ttl"] = _positive_float(confirm["flow_ttl_seconds"], "confirm.flow_ttl_seconds")
    commitment = _str(confirm, "commitment", "confirm")
    if commitment is not None:
        values["commitment"] = commitment

    limits = _table(data, "limits")
    for key in ("max_create_amount", "min_amount_per_user"):
        value = parse_u64(limits.get(key), f"limits.{key}")
        if value is not None:
            values[key] = value
    return values


def _finalize(values: Dict[str, Any]) -> EnvelopeConfig:
    network = values.get("network", "devnet")
    if network not in CLUSTER_URLS:
        raise ValidationError(f"network must be one of: {', '.join(sorted(CLUSTER_URLS))}")
    values["network"] = network
    values.setdefault("rpc_url", CLUSTER_URLS[network])
    values.setdefault("mint", MINT_MAINNET if network == "mainnet" else MINT_DEVNET)

    if values.get("expiry_unit", "seconds") not in EXPIRY_UNITS:
        raise ValidationError(f"program.expiry_unit must be one of: {', '.join(sorted(EXPIRY_UNITS))}")
    if values.get("account_layout", DEFAULT_ACCOUNT_LAYOUT) not in ACCOUNT_LAYOUTS:
        raise ValidationError(
            f"program.account_layout must be one of: {', '.join(sorted(ACCOUNT_LAYOUTS))}"
        )
    if values.get("schema_version", DEFAULT_SCHEMA_VERSION) not in SCHEMAS:
        raise ValidationError(f"program.schema_version must be one of: {', '.join(sorted(SCHEMAS))}")
    if values.get("commitment", DEFAULT_COMMITMENT) not in ALLOWED_COMMITMENTS:
        raise ValidationError(
            f"confirm.commitment must be one of: {', '.join(sorted(ALLOWED_COMMITMENTS))}"
        )
    return EnvelopeConfig(**values)
