"""Classification of RPC and on-chain error text.

Errors reach us as free text: preflight messages, stringified status errors,
JSON fragments. :class:`ErrorClassifier` runs an ordered list of independent
strategies over that text and keeps the first result. Program error codes are
found by their own ordered list of code matchers, so a new error format only
needs a new matcher.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import re
from typing import Any, Callable, List, Optional, Sequence

from .constants import MAX_ERROR_TEXT
from .errors import SubmissionRejected, TransportError
from .tables import ProgramTables


class ErrorKind(str, Enum):
    EXPIRED = "expired"
    PROGRAM_ERROR = "program_error"
    SIMULATION_FAILED = "simulation_failed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    TRANSPORT = "transport"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    message: str
    code: Optional[int] = None
    known: bool = False
    detail: str = ""
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "code": self.code,
            "known": self.known,
            "logs": list(self.logs),
        }


CodeMatcher = Callable[[str], Optional[int]]
Strategy = Callable[[str, ProgramTables], Optional[Classification]]


def _balanced_object(text: str, start: int) -> Optional[str]:
    depth = 0
    for idx in range(start, len(text)):
        ch = text[idx]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    return None


def _custom_from_instruction_error(node: Any) -> Optional[int]:
    if isinstance(node, dict):
        if "InstructionError" in node:
            pair = node["InstructionError"]
            if isinstance(pair, list) and len(pair) >= 2 and isinstance(pair[1], dict):
                custom = pair[1].get("Custom")
                if isinstance(custom, int) and not isinstance(custom, bool):
                    return custom
                if isinstance(custom, str) and custom.isdigit():
                    return int(custom)
        if "err" in node:
            return _custom_from_instruction_error(node["err"])
    return None


def match_instruction_error_json(text: str) -> Optional[int]:
    """``{"err": {"InstructionError": [0, {"Custom": 6002}]}}`` embedded anywhere."""
    for marker in ('"err":', '{"InstructionError"'):
        pos = text.find(marker)
        while pos != -1:
            start = text.rfind("{", 0, pos + 1)
            if start != -1:
                fragment = _balanced_object(text, start)
                if fragment:
                    try:
                        code = _custom_from_instruction_error(json.loads(fragment))
                    except json.JSONDecodeError:
                        code = None
                    if code is not None:
                        return code
            pos = text.find(marker, pos + 1)
    return None


_DECIMAL_PATTERNS = (
    re.compile(r'"Custom":\s*(\d+)'),
    re.compile(r'"Custom":\s*"(\d+)"'),
    re.compile(r"Custom:\s*(\d+)"),
    re.compile(r"Custom\((\d+)\)"),
    re.compile(r"error code:\s*(\d+)"),
    re.compile(r"Error Number:\s*(\d+)"),
)
_HEX_PATTERN = re.compile(r"custom program error: 0x([0-9a-fA-F]+)")


def match_custom_decimal(text: str) -> Optional[int]:
    for pattern in _DECIMAL_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    return None


def match_custom_hex(text: str) -> Optional[int]:
    match = _HEX_PATTERN.search(text)
    if match:
        return int(match.group(1), 16)
    return None


DEFAULT_CODE_MATCHERS: Sequence[CodeMatcher] = (
    match_instruction_error_json,
    match_custom_decimal,
    match_custom_hex,
)


def extract_error_code(text: str, matchers: Sequence[CodeMatcher] = DEFAULT_CODE_MATCHERS) -> Optional[int]:
    for matcher in matchers:
        code = matcher(text)
        if code is not None:
            return code
    return None


_LOG_PATTERNS = (
    re.compile(r'Program log: ([^"\\\n]+?)(?:"|\\n|$)', re.MULTILINE),
    re.compile(r"Program log: ([^\n]+)"),
)


def extract_program_logs(text: str) -> List[str]:
    """Best-effort scan for ``Program log:`` lines, quoted or not."""
    logs: List[str] = []
    for pattern in _LOG_PATTERNS:
        for match in pattern.finditer(text):
            line = match.group(1).strip().rstrip('",')
            if line and '"' not in line and line not in logs:
                logs.append(line)
    return logs


_EXPIRED_MARKERS = (
    "blockhashnotfound",
    "blockhash not found",
    "block height exceeded",
    "transactionexpiredblockheightexceeded",
)


def expired_strategy(text: str, tables: ProgramTables) -> Optional[Classification]:
    lower = text.lower()
    if any(marker in lower for marker in _EXPIRED_MARKERS):
        return Classification(
            ErrorKind.EXPIRED,
            "Transaction expired. The blockhash is no longer valid. "
            "Please create a new transaction and try again.",
        )
    return None


def make_program_error_strategy(matchers: Sequence[CodeMatcher] = DEFAULT_CODE_MATCHERS) -> Strategy:
    def program_error_strategy(text: str, tables: ProgramTables) -> Optional[Classification]:
        code = extract_error_code(text, matchers)
        if code is None:
            return None
        known = tables.message_for(code)
        message = known or f"Custom program error code: {code}"
        return Classification(ErrorKind.PROGRAM_ERROR, message, code=code, known=known is not None)

    return program_error_strategy


def simulation_strategy(text: str, tables: ProgramTables) -> Optional[Classification]:
    if "simulation failed" in text.lower():
        return Classification(
            ErrorKind.SIMULATION_FAILED,
            "Transaction simulation failed. Check program logs for details.",
        )
    return None


def insufficient_funds_strategy(text: str, tables: ProgramTables) -> Optional[Classification]:
    if "insufficient funds" in text.lower() or "insufficientfundsforfee" in text.lower():
        return Classification(
            ErrorKind.INSUFFICIENT_FUNDS,
            "Insufficient SOL balance to pay for transaction",
        )
    return None


DEFAULT_STRATEGIES: Sequence[Strategy] = (
    expired_strategy,
    make_program_error_strategy(),
    simulation_strategy,
    insufficient_funds_strategy,
)


def truncate(text: str, limit: int = MAX_ERROR_TEXT) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class ErrorClassifier:
    def __init__(self, tables: ProgramTables, strategies: Sequence[Strategy] = DEFAULT_STRATEGIES) -> None:
        self.tables = tables
        self.strategies = list(strategies)

    def with_strategy(self, strategy: Strategy, *, first: bool = False) -> "ErrorClassifier":
        strategies = [strategy, *self.strategies] if first else [*self.strategies, strategy]
        return ErrorClassifier(self.tables, strategies)

    def classify(self, raw: Any) -> Classification:
        text, logs = _error_text(raw)
        logs = logs or extract_program_logs(text)
        for strategy in self.strategies:
            result = strategy(text, self.tables)
            if result is not None:
                return Classification(
                    result.kind,
                    result.message,
                    code=result.code,
                    known=result.known,
                    detail=text,
                    logs=logs,
                )
        if isinstance(raw, TransportError) and not isinstance(raw, SubmissionRejected):
            return Classification(ErrorKind.TRANSPORT, truncate(str(raw)), detail=text, logs=logs)
        return Classification(ErrorKind.UNKNOWN, truncate(text), detail=text, logs=logs)


def _error_text(raw: Any) -> tuple[str, List[str]]:
    if isinstance(raw, SubmissionRejected):
        return raw.detail, list(raw.logs)
    if isinstance(raw, TransportError):
        return raw.detail, []
    if isinstance(raw, (dict, list)):
        return json.dumps(raw), []
    if raw is None:
        return "", []
    return str(raw), []
