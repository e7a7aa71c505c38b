# solana_sniper_bundle/sniper/errors.py
"""
Structured error codes for the execution and discovery boundaries.

Raw external error text (aggregator bodies, RPC errors, wallet messages) is
translated once, here, into a ``TradeErrorCode``. Everything downstream
switches on the code instead of re-matching strings.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Optional


class TradeErrorCode(str, Enum):
    SLIPPAGE_EXCEEDED = "SLIPPAGE_EXCEEDED"
    NO_ROUTE = "NO_ROUTE"
    USER_REJECTED = "USER_REJECTED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    SELL_LOCKED = "SELL_LOCKED"
    WALLET_NOT_CONNECTED = "WALLET_NOT_CONNECTED"
    CONFIRMATION_FAILED = "CONFIRMATION_FAILED"
    UNKNOWN = "UNKNOWN"


# Jupiter SlippageToleranceExceeded is custom program error 6001 (0x1771);
# 6024 (0x1788) also surfaces on slippage failures.
SLIPPAGE_PATTERNS = (
    "custom:6024",
    '"custom":6001',
    '"custom":6024',
    "custom(6001)",
    "custom(6024)",
    "0x1771",
    "0x1788",
    "slippage tolerance",
    "slippagetoleranceexceeded",
    "exceededslippagetolerance",
    "slippage exceeded",
)

NO_ROUTE_PATTERNS = (
    "no_route",
    "no route",
    "route_not_found",
    "no routes found",
    "could not find any route",
    "insufficient liquidity",
    "not tradeable",
    "token_not_tradable",
)

USER_REJECTED_PATTERNS = (
    "user rejected",
    "user declined",
    "rejected the request",
    "transaction rejected",
    "user denied",
)

INSUFFICIENT_FUNDS_PATTERNS = (
    "insufficient funds",
    "insufficient lamports",
    "insufficient balance",
    "0x1",                         # spl-token InsufficientFunds (checked last)
)

AUTH_PATTERNS = ("expired", "401", "unauthorized", "jwt")

RATE_LIMIT_PATTERNS = ("429", "rate limit", "too many requests")

TIMEOUT_PATTERNS = ("timeout", "timed out")

NETWORK_PATTERNS = (
    "network",
    "connection",
    "econnreset",
    "failed to fetch",
    "server disconnected",
    "cannot connect",
)


def _has(msg: str, patterns) -> bool:
    return any(p in msg for p in patterns)


def is_slippage_error(message: Optional[str]) -> bool:
    return _has((message or "").lower(), SLIPPAGE_PATTERNS)


def is_no_route_error(message: Optional[str]) -> bool:
    return _has((message or "").lower(), NO_ROUTE_PATTERNS)


def is_auth_error(message: Optional[str]) -> bool:
    return _has((message or "").lower(), AUTH_PATTERNS)


def classify_error(message: Optional[str]) -> TradeErrorCode:
    """Map raw error text to a structured code. Order matters: most specific first."""
    m = (message or "").lower()
    if not m:
        return TradeErrorCode.UNKNOWN
    if _has(m, SLIPPAGE_PATTERNS):
        return TradeErrorCode.SLIPPAGE_EXCEEDED
    if _has(m, NO_ROUTE_PATTERNS):
        return TradeErrorCode.NO_ROUTE
    if _has(m, USER_REJECTED_PATTERNS):
        return TradeErrorCode.USER_REJECTED
    if _has(m, INSUFFICIENT_FUNDS_PATTERNS[:-1]):
        return TradeErrorCode.INSUFFICIENT_FUNDS
    if _has(m, RATE_LIMIT_PATTERNS):
        return TradeErrorCode.RATE_LIMITED
    if _has(m, AUTH_PATTERNS):
        return TradeErrorCode.AUTH_EXPIRED
    if _has(m, TIMEOUT_PATTERNS):
        return TradeErrorCode.TIMEOUT
    if _has(m, NETWORK_PATTERNS):
        return TradeErrorCode.NETWORK_ERROR
    if "custom program error: 0x1" in m and "0x17" not in m:
        return TradeErrorCode.INSUFFICIENT_FUNDS
    return TradeErrorCode.UNKNOWN


_HINTS = {
    TradeErrorCode.SLIPPAGE_EXCEEDED: "Retrying with higher slippage...",
    TradeErrorCode.NO_ROUTE: "No swap route yet; the token will be re-checked later.",
    TradeErrorCode.USER_REJECTED: "The wallet declined the signature request.",
    TradeErrorCode.INSUFFICIENT_FUNDS: "Top up SOL to cover the trade and fees.",
    TradeErrorCode.AUTH_EXPIRED: "Sign in again to refresh your session.",
    TradeErrorCode.RATE_LIMITED: "Upstream rate limit hit; wait a moment.",
    TradeErrorCode.NETWORK_ERROR: "Check your connection or RPC endpoint.",
    TradeErrorCode.TIMEOUT: "The request timed out; try again.",
    TradeErrorCode.SELL_LOCKED: "A sell for this token is already in progress.",
    TradeErrorCode.WALLET_NOT_CONNECTED: "Connect a wallet before trading.",
    TradeErrorCode.CONFIRMATION_FAILED: "Check the transaction on an explorer.",
}


def remediation_hint(code: TradeErrorCode) -> str:
    return _HINTS.get(code, "")


class SniperError(Exception):
    """Base error carrying a structured code."""

    def __init__(self, message: str, code: Optional[TradeErrorCode] = None):
        super().__init__(message)
        self.code = code or classify_error(message)


class SwapBackendError(SniperError):
    pass


class AuthExpiredError(SniperError):
    def __init__(self, message: str = "Session expired"):
        super().__init__(message, TradeErrorCode.AUTH_EXPIRED)


class FunctionInvokeError(SniperError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def extract_error_message(status: Optional[int], body: Any) -> str:
    """
    Useful message from a failed function/HTTP call: JSON ``error`` or
    ``message`` first, then raw body text, then the status line.
    """
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        text = body.strip()
        if text:
            try:
                parsed = json.loads(text)
            except ValueError:
                return text[:500]
            body = parsed
    if isinstance(body, dict):
        msg = body.get("error") or body.get("message")
        if isinstance(msg, dict):
            msg = msg.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg
        return json.dumps(body)[:500]
    if status:
        return f"Request failed (HTTP {status})"
    return "Request failed"


def describe_tx_error(err: Any) -> str:
    """
    Render an on-chain ``TransactionError`` the way the JSON RPC reports it,
    e.g. ``{"InstructionError":[2,{"Custom":6001}]}``. solders' repr of the
    same error does not carry the RPC field names.
    """
    if err is None:
        return ""
    if isinstance(err, str):
        return err
    if isinstance(err, (dict, list)):
        return json.dumps(err, separators=(",", ":"))
    index = getattr(err, "index", None)
    inner = getattr(err, "err", None)
    if isinstance(index, int) and inner is not None:
        code = getattr(inner, "code", None)
        detail: Any = {"Custom": code} if isinstance(code, int) else _enum_name(inner)
        return json.dumps({"InstructionError": [index, detail]}, separators=(",", ":"))
    return _enum_name(err)


def _enum_name(value: Any) -> str:
    return str(value).rsplit(".", 1)[-1]
