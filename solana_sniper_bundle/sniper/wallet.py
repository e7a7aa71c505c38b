# solana_sniper_bundle/sniper/wallet.py
"""
Wallet providers.

A provider is picked once, at connect time, from a small registry keyed by a
wallet-type tag. Every provider exposes the same capabilities:

    address                         base58 public key
    sign(tx)                        -> signed VersionedTransaction
    sign_and_send(tx)               -> SignResult
    get_balance()                   -> SOL balance (float)
"""
from __future__ import annotations

import base64
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from solana.rpc.types import TxOpts
from solana.rpc.commitment import Confirmed
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from solana_sniper_bundle.common.constants import LAMPORTS_PER_SOL
from solana_sniper_bundle.sniper.errors import TradeErrorCode, classify_error
from solana_sniper_bundle.sniper.models import SignResult
from solana_sniper_bundle.utils.env_loader import get_active_private_key, load_env_first_found

logger = logging.getLogger("TradingBot")

TxLike = Union[VersionedTransaction, bytes, str]

_B58_ALPHABET = frozenset("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")


def decode_transaction(tx: TxLike) -> VersionedTransaction:
    """Accept a VersionedTransaction, raw bytes or a base64 string."""
    if isinstance(tx, VersionedTransaction):
        return tx
    if isinstance(tx, str):
        tx = base64.b64decode(tx)
    return VersionedTransaction.from_bytes(bytes(tx))


def keypair_from_secret(secret: str) -> Keypair:
    """Base58 64-byte secret or a JSON array of 64 ints."""
    secret = (secret or "").strip()
    if secret.startswith("["):
        try:
            arr = json.loads(secret)
        except ValueError:
            arr = None
        if isinstance(arr, list) and len(arr) == 64 and all(isinstance(x, int) for x in arr):
            return Keypair.from_bytes(bytes(arr))
    elif secret and all(c in _B58_ALPHABET for c in secret):
        # solders panics on non-base58 input
        return Keypair.from_base58_string(secret)
    raise ValueError("Private key format not recognized (expect base58 64-byte secret or JSON array of 64 ints).")


def _rejection(message: str) -> SignResult:
    code = classify_error(message)
    if code == TradeErrorCode.USER_REJECTED:
        message = "Transaction rejected"
    return SignResult(signature="", success=False, error=message)


class WalletProvider:
    kind = "base"

    @property
    def address(self) -> str:
        raise NotImplementedError

    async def sign(self, tx: TxLike) -> VersionedTransaction:
        raise NotImplementedError

    async def sign_and_send(self, tx: TxLike) -> SignResult:
        raise NotImplementedError

    async def get_balance(self) -> float:
        raise NotImplementedError


class KeypairWallet(WalletProvider):
    """Local keypair; signs in process and broadcasts through the RPC client."""

    kind = "keypair"

    def __init__(self, keypair: Keypair, rpc):
        self.keypair = keypair
        self.rpc = rpc

    @classmethod
    def from_env(cls, rpc) -> "KeypairWallet":
        load_env_first_found()
        secret = get_active_private_key()
        if not secret:
            raise ValueError("Set SOLANA_PRIVATE_KEY (or WALLET_PRIVATE_KEY) to use the keypair wallet.")
        return cls(keypair_from_secret(secret), rpc)

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())

    async def sign(self, tx: TxLike) -> VersionedTransaction:
        unsigned = decode_transaction(tx)
        return VersionedTransaction(unsigned.message, [self.keypair])

    async def sign_and_send(self, tx: TxLike) -> SignResult:
        try:
            signed = await self.sign(tx)
            resp = await self.rpc.send_raw_transaction(
                bytes(signed), opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            )
            return SignResult(signature=str(resp.value), success=True)
        except Exception as e:
            logger.warning("Keypair wallet send failed: %s", e)
            return _rejection(str(e))

    async def get_balance(self) -> float:
        resp = await self.rpc.get_balance(Pubkey.from_string(self.address))
        return int(resp.value) / LAMPORTS_PER_SOL


class CallbackWallet(WalletProvider):
    """
    Bridges an externally connected wallet (browser extension, hardware
    bridge) through async callables supplied by the host application.
    """

    kind = "callback"

    def __init__(
        self,
        address: str,
        sign_and_send: Callable[[Any], Awaitable[Any]],
        get_balance: Optional[Callable[[], Awaitable[float]]] = None,
        sign: Optional[Callable[[Any], Awaitable[Any]]] = None,
    ):
        self._address = address
        self._sign_and_send = sign_and_send
        self._get_balance = get_balance
        self._sign = sign

    @property
    def address(self) -> str:
        return self._address

    async def sign(self, tx: TxLike) -> VersionedTransaction:
        if self._sign is None:
            raise NotImplementedError("this wallet bridge only supports sign_and_send")
        return decode_transaction(await self._sign(tx))

    async def sign_and_send(self, tx: TxLike) -> SignResult:
        try:
            out = await self._sign_and_send(tx)
        except Exception as e:
            return _rejection(str(e))
        if isinstance(out, SignResult):
            return out
        if isinstance(out, dict):
            ok = bool(out.get("success", bool(out.get("signature"))))
            if not ok:
                return _rejection(str(out.get("error") or "Wallet failed to sign"))
            return SignResult(signature=str(out.get("signature") or ""), success=True)
        return SignResult(signature=str(out), success=bool(out))

    async def get_balance(self) -> float:
        if self._get_balance is None:
            return 0.0
        return float(await self._get_balance())

# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------
_PROVIDERS: Dict[str, Callable[..., WalletProvider]] = {}


def register_wallet_provider(kind: str, factory: Callable[..., WalletProvider]) -> None:
    _PROVIDERS[kind.lower()] = factory


def create_wallet_provider(kind: str, **kwargs: Any) -> WalletProvider:
    factory = _PROVIDERS.get((kind or "").lower())
    if factory is None:
        raise KeyError(f"Unknown wallet provider '{kind}' (known: {', '.join(sorted(_PROVIDERS))})")
    provider = factory(**kwargs)
    logger.info("Wallet provider '%s' connected: %s", kind, provider.address)
    return provider


def _keypair_factory(rpc=None, keypair: Optional[Keypair] = None, secret: Optional[str] = None) -> KeypairWallet:
    if keypair is not None:
        return KeypairWallet(keypair, rpc)
    if secret:
        return KeypairWallet(keypair_from_secret(secret), rpc)
    return KeypairWallet.from_env(rpc)


register_wallet_provider("keypair", _keypair_factory)
register_wallet_provider("callback", CallbackWallet)
