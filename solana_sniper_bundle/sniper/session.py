# solana_sniper_bundle/sniper/session.py
"""
Session-scoped context.

Everything that used to be ambient process state (wallet connection, scanner
lists, the token registry, sell locks) hangs off one ``SessionContext``. The
pipeline, execution engine and bot loop receive it in their constructors.
It is created on sign-in / connect and torn down with ``close()``.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
from solana.rpc.async_api import AsyncClient

from solana_sniper_bundle.common.feature_flags import is_demo_mode, resolved_run_flags
from solana_sniper_bundle.sniper import database
from solana_sniper_bundle.sniper.errors import TradeErrorCode, remediation_hint
from solana_sniper_bundle.sniper.functions_client import FunctionClient
from solana_sniper_bundle.sniper.sell_lock import SellLockManager
from solana_sniper_bundle.sniper.token_state import TokenStateRegistry
from solana_sniper_bundle.sniper.utils_exec import resolve_db_path, section
from solana_sniper_bundle.sniper.wallet import WalletProvider, create_wallet_provider

logger = logging.getLogger("TradingBot")

INITIAL_DEMO_BALANCE = 100.0  # SOL

Notifier = Callable[[str, str, str, Optional[TradeErrorCode]], None]
AuthRefresher = Callable[[], Awaitable[Optional[str]]]


def log_notifier(title: str, message: str, level: str = "info", code: Optional[TradeErrorCode] = None) -> None:
    """Default toast sink: one log line with the taxonomy label and a hint."""
    parts = [title]
    if code is not None:
        parts.append(f"[{code.value}]")
    if message:
        parts.append(message)
    hint = remediation_hint(code) if code is not None else ""
    if hint:
        parts.append(f"({hint})")
    line = " ".join(parts)
    if level in ("error", "warning", "destructive"):
        logger.warning(line)
    else:
        logger.info(line)


class SessionContext:
    def __init__(
        self,
        cfg: Optional[Dict[str, Any]] = None,
        *,
        http: Optional[aiohttp.ClientSession] = None,
        rpc: Optional[AsyncClient] = None,
        wallet: Optional[WalletProvider] = None,
        db_path: Optional[str] = None,
        auth_token: Optional[str] = None,
        refresh_auth: Optional[AuthRefresher] = None,
        notifier: Optional[Notifier] = None,
        demo: Optional[bool] = None,
        registry: Optional[TokenStateRegistry] = None,
        sell_locks: Optional[SellLockManager] = None,
    ):
        self.cfg = cfg or {}
        self.db_path = db_path or resolve_db_path(self.cfg)
        self.http = http
        self.rpc = rpc
        self.wallet = wallet
        self.auth_token = auth_token
        self._refresh_auth = refresh_auth
        self.notifier: Notifier = notifier or log_notifier
        self.demo = is_demo_mode(self.cfg) if demo is None else bool(demo)
        self.run_flags = resolved_run_flags(self.cfg)
        self.dry_run = bool(self.run_flags["dry_run"])
        self.registry = registry or TokenStateRegistry.from_config(self.cfg, self.db_path)
        self.sell_locks = sell_locks or SellLockManager()

        self.open_positions: List[Dict[str, Any]] = []
        self.wallet_balance: float = 0.0
        self.demo_balance: float = INITIAL_DEMO_BALANCE
        self.demo_positions: List[Dict[str, Any]] = []

        self._own_http = http is None
        self._own_rpc = rpc is None
        self._functions: Optional[FunctionClient] = None
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> "SessionContext":
        if self._started:
            return self
        if self.http is None:
            self.http = aiohttp.ClientSession(headers={"Accept": "application/json"})
            self._own_http = True
        if self.rpc is None:
            rpc_url = section(self.cfg, "solana").get("rpc_url")
            self.rpc = AsyncClient(rpc_url)
            self._own_rpc = True
        await database.init_db(self.db_path)
        if not self.demo:
            await self.registry.load()
        self._started = True
        logger.info(
            "Session started (%s mode, dry_run=%s, sources=%s, rugcheck=%s, db=%s)",
            "demo" if self.demo else "live", self.dry_run, ",".join(self.run_flags["sources"]),
            self.run_flags["rugcheck"], self.db_path,
        )
        return self

    async def close(self) -> None:
        self.sell_locks.clear()
        self.wallet = None
        if self.rpc is not None and self._own_rpc:
            try:
                await self.rpc.close()
            except Exception as e:
                logger.debug("RPC client close failed: %s", e)
        if self.http is not None and self._own_http:
            await self.http.close()
        self.rpc = None
        self.http = None
        self._functions = None
        self._started = False
        logger.info("Session closed")

    async def __aenter__(self) -> "SessionContext":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------
    def connect_wallet(self, kind: str, **kwargs: Any) -> WalletProvider:
        if kind == "keypair":
            kwargs.setdefault("rpc", self.rpc)
        self.wallet = create_wallet_provider(kind, **kwargs)
        return self.wallet

    def disconnect_wallet(self) -> None:
        self.wallet = None
        self.wallet_balance = 0.0
        self.open_positions = []

    @property
    def wallet_address(self) -> Optional[str]:
        return self.wallet.address if self.wallet is not None else None

    # ------------------------------------------------------------------
    # Auth / functions RPC
    # ------------------------------------------------------------------
    def get_auth_token(self) -> Optional[str]:
        return self.auth_token

    async def refresh_auth(self) -> Optional[str]:
        if self._refresh_auth is None:
            return self.auth_token
        token = await self._refresh_auth()
        if token:
            self.auth_token = token
        return self.auth_token

    @property
    def functions(self) -> FunctionClient:
        if self._functions is None:
            if self.http is None:
                raise RuntimeError("session not started")
            self._functions = FunctionClient(
                section(self.cfg, "functions").get("base_url", ""),
                self.http,
                self.get_auth_token,
                refresh=self.refresh_auth if self._refresh_auth is not None else None,
            )
        return self._functions

    # ------------------------------------------------------------------
    # Downstream refreshes
    # ------------------------------------------------------------------
    async def refresh_positions(self) -> List[Dict[str, Any]]:
        if self.demo:
            self.open_positions = [p for p in self.demo_positions if p.get("status") == "open"]
        else:
            self.open_positions = await database.list_open_positions(self.db_path, self.wallet_address)
        return self.open_positions

    async def refresh_balance(self) -> float:
        if self.demo:
            return self.demo_balance
        if self.wallet is None:
            self.wallet_balance = 0.0
            return 0.0
        try:
            self.wallet_balance = await self.wallet.get_balance()
        except Exception as e:
            logger.warning("Balance refresh failed: %s", e)
        return self.wallet_balance

    def notify(self, title: str, message: str = "", level: str = "info", code: Optional[TradeErrorCode] = None) -> None:
        try:
            self.notifier(title, message, level, code)
        except Exception as e:
            logger.debug("Notifier raised: %s", e)
