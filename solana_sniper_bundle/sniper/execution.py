# solana_sniper_bundle/sniper/execution.py
"""
Trade execution engine.

Every operation walks one forward status chain:

    idle -> fetching_quote -> building_tx -> awaiting_signature
         -> broadcasting -> confirming -> confirmed | failed

Sells additionally loop failed -> retrying -> fetching_quote, and only when
the failure was classified SLIPPAGE_EXCEEDED. Buys never retry.

Public methods return ``TradeResult`` (or ``None`` for a failed quote); they
do not raise. Demo mode never touches the swap backend.
"""
from __future__ import annotations

import asyncio
import logging
import math
import random
import string
import time
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from solana_sniper_bundle.common.constants import SOL_MINT
from solana_sniper_bundle.sniper.errors import SniperError, TradeErrorCode, classify_error
from solana_sniper_bundle.sniper.models import SignResult, TradeParams, TradeQuote, TradeResult
from solana_sniper_bundle.sniper.sell_lock import holder_of
from solana_sniper_bundle.sniper.slippage import (
    SLIPPAGE_RETRY_CONFIG,
    calculate_dynamic_slippage,
    get_retry_delay,
)
from solana_sniper_bundle.sniper.swap_backend import SwapBackend, explorer_url, make_swap_backend
from solana_sniper_bundle.sniper.utils_exec import section
from solana_sniper_bundle.sniper.wallet import decode_transaction

logger = logging.getLogger("TradingBot")

SignAndSend = Callable[[Any], Awaitable[SignResult]]

# Demo fills assume 6 output decimals regardless of the real mint.
DEMO_OUTPUT_DECIMALS = 6
DEMO_FILL_RATIO = 0.95
DEMO_PRICE_IMPACT_PCT = 0.12
DEMO_STEP_DELAYS_S = (0.5, 0.3, 1.0, 0.5, 1.5)


class TxStatus(str, Enum):
    IDLE = "idle"
    FETCHING_QUOTE = "fetching_quote"
    BUILDING_TX = "building_tx"
    AWAITING_SIGNATURE = "awaiting_signature"
    BROADCASTING = "broadcasting"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    RETRYING = "retrying"


_TRANSITIONS = {
    TxStatus.IDLE: {TxStatus.FETCHING_QUOTE},
    TxStatus.FETCHING_QUOTE: {TxStatus.BUILDING_TX, TxStatus.IDLE, TxStatus.FAILED},
    TxStatus.BUILDING_TX: {TxStatus.AWAITING_SIGNATURE, TxStatus.FAILED},
    TxStatus.AWAITING_SIGNATURE: {TxStatus.BROADCASTING, TxStatus.FAILED},
    TxStatus.BROADCASTING: {TxStatus.CONFIRMING, TxStatus.FAILED},
    TxStatus.CONFIRMING: {TxStatus.CONFIRMED, TxStatus.FAILED},
    TxStatus.CONFIRMED: {TxStatus.IDLE},
    TxStatus.FAILED: {TxStatus.RETRYING, TxStatus.IDLE},
    TxStatus.RETRYING: {TxStatus.FETCHING_QUOTE},
}


class IllegalTransition(RuntimeError):
    pass


class TransactionFlow:
    """Status machine for one trade operation."""

    def __init__(self, on_change: Optional[Callable[[TxStatus], None]] = None, allow_retry: bool = False):
        self.status = TxStatus.IDLE
        self.history: List[TxStatus] = [TxStatus.IDLE]
        self.allow_retry = allow_retry
        self._on_change = on_change

    def advance(self, to: TxStatus) -> None:
        if to not in _TRANSITIONS[self.status]:
            raise IllegalTransition(f"{self.status.value} -> {to.value}")
        if to == TxStatus.RETRYING and not self.allow_retry:
            raise IllegalTransition("retrying is only reachable from a sell")
        self.status = to
        self.history.append(to)
        if self._on_change is not None:
            try:
                self._on_change(to)
            except Exception as e:
                logger.debug("status listener raised: %s", e)

    def fail(self) -> None:
        if self.status not in (TxStatus.FAILED, TxStatus.CONFIRMED, TxStatus.IDLE):
            self.advance(TxStatus.FAILED)


def _demo_signature(prefix: str = "demo_") -> str:
    return prefix + "".join(random.choices(string.ascii_lowercase + string.digits, k=6))


def simulated_quote(params: TradeParams) -> TradeQuote:
    amount = int(params.amount)
    return TradeQuote(
        input_amount=amount,
        output_amount=math.floor(amount * DEMO_FILL_RATIO),
        input_amount_decimal=amount / 1e9,
        output_amount_decimal=(amount * DEMO_FILL_RATIO) / (10 ** DEMO_OUTPUT_DECIMALS),
        price_impact_pct=DEMO_PRICE_IMPACT_PCT,
        slippage_bps=int(params.slippage_bps or 100),
        route="SOL -> USDC (Simulated)",
    )


class ExecutionEngine:
    def __init__(
        self,
        session,
        backend: Optional[SwapBackend] = None,
        on_status: Optional[Callable[[TxStatus], None]] = None,
        demo_delay_scale: float = 1.0,
    ):
        self.session = session
        self._backend = backend
        self._on_status = on_status
        self.demo_delay_scale = float(demo_delay_scale)
        ecfg = section(session.cfg, "execution")
        self.default_slippage_bps = int(ecfg.get("default_slippage_bps", 100))
        self.max_sell_retries = int(ecfg.get("max_sell_retries", SLIPPAGE_RETRY_CONFIG["max_retries"]))
        self.flow = TransactionFlow()
        self.current_quote: Optional[TradeQuote] = None
        self.last_error: Optional[str] = None
        self.last_signature: Optional[str] = None

    @property
    def backend(self) -> SwapBackend:
        if self._backend is None:
            self._backend = make_swap_backend(self.session)
        return self._backend

    @property
    def status(self) -> TxStatus:
        return self.flow.status

    def reset(self) -> None:
        self.flow = TransactionFlow(self._on_status)
        self.current_quote = None
        self.last_error = None
        self.last_signature = None

    def _new_flow(self, allow_retry: bool = False) -> TransactionFlow:
        self.flow = TransactionFlow(self._on_status, allow_retry=allow_retry)
        return self.flow

    def _signer(self, sign_and_send: Optional[SignAndSend]) -> SignAndSend:
        if sign_and_send is not None:
            return sign_and_send
        wallet = self.session.wallet
        if wallet is None:
            raise SniperError("Connect a wallet to trade", TradeErrorCode.WALLET_NOT_CONNECTED)
        return wallet.sign_and_send

    def _check_auth(self) -> None:
        if self.backend.requires_auth and not self.session.auth_token:
            raise SniperError("Please sign in to trade", TradeErrorCode.AUTH_EXPIRED)

    async def _demo_chain(self, flow: TransactionFlow) -> None:
        steps = (
            TxStatus.FETCHING_QUOTE, TxStatus.BUILDING_TX, TxStatus.AWAITING_SIGNATURE,
            TxStatus.BROADCASTING, TxStatus.CONFIRMING,
        )
        for to, delay in zip(steps, DEMO_STEP_DELAYS_S):
            flow.advance(to)
            if self.demo_delay_scale > 0:
                await asyncio.sleep(delay * self.demo_delay_scale)
        flow.advance(TxStatus.CONFIRMED)

    async def _after_confirm(self) -> None:
        try:
            await self.session.refresh_positions()
        except Exception as e:
            logger.warning("Position refresh after confirm failed: %s", e)
        try:
            await self.session.refresh_balance()
        except Exception as e:
            logger.warning("Balance refresh after confirm failed: %s", e)

    def _failure(self, flow: TransactionFlow, message: str, code: Optional[TradeErrorCode], **kw: Any) -> TradeResult:
        flow.fail()
        code = code or classify_error(message)
        self.last_error = message
        return TradeResult(success=False, error=message, error_code=code.value, **kw)

    # ------------------------------------------------------------------
    # Quote
    # ------------------------------------------------------------------
    async def get_quote(self, params: TradeParams) -> Optional[TradeQuote]:
        if self.session.demo:
            self.current_quote = simulated_quote(params)
            return self.current_quote

        flow = self._new_flow()
        flow.advance(TxStatus.FETCHING_QUOTE)
        self.last_error = None
        try:
            self._check_auth()
            quote = await self.backend.quote(
                params.input_mint, params.output_mint, int(params.amount),
                int(params.slippage_bps or self.default_slippage_bps),
            )
        except Exception as e:
            code = getattr(e, "code", None) or classify_error(str(e))
            message = str(e) or "Failed to get quote"
            self._failure(flow, message, code)
            self.session.notify("Quote Error", message, "error", code)
            return None
        self.current_quote = quote
        flow.advance(TxStatus.IDLE)
        return quote

    # ------------------------------------------------------------------
    # Forward chain shared by buys and sells
    # ------------------------------------------------------------------
    async def _run_chain(
        self,
        flow: TransactionFlow,
        params: TradeParams,
        wallet_address: str,
        sign_and_send: Optional[SignAndSend],
        slippage_bps: int,
        side: str,
        position_id: Optional[str] = None,
    ) -> TradeResult:
        flow.advance(TxStatus.FETCHING_QUOTE)
        signature: Optional[str] = None
        try:
            self._check_auth()
            signer = self._signer(sign_and_send)

            flow.advance(TxStatus.BUILDING_TX)
            resp = await self.backend.execute(params, wallet_address, slippage_bps, side=side, position_id=position_id)
            self.current_quote = resp.quote
            position_id = resp.position_id or position_id

            flow.advance(TxStatus.AWAITING_SIGNATURE)
            try:
                tx = decode_transaction(resp.swap_transaction)
            except ValueError as e:
                raise SniperError(f"Failed to decode swap transaction: {e}") from e
            if self.session.dry_run:
                logger.info("DRY_RUN: %s for %s built, not broadcast", side, params.output_mint[:8])
                raise SniperError("Dry run: transaction built but not sent")

            flow.advance(TxStatus.BROADCASTING)
            signed = await signer(tx)
            if not signed.success:
                raise SniperError(signed.error or "Transaction rejected")
            signature = signed.signature
            self.last_signature = signature

            flow.advance(TxStatus.CONFIRMING)
            conf = await self.backend.confirm(signature, position_id, side, wallet_address)
        except SniperError as e:
            return self._failure(flow, str(e), e.code, signature=signature)
        except Exception as e:
            logger.error("%s execution failed: %s", side, e, exc_info=True)
            return self._failure(flow, str(e) or "Trade execution failed", None, signature=signature)

        if conf.get("confirmed"):
            flow.advance(TxStatus.CONFIRMED)
            await self._after_confirm()
            return TradeResult(
                success=True,
                signature=signature,
                position_id=position_id,
                quote=self.current_quote,
                explorer_url=explorer_url(signature),
            )

        message = conf.get("error") or "Transaction failed to confirm"
        code = classify_error(message)
        if code == TradeErrorCode.UNKNOWN:
            code = TradeErrorCode.CONFIRMATION_FAILED
        return self._failure(
            flow, message, code, signature=signature, position_id=position_id, explorer_url=explorer_url(signature)
        )

    # ------------------------------------------------------------------
    # Buy
    # ------------------------------------------------------------------
    async def execute_trade(
        self,
        params: TradeParams,
        wallet_address: Optional[str] = None,
        sign_and_send: Optional[SignAndSend] = None,
    ) -> TradeResult:
        """Single forward pass. A failed buy is reported, never retried."""
        flow = self._new_flow()
        self.last_error = None
        self.last_signature = None

        if self.session.demo:
            await self._demo_chain(flow)
            sig = _demo_signature()
            self.last_signature = sig
            self.current_quote = simulated_quote(params)
            self.session.notify("Demo Trade Executed!", f"Simulated swap of {params.token_symbol or 'token'}")
            return TradeResult(
                success=True,
                signature=sig,
                position_id=f"demo_position_{int(time.time() * 1000)}",
                quote=self.current_quote,
            )

        wallet_address = wallet_address or self.session.wallet_address or ""
        slippage = int(params.slippage_bps or self.default_slippage_bps)
        result = await self._run_chain(flow, params, wallet_address, sign_and_send, slippage, "buy")
        if result.success:
            self.session.notify("Trade Executed!", f"Successfully swapped {params.token_symbol or 'token'}")
        else:
            code = TradeErrorCode(result.error_code) if result.error_code else None
            self.session.notify("Trade Failed", result.error or "", "error", code)
        return result

    # ------------------------------------------------------------------
    # Sell
    # ------------------------------------------------------------------
    async def sell_position(
        self,
        token_mint: str,
        amount: int,
        position_id: Optional[str],
        wallet_address: Optional[str] = None,
        sign_and_send: Optional[SignAndSend] = None,
        liquidity: Optional[float] = None,
        price_impact: float = 0.0,
        source: str = "manual_sell",
        max_retries: Optional[int] = None,
    ) -> TradeResult:
        locks = self.session.sell_locks
        if not locks.acquire(token_mint, source):
            holder = holder_of(locks, token_mint) or "another sell"
            message = f"Sell already in progress for this token ({holder})"
            self.session.notify("Sell Blocked", message, "warning", TradeErrorCode.SELL_LOCKED)
            return TradeResult(success=False, error=message, error_code=TradeErrorCode.SELL_LOCKED.value)

        try:
            return await self._sell_with_retry(
                token_mint, amount, position_id, wallet_address, sign_and_send,
                liquidity, price_impact,
                max(0, self.max_sell_retries if max_retries is None else int(max_retries)),
            )
        finally:
            locks.release(token_mint)

    async def _sell_with_retry(
        self,
        token_mint: str,
        amount: int,
        position_id: Optional[str],
        wallet_address: Optional[str],
        sign_and_send: Optional[SignAndSend],
        liquidity: Optional[float],
        price_impact: float,
        max_retries: int,
    ) -> TradeResult:
        flow = self._new_flow(allow_retry=True)
        self.last_error = None

        if self.session.demo:
            await self._demo_chain(flow)
            self.session.notify("Demo Position Closed!", "Simulated sell executed")
            return TradeResult(success=True, signature=f"demo_sell_{int(time.time() * 1000)}", position_id=position_id)

        wallet_address = wallet_address or self.session.wallet_address or ""
        retries = 0
        result: Optional[TradeResult] = None
        for attempt in range(max_retries + 1):
            slip = calculate_dynamic_slippage(
                liquidity=liquidity, price_impact=price_impact, is_sell=True,
                is_retry=attempt > 0, retry_count=attempt,
            )
            params = TradeParams(
                input_mint=token_mint,
                output_mint=SOL_MINT,
                amount=int(amount),
                slippage_bps=int(slip["slippage_bps"]),
                priority_level="high",
            )
            if attempt > 0:
                flow.advance(TxStatus.RETRYING)
            logger.info(
                "Sell %s attempt %d/%d at %d bps (%s)",
                token_mint[:8], attempt + 1, max_retries + 1, slip["slippage_bps"], slip["reason"],
            )
            result = await self._run_chain(
                flow, params, wallet_address, sign_and_send, int(slip["slippage_bps"]), "sell", position_id
            )
            result.retry_count = retries
            if result.success:
                self.session.notify("Position Closed!", "Successfully sold your position")
                return result
            if result.error_code != TradeErrorCode.SLIPPAGE_EXCEEDED.value or attempt >= max_retries:
                break
            retries += 1
            self.session.notify(
                "Slippage exceeded", f"Attempt {attempt + 1} failed", "warning", TradeErrorCode.SLIPPAGE_EXCEEDED
            )
            await asyncio.sleep(get_retry_delay(attempt))

        code = TradeErrorCode(result.error_code) if result.error_code else None
        suffix = f" after {result.retry_count} retries" if result.retry_count else ""
        self.session.notify("Sell Failed", f"{result.error}{suffix}", "error", code)
        return result

