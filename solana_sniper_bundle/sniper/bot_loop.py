# solana_sniper_bundle/sniper/bot_loop.py
"""
Bot evaluation loop.

Every cycle filters the pipeline's tradeable tokens down to unseen
candidates, evaluates them, and buys approved ones one at a time.

Live mode waits for the token registry to finish loading, trusts it, and
stops the cycle at the first failed execution. Demo mode never calls the
execution engine: it opens a position valued at the token's USD price and
the configured SOL/USD estimate, debits the demo balance and settles
take-profit / stop-loss after a random delay.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from solana_sniper_bundle.common.constants import SOL_MINT
from solana_sniper_bundle.sniper.errors import TradeErrorCode
from solana_sniper_bundle.sniper.models import TradableToken, TradeParams
from solana_sniper_bundle.sniper.position_sizing import compute_position_size
from solana_sniper_bundle.sniper.swap_backend import lamports
from solana_sniper_bundle.sniper.utils_exec import section

logger = logging.getLogger("TradingBot")

DEMO_INTERVAL_S = 8.0
LIVE_INTERVAL_S = 10.0
PROCESSED_TRIM_INTERVAL_S = 120.0
PROCESSED_MAX = 100
PROCESSED_KEEP = 50
DEMO_BATCH = 10
LIVE_BATCH = 20
BALANCE_HEADROOM_SOL = 0.01
INTER_TRADE_DELAY_S = 0.5

# lamports, logged with each live buy
PRIORITY_FEES = {"turbo": 500_000, "fast": 200_000, "normal": 100_000}
PRIORITY_LEVELS = {"turbo": "veryHigh", "fast": "high", "normal": "medium"}
DECISION_SLIPPAGE_PCT = {"turbo": 15, "fast": 10}


@dataclass
class Decision:
    token: TradableToken
    approved: bool
    reasons: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    trade_amount_sol: float = 0.0
    slippage_pct: Optional[float] = None

    @property
    def reject_reason(self) -> str:
        return (self.failures[0] if self.failures else "validation_failed")[:100]


@dataclass
class CycleReport:
    mode: str
    candidates: int = 0
    evaluated: int = 0
    approved: int = 0
    executed: List[str] = field(default_factory=list)
    failed: Optional[str] = None
    skipped: Optional[str] = None


def evaluate_candidates(tokens: Iterable[TradableToken], settings: Dict[str, Any]) -> List[Decision]:
    """Rule check for live candidates: liquidity, risk, buyer position, capability flags, size."""
    min_liq = float(settings.get("min_liquidity", 5))
    max_risk = float(settings.get("max_risk_score", 70))
    targets = set(settings.get("target_buyer_positions") or [1, 2, 3, 4, 5])
    trade_amount = float(settings.get("trade_amount") or 0)
    priority = str(settings.get("priority", "normal"))

    decisions: List[Decision] = []
    for t in tokens:
        ok: List[str] = []
        bad: List[str] = []

        if t.liquidity >= min_liq:
            ok.append(f"Liquidity {t.liquidity:.2f} SOL meets minimum {min_liq:g} SOL")
        else:
            bad.append(f"Liquidity {t.liquidity:.2f} SOL below minimum {min_liq:g} SOL")

        if t.risk_score < max_risk:
            ok.append(f"Risk score {t.risk_score} below {max_risk:g}")
        else:
            bad.append(f"Risk score {t.risk_score} at or above {max_risk:g}")

        if t.buyer_position is None:
            ok.append("Buyer position unknown")
        elif t.buyer_position in targets:
            ok.append(f"Can enter as buyer #{t.buyer_position}")
        else:
            bad.append(f"Buyer position #{t.buyer_position} outside targets")

        if not t.is_tradeable:
            bad.append("Not tradeable")
        if not t.can_buy:
            bad.append("No buy route")
        if not t.can_sell:
            bad.append("not_sellable")

        size = compute_position_size(trade_amount, 100 - t.risk_score)
        if size.final_amount_sol <= 0:
            bad.append(size.reason)
        else:
            ok.append(size.reason)

        approved = not bad
        decisions.append(Decision(
            token=t,
            approved=approved,
            reasons=bad + ok,
            failures=bad,
            trade_amount_sol=size.final_amount_sol if approved else 0.0,
            slippage_pct=DECISION_SLIPPAGE_PCT.get(priority, 5) if approved else None,
        ))
    return decisions


class BotLoop:
    def __init__(
        self,
        session,
        pipeline,
        engine,
        settings: Optional[Dict[str, Any]] = None,
        rng: Optional[random.Random] = None,
        settle_delay_scale: float = 1.0,
        inter_trade_delay_s: float = INTER_TRADE_DELAY_S,
    ):
        self.session = session
        self.pipeline = pipeline
        self.engine = engine
        self.settings = settings if settings is not None else section(session.cfg, "bot")
        self.rng = rng or random.Random()
        self.settle_delay_scale = float(settle_delay_scale)
        self.inter_trade_delay_s = float(inter_trade_delay_s)
        self.sol_usd = float(section(session.cfg, "discovery").get("sol_usd_estimate", 150.0))

        self.processed: Dict[str, None] = {}   # insertion-ordered set
        self.traded: Set[str] = set()
        self._live_in_flight = False
        self._cycle_in_flight = False
        self._settle_tasks: Set[asyncio.Task] = set()
        self._stop: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def interval_s(self) -> float:
        return DEMO_INTERVAL_S if self.session.demo else LIVE_INTERVAL_S

    # ------------------------------------------------------------------
    # Local caches
    # ------------------------------------------------------------------
    def trim_processed(self) -> int:
        size = len(self.processed)
        if size <= PROCESSED_MAX:
            return 0
        keep = list(self.processed)[-PROCESSED_KEEP:]
        self.processed = dict.fromkeys(keep)
        logger.info("Cleared %d old tokens from cache", size - PROCESSED_KEEP)
        return size - PROCESSED_KEEP

    def clear(self) -> None:
        self.processed.clear()
        self.traded.clear()

    def _open_addresses(self) -> Set[str]:
        positions = self.session.demo_positions if self.session.demo else self.session.open_positions
        return {
            str(p.get("token_address") or "").lower()
            for p in positions
            if p.get("status", "open") == "open"
        }

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def run_cycle(self, tokens: Optional[List[TradableToken]] = None) -> CycleReport:
        demo = bool(self.session.demo)
        report = CycleReport(mode="demo" if demo else "live")
        if self._cycle_in_flight:
            report.skipped = "cycle in flight"
            return report
        self._cycle_in_flight = True
        try:
            return await self._cycle(tokens, demo, report)
        except Exception as e:
            logger.error("Bot cycle failed: %s", e, exc_info=True)
            self.session.notify("Trade Error", str(e), "error")
            report.failed = str(e)
            return report
        finally:
            self._cycle_in_flight = False

    async def _cycle(self, tokens: Optional[List[TradableToken]], demo: bool, report: CycleReport) -> CycleReport:
        tokens = list(tokens if tokens is not None else self.pipeline.tradeable_tokens)
        if not tokens:
            report.skipped = "no tokens"
            return report
        registry = self.session.registry
        if not demo:
            # persisted TRADED / REJECTED states must be known before evaluating
            if not registry.loaded:
                await registry.load()
            if not registry.loaded:
                logger.warning("Token registry not loaded; skipping live cycle")
                report.skipped = "registry not loaded"
                return report
            await registry.cleanup_expired_pending()

        active = self._open_addresses()
        unseen = [
            t for t in tokens
            if t.address not in self.processed
            and t.address not in self.traded
            and t.address.lower() not in active
            and (demo or registry.can_trade_token(t.address))
        ]
        if not unseen:
            report.skipped = "no unseen tokens"
            return report

        blacklist = set(self.settings.get("token_blacklist") or [])
        require_sell = bool(self.settings.get("require_sell_route", True))
        candidates: List[TradableToken] = []
        for t in unseen:
            if not t.address or t.address in blacklist:
                continue
            if (t.symbol or "").upper() == "SOL" and t.address != SOL_MINT:
                continue
            if require_sell and not t.can_sell:
                if not demo:
                    await registry.mark_rejected(t.address, "not_sellable")
                continue
            candidates.append(t)
        report.candidates = len(candidates)
        if not candidates:
            report.skipped = "no candidates"
            return report

        if not demo:
            await registry.register_tokens_batch(candidates)

        batch = candidates[: DEMO_BATCH if demo else LIVE_BATCH]
        if demo:
            return await self._demo_cycle(batch, report)
        return await self._live_cycle(batch, report)

    # ------------------------------------------------------------------
    # Demo
    # ------------------------------------------------------------------
    def _demo_pick(self, batch: List[TradableToken]) -> Optional[TradableToken]:
        s = self.settings
        targets = set(s.get("target_buyer_positions") or [1, 2, 3, 4, 5])
        max_risk = float(s.get("max_risk_score") or 70)
        min_liq = float(s.get("min_liquidity") or 5)
        for t in batch:
            if t.buyer_position is not None and t.buyer_position not in targets:
                continue
            if t.risk_score >= max_risk or t.liquidity < min_liq:
                continue
            if not (t.is_tradeable and t.can_buy and t.can_sell):
                continue
            return t
        return None

    async def _demo_cycle(self, batch: List[TradableToken], report: CycleReport) -> CycleReport:
        for t in batch:
            self.processed[t.address] = None
        report.evaluated = len(batch)

        token = self._demo_pick(batch)
        amount_sol = float(self.settings.get("trade_amount") or 0)
        if token is None or amount_sol <= 0 or self.session.demo_balance < amount_sol:
            return report
        report.approved = 1

        self.traded.add(token.address)
        self.session.demo_balance -= amount_sol
        entry_value = amount_sol * self.sol_usd
        entry_price = token.price_usd or 0.0001
        position = {
            "id": f"demo_{uuid.uuid4().hex[:12]}",
            "token_address": token.address,
            "token_symbol": token.symbol,
            "token_name": token.name,
            "entry_price": entry_price,
            "current_price": entry_price,
            "amount": entry_value / entry_price,
            "entry_value": entry_value,
            "current_value": entry_value,
            "trade_amount_sol": amount_sol,
            "profit_loss_percent": 0.0,
            "profit_loss_value": 0.0,
            "profit_take_percent": float(self.settings.get("profit_take_percentage", 50)),
            "stop_loss_percent": float(self.settings.get("stop_loss_percentage", 20)),
            "status": "open",
            "exit_reason": None,
            "opened_at": time.time(),
        }
        self.session.demo_positions.append(position)
        report.executed.append(token.address)
        logger.info("Demo trade executed: %s entry $%.6f amount %s SOL", token.symbol, entry_price, amount_sol)
        self.session.notify("Demo Trade Executed!", f"Bought {token.symbol} at ${entry_price:.6f}")

        task = asyncio.create_task(self._settle_demo(position), name=f"demo_settle_{token.address[:8]}")
        self._settle_tasks.add(task)
        task.add_done_callback(self._settle_tasks.discard)
        return report

    async def _settle_demo(self, position: Dict[str, Any]) -> None:
        delay = (5.0 + self.rng.random() * 10.0) * self.settle_delay_scale
        await asyncio.sleep(delay)
        self.settle_demo_position(position, (self.rng.random() - 0.3) * 0.5)

    def settle_demo_position(self, position: Dict[str, Any], price_change: float) -> Optional[str]:
        """Apply a simulated price move; close at TP/SL. Returns the exit reason, if any."""
        if position.get("status") != "open":
            return None
        new_price = position["entry_price"] * (1 + price_change)
        new_value = position["amount"] * new_price
        pnl_pct = price_change * 100
        pnl_value = new_value - position["entry_value"]
        position.update(
            current_price=new_price, current_value=new_value,
            profit_loss_percent=pnl_pct, profit_loss_value=pnl_value,
        )

        reason = None
        if pnl_pct >= position["profit_take_percent"]:
            reason = "take_profit"
        elif pnl_pct <= -position["stop_loss_percent"]:
            reason = "stop_loss"
        if reason is None:
            return None

        position.update(status="closed", exit_reason=reason, exit_price=new_price, closed_at=time.time())
        self.session.demo_balance += position["trade_amount_sol"] + pnl_value / self.sol_usd
        if reason == "take_profit":
            self.session.notify("Take Profit Hit!", f"Closed {position['token_symbol']} at +{pnl_pct:.1f}%")
        else:
            self.session.notify("Stop Loss Hit", f"Closed {position['token_symbol']} at {pnl_pct:.1f}%", "warning")
        return reason

    # ------------------------------------------------------------------
    # Live
    # ------------------------------------------------------------------
    async def _live_cycle(self, batch: List[TradableToken], report: CycleReport) -> CycleReport:
        s = self.settings
        session = self.session
        registry = session.registry
        if session.wallet is None:
            logger.warning("Connect wallet to enable live trading")
            session.notify("Wallet required", "Connect wallet to enable live trading", "warning")
            report.skipped = "no wallet"
            return report

        trade_amount = float(s.get("trade_amount") or 0)
        balance = await session.refresh_balance()
        if trade_amount <= 0 or balance < trade_amount + BALANCE_HEADROOM_SOL:
            report.skipped = "insufficient balance"
            return report
        if self._live_in_flight:
            report.skipped = "trade in flight"
            return report

        decisions = evaluate_candidates(batch, s)
        for t in batch:
            self.processed[t.address] = None
        report.evaluated = len(decisions)

        approved: List[Decision] = []
        for d in decisions:
            steps = " | ".join(d.reasons[:4])
            if d.approved:
                logger.info("%s PASSED: %s", d.token.symbol, steps)
                approved.append(d)
            else:
                logger.info("%s REJECTED: %s", d.token.symbol, steps)
                await registry.mark_rejected(d.token.address, d.reject_reason)
        report.approved = len(approved)
        if not approved:
            return report

        self._live_in_flight = True
        try:
            slots = int(s.get("max_concurrent_trades") or 3) - len(session.open_positions)
            if slots <= 0:
                report.skipped = "no free slots"
                return report

            priority = str(s.get("priority", "normal"))
            fee = PRIORITY_FEES.get(priority, PRIORITY_FEES["normal"])
            for d in approved[:slots]:
                tok = d.token
                if tok.address in self.traded:
                    continue
                self.traded.add(tok.address)

                slippage_pct = d.slippage_pct if d.slippage_pct is not None else float(s.get("slippage_tolerance", 15))
                logger.info(
                    "Executing BUY: %s amount %s SOL slippage %s%% priority %s fee %s SOL",
                    tok.symbol, d.trade_amount_sol, slippage_pct, priority, fee / 1e9,
                )
                params = TradeParams(
                    input_mint=SOL_MINT,
                    output_mint=tok.address,
                    amount=lamports(d.trade_amount_sol),
                    slippage_bps=int(round(slippage_pct * 100)),
                    priority_level=PRIORITY_LEVELS.get(priority, "medium"),
                    token_symbol=tok.symbol,
                    token_name=tok.name,
                    profit_take_percent=s.get("profit_take_percentage"),
                    stop_loss_percent=s.get("stop_loss_percentage"),
                )
                result = await self.engine.execute_trade(params, session.wallet_address)

                if result.success:
                    await registry.mark_traded(tok.address, result.signature, result.position_id)
                    report.executed.append(tok.address)
                    logger.info("BUY FILLED: %s (%s)", tok.symbol, result.signature)
                    if self.inter_trade_delay_s > 0:
                        await asyncio.sleep(self.inter_trade_delay_s)
                    continue

                reason = result.error or "Trade failed"
                low = reason.lower()
                if result.error_code == TradeErrorCode.NO_ROUTE.value or "no route" in low or "no liquidity" in low:
                    await registry.mark_pending(tok.address, "no_route")
                else:
                    await registry.mark_rejected(tok.address, reason[:100])
                report.failed = reason
                logger.warning("BUY FAILED: %s (%s); stopping this cycle", tok.symbol, reason)
                break
        finally:
            self._live_in_flight = False
        return report

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    async def _every(self, interval_fn, fn, label: str) -> None:
        stop = self._stop
        while stop is not None and not stop.is_set():
            try:
                await fn()
            except Exception:
                logger.debug("%s tick failed", label, exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_fn())
            except asyncio.TimeoutError:
                continue

    async def _trim_tick(self) -> None:
        self.trim_processed()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._every(lambda: self.interval_s, self.run_cycle, "bot cycle"), name="bot_cycle"),
            asyncio.create_task(
                self._every(lambda: PROCESSED_TRIM_INTERVAL_S, self._trim_tick, "processed trim"),
                name="bot_processed_trim",
            ),
        ]
        logger.info("Bot loop started (%s, every %.0fs)", "demo" if self.session.demo else "live", self.interval_s)

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        tasks = self._tasks + list(self._settle_tasks)
        self._tasks = []
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._settle_tasks.clear()
        logger.info("Bot loop stopped")
