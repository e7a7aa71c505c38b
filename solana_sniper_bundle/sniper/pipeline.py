# solana_sniper_bundle/sniper/pipeline.py
"""
Two-stage discovery pipeline.

STAGE 1 (discovery): broad detection, liquidity floor 1, no route checks.
STAGE 2 (tradability): configured liquidity floor, buy/sell route probes,
    risk annotation and LP verification. Only TRADEABLE tokens are eligible
    for auto-trade.

One discovery cycle and one tradability cycle may be in flight at a time; a
call that arrives while its stage is running returns the previous result
with ``skipped=True``. Public methods never raise.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from solana_sniper_bundle.common.feature_flags import is_enabled_rugcheck
from solana_sniper_bundle.sniper import safety
from solana_sniper_bundle.sniper.errors import classify_error
from solana_sniper_bundle.sniper.models import (
    DiscoveredPool,
    PendingToken,
    PipelineStats,
    RejectedToken,
    TokenState,
    TradableToken,
)
from solana_sniper_bundle.sniper.tradability import RemoteScanner, ScanResult, TradabilityScanner
from solana_sniper_bundle.sniper.utils_exec import log_error_with_stacktrace, section

logger = logging.getLogger("TradingBot")

MAX_DISCOVERED = 200


@dataclass
class PipelineResult:
    stage: str
    tokens: List[TradableToken] = field(default_factory=list)
    pending_tokens: List[PendingToken] = field(default_factory=list)
    rejected_tokens: List[RejectedToken] = field(default_factory=list)
    discovered_tokens: List[DiscoveredPool] = field(default_factory=list)
    stats: PipelineStats = field(default_factory=PipelineStats)
    timestamp: float = 0.0
    skipped: bool = False
    error: Optional[str] = None

    @classmethod
    def from_scan(cls, stage: str, scan: ScanResult) -> "PipelineResult":
        return cls(
            stage=stage,
            tokens=list(scan.tokens),
            pending_tokens=list(scan.pending),
            rejected_tokens=list(scan.rejected),
            discovered_tokens=list(scan.discovered),
            stats=scan.stats,
            timestamp=scan.timestamp,
        )

    def as_skipped(self) -> "PipelineResult":
        return PipelineResult(
            stage=self.stage, tokens=self.tokens, pending_tokens=self.pending_tokens,
            rejected_tokens=self.rejected_tokens, discovered_tokens=self.discovered_tokens,
            stats=self.stats, timestamp=self.timestamp, skipped=True, error=self.error,
        )


def make_scanner(session):
    """``pipeline.backend``: ``local`` runs the scan in process, ``remote`` calls token-scanner."""
    backend = str(section(session.cfg, "pipeline").get("backend", "local")).lower()
    if backend == "remote":
        return RemoteScanner(session.functions)
    rugcheck = None
    if is_enabled_rugcheck(session.cfg):
        rugcheck = safety.make_rugcheck_client(session.cfg, session.http)
    return TradabilityScanner(session.cfg, http=session.http, rpc=session.rpc, rugcheck=rugcheck)


class DiscoveryPipeline:
    def __init__(self, session, scanner=None, min_liquidity: Optional[float] = None):
        self.session = session
        self._scanner = scanner
        pcfg = section(session.cfg, "pipeline")
        self.min_liquidity = float(min_liquidity if min_liquidity is not None else pcfg.get("min_liquidity", 5))
        self.discovery_min_liquidity = float(pcfg.get("discovery_min_liquidity", 1))
        self.max_discovered = int(pcfg.get("max_discovered", MAX_DISCOVERED))
        self.refresh_interval_s = float(pcfg.get("refresh_interval_s", 30))
        self.cleanup_interval_s = float(pcfg.get("cleanup_interval_s", 60))

        self.discovered_tokens: List[DiscoveredPool] = []
        self.tradeable_tokens: List[TradableToken] = []
        self.pending_tokens: List[PendingToken] = []
        self.rejected_tokens: List[RejectedToken] = []
        self.stats = PipelineStats()
        self.last_discovery: Optional[float] = None
        self.last_tradability_check: Optional[float] = None
        self.error: Optional[str] = None

        self._discovery_in_progress = False
        self._tradability_in_progress = False
        self._last_discovery = PipelineResult(stage="discovery")
        self._last_tradability = PipelineResult(stage="both")

        self._stop: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def scanner(self):
        if self._scanner is None:
            self._scanner = make_scanner(self.session)
        return self._scanner

    @property
    def registry(self):
        return self.session.registry

    @property
    def _use_registry(self) -> bool:
        return not self.session.demo

    # ------------------------------------------------------------------
    # Local state
    # ------------------------------------------------------------------
    def _merge_discovered(self, fresh: List[DiscoveredPool], refresh: bool) -> None:
        prev = {p.token_mint: p for p in self.discovered_tokens}
        out: List[DiscoveredPool] = []
        seen = set()
        for p in fresh:
            if p.token_mint in seen:
                continue
            seen.add(p.token_mint)
            out.append(p if (refresh or p.token_mint not in prev) else prev[p.token_mint])
        out.extend(p for p in self.discovered_tokens if p.token_mint not in seen)
        self.discovered_tokens = out[: self.max_discovered]

    async def _apply_registry(self, scan: ScanResult) -> None:
        if not self._use_registry:
            return
        reg = self.registry
        if scan.discovered:
            await reg.register_tokens_batch(scan.discovered)
        for tok in scan.tokens:
            await reg.mark_tradeable(tok.address)
        for p in scan.pending:
            await reg.mark_pending(p.address, p.reason, symbol=p.symbol, name=p.name)
        for r in scan.rejected:
            await reg.mark_rejected(r.address, r.reason)

    def _fail(self, stage: str, title: str, e: Exception) -> PipelineResult:
        message = str(e) or title
        self.error = message
        log_error_with_stacktrace(f"[Pipeline] {title}", e)
        self.session.notify(title, message, "error", classify_error(message))
        return PipelineResult(stage=stage, error=message, timestamp=time.time())

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------
    async def run_discovery(self) -> PipelineResult:
        if self._discovery_in_progress:
            return self._last_discovery.as_skipped()
        self._discovery_in_progress = True
        self.error = None
        try:
            logger.info("[Pipeline] Running STAGE 1: Discovery...")
            scan = await self.scanner.scan(self.discovery_min_liquidity, stage="discovery")
            self._merge_discovered(scan.discovered, refresh=False)
            if self._use_registry and scan.discovered:
                await self.registry.register_tokens_batch(scan.discovered)
            self.last_discovery = scan.timestamp
            self.stats = replace(self.stats, discovered=self.stats.discovered + len(scan.discovered))
            result = PipelineResult.from_scan("discovery", scan)
            self._last_discovery = result
            logger.info("[Pipeline] STAGE 1 complete: +%d tokens discovered", len(scan.discovered))
            return result
        except Exception as e:
            return self._fail("discovery", "Discovery failed", e)
        finally:
            self._discovery_in_progress = False

    # ------------------------------------------------------------------
    # Stage 2
    # ------------------------------------------------------------------
    async def _tradability_cycle(self, stage_label: str) -> PipelineResult:
        scan = await self.scanner.scan(self.min_liquidity, stage="both")
        self.tradeable_tokens = list(scan.tokens)
        self.pending_tokens = list(scan.pending)
        self.rejected_tokens = list(scan.rejected)
        if scan.discovered:
            self._merge_discovered(scan.discovered, refresh=True)
        await self._apply_registry(scan)
        self.stats = scan.stats
        self.last_tradability_check = scan.timestamp
        logger.info(
            "[Pipeline] STAGE 2 complete: %d tradeable, %d pending, %d rejected",
            len(scan.tokens), len(scan.pending), len(scan.rejected),
        )
        return PipelineResult.from_scan(stage_label, scan)

    async def run_tradability_check(self) -> PipelineResult:
        if self._tradability_in_progress:
            return self._last_tradability.as_skipped()
        self._tradability_in_progress = True
        self.error = None
        try:
            logger.info("[Pipeline] Running STAGE 2: Tradability check...")
            result = await self._tradability_cycle("tradability")
            self._last_tradability = result
            return result
        except Exception as e:
            return self._fail("tradability", "Tradability check failed", e)
        finally:
            self._tradability_in_progress = False

    async def run_full_pipeline(self) -> PipelineResult:
        """Both stages in one scan (manual "Scan Now")."""
        if self._tradability_in_progress or self._discovery_in_progress:
            return self._last_tradability.as_skipped()
        self._tradability_in_progress = True
        self._discovery_in_progress = True
        self.error = None
        try:
            result = await self._tradability_cycle("both")
            self.last_discovery = result.timestamp
            self._last_tradability = result
            self._last_discovery = result
            return result
        except Exception as e:
            return self._fail("both", "Scan failed", e)
        finally:
            self._tradability_in_progress = False
            self._discovery_in_progress = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_tokens_by_state(self, state: TokenState) -> List[DiscoveredPool]:
        return [p for p in self.discovered_tokens if self.registry.get_token_state(p.token_mint) == state]

    def get_auto_trade_eligible(self) -> List[TradableToken]:
        out: List[TradableToken] = []
        for t in self.tradeable_tokens:
            if not t.auto_tradeable:
                continue
            if not self.registry.can_trade_token(t.address):
                continue
            if t.risk_score >= 100:
                continue
            out.append(t)
        return out

    def snapshot(self) -> Dict[str, Any]:
        return {
            "discovered": len(self.discovered_tokens),
            "tradeable": len(self.tradeable_tokens),
            "pending": len(self.pending_tokens),
            "rejected": len(self.rejected_tokens),
            "lastDiscovery": self.last_discovery,
            "lastTradabilityCheck": self.last_tradability_check,
            "error": self.error,
        }

    # ------------------------------------------------------------------
    # Auto refresh
    # ------------------------------------------------------------------
    async def _every(self, interval_s: float, fn, label: str) -> None:
        stop = self._stop
        while stop is not None and not stop.is_set():
            try:
                await fn()
            except Exception:
                logger.debug("%s tick failed", label, exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._tasks = [
            asyncio.create_task(
                self._every(self.refresh_interval_s, self.run_full_pipeline, "pipeline refresh"),
                name="pipeline_refresh",
            ),
        ]
        if self._use_registry:
            self._tasks.append(asyncio.create_task(
                self._every(self.cleanup_interval_s, self.registry.cleanup_expired_pending, "pending cleanup"),
                name="pending_cleanup",
            ))
        logger.info("[Pipeline] auto-refresh started (every %.0fs)", self.refresh_interval_s)

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        logger.info("[Pipeline] auto-refresh stopped")
