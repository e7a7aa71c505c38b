# solana_sniper_bundle/sniper/tradability.py
"""
Stage 2 tradability gate.

Two interchangeable backends answer the Discovery/Tradability request
``{minLiquidity, chains, stage}``:

* ``TradabilityScanner``: runs discovery, quote probes, risk annotation and
  LP verification in process.
* ``RemoteScanner``: forwards the request to the ``token-scanner`` function.

Both return a ``ScanResult`` (wire form via ``to_response``).

Partition rules
---------------
buy probe failed          -> pending  probe_failed   (never rejected)
buy probe: no route       -> pending  no_route
sell probe: no route      -> rejected not_sellable
sell probe failed         -> pending  probe_failed
honeypot / risk gate / LP -> rejected with the verbatim reason
LP required but unknown   -> pending  lp_unverified
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from solana_sniper_bundle.common.feature_flags import is_enabled_rugcheck
from solana_sniper_bundle.sniper import discovery, lp_verifier, quotes, safety
from solana_sniper_bundle.sniper.functions_client import FunctionClient
from solana_sniper_bundle.sniper.models import (
    DiscoveredPool,
    PendingToken,
    PipelineStats,
    QuoteProbe,
    RejectedToken,
    TokenStatus,
    TradableToken,
)
from solana_sniper_bundle.sniper.utils_exec import _to_float, _to_int, section

logger = logging.getLogger("TradingBot")

NO_ROUTE = "no_route"
PROBE_FAILED = "probe_failed"
NOT_SELLABLE = "not_sellable"
LP_UNVERIFIED = "lp_unverified"
HONEYPOT = "honeypot"


@dataclass
class ScanResult:
    discovered: List[DiscoveredPool] = field(default_factory=list)
    tokens: List[TradableToken] = field(default_factory=list)
    pending: List[PendingToken] = field(default_factory=list)
    rejected: List[RejectedToken] = field(default_factory=list)
    stats: PipelineStats = field(default_factory=PipelineStats)
    timestamp: float = field(default_factory=time.time)

    def to_response(self) -> Dict[str, Any]:
        return {
            "discoveredTokens": [p.to_dict() for p in self.discovered],
            "tokens": [t.to_dict() for t in self.tokens],
            "pendingTokens": [asdict(p) for p in self.pending],
            "rejectedTokens": [asdict(r) for r in self.rejected],
            "stats": asdict(self.stats),
            "timestamp": self.timestamp,
        }


def _pending(pool: DiscoveredPool, reason: str) -> PendingToken:
    return PendingToken(
        address=pool.token_mint, symbol=pool.token_symbol, name=pool.token_name,
        reason=reason, liquidity=pool.liquidity, source=pool.source,
    )


def _rejected(pool: DiscoveredPool, reason: str) -> RejectedToken:
    return RejectedToken(address=pool.token_mint, symbol=pool.token_symbol, reason=reason)


class TradabilityScanner:
    def __init__(
        self,
        cfg: Optional[Dict[str, Any]] = None,
        http: Optional[aiohttp.ClientSession] = None,
        rpc=None,
        rugcheck: Optional[safety.RugcheckClient] = None,
    ):
        self.cfg = cfg or {}
        self.http = http
        self.rpc = rpc
        self.rugcheck = rugcheck

    async def scan(self, min_liquidity: float, stage: str = "both") -> ScanResult:
        pcfg = section(self.cfg, "pipeline")
        disc_floor = float(pcfg.get("discovery_min_liquidity", 1))
        pools = await discovery.race_discovery(
            min_liquidity=min(disc_floor, float(min_liquidity)), session=self.http, cfg=self.cfg
        )
        if stage == "discovery":
            return ScanResult(
                discovered=list(pools),
                stats=PipelineStats(discovered=len(pools), total=len(pools), filtered=len(pools)),
            )
        return await self._tradability(pools, float(min_liquidity))

    async def _tradability(self, pools: List[DiscoveredPool], min_liquidity: float) -> ScanResult:
        qcfg = section(self.cfg, "quotes")
        tcfg = section(self.cfg, "tradability")
        concurrency = int(qcfg.get("batch_concurrency", 10))
        max_risk = int(tcfg.get("max_risk_score", 100))
        require_lp = bool(tcfg.get("require_lp_verification", False))

        result = ScanResult(discovered=list(pools))
        candidates = [p for p in pools if p.liquidity >= min_liquidity]
        by_mint = {p.token_mint: p for p in candidates}

        # buy side
        buy = await quotes.fast_batch_quotes(list(by_mint), concurrency=concurrency, session=self.http, cfg=self.cfg)
        routed: Dict[str, QuoteProbe] = {}
        for mint, pool in by_mint.items():
            probe = buy.get(mint)
            if probe is None or not probe.success:
                result.pending.append(_pending(pool, PROBE_FAILED))
            elif not probe.has_route:
                result.pending.append(_pending(pool, NO_ROUTE))
            else:
                routed[mint] = probe

        # sell side: hard gate on a confirmed missing route
        sell_amounts = {m: _to_int(p.out_amount, quotes.DEFAULT_SELL_PROBE_UNITS) for m, p in routed.items()}
        sell = await quotes.fast_batch_quotes(
            list(routed), concurrency=concurrency, sell=True, amounts=sell_amounts, session=self.http, cfg=self.cfg
        )
        sellable: List[TradableToken] = []
        for mint, buy_probe in routed.items():
            pool = by_mint[mint]
            probe = sell.get(mint)
            if probe is None or not probe.success:
                result.pending.append(_pending(pool, PROBE_FAILED))
                continue
            if not probe.has_route:
                result.rejected.append(_rejected(pool, NOT_SELLABLE))
                continue
            tok = TradableToken.from_pool(pool)
            tok.can_buy = True
            tok.can_sell = True
            tok.price_impact = buy_probe.price_impact
            tok.token_status = TokenStatus(stage="tradability", jupiter_indexed=True)
            sellable.append(tok)

        # risk annotation
        client = self.rugcheck if is_enabled_rugcheck(self.cfg) else None
        sellable = await safety.annotate_tokens(client, sellable)

        for tok in sellable:
            pool = by_mint[tok.address]
            if not tok.can_sell:
                result.rejected.append(_rejected(pool, HONEYPOT))
                continue
            if tok.risk_score > max_risk:
                result.rejected.append(_rejected(pool, f"risk_score {tok.risk_score} > {max_risk}"))
                continue

            if tok.lp_mint and self.rpc is not None:
                lp = await lp_verifier.verify_lp_integrity(self.rpc, tok.lp_mint, cfg=self.cfg)
                if not lp.is_safe:
                    result.rejected.append(_rejected(pool, lp.hard_block_reason or "LP verification failed"))
                    continue
                tok.token_status.lp_verified = True
                tok.liquidity_locked = lp.lp_locked
                tok.lock_percentage = lp.lp_burned_percent + lp.lp_locked_percent
                tok.safety_reasons.extend(lp.warnings)
            elif require_lp:
                result.pending.append(_pending(pool, LP_UNVERIFIED))
                continue

            tok.is_tradeable = True
            result.tokens.append(tok)

        result.tokens.sort(key=safety.sort_score)
        discovered = len(pools)
        tradeable = len(result.tokens)
        result.stats = PipelineStats(
            discovered=discovered,
            total=len(candidates),
            tradeable=tradeable,
            pending=len(result.pending),
            rejected=len(result.rejected),
            filtered=discovered - tradeable,
        )
        logger.info(
            "Tradability: %d discovered, %d candidates, %d tradeable, %d pending, %d rejected",
            discovered, len(candidates), tradeable, len(result.pending), len(result.rejected),
        )
        return result

# ----------------------------------------------------------------------
# Remote backend
# ----------------------------------------------------------------------
def _g(d: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return default


def pool_from_wire(d: Dict[str, Any]) -> DiscoveredPool:
    return DiscoveredPool(
        address=str(_g(d, "address", "pairAddress", default="")),
        token_mint=str(_g(d, "token_mint", "tokenMint", "address", default="")),
        token_name=str(_g(d, "token_name", "tokenName", "name", default="")),
        token_symbol=str(_g(d, "token_symbol", "tokenSymbol", "symbol", default="")),
        liquidity=_to_float(_g(d, "liquidity"), 0.0),
        liquidity_usd=_to_float(_g(d, "liquidity_usd", "liquidityUsd"), 0.0),
        source=str(_g(d, "source", default="")),
        dex_id=str(_g(d, "dex_id", "dexId", default="")),
        created_at=str(_g(d, "created_at", "createdAt", default="")),
        price_usd=_to_float(_g(d, "price_usd", "priceUsd"), 0.0),
        volume_24h=_to_float(_g(d, "volume_24h", "volume24h"), 0.0),
        lp_mint=_g(d, "lp_mint", "lpMint"),
    )


def token_from_wire(d: Dict[str, Any]) -> TradableToken:
    st = _g(d, "token_status", "tokenStatus", default={}) or {}
    return TradableToken(
        address=str(_g(d, "address", default="")),
        name=str(_g(d, "name", default="")),
        symbol=str(_g(d, "symbol", default="")),
        liquidity=_to_float(_g(d, "liquidity"), 0.0),
        liquidity_usd=_to_float(_g(d, "liquidity_usd", "liquidityUsd"), 0.0),
        source=str(_g(d, "source", default="")),
        dex_id=str(_g(d, "dex_id", "dexId", default="")),
        pair_address=str(_g(d, "pair_address", "pairAddress", default="")),
        created_at=str(_g(d, "created_at", "createdAt", default="")),
        price_usd=_to_float(_g(d, "price_usd", "priceUsd"), 0.0),
        volume_24h=_to_float(_g(d, "volume_24h", "volume24h"), 0.0),
        liquidity_locked=bool(_g(d, "liquidity_locked", "liquidityLocked", default=False)),
        lock_percentage=_g(d, "lock_percentage", "lockPercentage"),
        price_change_24h=_to_float(_g(d, "price_change_24h", "priceChange24h"), 0.0),
        holders=_to_int(_g(d, "holders"), 0),
        early_buyers=_to_int(_g(d, "early_buyers", "earlyBuyers"), 0),
        buyer_position=_g(d, "buyer_position", "buyerPosition"),
        risk_score=_to_int(_g(d, "risk_score", "riskScore"), 50),
        is_tradeable=bool(_g(d, "is_tradeable", "isTradeable", default=False)),
        can_buy=bool(_g(d, "can_buy", "canBuy", default=False)),
        can_sell=bool(_g(d, "can_sell", "canSell", default=False)),
        freeze_authority=_g(d, "freeze_authority", "freezeAuthority"),
        mint_authority=_g(d, "mint_authority", "mintAuthority"),
        lp_mint=_g(d, "lp_mint", "lpMint"),
        safety_reasons=list(_g(d, "safety_reasons", "safetyReasons", default=[]) or []),
        token_status=TokenStatus(
            stage=str(_g(st, "stage", default="tradability")),
            jupiter_indexed=_g(st, "jupiter_indexed", "jupiterIndexed"),
            lp_verified=_g(st, "lp_verified", "lpVerified"),
        ),
    )


def pending_from_wire(d: Dict[str, Any]) -> PendingToken:
    return PendingToken(
        address=str(_g(d, "address", default="")),
        symbol=str(_g(d, "symbol", default="")),
        name=str(_g(d, "name", default="")),
        reason=str(_g(d, "reason", "pendingReason", default=NO_ROUTE)),
        liquidity=_to_float(_g(d, "liquidity"), 0.0),
        source=str(_g(d, "source", default="")),
    )


def rejected_from_wire(d: Dict[str, Any]) -> RejectedToken:
    return RejectedToken(
        address=str(_g(d, "address", default="")),
        symbol=str(_g(d, "symbol", default="")),
        reason=str(_g(d, "reason", default="rejected")),
    )


def scan_result_from_response(data: Dict[str, Any]) -> ScanResult:
    discovered = [pool_from_wire(x) for x in (data.get("discoveredTokens") or []) if isinstance(x, dict)]
    tokens = [token_from_wire(x) for x in (data.get("tokens") or []) if isinstance(x, dict)]
    return ScanResult(
        discovered=discovered,
        tokens=tokens,
        pending=[pending_from_wire(x) for x in (data.get("pendingTokens") or []) if isinstance(x, dict)],
        rejected=[rejected_from_wire(x) for x in (data.get("rejectedTokens") or []) if isinstance(x, dict)],
        stats=PipelineStats.from_dict(data.get("stats"), discovered=len(discovered), tradeable=len(tokens)),
        timestamp=_to_float(data.get("timestamp"), time.time()),
    )


class RemoteScanner:
    FUNCTION = "token-scanner"

    def __init__(self, functions: FunctionClient):
        self.functions = functions

    async def scan(self, min_liquidity: float, stage: str = "both") -> ScanResult:
        data = await self.functions.invoke(self.FUNCTION, {
            "minLiquidity": min_liquidity,
            "chains": ["solana"],
            "stage": stage,
        })
        if not isinstance(data, dict):
            raise ValueError(f"{self.FUNCTION}: unexpected response type {type(data).__name__}")
        return scan_result_from_response(data)
