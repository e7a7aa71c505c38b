# solana_sniper_bundle/sniper/quotes.py
"""
Quote prober.

Answers "does a swap route exist right now?" for a mint, as fast as possible:
both Jupiter quote endpoints are raced and the first usable answer wins.

Outcomes are three-valued and callers must keep them apart:

* ``success=True,  has_route=True``   route found
* ``success=True,  has_route=False``  aggregator confirmed there is no route
* ``success=False``                   probe failed (timeout, 429, network);
                                      says nothing about the route
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, Optional, Tuple

import aiohttp
from cachetools import TTLCache

from solana_sniper_bundle.common.constants import SOL_MINT
from solana_sniper_bundle.sniper.errors import NO_ROUTE_PATTERNS, TradeErrorCode, classify_error
from solana_sniper_bundle.sniper.models import QuoteProbe
from solana_sniper_bundle.sniper.racing import RaceFailed, race_first_success
from solana_sniper_bundle.sniper.utils_exec import CircuitBreaker429, _to_float, _to_int, section

logger = logging.getLogger("TradingBot")

JUPITER_QUOTE_ENDPOINTS = (
    "https://lite-api.jup.ag/swap/v1/quote",
    "https://quote-api.jup.ag/v6/quote",
)

DEFAULT_PROBE_LAMPORTS = 10_000_000      # 0.01 SOL
DEFAULT_SELL_PROBE_UNITS = 1_000_000
PROBE_SLIPPAGE_BPS = 1500
MAX_PRICE_IMPACT_PCT = 50.0

_quote_cache: TTLCache = TTLCache(maxsize=2_000, ttl=30)
_breaker = CircuitBreaker429(threshold=3, cooldown_seconds=60)


class QuoteHTTPError(Exception):
    def __init__(self, status: int, body: str = ""):
        super().__init__(f"Jupiter HTTP {status}: {body[:200]}")
        self.status = status
        self.body = body


def _no_route_body(body: str) -> bool:
    b = (body or "").lower()
    return any(p in b for p in NO_ROUTE_PATTERNS)

# ----------------------------------------------------------------------
# Single endpoint
# ----------------------------------------------------------------------
async def _fetch_quote(
    session: aiohttp.ClientSession,
    url: str,
    params: Dict[str, str],
    timeout_s: float,
) -> Tuple[str, Any]:
    """
    One endpoint. Returns ("quote", body) or ("no_route", message); raises
    on anything that is not a definite answer so the race moves on.
    """
    timeout = aiohttp.ClientTimeout(total=timeout_s)
    async with session.get(url, params=params, headers={"Accept": "application/json"}, timeout=timeout) as resp:
        if resp.status == 200:
            data = await resp.json(content_type=None)
            if isinstance(data, dict) and data.get("error"):
                if _no_route_body(str(data["error"])):
                    return "no_route", str(data["error"])
                raise QuoteHTTPError(200, str(data["error"]))
            return "quote", data
        body = await resp.text()
        if resp.status in (400, 404) and _no_route_body(body):
            return "no_route", body[:200]
        raise QuoteHTTPError(resp.status, body)


def _failure_code(err: RaceFailed) -> TradeErrorCode:
    if err.timed_out:
        return TradeErrorCode.TIMEOUT
    for e in err.errors:
        if isinstance(e, QuoteHTTPError) and e.status == 429:
            return TradeErrorCode.RATE_LIMITED
    for e in err.errors:
        if isinstance(e, asyncio.TimeoutError):
            return TradeErrorCode.TIMEOUT
    code = classify_error(str(err))
    if code in (TradeErrorCode.TIMEOUT, TradeErrorCode.RATE_LIMITED):
        return code
    return TradeErrorCode.NETWORK_ERROR

# ----------------------------------------------------------------------
# Probe
# ----------------------------------------------------------------------
async def _probe(
    input_mint: str,
    output_mint: str,
    amount: int,
    timeout_ms: int,
    session: Optional[aiohttp.ClientSession],
    max_impact_pct: float,
) -> QuoteProbe:
    key = (input_mint, output_mint, int(amount))
    cached = _quote_cache.get(key)
    if cached is not None:
        return cached

    t0 = time.monotonic()

    def _ms() -> int:
        return int((time.monotonic() - t0) * 1000)

    if _breaker.is_open():
        return QuoteProbe(
            success=False, has_route=False, latency_ms=0,
            error=f"Jupiter rate limited; cooling down {_breaker.remaining_cooldown():.0f}s",
            error_code=TradeErrorCode.RATE_LIMITED.value,
        )

    params = {
        "inputMint": input_mint,
        "outputMint": output_mint,
        "amount": str(int(amount)),
        "slippageBps": str(PROBE_SLIPPAGE_BPS),
    }
    timeout_s = max(0.05, timeout_ms / 1000.0)

    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession()
    try:
        kind, data = await race_first_success(
            [_fetch_quote(session, url, params, timeout_s) for url in JUPITER_QUOTE_ENDPOINTS],
            timeout_s,
        )
    except RaceFailed as e:
        code = _failure_code(e)
        _breaker.record(is_429=(code == TradeErrorCode.RATE_LIMITED))
        logger.debug("Quote probe %s -> %s failed (%s): %s", input_mint[:8], output_mint[:8], code.value, e)
        return QuoteProbe(success=False, has_route=False, latency_ms=_ms(), error=str(e), error_code=code.value)
    finally:
        if own_session:
            await session.close()

    _breaker.record(is_429=False)

    if kind == "no_route":
        return QuoteProbe(
            success=True, has_route=False, latency_ms=_ms(),
            error=str(data), error_code=TradeErrorCode.NO_ROUTE.value,
        )

    out_amount = _to_int((data or {}).get("outAmount") or (data or {}).get("outputAmount"), 0)
    if out_amount <= 0:
        return QuoteProbe(
            success=True, has_route=False, latency_ms=_ms(),
            error="Quote returned no output amount", error_code=TradeErrorCode.NO_ROUTE.value,
        )

    impact = _to_float((data or {}).get("priceImpactPct"), 0.0)
    if impact > max_impact_pct:
        return QuoteProbe(
            success=True, has_route=False, latency_ms=_ms(), out_amount=str(out_amount),
            price_impact=impact, error=f"Price impact too high ({impact:.1f}%)",
            error_code=TradeErrorCode.NO_ROUTE.value,
        )

    probe = QuoteProbe(success=True, has_route=True, latency_ms=_ms(), out_amount=str(out_amount), price_impact=impact)
    _quote_cache[key] = probe
    return probe


async def fast_quote(
    token_mint: str,
    probe_amount: int = DEFAULT_PROBE_LAMPORTS,
    timeout_ms: int = 2000,
    session: Optional[aiohttp.ClientSession] = None,
    max_impact_pct: float = MAX_PRICE_IMPACT_PCT,
) -> QuoteProbe:
    """Buy-side probe: SOL -> token."""
    return await _probe(SOL_MINT, token_mint, probe_amount, timeout_ms, session, max_impact_pct)


async def fast_sell_quote(
    token_mint: str,
    amount: int = DEFAULT_SELL_PROBE_UNITS,
    timeout_ms: int = 2000,
    session: Optional[aiohttp.ClientSession] = None,
    max_impact_pct: float = MAX_PRICE_IMPACT_PCT,
) -> QuoteProbe:
    """Sell-side probe: token -> SOL. Backs the can_sell gate."""
    return await _probe(token_mint, SOL_MINT, amount, timeout_ms, session, max_impact_pct)


async def fast_batch_quotes(
    mints: Iterable[str],
    concurrency: int = 10,
    sell: bool = False,
    amounts: Optional[Dict[str, int]] = None,
    session: Optional[aiohttp.ClientSession] = None,
    cfg: Optional[Dict[str, Any]] = None,
) -> Dict[str, QuoteProbe]:
    """
    Probe many mints with bounded fan-out. A probe that blows up is reported
    as a failed probe for that mint; the rest of the batch is unaffected.
    """
    qcfg = section(cfg, "quotes")
    timeout_ms = int(qcfg.get("timeout_ms", 2000))
    max_impact = float(qcfg.get("max_price_impact_pct", MAX_PRICE_IMPACT_PCT))
    buy_amount = int(qcfg.get("probe_amount_lamports", DEFAULT_PROBE_LAMPORTS))
    sem = asyncio.Semaphore(max(1, int(concurrency)))
    mints = list(dict.fromkeys(m for m in mints if m))
    amounts = amounts or {}

    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession()

    async def _one(mint: str) -> QuoteProbe:
        async with sem:
            if sell:
                return await fast_sell_quote(mint, amounts.get(mint, DEFAULT_SELL_PROBE_UNITS), timeout_ms, session, max_impact)
            return await fast_quote(mint, amounts.get(mint, buy_amount), timeout_ms, session, max_impact)

    try:
        results = await asyncio.gather(*(_one(m) for m in mints), return_exceptions=True)
    finally:
        if own_session:
            await session.close()

    out: Dict[str, QuoteProbe] = {}
    for mint, res in zip(mints, results):
        if isinstance(res, BaseException):
            logger.debug("Batch probe for %s raised: %s", mint[:8], res)
            out[mint] = QuoteProbe(
                success=False, has_route=False, latency_ms=0,
                error=str(res), error_code=classify_error(str(res)).value,
            )
        else:
            out[mint] = res
    return out


def estimate_liquidity_from_impact(input_sol: float, impact_pct: float) -> float:
    """Rough pool depth (SOL) implied by the price impact of a probe trade."""
    if impact_pct <= 0:
        return 5.0
    return max(5.0, float(input_sol) / (float(impact_pct) / 100.0))


def get_quote_cache_stats() -> Dict[str, Any]:
    return {
        "quote_cache_size": len(_quote_cache),
        "breaker_open": _breaker.is_open(),
    }


def clear_quote_cache() -> None:
    _quote_cache.clear()
    _breaker.reset()
