# solana_sniper_bundle/sniper/discovery.py
"""
Discovery racer: every enabled source adapter runs under one shared deadline,
successful results are merged by token mint.

Merge rules
-----------
* The first adapter (in ADAPTERS order) to produce a mint owns its identity
  fields: name, symbol, source, dex id, pool address, created-at.
* Price, liquidity (SOL and USD) and 24h volume are refreshed from every
  later adapter that also lists the mint.
* The liquidity floor is applied after the merge.

Results are cached for a few seconds per liquidity floor; a cache hit makes no
network calls and returns the very same list object.
"""
from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional

import aiohttp
from cachetools import TTLCache

from solana_sniper_bundle.common.feature_flags import enabled_sources
from solana_sniper_bundle.sniper import sources
from solana_sniper_bundle.sniper.models import DiscoveredPool
from solana_sniper_bundle.sniper.racing import race_all_settled
from solana_sniper_bundle.sniper.utils_exec import section

logger = logging.getLogger("TradingBot")

DISCOVERY_CACHE_TTL_S = 8
_discovery_cache: TTLCache = TTLCache(maxsize=64, ttl=DISCOVERY_CACHE_TTL_S)


def _cache_for(ttl_s: float) -> TTLCache:
    global _discovery_cache
    if float(_discovery_cache.ttl) != float(ttl_s):
        _discovery_cache = TTLCache(maxsize=64, ttl=ttl_s)
    return _discovery_cache


def merge_pools(batches: List[List[DiscoveredPool]]) -> Dict[str, DiscoveredPool]:
    merged: Dict[str, DiscoveredPool] = {}
    for batch in batches:
        for pool in batch or []:
            cur = merged.get(pool.token_mint)
            if cur is None:
                merged[pool.token_mint] = replace(pool)
                continue
            cur.price_usd = pool.price_usd
            cur.liquidity = pool.liquidity
            cur.liquidity_usd = pool.liquidity_usd
            cur.volume_24h = pool.volume_24h
            if not cur.lp_mint and pool.lp_mint:
                cur.lp_mint = pool.lp_mint
    return merged


async def race_discovery(
    min_liquidity: float = 3,
    timeout_ms: Optional[int] = None,
    session: Optional[aiohttp.ClientSession] = None,
    cfg: Optional[Dict[str, Any]] = None,
) -> List[DiscoveredPool]:
    dcfg = section(cfg, "discovery")
    timeout_s = float(timeout_ms if timeout_ms is not None else dcfg.get("timeout_ms", 3000)) / 1000.0
    sol_usd = float(dcfg.get("sol_usd_estimate", 150.0)) or 150.0
    cache = _cache_for(float(dcfg.get("cache_ttl_s", DISCOVERY_CACHE_TTL_S)))

    key = f"discovery:{min_liquidity}"
    hit = cache.get(key)
    if hit is not None:
        logger.debug("Discovery cache hit (%s)", key)
        return hit

    names = [n for n in enabled_sources(cfg or {}) if n in sources.ADAPTERS]
    if not names:
        logger.warning("All discovery sources are disabled")
        return []

    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession()
    t0 = time.monotonic()
    try:
        settled = await race_all_settled(
            [sources.ADAPTERS[n](session, timeout_s, sol_usd) for n in names],
            timeout_s,
        )
    finally:
        if own_session:
            await session.close()

    batches: List[List[DiscoveredPool]] = []
    for name, outcome in zip(names, settled):
        if outcome.ok:
            batches.append(outcome.value or [])
        else:
            logger.debug("Discovery source %s contributed nothing: %s", name, outcome.error)

    merged = merge_pools(batches)
    pools = [p for p in merged.values() if p.liquidity >= min_liquidity]
    cache[key] = pools
    logger.info(
        "Discovery: %d pools (floor %.2f SOL) from %d/%d sources in %dms",
        len(pools), float(min_liquidity), sum(1 for s in settled if s.ok), len(names),
        int((time.monotonic() - t0) * 1000),
    )
    return pools


def get_discovery_cache_stats() -> Dict[str, Any]:
    return {
        "discovery_cache_size": len(_discovery_cache),
        "ttl_s": float(_discovery_cache.ttl),
    }


def clear_discovery_cache() -> None:
    _discovery_cache.clear()
