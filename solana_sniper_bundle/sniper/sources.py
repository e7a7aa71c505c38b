# solana_sniper_bundle/sniper/sources.py
"""
Discovery source adapters.

Each adapter performs one bounded fetch against a public pool listing and
normalises the rows to ``DiscoveredPool``. Adapters never raise: a timeout,
non-2xx or malformed body is logged and contributes an empty list.

Public API
----------
fetch_dexscreener(session, timeout_s, sol_usd) -> List[DiscoveredPool]
fetch_geckoterminal(session, timeout_s, sol_usd) -> List[DiscoveredPool]
fetch_raydium(session, timeout_s, sol_usd) -> List[DiscoveredPool]
ADAPTERS: name -> adapter
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from solana_sniper_bundle.common.constants import BASE_MINTS
from solana_sniper_bundle.sniper.models import DiscoveredPool
from solana_sniper_bundle.sniper.racing import RaceFailed, race_first_success
from solana_sniper_bundle.sniper.utils_exec import _to_float

logger = logging.getLogger("TradingBot")

# ----------------------------------------------------------------------
# Endpoints
# ----------------------------------------------------------------------
DEXSCREENER_URLS = (
    "https://api.dexscreener.com/token-boosts/latest/v1",
    "https://api.dexscreener.com/latest/dex/pairs/solana",
)
GECKO_NEW_POOLS_URL = "https://api.geckoterminal.com/api/v2/networks/solana/new_pools?page=1"
RAYDIUM_POOLS_URL = (
    "https://api-v3.raydium.io/pools/info/list"
    "?poolType=all&poolSortField=liquidity&sortType=desc&pageSize=30&page=1"
)

DEXSCREENER_ROWS = 50
GECKO_ROWS = 40
RAYDIUM_ROWS = 30

MIN_ADAPTER_LIQUIDITY_SOL = 1.0
MIN_MINT_LEN = 32

HEADERS = {"Accept": "application/json"}


class SourceError(Exception):
    pass


Adapter = Callable[[aiohttp.ClientSession, float, float], Awaitable[List[DiscoveredPool]]]

# ----------------------------------------------------------------------
# Low-level request
# ----------------------------------------------------------------------
async def _get_json(session: aiohttp.ClientSession, url: str, timeout_s: float) -> Any:
    timeout = aiohttp.ClientTimeout(total=timeout_s)
    async with session.get(url, headers=HEADERS, timeout=timeout) as resp:
        if resp.status != 200:
            body = (await resp.text())[:200]
            raise SourceError(f"HTTP {resp.status}: {body}")
        return await resp.json(content_type=None)

# ----------------------------------------------------------------------
# Normalisation helpers
# ----------------------------------------------------------------------
def _dex_kind(raw: Any) -> Optional[str]:
    d = str(raw or "").lower()
    if "raydium" in d:
        return "raydium"
    if "orca" in d:
        return "orca"
    if "meteora" in d:
        return "meteora"
    return None


def _token_side(base: str, quote: str) -> Optional[str]:
    """Non-SOL/non-USDC side of the pair, or None for base-base pairs and junk."""
    if base in BASE_MINTS and quote in BASE_MINTS:
        return None
    mint = quote if base in BASE_MINTS else base
    if not mint or len(mint) < MIN_MINT_LEN:
        return None
    return mint


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_from_epoch(value: Any, millis: bool) -> str:
    ts = _to_float(value, 0.0)
    if ts <= 0:
        return _now_iso()
    if millis:
        ts /= 1000.0
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return _now_iso()


def _default_name(mint: str) -> str:
    return f"Token {mint[:6]}"


def _default_symbol(mint: str) -> str:
    return mint[:4]

# ----------------------------------------------------------------------
# DexScreener
# ----------------------------------------------------------------------
def _parse_dexscreener(data: Any, sol_usd: float) -> List[DiscoveredPool]:
    rows = data.get("pairs") if isinstance(data, dict) else data
    pools: List[DiscoveredPool] = []
    for pair in (rows or [])[:DEXSCREENER_ROWS]:
        if not isinstance(pair, dict):
            continue
        chain = pair.get("chainId")
        if chain and chain != "solana":
            continue
        dex = _dex_kind(pair.get("dexId"))
        if dex is None:
            continue

        liq_usd = _to_float((pair.get("liquidity") or {}).get("usd"), 0.0)
        liq = liq_usd / sol_usd
        if liq < MIN_ADAPTER_LIQUIDITY_SOL:
            continue

        base = pair.get("baseToken") or {}
        quote = pair.get("quoteToken") or {}
        mint = _token_side(base.get("address") or "", quote.get("address") or "")
        if not mint:
            continue

        pools.append(DiscoveredPool(
            address=pair.get("pairAddress") or "",
            token_mint=mint,
            token_name=base.get("name") or _default_name(mint),
            token_symbol=base.get("symbol") or _default_symbol(mint),
            liquidity=liq,
            liquidity_usd=liq_usd,
            source="dexscreener",
            dex_id=dex,
            created_at=_iso_from_epoch(pair.get("pairCreatedAt"), millis=True),
            price_usd=_to_float(pair.get("priceUsd"), 0.0),
            volume_24h=_to_float((pair.get("volume") or {}).get("h24"), 0.0),
        ))
    return pools


async def fetch_dexscreener(session: aiohttp.ClientSession, timeout_s: float, sol_usd: float = 150.0) -> List[DiscoveredPool]:
    t0 = time.monotonic()
    try:
        # both endpoints raced; first well-formed body wins
        data = await race_first_success([_get_json(session, url, timeout_s) for url in DEXSCREENER_URLS], timeout_s)
        pools = _parse_dexscreener(data, sol_usd)
    except (RaceFailed, aiohttp.ClientError, asyncio.TimeoutError, SourceError, ValueError, TypeError, AttributeError) as e:
        logger.debug("DexScreener discovery failed in %dms: %s", int((time.monotonic() - t0) * 1000), e)
        return []
    logger.debug("DexScreener: %d pools in %dms", len(pools), int((time.monotonic() - t0) * 1000))
    return pools

# ----------------------------------------------------------------------
# GeckoTerminal
# ----------------------------------------------------------------------
def _strip_net(rel_id: Any) -> str:
    return str(rel_id or "").replace("solana_", "")


def _parse_geckoterminal(data: Any, sol_usd: float) -> List[DiscoveredPool]:
    pools: List[DiscoveredPool] = []
    for row in ((data or {}).get("data") or [])[:GECKO_ROWS]:
        if not isinstance(row, dict):
            continue
        attrs = row.get("attributes") or {}
        rel = row.get("relationships") or {}

        dex = _dex_kind(((rel.get("dex") or {}).get("data") or {}).get("id") or attrs.get("dex_id"))
        if dex is None:
            continue

        liq_usd = _to_float(attrs.get("reserve_in_usd"), 0.0)
        liq = liq_usd / sol_usd
        if liq < MIN_ADAPTER_LIQUIDITY_SOL:
            continue

        base = _strip_net(((rel.get("base_token") or {}).get("data") or {}).get("id"))
        quote = _strip_net(((rel.get("quote_token") or {}).get("data") or {}).get("id"))
        mint = _token_side(base, quote)
        if not mint:
            continue

        head = str(attrs.get("name") or "").split("/")[0].strip()
        pools.append(DiscoveredPool(
            address=_strip_net(row.get("id")),
            token_mint=mint,
            token_name=head or _default_name(mint),
            token_symbol=head[:10] or _default_symbol(mint),
            liquidity=liq,
            liquidity_usd=liq_usd,
            source="geckoterminal",
            dex_id=dex,
            created_at=attrs.get("pool_created_at") or _now_iso(),
            price_usd=_to_float(attrs.get("base_token_price_usd"), 0.0),
            volume_24h=_to_float((attrs.get("volume_usd") or {}).get("h24"), 0.0),
        ))
    return pools


async def fetch_geckoterminal(session: aiohttp.ClientSession, timeout_s: float, sol_usd: float = 150.0) -> List[DiscoveredPool]:
    t0 = time.monotonic()
    try:
        data = await _get_json(session, GECKO_NEW_POOLS_URL, timeout_s)
        pools = _parse_geckoterminal(data, sol_usd)
    except (aiohttp.ClientError, asyncio.TimeoutError, SourceError, ValueError, TypeError, AttributeError) as e:
        logger.debug("GeckoTerminal discovery failed in %dms: %s", int((time.monotonic() - t0) * 1000), e)
        return []
    logger.debug("GeckoTerminal: %d pools in %dms", len(pools), int((time.monotonic() - t0) * 1000))
    return pools

# ----------------------------------------------------------------------
# Raydium
# ----------------------------------------------------------------------
def _parse_raydium(data: Any, sol_usd: float) -> List[DiscoveredPool]:
    if not isinstance(data, dict) or not data.get("success"):
        return []
    rows = ((data.get("data") or {}).get("data")) or []
    pools: List[DiscoveredPool] = []
    for row in rows[:RAYDIUM_ROWS]:
        if not isinstance(row, dict):
            continue
        mint_a = row.get("mintA") or {}
        mint_b = row.get("mintB") or {}
        a, b = mint_a.get("address") or "", mint_b.get("address") or ""
        mint = _token_side(a, b)
        if not mint:
            continue
        info = mint_b if a in BASE_MINTS else mint_a

        liq_usd = _to_float(row.get("tvl"), 0.0)
        liq = liq_usd / sol_usd
        if liq < MIN_ADAPTER_LIQUIDITY_SOL:
            continue

        lp = row.get("lpMint")
        lp_mint = lp.get("address") if isinstance(lp, dict) else (lp or None)

        pools.append(DiscoveredPool(
            address=row.get("id") or "",
            token_mint=mint,
            token_name=info.get("name") or _default_name(mint),
            token_symbol=info.get("symbol") or _default_symbol(mint),
            liquidity=liq,
            liquidity_usd=liq_usd,
            source="raydium",
            dex_id="raydium",
            created_at=_iso_from_epoch(row.get("openTime"), millis=False),
            price_usd=_to_float(row.get("price"), 0.0),
            volume_24h=_to_float((row.get("day") or {}).get("volume"), 0.0),
            lp_mint=lp_mint,
        ))
    return pools


async def fetch_raydium(session: aiohttp.ClientSession, timeout_s: float, sol_usd: float = 150.0) -> List[DiscoveredPool]:
    t0 = time.monotonic()
    try:
        data = await _get_json(session, RAYDIUM_POOLS_URL, timeout_s)
        pools = _parse_raydium(data, sol_usd)
    except (aiohttp.ClientError, asyncio.TimeoutError, SourceError, ValueError, TypeError, AttributeError) as e:
        logger.debug("Raydium discovery failed in %dms: %s", int((time.monotonic() - t0) * 1000), e)
        return []
    logger.debug("Raydium: %d pools in %dms", len(pools), int((time.monotonic() - t0) * 1000))
    return pools


# Order matters: earlier adapters own identity fields on merge.
ADAPTERS: Dict[str, Adapter] = {
    "dexscreener": fetch_dexscreener,
    "geckoterminal": fetch_geckoterminal,
    "raydium": fetch_raydium,
}
