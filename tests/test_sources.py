import asyncio

import aiohttp

from solana_sniper_bundle.common.constants import SOL_MINT, USDC_MINT
from solana_sniper_bundle.sniper import sources

from conftest import MINT_A, MINT_B, MINT_C


def _dex_pair(base, quote, usd, dex="raydium", **kw):
    row = {
        "chainId": "solana",
        "dexId": dex,
        "pairAddress": f"Pair{base[:4]}",
        "liquidity": {"usd": usd},
        "baseToken": {"address": base, "name": "Alpha", "symbol": "ALP"},
        "quoteToken": {"address": quote, "name": "Wrapped SOL", "symbol": "SOL"},
        "pairCreatedAt": 1700000000000,
        "priceUsd": "0.01",
        "volume": {"h24": 1000},
    }
    row.update(kw)
    return row


def test_parse_dexscreener_filters_and_normalises():
    data = {"pairs": [
        _dex_pair(MINT_A, SOL_MINT, 1500),
        _dex_pair(SOL_MINT, USDC_MINT, 900000),          # base/base pair
        _dex_pair(MINT_B, SOL_MINT, 100),                # below 1 SOL
        _dex_pair(MINT_C, SOL_MINT, 5000, dex="pumpswap"),
        _dex_pair(MINT_C, SOL_MINT, 5000, chainId="ethereum"),
    ]}
    pools = sources._parse_dexscreener(data, sol_usd=150.0)
    assert len(pools) == 1
    p = pools[0]
    assert p.token_mint == MINT_A
    assert p.liquidity == 10.0
    assert p.liquidity_usd == 1500
    assert p.source == "dexscreener"
    assert p.dex_id == "raydium"
    assert p.price_usd == 0.01
    assert p.created_at.startswith("2023-11-14")


def test_parse_dexscreener_token_on_quote_side():
    pools = sources._parse_dexscreener([_dex_pair(SOL_MINT, MINT_B, 3000, dex="orca")], sol_usd=150.0)
    assert [p.token_mint for p in pools] == [MINT_B]
    assert pools[0].dex_id == "orca"


def test_parse_geckoterminal():
    data = {"data": [{
        "id": "solana_PoolX",
        "attributes": {
            "name": "FOO / SOL",
            "reserve_in_usd": "3000",
            "pool_created_at": "2024-01-01T00:00:00Z",
            "base_token_price_usd": "0.5",
            "volume_usd": {"h24": "10"},
        },
        "relationships": {
            "dex": {"data": {"id": "orca"}},
            "base_token": {"data": {"id": f"solana_{MINT_B}"}},
            "quote_token": {"data": {"id": f"solana_{SOL_MINT}"}},
        },
    }]}
    pools = sources._parse_geckoterminal(data, sol_usd=150.0)
    assert len(pools) == 1
    p = pools[0]
    assert p.address == "PoolX"
    assert p.token_mint == MINT_B
    assert p.token_symbol == "FOO"
    assert p.liquidity == 20.0
    assert p.created_at == "2024-01-01T00:00:00Z"


def test_parse_raydium_picks_non_base_side_and_lp_mint():
    data = {"success": True, "data": {"data": [{
        "id": "RayPool",
        "mintA": {"address": SOL_MINT, "symbol": "WSOL"},
        "mintB": {"address": MINT_C, "name": "Cee", "symbol": "CEE"},
        "tvl": 750,
        "lpMint": {"address": "LpMintC"},
        "openTime": "1700000000",
        "price": 0.2,
        "day": {"volume": 5},
    }]}}
    pools = sources._parse_raydium(data, sol_usd=150.0)
    assert len(pools) == 1
    p = pools[0]
    assert (p.token_mint, p.token_symbol, p.lp_mint, p.liquidity) == (MINT_C, "CEE", "LpMintC", 5.0)
    assert sources._parse_raydium({"success": False}, 150.0) == []


class _DownSession:
    def get(self, *args, **kwargs):
        raise aiohttp.ClientConnectionError("down")


def test_adapters_never_raise():
    async def go():
        s = _DownSession()
        return [
            await sources.fetch_dexscreener(s, 0.5),
            await sources.fetch_geckoterminal(s, 0.5),
            await sources.fetch_raydium(s, 0.5),
        ]

    assert asyncio.run(go()) == [[], [], []]
