import asyncio
import json

from solana_sniper_bundle.common.constants import SOL_MINT
from solana_sniper_bundle.sniper import quotes
from solana_sniper_bundle.sniper.errors import TradeErrorCode

from conftest import MINT_A, MINT_B


class _Resp:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self, content_type=None):
        return json.loads(self._body) if isinstance(self._body, str) else self._body

    async def text(self):
        return self._body if isinstance(self._body, str) else json.dumps(self._body)


class _Session:
    """Answers every quote GET with the response built by ``handler(url, params)``."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append((url, dict(params or {})))
        return self.handler(url, params or {})


def test_route_found_is_cached():
    session = _Session(lambda url, p: _Resp(200, {"outAmount": "123456", "priceImpactPct": "1.5"}))

    async def go():
        first = await quotes.fast_quote(MINT_A, session=session)
        n = len(session.calls)
        second = await quotes.fast_quote(MINT_A, session=session)
        return first, second, n

    first, second, n = asyncio.run(go())
    assert first.success and first.has_route
    assert first.out_amount == "123456"
    assert first.price_impact == 1.5
    assert second is first
    assert len(session.calls) == n
    assert session.calls[0][1]["inputMint"] == SOL_MINT


def test_confirmed_no_route_is_distinct_from_failure():
    no_route = _Session(lambda url, p: _Resp(400, '{"error": "Could not find any route"}'))
    failing = _Session(lambda url, p: _Resp(503, "service unavailable"))

    async def go():
        a = await quotes.fast_quote(MINT_A, session=no_route)
        b = await quotes.fast_quote(MINT_B, session=failing)
        return a, b

    a, b = asyncio.run(go())
    assert a.success and not a.has_route
    assert a.confirmed_no_route
    assert a.error_code == TradeErrorCode.NO_ROUTE.value

    assert not b.success and not b.has_route
    assert not b.confirmed_no_route
    assert b.error_code == TradeErrorCode.NETWORK_ERROR.value


def test_failed_probes_are_not_cached():
    state = {"status": 503}

    def handler(url, p):
        if state["status"] == 200:
            return _Resp(200, {"outAmount": "10"})
        return _Resp(state["status"], "boom")

    session = _Session(handler)

    async def go():
        first = await quotes.fast_quote(MINT_A, session=session)
        state["status"] = 200
        second = await quotes.fast_quote(MINT_A, session=session)
        return first, second

    first, second = asyncio.run(go())
    assert not first.success
    assert second.success and second.has_route


def test_rate_limit_and_extreme_impact():
    limited = _Session(lambda url, p: _Resp(429, "Too Many Requests"))
    steep = _Session(lambda url, p: _Resp(200, {"outAmount": "5", "priceImpactPct": "75"}))

    async def go():
        return (
            await quotes.fast_quote(MINT_A, session=limited),
            await quotes.fast_quote(MINT_B, session=steep),
        )

    a, b = asyncio.run(go())
    assert a.error_code == TradeErrorCode.RATE_LIMITED.value
    assert b.success and not b.has_route
    assert "Price impact" in b.error


def test_sell_probe_reverses_direction():
    session = _Session(lambda url, p: _Resp(200, {"outAmount": "99"}))
    probe = asyncio.run(quotes.fast_sell_quote(MINT_A, amount=5000, session=session))
    assert probe.has_route
    params = session.calls[0][1]
    assert (params["inputMint"], params["outputMint"], params["amount"]) == (MINT_A, SOL_MINT, "5000")


def test_batch_isolates_failures(monkeypatch):
    async def fake_fast_quote(mint, amount, timeout_ms, session, max_impact):
        if mint == MINT_B:
            raise RuntimeError("connection reset")
        return quotes.QuoteProbe(success=True, has_route=True, latency_ms=1, out_amount="1")

    monkeypatch.setattr(quotes, "fast_quote", fake_fast_quote)
    out = asyncio.run(quotes.fast_batch_quotes([MINT_A, MINT_B, MINT_A], session=object()))
    assert set(out) == {MINT_A, MINT_B}
    assert out[MINT_A].has_route
    assert not out[MINT_B].success
    assert out[MINT_B].error_code == TradeErrorCode.NETWORK_ERROR.value


def test_estimate_liquidity_from_impact():
    assert quotes.estimate_liquidity_from_impact(0.01, 0) == 5.0
    assert quotes.estimate_liquidity_from_impact(1.0, 10.0) == 10.0
