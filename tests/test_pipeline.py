import asyncio

from solana_sniper_bundle.sniper.models import DiscoveredPool, PendingToken, RejectedToken, TokenState
from solana_sniper_bundle.sniper.pipeline import DiscoveryPipeline
from solana_sniper_bundle.sniper.tradability import ScanResult

from conftest import MINT_A, MINT_B, MINT_C, make_token


def _pool(mint, symbol, liquidity=10.0):
    return DiscoveredPool(
        address=f"pair_{symbol}", token_mint=mint, token_name=symbol, token_symbol=symbol,
        liquidity=liquidity, liquidity_usd=liquidity * 150, source="dexscreener",
        dex_id="raydium", created_at="",
    )


def _scan():
    return ScanResult(
        discovered=[_pool(MINT_A, "AAA"), _pool(MINT_B, "BBB"), _pool(MINT_C, "CCC")],
        tokens=[make_token(MINT_A, "AAA")],
        pending=[PendingToken(address=MINT_B, symbol="BBB", name="BBB", reason="no_route")],
        rejected=[RejectedToken(address=MINT_C, symbol="CCC", reason="not_sellable")],
    )


class FakeScanner:
    def __init__(self, result=None, error=None, gate=None):
        self.result = result or ScanResult()
        self.error = error
        self.gate = gate
        self.calls = []

    async def scan(self, min_liquidity, stage="both"):
        self.calls.append((min_liquidity, stage))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


def test_full_pipeline_writes_registry_in_live_mode(make_session):
    session = make_session()
    pipeline = DiscoveryPipeline(session, scanner=FakeScanner(_scan()))

    result = asyncio.run(pipeline.run_full_pipeline())
    assert not result.skipped
    assert result.stage == "both"
    assert [t.address for t in result.tokens] == [MINT_A]

    reg = session.registry
    assert reg.get_token_state(MINT_A) == TokenState.TRADEABLE
    assert reg.get_token_state(MINT_B) == TokenState.PENDING
    assert reg.get_token_state(MINT_C) == TokenState.REJECTED
    assert [t.address for t in pipeline.get_auto_trade_eligible()] == [MINT_A]
    snap = pipeline.snapshot()
    assert (snap["discovered"], snap["tradeable"], snap["pending"], snap["rejected"]) == (3, 1, 1, 1)
    assert snap["lastDiscovery"] == snap["lastTradabilityCheck"]


def test_demo_pipeline_leaves_registry_alone(make_session):
    session = make_session(demo=True)
    pipeline = DiscoveryPipeline(session, scanner=FakeScanner(_scan()))
    asyncio.run(pipeline.run_full_pipeline())
    assert session.registry.get_token_state(MINT_A) is None
    assert len(pipeline.tradeable_tokens) == 1


def test_overlapping_discovery_returns_skipped(make_session):
    session = make_session()

    async def go():
        gate = asyncio.Event()
        scanner = FakeScanner(ScanResult(discovered=[_pool(MINT_A, "AAA")]), gate=gate)
        pipeline = DiscoveryPipeline(session, scanner=scanner)
        first = asyncio.create_task(pipeline.run_discovery())
        while not scanner.calls:
            await asyncio.sleep(0)
        second = await pipeline.run_discovery()
        full = await pipeline.run_full_pipeline()
        gate.set()
        return await first, second, full, scanner

    first, second, full, scanner = asyncio.run(go())
    assert second.skipped and full.skipped
    assert not first.skipped
    assert len(scanner.calls) == 1
    assert scanner.calls[0] == (1.0, "discovery")


def test_discovery_count_accumulates(make_session):
    session = make_session(demo=True)
    scanner = FakeScanner(ScanResult(discovered=[_pool(MINT_A, "AAA"), _pool(MINT_B, "BBB")]))
    pipeline = DiscoveryPipeline(session, scanner=scanner)

    async def go():
        await pipeline.run_discovery()
        await pipeline.run_discovery()

    asyncio.run(go())
    assert pipeline.stats.discovered == 4
    assert len(pipeline.discovered_tokens) == 2


def test_scan_error_is_reported_not_raised(make_session, notes):
    session = make_session()
    scanner = FakeScanner(error=RuntimeError("token-scanner: 429 Too Many Requests"))
    pipeline = DiscoveryPipeline(session, scanner=scanner)

    result = asyncio.run(pipeline.run_tradability_check())
    assert result.error == "token-scanner: 429 Too Many Requests"
    assert result.tokens == []
    assert pipeline.error == result.error
    assert "Tradability check failed" in notes.titles()

    # the in-flight flag was released
    scanner.error = None
    again = asyncio.run(pipeline.run_tradability_check())
    assert not again.skipped and again.error is None
