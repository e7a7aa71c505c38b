import asyncio
import random

import pytest

from solana_sniper_bundle.sniper import database
from solana_sniper_bundle.sniper.bot_loop import BotLoop, evaluate_candidates
from solana_sniper_bundle.sniper.errors import TradeErrorCode
from solana_sniper_bundle.sniper.models import TokenState, TradeResult
from solana_sniper_bundle.sniper.token_state import TokenStateRegistry

from conftest import MINT_A, MINT_B, MINT_C, make_token


SETTINGS = {
    "trade_amount": 0.1,
    "min_liquidity": 5,
    "max_risk_score": 70,
    "max_concurrent_trades": 3,
    "priority": "turbo",
    "profit_take_percentage": 50,
    "stop_loss_percentage": 20,
}


class FakeEngine:
    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    async def execute_trade(self, params, wallet_address=None, sign_and_send=None):
        self.calls.append((params, wallet_address))
        return self.results.pop(0)


class FakePipeline:
    def __init__(self, tokens=()):
        self.tradeable_tokens = list(tokens)


def _loop(session, engine, tokens=(), **kw):
    return BotLoop(session, FakePipeline(tokens), engine, settings=dict(SETTINGS, **kw), inter_trade_delay_s=0)


# ----------------------------------------------------------------------
# evaluation
# ----------------------------------------------------------------------
def test_evaluate_candidates_rules():
    good = make_token(MINT_A, "AAA", buyer_position=2)
    risky = make_token(MINT_B, "BBB", risk_score=80)
    late = make_token(MINT_C, "CCC", buyer_position=9, liquidity=3.0)

    d_good, d_risky, d_late = evaluate_candidates([good, risky, late], dict(SETTINGS, priority="fast"))

    assert d_good.approved
    assert d_good.trade_amount_sol == pytest.approx(0.075)
    assert d_good.slippage_pct == 10
    assert not d_risky.approved
    assert d_risky.reject_reason == "Risk score 80 at or above 70"
    assert d_risky.trade_amount_sol == 0.0
    assert not d_late.approved
    assert d_late.reject_reason.startswith("Liquidity 3.00 SOL below minimum")
    assert "Buyer position #9 outside targets" in d_late.failures


def test_unsellable_token_is_never_approved():
    (d,) = evaluate_candidates([make_token(MINT_A, can_sell=False)], SETTINGS)
    assert not d.approved
    assert "not_sellable" in d.failures


# ----------------------------------------------------------------------
# live
# ----------------------------------------------------------------------
def test_live_cycle_buys_sequentially_and_marks_traded(make_session):
    session = make_session()
    ok = TradeResult(success=True, signature="sig1", position_id="p1")
    ok2 = TradeResult(success=True, signature="sig2", position_id="p2")
    engine = FakeEngine([ok, ok2])
    loop = _loop(session, engine)

    report = asyncio.run(loop.run_cycle([make_token(MINT_A, "AAA"), make_token(MINT_B, "BBB")]))
    assert report.executed == [MINT_A, MINT_B]
    params, wallet = engine.calls[0]
    assert wallet == session.wallet_address
    assert params.output_mint == MINT_A
    assert params.amount == 75_000_000
    assert params.slippage_bps == 1500
    assert params.priority_level == "veryHigh"
    assert session.registry.get_token_state(MINT_A) == TokenState.TRADED
    assert session.registry.get_entry(MINT_B)["tx_hash"] == "sig2"


def test_live_cycle_stops_at_first_failure(make_session):
    session = make_session()
    engine = FakeEngine([
        TradeResult(success=False, error="Insufficient funds for fee", error_code=TradeErrorCode.INSUFFICIENT_FUNDS.value),
        TradeResult(success=True, signature="never"),
    ])
    loop = _loop(session, engine)

    report = asyncio.run(loop.run_cycle([make_token(MINT_A, "AAA"), make_token(MINT_B, "BBB")]))
    assert len(engine.calls) == 1
    assert report.failed == "Insufficient funds for fee"
    assert report.executed == []
    reg = session.registry
    assert reg.get_token_state(MINT_A) == TokenState.REJECTED
    assert reg.get_entry(MINT_A)["reason"] == "Insufficient funds for fee"
    assert reg.get_token_state(MINT_B) == TokenState.NEW

    # both were seen this cycle; nothing is re-evaluated
    again = asyncio.run(loop.run_cycle([make_token(MINT_A, "AAA"), make_token(MINT_B, "BBB")]))
    assert again.skipped == "no unseen tokens"


def test_live_cycle_waits_for_registry(make_session, db_file, monkeypatch):
    async def seed():
        reg = TokenStateRegistry(db_file)
        await reg.mark_traded(MINT_A, "old_sig")

    asyncio.run(seed())
    session = make_session()
    engine = FakeEngine([TradeResult(success=True, signature="sig_b", position_id="p2")])

    report = asyncio.run(_loop(session, engine).run_cycle([make_token(MINT_A, "AAA"), make_token(MINT_B, "BBB")]))
    assert session.registry.loaded
    assert [p.output_mint for p, _ in engine.calls] == [MINT_B]
    assert report.executed == [MINT_B]

    async def broken(path):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(database, "load_token_states", broken)
    idle = FakeEngine([])
    report = asyncio.run(_loop(make_session(), idle).run_cycle([make_token(MINT_C, "CCC")]))
    assert report.skipped == "registry not loaded"
    assert idle.calls == []


def test_live_no_route_failure_goes_pending(make_session):
    session = make_session()
    engine = FakeEngine([TradeResult(success=False, error="No routes found", error_code=TradeErrorCode.NO_ROUTE.value)])
    asyncio.run(_loop(session, engine).run_cycle([make_token(MINT_A, "AAA")]))
    entry = session.registry.get_entry(MINT_A)
    assert entry["state"] == TokenState.PENDING.value
    assert entry["reason"] == "no_route"


def test_live_rejects_failed_rules_and_unsellable(make_session):
    session = make_session()
    engine = FakeEngine([])
    tokens = [make_token(MINT_A, "AAA", risk_score=90), make_token(MINT_B, "BBB", can_sell=False)]

    report = asyncio.run(_loop(session, engine).run_cycle(tokens))
    assert engine.calls == []
    assert report.candidates == 1
    assert session.registry.get_entry(MINT_A)["reason"] == "Risk score 90 at or above 70"
    assert session.registry.get_entry(MINT_B)["reason"] == "not_sellable"


def test_live_cycle_without_wallet_or_balance_skips(make_session, notes):
    report = asyncio.run(_loop(make_session(wallet=False), FakeEngine([])).run_cycle([make_token(MINT_A)]))
    assert report.skipped == "no wallet"
    assert "Wallet required" in notes.titles()

    poor = make_session(balance=0.105)
    report = asyncio.run(_loop(poor, FakeEngine([])).run_cycle([make_token(MINT_A)]))
    assert report.skipped == "insufficient balance"


def test_live_cycle_respects_open_slots(make_session):
    session = make_session()
    session.open_positions = [{"token_address": MINT_C, "status": "open"}]
    engine = FakeEngine([TradeResult(success=True, signature="s")])
    loop = _loop(session, engine, max_concurrent_trades=2)

    report = asyncio.run(loop.run_cycle([
        make_token(MINT_C, "CCC"), make_token(MINT_A, "AAA"), make_token(MINT_B, "BBB"),
    ]))
    # MINT_C already held; one free slot
    assert report.executed == [MINT_A]
    assert len(engine.calls) == 1


# ----------------------------------------------------------------------
# demo
# ----------------------------------------------------------------------
def test_demo_cycle_opens_and_settles_position(make_session, notes):
    session = make_session(demo=True)
    engine = FakeEngine([])
    loop = BotLoop(session, FakePipeline(), engine, settings=dict(SETTINGS), rng=random.Random(7))

    async def go():
        report = await loop.run_cycle([make_token(MINT_A, "AAA")])
        assert len(loop._settle_tasks) == 1
        await loop.stop()
        return report

    report = asyncio.run(go())
    assert report.executed == [MINT_A]
    assert engine.calls == []
    assert session.demo_balance == pytest.approx(99.9)

    (pos,) = session.demo_positions
    assert pos["status"] == "open"
    assert pos["entry_value"] == pytest.approx(15.0)
    assert loop.settle_demo_position(pos, 0.1) is None
    assert loop.settle_demo_position(pos, 0.6) == "take_profit"
    assert pos["status"] == "closed"
    assert session.demo_balance == pytest.approx(99.9 + 0.1 + 9.0 / 150)
    assert "Take Profit Hit!" in notes.titles()
    assert loop.settle_demo_position(pos, -0.9) is None


def test_demo_stop_loss(make_session):
    session = make_session(demo=True)
    loop = BotLoop(session, FakePipeline(), FakeEngine([]), settings=dict(SETTINGS))
    pos = {
        "token_symbol": "AAA", "entry_price": 0.001, "amount": 15000.0, "entry_value": 15.0,
        "trade_amount_sol": 0.1, "profit_take_percent": 50.0, "stop_loss_percent": 20.0, "status": "open",
    }
    assert loop.settle_demo_position(pos, -0.25) == "stop_loss"
    assert session.demo_balance == pytest.approx(100.0 + 0.1 - 3.75 / 150)


# ----------------------------------------------------------------------
# caches
# ----------------------------------------------------------------------
def test_trim_processed_keeps_most_recent(make_session):
    loop = BotLoop(make_session(demo=True), FakePipeline(), FakeEngine([]), settings=dict(SETTINGS))
    for i in range(150):
        loop.processed[f"mint{i}"] = None
    assert loop.trim_processed() == 100
    assert list(loop.processed) == [f"mint{i}" for i in range(100, 150)]
    assert loop.trim_processed() == 0
