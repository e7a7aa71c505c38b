import asyncio

from solana_sniper_bundle.sniper.models import TokenState
from solana_sniper_bundle.sniper.token_state import MAX_RETRIES_REASON, TokenStateRegistry

from conftest import MINT_A, MINT_B, MINT_C


class _Clock:
    def __init__(self):
        self.now = 1_000.0

    def __call__(self):
        return self.now


def test_terminal_states_never_downgrade(db_file):
    async def go():
        reg = TokenStateRegistry(db_file)
        await reg.register_tokens_batch([{"address": MINT_A, "symbol": "A"}, {"address": MINT_B}])
        assert reg.get_token_state(MINT_A) == TokenState.NEW

        assert await reg.mark_traded(MINT_A, "sig1", "pos1")
        assert await reg.mark_rejected(MINT_B, "honeypot")

        assert not await reg.mark_pending(MINT_A, "no_route")
        assert not await reg.mark_tradeable(MINT_B)
        assert not await reg.mark_rejected(MINT_A, "late")
        assert not await reg.mark_traded(MINT_B, "sig2")
        await reg.register_tokens_batch([{"address": MINT_A.lower()}, {"address": MINT_B}])

        assert reg.get_token_state(MINT_A) == TokenState.TRADED
        assert reg.get_token_state(MINT_B) == TokenState.REJECTED
        assert reg.get_entry(MINT_B)["reason"] == "honeypot"
        assert not reg.can_trade_token(MINT_A)
        assert not reg.can_trade_token(MINT_B.upper())
        assert reg.can_trade_token(MINT_C)

    asyncio.run(go())


def test_pending_retries_escalate_to_rejected(db_file):
    async def go():
        reg = TokenStateRegistry(db_file, max_retries=2)
        assert await reg.mark_pending(MINT_A, "no_route")
        assert await reg.mark_pending(MINT_A, "no_route")
        assert await reg.mark_pending(MINT_A, "no_route")
        assert reg.get_entry(MINT_A)["retry_count"] == 2
        assert not await reg.mark_pending(MINT_A, "no_route")
        entry = reg.get_entry(MINT_A)
        assert entry["state"] == TokenState.REJECTED.value
        assert entry["reason"] == MAX_RETRIES_REASON

    asyncio.run(go())


def test_pending_ttl_cleanup_makes_address_new_again(db_file):
    clock = _Clock()

    async def go():
        reg = TokenStateRegistry(db_file, pending_ttl_s=300, clock=clock)
        await reg.mark_pending(MINT_A, "probe_failed", symbol="A")
        assert not reg.can_trade_token(MINT_A)
        assert reg.get_pending_tokens_for_retry() == []

        clock.now += 301
        assert reg.can_trade_token(MINT_A)
        assert [e["address"] for e in reg.get_pending_tokens_for_retry()] == [MINT_A]

        assert await reg.cleanup_expired_pending() == 1
        assert reg.get_token_state(MINT_A) is None
        assert await reg.register_tokens_batch([{"address": MINT_A}]) == 1
        assert reg.get_token_state(MINT_A) == TokenState.NEW

        # persisted rows follow the in-memory map
        fresh = TokenStateRegistry(db_file, clock=clock)
        assert await fresh.load() == 1
        assert fresh.get_token_state(MINT_A) == TokenState.NEW

    asyncio.run(go())


def test_retry_pending_and_counts(db_file):
    async def go():
        reg = TokenStateRegistry(db_file)
        await reg.mark_pending(MINT_A, "no_route")
        await reg.mark_tradeable(MINT_B)
        await reg.mark_rejected(MINT_C, "not_sellable")
        assert await reg.retry_pending_token(MINT_A)
        assert reg.get_token_state(MINT_A) == TokenState.NEW
        assert not await reg.retry_pending_token(MINT_B)

        counts = reg.get_state_counts()
        assert counts["NEW"] == 1 and counts["TRADEABLE"] == 1 and counts["REJECTED"] == 1
        assert [t["address"] for t in reg.filter_evaluable_tokens([
            {"address": MINT_A}, {"address": MINT_B}, {"address": MINT_C},
        ])] == [MINT_A, MINT_B]

        assert await reg.clear_tokens_by_state(TokenState.REJECTED) == 1
        assert reg.can_trade_token(MINT_C)

    asyncio.run(go())


def test_concurrent_marks_leave_one_terminal_state(db_file):
    async def go():
        reg = TokenStateRegistry(db_file)
        results = await asyncio.gather(
            reg.mark_traded(MINT_A, "sig"),
            reg.mark_rejected(MINT_A, "late"),
            reg.mark_pending(MINT_A, "no_route"),
        )
        return reg, results

    reg, results = asyncio.run(go())
    assert results[0] is True
    assert results[1] is False and results[2] is False
    assert reg.get_token_state(MINT_A) == TokenState.TRADED


def test_address_locks_do_not_accumulate(db_file):
    async def go():
        reg = TokenStateRegistry(db_file)
        await reg.register_tokens_batch([{"address": MINT_A}, {"address": MINT_B}, {"address": MINT_C}])
        await asyncio.gather(
            reg.mark_traded(MINT_A, "sig"),
            reg.mark_rejected(MINT_A, "late"),
            reg.mark_pending(MINT_B, "no_route"),
            reg.mark_tradeable(MINT_C),
        )
        return reg

    reg = asyncio.run(go())
    assert reg.lock_count == 0
    assert reg.get_token_state(MINT_A) == TokenState.TRADED


def test_cleanup_racing_reregistration_keeps_new_row(db_file):
    clock = _Clock()

    async def go():
        reg = TokenStateRegistry(db_file, pending_ttl_s=300, clock=clock)
        await reg.mark_pending(MINT_A, "probe_failed")
        clock.now += 301
        removed, added = await asyncio.gather(
            reg.cleanup_expired_pending(),
            reg.register_tokens_batch([{"address": MINT_A}]),
        )
        fresh = TokenStateRegistry(db_file, clock=clock)
        await fresh.load()
        return reg, removed, added, fresh

    reg, removed, added, fresh = asyncio.run(go())
    assert removed == 1 and added == 1
    assert reg.get_token_state(MINT_A) == TokenState.NEW
    assert fresh.get_token_state(MINT_A) == TokenState.NEW
    assert reg.lock_count == 0
