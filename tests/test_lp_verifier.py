import asyncio
import struct
from types import SimpleNamespace

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from solana_sniper_bundle.sniper import lp_verifier
from solana_sniper_bundle.sniper.lp_verifier import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    LayoutMismatchError,
    parse_mint,
    parse_token_account,
    verify_lp_integrity,
)

INCINERATOR = "1nc1nerator11111111111111111111111111111111"


def _pk() -> Pubkey:
    return Keypair().pubkey()


def mint_bytes(supply, decimals=9, mint_authority=None, freeze_authority=None) -> bytes:
    buf = bytearray(82)
    if mint_authority is not None:
        struct.pack_into("<I", buf, 0, 1)
        buf[4:36] = bytes(mint_authority)
    struct.pack_into("<Q", buf, 36, supply)
    buf[44] = decimals
    buf[45] = 1
    if freeze_authority is not None:
        struct.pack_into("<I", buf, 46, 1)
        buf[50:82] = bytes(freeze_authority)
    return bytes(buf)


def token_account_bytes(mint: Pubkey, owner: Pubkey, amount: int) -> bytes:
    buf = bytearray(165)
    buf[0:32] = bytes(mint)
    buf[32:64] = bytes(owner)
    struct.pack_into("<Q", buf, 64, amount)
    buf[108] = 1
    return bytes(buf)


class FakeRpc:
    """Minimal AsyncClient stand-in: one mint and its largest holders."""

    def __init__(self, mint_data, holders, owner=TOKEN_PROGRAM_ID):
        self.mint_data = mint_data
        self.owner = owner
        self.holders = holders  # list of (owner Pubkey, amount)
        self.lp_mint = _pk()
        self.accounts = [_pk() for _ in holders]

    async def get_account_info(self, pubkey, encoding="base64"):
        if self.mint_data is None:
            return SimpleNamespace(value=None)
        return SimpleNamespace(value=SimpleNamespace(data=self.mint_data, owner=self.owner))

    async def get_token_largest_accounts(self, pubkey):
        rows = [
            SimpleNamespace(address=addr, amount=SimpleNamespace(amount=str(amount)))
            for addr, (_, amount) in zip(self.accounts, self.holders)
        ]
        return SimpleNamespace(value=rows)

    async def get_multiple_accounts(self, pubkeys, encoding="base64"):
        return SimpleNamespace(value=[
            SimpleNamespace(data=token_account_bytes(self.lp_mint, owner, amount), owner=TOKEN_PROGRAM_ID)
            for owner, amount in self.holders
        ])


def _verify(rpc, creator=None):
    return asyncio.run(verify_lp_integrity(rpc, str(rpc.lp_mint), creator=creator))


def test_mint_authority_blocks_even_when_fully_burned():
    burn = Pubkey.from_string(INCINERATOR)
    rpc = FakeRpc(mint_bytes(1_000_000, mint_authority=_pk()), [(burn, 1_000_000)])
    res = _verify(rpc, creator=str(_pk()))
    assert res.is_safe is False
    assert res.lp_mint_authority_exists
    assert res.lp_burned_percent == 100.0
    assert res.creator_lp_percent == 0.0
    assert "mintAuthority" in res.hard_block_reason
    assert res.warnings[0].startswith("HARD BLOCK")


def test_freeze_authority_blocks():
    burn = Pubkey.from_string(INCINERATOR)
    rpc = FakeRpc(mint_bytes(1_000, freeze_authority=_pk()), [(burn, 1_000)])
    res = _verify(rpc)
    assert not res.is_safe
    assert "freezeAuthority" in res.hard_block_reason


def test_fully_burned_lp_is_safe():
    burn = Pubkey.from_string(INCINERATOR)
    rpc = FakeRpc(mint_bytes(1_000_000), [(burn, 950_000), (_pk(), 50_000)])
    res = _verify(rpc)
    assert res.is_safe
    assert res.hard_block_reason is None
    assert res.lp_burned_percent == pytest.approx(95.0)
    assert res.lp_supply_fully_secured
    assert res.top_holders[0].is_burned


def test_creator_share_and_unsecured_supply_block():
    creator = _pk()
    burn = Pubkey.from_string(INCINERATOR)
    creator_heavy = FakeRpc(mint_bytes(1_000), [(burn, 900), (creator, 100)])
    res = _verify(creator_heavy, creator=str(creator))
    assert not res.is_safe
    assert "Creator holds 10.00%" in res.hard_block_reason

    unsecured = FakeRpc(mint_bytes(1_000), [(burn, 500), (_pk(), 500)])
    res = _verify(unsecured)
    assert not res.is_safe
    assert "burned/locked" in res.hard_block_reason


def test_missing_mint_is_hard_block():
    rpc = FakeRpc(None, [])
    res = _verify(rpc)
    assert not res.is_safe
    assert res.hard_block_reason == "LP mint not found"


def test_layout_mismatch_is_rejected_not_guessed():
    with pytest.raises(LayoutMismatchError):
        parse_mint(b"\x00" * 90, TOKEN_PROGRAM_ID)
    with pytest.raises(LayoutMismatchError):
        parse_mint(b"\x00" * 82, "SomeOtherProgram11111111111111111111111111")
    with pytest.raises(LayoutMismatchError):
        parse_token_account(b"\x00" * 100, TOKEN_2022_PROGRAM_ID)

    # Token-2022 accounts carry extensions past the base layout
    ext = mint_bytes(10) + b"\x00" * 84 + b"\x01" + b"\x00" * 20
    parse_mint(ext[:82], TOKEN_2022_PROGRAM_ID)
    with pytest.raises(LayoutMismatchError):
        parse_mint(ext[:120], TOKEN_2022_PROGRAM_ID)

    rpc = FakeRpc(b"\x00" * 90, [])
    res = _verify(rpc)
    assert not res.is_safe
    assert res.hard_block_reason.startswith("LP mint not found")


def test_parse_roundtrip_values():
    auth = _pk()
    parsed = parse_mint(mint_bytes(42, decimals=6, freeze_authority=auth), TOKEN_PROGRAM_ID)
    assert parsed["supply"] == 42
    assert parsed["decimals"] == 6
    assert parsed["mint_authority"] is None
    assert parsed["freeze_authority"] == str(auth)
    assert lp_verifier.is_burn_address(INCINERATOR)


def test_is_lp_safe_returns_verdict_and_reason():
    burn = Pubkey.from_string(INCINERATOR)
    ok = FakeRpc(mint_bytes(1_000), [(burn, 1_000)])
    assert asyncio.run(lp_verifier.is_lp_safe(ok, str(ok.lp_mint))) == (True, None)

    gone = FakeRpc(None, [])
    assert asyncio.run(lp_verifier.is_lp_safe(gone, str(gone.lp_mint))) == (False, "LP mint not found")
