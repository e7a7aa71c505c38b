# solana_sniper_bundle/sniper/lp_verifier.py
"""
On-chain LP integrity checks.

Decoding is pinned to versioned SPL layouts. An account whose length does not
match the layout expected for its owning program is reported as a
``LayoutMismatchError``; it is never parsed on a best-effort basis.

Hard blocks, checked in order (first one wins):
  1. LP mint missing or unparseable
  2. LP mint authority present
  3. LP freeze authority present
  4. creator holds more than ``max_creator_pct`` of LP supply
  5. burned + locked LP below ``min_secured_pct``
"""
from __future__ import annotations

import asyncio
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from solders.pubkey import Pubkey

from solana_sniper_bundle.sniper.models import LpHolder, LpVerificationResult
from solana_sniper_bundle.sniper.utils_exec import section

logger = logging.getLogger("TradingBot")

# ----------------------------------------------------------------------
# Layout constants
# ----------------------------------------------------------------------
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"


@dataclass(frozen=True)
class MintLayoutV1:
    size: int = 82
    mint_authority_option: int = 0
    mint_authority: Tuple[int, int] = (4, 36)
    supply: int = 36
    decimals: int = 44
    is_initialized: int = 45
    freeze_authority_option: int = 46
    freeze_authority: Tuple[int, int] = (50, 82)


@dataclass(frozen=True)
class TokenAccountLayoutV1:
    size: int = 165
    mint: Tuple[int, int] = (0, 32)
    owner: Tuple[int, int] = (32, 64)
    amount: int = 64
    state: int = 108


MINT_LAYOUT = MintLayoutV1()
TOKEN_ACCOUNT_LAYOUT = TokenAccountLayoutV1()

# Token-2022 pads base state to the account size then appends extensions.
TOKEN_2022_EXTENDED_MIN = TOKEN_ACCOUNT_LAYOUT.size + 1

BURN_ADDRESSES = frozenset({
    "11111111111111111111111111111111",
    "1nc1nerator11111111111111111111111111111111",
})
LOCK_PROGRAMS = frozenset({TOKEN_PROGRAM_ID, ASSOCIATED_TOKEN_PROGRAM_ID})

MAX_CREATOR_LP_PCT = 5.0
MIN_SECURED_LP_PCT = 90.0
TOP_HOLDERS = 20
RPC_TIMEOUT_S = 8.0


class LayoutMismatchError(ValueError):
    def __init__(self, kind: str, owner: str, length: int, expected: str):
        super().__init__(f"{kind} layout mismatch: owner={owner} length={length} expected {expected}")
        self.kind = kind
        self.owner = owner
        self.length = length

# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------
def _check_length(kind: str, data: bytes, owner: str, base: int) -> None:
    n = len(data)
    if owner == TOKEN_PROGRAM_ID:
        if n != base:
            raise LayoutMismatchError(kind, owner, n, f"{base}")
        return
    if owner == TOKEN_2022_PROGRAM_ID:
        if n == base or n >= TOKEN_2022_EXTENDED_MIN:
            return
        raise LayoutMismatchError(kind, owner, n, f"{base} or >= {TOKEN_2022_EXTENDED_MIN}")
    raise LayoutMismatchError(kind, owner, n, "an SPL token program owner")


def _coption_pubkey(data: bytes, tag_off: int, span: Tuple[int, int]) -> Optional[str]:
    (tag,) = struct.unpack_from("<I", data, tag_off)
    if tag == 0:
        return None
    if tag != 1:
        raise ValueError(f"invalid COption tag {tag} at offset {tag_off}")
    return str(Pubkey.from_bytes(bytes(data[span[0]:span[1]])))


def parse_mint(data: bytes, owner: str) -> Dict[str, Any]:
    _check_length("mint", data, owner, MINT_LAYOUT.size)
    L = MINT_LAYOUT
    (supply,) = struct.unpack_from("<Q", data, L.supply)
    return {
        "mint_authority": _coption_pubkey(data, L.mint_authority_option, L.mint_authority),
        "supply": int(supply),
        "decimals": int(data[L.decimals]),
        "is_initialized": data[L.is_initialized] == 1,
        "freeze_authority": _coption_pubkey(data, L.freeze_authority_option, L.freeze_authority),
    }


def parse_token_account(data: bytes, owner: str) -> Dict[str, Any]:
    _check_length("token account", data, owner, TOKEN_ACCOUNT_LAYOUT.size)
    L = TOKEN_ACCOUNT_LAYOUT
    (amount,) = struct.unpack_from("<Q", data, L.amount)
    return {
        "mint": str(Pubkey.from_bytes(bytes(data[L.mint[0]:L.mint[1]]))),
        "owner": str(Pubkey.from_bytes(bytes(data[L.owner[0]:L.owner[1]]))),
        "amount": int(amount),
        "state": int(data[L.state]),
    }


def is_burn_address(address: str) -> bool:
    return address in BURN_ADDRESSES or address.startswith("1111111111") or "burn" in address.lower()


def is_lock_address(address: str) -> bool:
    return address in LOCK_PROGRAMS or "lock" in address or "Lock" in address

# ----------------------------------------------------------------------
# RPC access
# ----------------------------------------------------------------------
async def _rpc(coro, timeout_s: float):
    return await asyncio.wait_for(coro, timeout=timeout_s)


async def _fetch_mint(client, lp_mint: str, timeout_s: float) -> Optional[Dict[str, Any]]:
    resp = await _rpc(client.get_account_info(Pubkey.from_string(lp_mint), encoding="base64"), timeout_s)
    acct = getattr(resp, "value", None)
    if acct is None:
        return None
    return parse_mint(bytes(acct.data), str(acct.owner))


async def _fetch_holders(
    client, lp_mint: str, limit: int, timeout_s: float, warnings: List[str]
) -> List[Dict[str, Any]]:
    try:
        largest = await _rpc(client.get_token_largest_accounts(Pubkey.from_string(lp_mint)), timeout_s)
        rows = list(getattr(largest, "value", None) or [])[:limit]
        if not rows:
            return []
        infos = await _rpc(
            client.get_multiple_accounts([r.address for r in rows], encoding="base64"), timeout_s
        )
        accounts = list(getattr(infos, "value", None) or [])
    except Exception as e:
        logger.warning("LP holder fetch failed for %s: %s", lp_mint[:8], e)
        warnings.append(f"LP holder lookup failed: {e}")
        return []

    holders: List[Dict[str, Any]] = []
    for row, acct in zip(rows, accounts):
        if acct is None:
            continue
        try:
            parsed = parse_token_account(bytes(acct.data), str(acct.owner))
        except (LayoutMismatchError, ValueError) as e:
            warnings.append(f"Skipped LP holder {row.address}: {e}")
            continue
        holders.append({
            "address": str(row.address),
            "owner": parsed["owner"],
            "amount": int(getattr(row.amount, "amount", parsed["amount"]) or parsed["amount"]),
        })
    return holders

# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------
async def verify_lp_integrity(
    client,
    lp_mint: str,
    creator: Optional[str] = None,
    cfg: Optional[Dict[str, Any]] = None,
    timeout_s: float = RPC_TIMEOUT_S,
) -> LpVerificationResult:
    """``client`` is a ``solana.rpc.async_api.AsyncClient`` (or anything shaped like one)."""
    lcfg = section(cfg, "lp_verification")
    max_creator = float(lcfg.get("max_creator_lp_pct", MAX_CREATOR_LP_PCT))
    min_secured = float(lcfg.get("min_secured_lp_pct", MIN_SECURED_LP_PCT))
    top_n = int(lcfg.get("top_holders", TOP_HOLDERS))

    warnings: List[str] = []

    try:
        mint = await _fetch_mint(client, lp_mint, timeout_s)
    except LayoutMismatchError as e:
        logger.warning("LP mint %s rejected: %s", lp_mint[:8], e)
        return LpVerificationResult(is_safe=False, hard_block_reason=f"LP mint not found ({e})", warnings=[str(e)])
    except Exception as e:
        logger.warning("LP mint fetch failed for %s: %s", lp_mint[:8], e)
        mint = None
    if mint is None:
        return LpVerificationResult(
            is_safe=False,
            hard_block_reason="LP mint not found",
            warnings=["Failed to fetch LP mint info - invalid or non-existent mint"],
        )

    hard_block: Optional[str] = None
    mint_auth_exists = mint["mint_authority"] is not None
    freeze_auth_exists = mint["freeze_authority"] is not None
    if mint_auth_exists:
        hard_block = "LP mintAuthority != null - new LP tokens can be minted"
    elif freeze_auth_exists:
        hard_block = "LP freezeAuthority != null - LP tokens can be frozen"

    holders = await _fetch_holders(client, lp_mint, top_n, timeout_s, warnings)
    if not holders:
        warnings.append("No LP token holders found")

    supply = mint["supply"]
    scale = 10 ** mint["decimals"]

    def pct(raw: int) -> float:
        return (raw / supply) * 100.0 if supply > 0 else 0.0

    burned = locked = creator_amt = 0
    top: List[LpHolder] = []
    for h in holders:
        b = is_burn_address(h["owner"])
        lk = is_lock_address(h["owner"])
        if b:
            burned += h["amount"]
        if lk:
            locked += h["amount"]
        if creator and h["owner"] == creator:
            creator_amt += h["amount"]
        top.append(LpHolder(
            address=h["address"], owner=h["owner"], balance=h["amount"] / scale,
            percentage=pct(h["amount"]), is_burned=b, is_locked=lk,
        ))

    burned_pct, locked_pct, creator_pct = pct(burned), pct(locked), pct(creator_amt)
    secured = (burned_pct + locked_pct) >= min_secured

    if hard_block is None and creator_pct > max_creator:
        hard_block = f"Creator holds {creator_pct:.2f}% LP tokens (> {max_creator:g}% threshold)"
    if hard_block is None and not secured:
        hard_block = f"Only {burned_pct + locked_pct:.2f}% LP burned/locked (< {min_secured:g}%)"
    if hard_block:
        warnings.insert(0, f"HARD BLOCK: {hard_block}")

    if top and top[0].percentage > 50 and not top[0].is_burned:
        warnings.append(f"WARNING: Top holder owns {top[0].percentage:.2f}% of LP and is not a burn address")

    result = LpVerificationResult(
        is_safe=hard_block is None,
        lp_locked=secured,
        lp_burned_percent=burned_pct,
        lp_locked_percent=locked_pct,
        creator_lp_percent=creator_pct,
        total_supply=supply / scale,
        mint_authority=mint["mint_authority"],
        freeze_authority=mint["freeze_authority"],
        lp_mint_authority_exists=mint_auth_exists,
        lp_freeze_authority_exists=freeze_auth_exists,
        lp_supply_fully_secured=secured,
        hard_block_reason=hard_block,
        warnings=warnings,
        top_holders=top,
    )
    if hard_block:
        logger.info("LP %s blocked: %s", lp_mint[:8], hard_block)
    return result


async def is_lp_safe(client, lp_mint: str, creator: Optional[str] = None, cfg: Optional[Dict[str, Any]] = None) -> Tuple[bool, Optional[str]]:
    res = await verify_lp_integrity(client, lp_mint, creator, cfg)
    return res.is_safe, res.hard_block_reason
