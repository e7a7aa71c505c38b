# solana_sniper_bundle/sniper/database.py
from __future__ import annotations

import logging
import time
import traceback
import uuid
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

logger = logging.getLogger("TradingBot")


# =========================
# Connection helpers
# =========================

class _ConnCtx:
    def __init__(self, path: str):
        self._path = path
        self._db: Optional[aiosqlite.Connection] = None

    async def __aenter__(self) -> aiosqlite.Connection:
        self._db = await aiosqlite.connect(self._path)
        try:
            await self._db.execute("PRAGMA journal_mode=WAL;")
            await self._db.execute("PRAGMA busy_timeout=30000;")
            await self._db.execute("PRAGMA synchronous=NORMAL;")
            self._db.row_factory = aiosqlite.Row
            # Ensure schema exists on every connection (idempotent)
            await _ensure_core_schema(self._db)
        except Exception:
            await self._db.close()
            self._db = None
            raise
        return self._db

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if self._db is not None:
                await self._db.close()
        finally:
            self._db = None


def connect_db(path: str) -> _ConnCtx:
    return _ConnCtx(path)


async def _exec(db: aiosqlite.Connection, sql: str, params: tuple = ()) -> None:
    await db.execute(sql, params)


# =====================
# Core schema bootstrap
# =====================

async def _ensure_core_schema(db: aiosqlite.Connection) -> None:
    await _exec(db, """
        CREATE TABLE IF NOT EXISTS token_states (
            address_key TEXT PRIMARY KEY,
            address TEXT NOT NULL,
            symbol TEXT,
            name TEXT,
            state TEXT NOT NULL,
            reason TEXT,
            retry_count INTEGER NOT NULL DEFAULT 0,
            tx_hash TEXT,
            position_id TEXT,
            source TEXT,
            liquidity REAL,
            pending_since REAL,
            created_at REAL,
            updated_at REAL
        );
    """)
    await _exec(db, "CREATE INDEX IF NOT EXISTS idx_token_states_state ON token_states(state);")

    await _exec(db, """
        CREATE TABLE IF NOT EXISTS positions (
            id TEXT PRIMARY KEY,
            wallet_address TEXT,
            token_address TEXT NOT NULL,
            token_symbol TEXT,
            token_name TEXT,
            side TEXT NOT NULL,
            amount_in INTEGER,
            amount_out INTEGER,
            entry_price REAL,
            profit_take_percent REAL,
            stop_loss_percent REAL,
            status TEXT NOT NULL,
            tx_signature TEXT,
            error TEXT,
            created_at REAL,
            updated_at REAL
        );
    """)
    await _exec(db, "CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status);")

    await _exec(db, """
        CREATE TABLE IF NOT EXISTS credit_packs (
            id TEXT PRIMARY KEY,
            name TEXT,
            credits_amount INTEGER NOT NULL,
            bonus_credits INTEGER NOT NULL DEFAULT 0,
            sol_price REAL NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1
        );
    """)

    await _exec(db, """
        CREATE TABLE IF NOT EXISTS credit_transactions (
            signature TEXT PRIMARY KEY,
            user_id TEXT,
            pack_id TEXT,
            amount_sol REAL,
            credits_added INTEGER,
            status TEXT NOT NULL,
            failure_reason TEXT,
            memo TEXT,
            created_at REAL,
            updated_at REAL
        );
    """)

    await _exec(db, """
        CREATE TABLE IF NOT EXISTS user_credits (
            user_id TEXT PRIMARY KEY,
            credit_balance INTEGER NOT NULL DEFAULT 0,
            total_purchased INTEGER NOT NULL DEFAULT 0,
            updated_at REAL
        );
    """)

    await _exec(db, """
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            type TEXT,
            title TEXT,
            message TEXT,
            created_at REAL
        );
    """)
    await db.commit()


async def init_db(path: str) -> None:
    async with connect_db(path):
        pass
    logger.debug("Database ready at %s", path)


# =====================
# token_states
# =====================

async def load_token_states(path: str) -> List[Dict[str, Any]]:
    async with connect_db(path) as db:
        async with db.execute("SELECT * FROM token_states;") as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]


async def upsert_token_state(path: str, row: Dict[str, Any]) -> None:
    now = time.time()
    async with connect_db(path) as db:
        await db.execute("""
            INSERT INTO token_states (
                address_key, address, symbol, name, state, reason, retry_count,
                tx_hash, position_id, source, liquidity, pending_since, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(address_key) DO UPDATE SET
                symbol        = COALESCE(excluded.symbol, token_states.symbol),
                name          = COALESCE(excluded.name, token_states.name),
                state         = excluded.state,
                reason        = excluded.reason,
                retry_count   = excluded.retry_count,
                tx_hash       = COALESCE(excluded.tx_hash, token_states.tx_hash),
                position_id   = COALESCE(excluded.position_id, token_states.position_id),
                source        = COALESCE(excluded.source, token_states.source),
                liquidity     = COALESCE(excluded.liquidity, token_states.liquidity),
                pending_since = excluded.pending_since,
                updated_at    = excluded.updated_at;
        """, (
            row["address_key"],
            row["address"],
            row.get("symbol"),
            row.get("name"),
            row["state"],
            row.get("reason"),
            int(row.get("retry_count") or 0),
            row.get("tx_hash"),
            row.get("position_id"),
            row.get("source"),
            row.get("liquidity"),
            row.get("pending_since"),
            row.get("created_at") or now,
            now,
        ))
        await db.commit()


async def delete_token_states(path: str, address_keys: Iterable[str]) -> int:
    keys = [(k,) for k in address_keys]
    if not keys:
        return 0
    async with connect_db(path) as db:
        await db.executemany("DELETE FROM token_states WHERE address_key = ?;", keys)
        await db.commit()
    return len(keys)


async def delete_token_states_by_state(path: str, state: str) -> int:
    async with connect_db(path) as db:
        cur = await db.execute("DELETE FROM token_states WHERE state = ?;", (state,))
        await db.commit()
        return cur.rowcount or 0


# =====================
# positions
# =====================

async def insert_position(
    path: str,
    *,
    token_address: str,
    side: str,
    amount_in: int,
    wallet_address: Optional[str] = None,
    token_symbol: Optional[str] = None,
    token_name: Optional[str] = None,
    amount_out: Optional[int] = None,
    entry_price: Optional[float] = None,
    profit_take_percent: Optional[float] = None,
    stop_loss_percent: Optional[float] = None,
    status: str = "pending",
) -> str:
    position_id = str(uuid.uuid4())
    now = time.time()
    async with connect_db(path) as db:
        await db.execute("""
            INSERT INTO positions (
                id, wallet_address, token_address, token_symbol, token_name, side,
                amount_in, amount_out, entry_price, profit_take_percent, stop_loss_percent,
                status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
        """, (
            position_id, wallet_address, token_address, token_symbol, token_name, side,
            int(amount_in), (int(amount_out) if amount_out is not None else None),
            entry_price, profit_take_percent, stop_loss_percent, status, now, now,
        ))
        await db.commit()
    return position_id


async def update_position_status(
    path: str,
    position_id: str,
    status: str,
    tx_signature: Optional[str] = None,
    error: Optional[str] = None,
) -> bool:
    async with connect_db(path) as db:
        cur = await db.execute("""
            UPDATE positions
               SET status       = ?,
                   tx_signature = COALESCE(?, tx_signature),
                   error        = ?,
                   updated_at   = ?
             WHERE id = ?;
        """, (status, tx_signature, error, time.time(), position_id))
        await db.commit()
        return (cur.rowcount or 0) > 0


async def get_position(path: str, position_id: str) -> Optional[Dict[str, Any]]:
    async with connect_db(path) as db:
        async with db.execute("SELECT * FROM positions WHERE id = ?;", (position_id,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None


async def list_open_positions(path: str, wallet_address: Optional[str] = None) -> List[Dict[str, Any]]:
    try:
        async with connect_db(path) as db:
            if wallet_address:
                sql, params = "SELECT * FROM positions WHERE status = 'open' AND wallet_address = ?;", (wallet_address,)
            else:
                sql, params = "SELECT * FROM positions WHERE status = 'open';", ()
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()
                return [dict(r) for r in rows]
    except Exception as e:
        logger.error("list_open_positions failed: %s\n%s", e, traceback.format_exc())
        return []


# =====================
# Payment ledger
# =====================

async def upsert_credit_pack(path: str, pack: Dict[str, Any]) -> None:
    async with connect_db(path) as db:
        await db.execute("""
            INSERT INTO credit_packs (id, name, credits_amount, bonus_credits, sol_price, is_active)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name           = excluded.name,
                credits_amount = excluded.credits_amount,
                bonus_credits  = excluded.bonus_credits,
                sol_price      = excluded.sol_price,
                is_active      = excluded.is_active;
        """, (
            pack["id"],
            pack.get("name"),
            int(pack.get("credits_amount") or 0),
            int(pack.get("bonus_credits") or 0),
            float(pack.get("sol_price") or 0.0),
            1 if pack.get("is_active", True) else 0,
        ))
        await db.commit()


async def get_credit_pack(db: aiosqlite.Connection, pack_id: str) -> Optional[Dict[str, Any]]:
    async with db.execute("SELECT * FROM credit_packs WHERE id = ? AND is_active = 1;", (pack_id,)) as cur:
        row = await cur.fetchone()
        return dict(row) if row else None


async def get_credit_transaction(db: aiosqlite.Connection, signature: str) -> Optional[Dict[str, Any]]:
    async with db.execute("SELECT * FROM credit_transactions WHERE signature = ?;", (signature,)) as cur:
        row = await cur.fetchone()
        return dict(row) if row else None


async def record_failed_payment(
    db: aiosqlite.Connection,
    signature: str,
    reason: str,
    user_id: Optional[str] = None,
    pack_id: Optional[str] = None,
    amount_sol: Optional[float] = None,
    memo: Optional[str] = None,
) -> None:
    now = time.time()
    await db.execute("""
        INSERT INTO credit_transactions (
            signature, user_id, pack_id, amount_sol, credits_added, status,
            failure_reason, memo, created_at, updated_at
        ) VALUES (?, ?, ?, ?, 0, 'failed', ?, ?, ?, ?)
        ON CONFLICT(signature) DO NOTHING;
    """, (signature, user_id, pack_id, amount_sol, reason, memo, now, now))
    await db.commit()


async def credit_payment(
    db: aiosqlite.Connection,
    *,
    signature: str,
    user_id: str,
    pack_id: str,
    amount_sol: float,
    credits: int,
    memo: Optional[str] = None,
    pack_name: Optional[str] = None,
) -> bool:
    """
    Credit a verified payment in one transaction: balance increment, confirmed
    ledger row, notification. Returns False when the signature was already
    confirmed (nothing written).
    """
    now = time.time()
    await db.execute("BEGIN IMMEDIATE;")
    try:
        async with db.execute(
            "SELECT status FROM credit_transactions WHERE signature = ?;", (signature,)
        ) as cur:
            row = await cur.fetchone()
        if row is not None and row["status"] == "confirmed":
            await db.rollback()
            return False

        await db.execute("""
            INSERT INTO user_credits (user_id, credit_balance, total_purchased, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                credit_balance  = user_credits.credit_balance + excluded.credit_balance,
                total_purchased = user_credits.total_purchased + excluded.total_purchased,
                updated_at      = excluded.updated_at;
        """, (user_id, int(credits), int(credits), now))

        await db.execute("""
            INSERT INTO credit_transactions (
                signature, user_id, pack_id, amount_sol, credits_added, status,
                failure_reason, memo, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 'confirmed', NULL, ?, ?, ?)
            ON CONFLICT(signature) DO UPDATE SET
                user_id        = excluded.user_id,
                pack_id        = excluded.pack_id,
                amount_sol     = excluded.amount_sol,
                credits_added  = excluded.credits_added,
                status         = 'confirmed',
                failure_reason = NULL,
                memo           = excluded.memo,
                updated_at     = excluded.updated_at;
        """, (signature, user_id, pack_id, float(amount_sol), int(credits), memo, now, now))

        await db.execute("""
            INSERT INTO notifications (user_id, type, title, message, created_at)
            VALUES (?, 'credit_purchase', ?, ?, ?);
        """, (
            user_id,
            "Credits added",
            f"{int(credits)} credits added from {pack_name or 'credit pack'} ({float(amount_sol):.4f} SOL)",
            now,
        ))
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return True


async def get_user_credits(path: str, user_id: str) -> int:
    async with connect_db(path) as db:
        async with db.execute("SELECT credit_balance FROM user_credits WHERE user_id = ?;", (user_id,)) as cur:
            row = await cur.fetchone()
            return int(row["credit_balance"]) if row else 0


async def list_credit_transactions(path: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    async with connect_db(path) as db:
        if status:
            sql, params = "SELECT * FROM credit_transactions WHERE status = ?;", (status,)
        else:
            sql, params = "SELECT * FROM credit_transactions;", ()
        async with db.execute(sql, params) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]


async def list_notifications(path: str, user_id: str) -> List[Dict[str, Any]]:
    async with connect_db(path) as db:
        async with db.execute(
            "SELECT * FROM notifications WHERE user_id = ? ORDER BY id;", (user_id,)
        ) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]
