# solana_sniper_bundle/sniper/token_state.py
"""
Token state registry: the single source of truth for "has this mint already
been acted upon".

States
------
NEW -> PENDING -> TRADEABLE -> TRADED
          \            \
           `-----------`--> REJECTED

TRADED and REJECTED are terminal: once set they are never downgraded, and a
second terminal write is a no-op (first terminal write wins). Addresses are
keyed case-insensitively; the original casing is kept for display.

Every read-modify-write for an address runs under that address's
``asyncio.Lock``. The in-memory map is updated first and then written
through to SQLite (when a DB path is configured), both before the lock is
released, so rows for one address land in order. A lock is kept only while
some caller holds or waits on it.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from solana_sniper_bundle.sniper import database
from solana_sniper_bundle.sniper.models import TokenState
from solana_sniper_bundle.sniper.utils_exec import section

logger = logging.getLogger("TradingBot")

PENDING_TTL_S = 300
MAX_RETRIES = 5
MAX_RETRIES_REASON = "max_retries_exceeded"


def _key(address: str) -> str:
    return (address or "").strip().lower()


def _token_fields(tok: Any) -> Dict[str, Any]:
    """Accept dicts, DiscoveredPool or TradableToken."""
    if isinstance(tok, dict):
        get = tok.get
    else:
        def get(name, default=None):
            return getattr(tok, name, default)
    return {
        "address": get("address") if get("token_mint") is None else get("token_mint"),
        "symbol": get("symbol") or get("token_symbol"),
        "name": get("name") or get("token_name"),
        "liquidity": get("liquidity"),
        "source": get("source"),
    }


class TokenStateRegistry:
    def __init__(
        self,
        db_path: Optional[str] = None,
        pending_ttl_s: float = PENDING_TTL_S,
        max_retries: int = MAX_RETRIES,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = db_path
        self.pending_ttl_s = float(pending_ttl_s)
        self.max_retries = int(max_retries)
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self.loaded = False

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]], db_path: Optional[str] = None) -> "TokenStateRegistry":
        rcfg = section(cfg, "registry")
        return cls(
            db_path=db_path,
            pending_ttl_s=float(rcfg.get("pending_ttl_s", PENDING_TTL_S)),
            max_retries=int(rcfg.get("max_retries", MAX_RETRIES)),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @contextlib.asynccontextmanager
    async def _lock(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users[key] - 1
            if users:
                self._lock_users[key] = users
            else:
                del self._lock_users[key]
                del self._locks[key]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    async def _persist(self, entry: Dict[str, Any]) -> None:
        if not self.db_path:
            return
        try:
            await database.upsert_token_state(self.db_path, entry)
        except Exception as e:
            logger.error("Persisting token state for %s failed: %s", entry.get("address"), e, exc_info=True)

    async def _delete_row(self, key: str) -> None:
        if not self.db_path:
            return
        try:
            await database.delete_token_states(self.db_path, [key])
        except Exception as e:
            logger.error("Deleting token state for %s failed: %s", key, e, exc_info=True)

    def _pending_expired(self, entry: Dict[str, Any]) -> bool:
        since = entry.get("pending_since")
        if since is None:
            return True
        return (self._clock() - float(since)) >= self.pending_ttl_s

    def _new_entry(self, address: str, state: TokenState, **fields: Any) -> Dict[str, Any]:
        now = self._clock()
        entry = {
            "address_key": _key(address),
            "address": address.strip(),
            "symbol": None,
            "name": None,
            "state": state.value,
            "reason": None,
            "retry_count": 0,
            "tx_hash": None,
            "position_id": None,
            "source": None,
            "liquidity": None,
            "pending_since": None,
            "created_at": now,
            "updated_at": now,
        }
        entry.update({k: v for k, v in fields.items() if v is not None})
        return entry

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    async def load(self) -> int:
        """Warm the in-memory map from SQLite. Returns the number of rows."""
        if not self.db_path:
            self.loaded = True
            return 0
        try:
            rows = await database.load_token_states(self.db_path)
        except Exception as e:
            logger.error("Loading token states failed: %s", e, exc_info=True)
            return 0
        for row in rows:
            self._entries[row["address_key"]] = row
        self.loaded = True
        logger.info("Token registry loaded %d states", len(rows))
        return len(rows)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_token_state(self, address: str) -> Optional[TokenState]:
        entry = self._entries.get(_key(address))
        return TokenState(entry["state"]) if entry else None

    def get_entry(self, address: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(_key(address))
        return dict(entry) if entry else None

    def can_trade_token(self, address: str) -> bool:
        entry = self._entries.get(_key(address))
        if entry is None:
            return True
        state = TokenState(entry["state"])
        if state.is_terminal:
            return False
        if state is TokenState.PENDING:
            return self._pending_expired(entry)
        return True

    def filter_evaluable_tokens(self, tokens: Iterable[Any]) -> List[Any]:
        return [t for t in tokens if self.can_trade_token(_token_fields(t)["address"] or "")]

    def get_pending_tokens_for_retry(self) -> List[Dict[str, Any]]:
        """PENDING entries whose TTL has passed and that still have retries left."""
        out = []
        for entry in self._entries.values():
            if entry["state"] != TokenState.PENDING.value:
                continue
            if int(entry.get("retry_count") or 0) >= self.max_retries:
                continue
            if self._pending_expired(entry):
                out.append(dict(entry))
        return out

    def get_state_counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in TokenState}
        for entry in self._entries.values():
            counts[entry["state"]] = counts.get(entry["state"], 0) + 1
        return counts

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def register_tokens_batch(self, tokens: Iterable[Any]) -> int:
        """Insert NEW entries for unseen addresses. Returns how many were added."""
        added = 0
        for tok in tokens:
            f = _token_fields(tok)
            address = (f.pop("address") or "").strip()
            if not address:
                continue
            key = _key(address)
            async with self._lock(key):
                if key in self._entries:
                    continue
                entry = self._new_entry(address, TokenState.NEW, **f)
                self._entries[key] = entry
                await self._persist(entry)
            added += 1
        if added:
            logger.debug("Registered %d new tokens", added)
        return added

    async def mark_tradeable(self, address: str) -> bool:
        key = _key(address)
        async with self._lock(key):
            entry = self._entries.get(key)
            if entry is None:
                entry = self._new_entry(address, TokenState.TRADEABLE)
            elif TokenState(entry["state"]).is_terminal:
                return False
            else:
                entry = dict(entry, state=TokenState.TRADEABLE.value, reason=None, pending_since=None)
            self._entries[key] = entry
            await self._persist(entry)
        return True

    async def mark_pending(self, address: str, reason: str, symbol: Optional[str] = None, name: Optional[str] = None) -> bool:
        key = _key(address)
        rejected = False
        async with self._lock(key):
            entry = self._entries.get(key)
            if entry is None:
                entry = self._new_entry(address, TokenState.PENDING, symbol=symbol, name=name)
                entry.update(reason=reason, pending_since=self._clock())
            elif TokenState(entry["state"]).is_terminal:
                return False
            else:
                was_pending = entry["state"] == TokenState.PENDING.value
                retries = int(entry.get("retry_count") or 0) + (1 if was_pending else 0)
                entry = dict(entry, state=TokenState.PENDING.value, reason=reason, retry_count=retries)
                if not was_pending or entry.get("pending_since") is None:
                    entry["pending_since"] = self._clock()
                if retries > self.max_retries:
                    entry.update(state=TokenState.REJECTED.value, reason=MAX_RETRIES_REASON, pending_since=None)
                    rejected = True
            self._entries[key] = entry
            await self._persist(entry)
        if rejected:
            logger.info("Token %s -> REJECTED (%s)", address, MAX_RETRIES_REASON)
            return False
        logger.debug("Token %s -> PENDING (%s)", address, reason)
        return True

    async def retry_pending_token(self, address: str) -> bool:
        """PENDING -> NEW for re-evaluation, while retries remain."""
        key = _key(address)
        async with self._lock(key):
            entry = self._entries.get(key)
            if entry is None or entry["state"] != TokenState.PENDING.value:
                return False
            retries = int(entry.get("retry_count") or 0)
            if retries >= self.max_retries:
                return False
            entry = dict(entry, state=TokenState.NEW.value, retry_count=retries + 1, pending_since=None)
            self._entries[key] = entry
            await self._persist(entry)
        return True

    async def mark_traded(self, address: str, tx_hash: Optional[str] = None, position_id: Optional[str] = None) -> bool:
        key = _key(address)
        async with self._lock(key):
            entry = self._entries.get(key)
            if entry is None:
                entry = self._new_entry(address, TokenState.TRADED, tx_hash=tx_hash, position_id=position_id)
            elif TokenState(entry["state"]).is_terminal:
                return False
            else:
                entry = dict(
                    entry, state=TokenState.TRADED.value, reason=None, pending_since=None,
                    tx_hash=tx_hash or entry.get("tx_hash"), position_id=position_id or entry.get("position_id"),
                )
            self._entries[key] = entry
            await self._persist(entry)
        logger.info("Token %s -> TRADED (tx %s)", address, tx_hash or "-")
        return True

    async def mark_rejected(self, address: str, reason: str) -> bool:
        key = _key(address)
        async with self._lock(key):
            entry = self._entries.get(key)
            if entry is None:
                entry = self._new_entry(address, TokenState.REJECTED, reason=reason)
            elif TokenState(entry["state"]).is_terminal:
                return False
            else:
                entry = dict(entry, state=TokenState.REJECTED.value, reason=reason, pending_since=None)
            self._entries[key] = entry
            await self._persist(entry)
        logger.info("Token %s -> REJECTED (%s)", address, reason)
        return True

    async def cleanup_expired_pending(self) -> int:
        """Drop PENDING entries older than the TTL; they become re-discoverable."""
        removed: List[str] = []
        for key in list(self._entries.keys()):
            async with self._lock(key):
                entry = self._entries.get(key)
                if entry is None or entry["state"] != TokenState.PENDING.value:
                    continue
                if not self._pending_expired(entry):
                    continue
                del self._entries[key]
                await self._delete_row(key)
                removed.append(key)
        if removed:
            logger.info("Cleaned up %d expired pending tokens", len(removed))
        return len(removed)

    async def clear_tokens_by_state(self, state: TokenState) -> int:
        state = TokenState(state)
        removed = 0
        for key in list(self._entries.keys()):
            async with self._lock(key):
                entry = self._entries.get(key)
                if entry is not None and entry["state"] == state.value:
                    del self._entries[key]
                    await self._delete_row(key)
                    removed += 1
        # rows never mirrored in memory
        if self.db_path and not self.loaded:
            try:
                await database.delete_token_states_by_state(self.db_path, state.value)
            except Exception as e:
                logger.error("Clearing %s tokens failed: %s", state.value, e, exc_info=True)
        return removed
