# solana_sniper_bundle/sniper/sell_lock.py
"""
Per-mint sell lock shared by every sell path (manual sell, auto exit, retry
workers). A second sell on a locked mint fails fast; locks older than the
stale timeout may be taken over.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("TradingBot")

LOCK_TIMEOUT_S = 60.0

SELL_SOURCES = ("auto_exit", "manual_sell", "liquidity_worker", "partial_retry", "liquidity_watcher")


class SellLockManager:
    def __init__(self, timeout_s: float = LOCK_TIMEOUT_S, clock: Callable[[], float] = time.monotonic):
        self.timeout_s = float(timeout_s)
        self._clock = clock
        self._locks: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def _key(mint: str) -> str:
        return (mint or "").strip().lower()

    def acquire(self, mint: str, source: str = "manual_sell") -> bool:
        key = self._key(mint)
        now = self._clock()
        existing = self._locks.get(key)
        if existing is not None:
            elapsed = now - existing["started_at"]
            if elapsed < self.timeout_s:
                logger.info("Sell lock BLOCKED: %s... held by %s (%ds ago)", mint[:8], existing["source"], int(elapsed))
                return False
            logger.info("Stale sell lock from %s expired, %s taking over", existing["source"], source)
        self._locks[key] = {"started_at": now, "source": source}
        logger.debug("Sell lock ACQUIRED: %s... by %s", mint[:8], source)
        return True

    def release(self, mint: str) -> None:
        if self._locks.pop(self._key(mint), None) is not None:
            logger.debug("Sell lock RELEASED: %s...", mint[:8])

    def is_locked(self, mint: str) -> bool:
        existing = self._locks.get(self._key(mint))
        if existing is None:
            return False
        return (self._clock() - existing["started_at"]) < self.timeout_s

    def status(self, mint: str) -> Dict[str, Any]:
        existing = self._locks.get(self._key(mint))
        if existing is None:
            return {"locked": False}
        elapsed = self._clock() - existing["started_at"]
        return {
            "locked": elapsed < self.timeout_s,
            "source": existing["source"],
            "elapsed_s": elapsed,
        }

    def active_count(self) -> int:
        now = self._clock()
        for key in [k for k, v in self._locks.items() if now - v["started_at"] >= self.timeout_s]:
            del self._locks[key]
        return len(self._locks)

    def clear(self) -> None:
        self._locks.clear()
        logger.debug("All sell locks cleared")


def holder_of(manager: Optional[SellLockManager], mint: str) -> Optional[str]:
    if manager is None:
        return None
    st = manager.status(mint)
    return st.get("source") if st.get("locked") else None
