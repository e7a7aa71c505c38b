# solana_sniper_bundle/sniper/safety.py
"""
Risk annotation for tradeable candidates.

A RugCheck report (when enabled) contributes authority flags and honeypot
detection on top of a base risk. An unreachable RugCheck is not fatal: the
token keeps its base risk and carries a "rugcheck unavailable" reason.
"""
from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from solana_sniper_bundle.sniper.models import TradableToken
from solana_sniper_bundle.sniper.utils_exec import backoff_sleep

logger = logging.getLogger("TradingBot")

BASE_RISK = 30
FREEZE_AUTHORITY_RISK = 20
MINT_AUTHORITY_RISK = 15
HONEYPOT_RISK = 100
RUGCHECK_UNAVAILABLE = "rugcheck unavailable"


class RugcheckClient:
    """
    Async RugCheck client with rate spacing, a concurrency limit and exponential
    backoff with jitter. Auth is a static JWT (RUGCHECK_JWT_TOKEN) or an API key
    (RUGCHECK_API_KEY); both are optional for the public report endpoint.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://api.rugcheck.xyz",
        max_concurrency: int = 1,
        min_interval: float = 1.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 20.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key or os.getenv("RUGCHECK_API_KEY")
        self.base_url = base_url.rstrip("/")
        self._sem = asyncio.Semaphore(max_concurrency)
        self._min_interval = float(min_interval)
        self._max_retries = int(max_retries)
        self._backoff_base = float(backoff_base)
        self._backoff_max = float(backoff_max)
        self._last_call = 0.0
        self._rate_lock = asyncio.Lock()
        self._session = session
        self._own_session = session is None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(headers={"Accept": "application/json"})
            self._own_session = True

    async def close(self) -> None:
        if self._session is not None and self._own_session:
            await self._session.close()
        self._session = None

    async def _wait_rate_slot(self) -> None:
        async with self._rate_lock:
            to_wait = self._min_interval - (time.time() - self._last_call)
            if to_wait > 0:
                await asyncio.sleep(to_wait)
            self._last_call = time.time()

    def _backoff(self, attempt: int) -> float:
        base = self._backoff_base * (2 ** (attempt - 1))
        jitter = random.uniform(0, base * 0.1)
        return min(min(base, self._backoff_max) + jitter, self._backoff_max)

    def _auth_headers(self) -> Dict[str, str]:
        jwt_token = os.getenv("RUGCHECK_JWT_TOKEN") or os.getenv("RUGCHECK_JWT")
        if jwt_token:
            return {"Authorization": f"Bearer {jwt_token}"}
        if self.api_key:
            return {"X-API-KEY": str(self.api_key)}
        return {}

    async def get_report(self, mint: str, timeout: float = 10.0) -> Optional[Dict[str, Any]]:
        """GET /v1/tokens/<mint>/report. None on 404; raises after retries are spent."""
        await self.start()
        url = f"{self.base_url}/v1/tokens/{mint}/report"
        last_exc: Optional[Exception] = None
        for attempt in range(1, self._max_retries + 1):
            try:
                async with self._sem:
                    await self._wait_rate_slot()
                    async with self._session.get(
                        url, headers=self._auth_headers(), timeout=aiohttp.ClientTimeout(total=timeout)
                    ) as resp:
                        if resp.status == 200:
                            data = await resp.json(content_type=None)
                            return data if isinstance(data, dict) else None
                        if resp.status == 404:
                            return None
                        if resp.status == 429 or resp.status >= 500:
                            wait = self._backoff(attempt)
                            ra = resp.headers.get("Retry-After")
                            if ra:
                                try:
                                    wait = max(wait, float(ra))
                                except ValueError:
                                    pass
                            logger.warning("RugCheck %d, retry in %.1fs", resp.status, wait)
                            last_exc = aiohttp.ClientResponseError(
                                resp.request_info, resp.history, status=resp.status, message="retryable"
                            )
                            await asyncio.sleep(wait)
                            continue
                        text = await resp.text()
                        logger.debug("RugCheck failed %d: %s", resp.status, text[:200])
                        resp.raise_for_status()
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_exc = e
                if attempt >= self._max_retries:
                    break
                await backoff_sleep(attempt, base=self._backoff_base, max_sleep=self._backoff_max)
        raise last_exc or RuntimeError("RugCheck: max retries exceeded")


def make_rugcheck_client(cfg: Optional[Dict[str, Any]] = None, session: Optional[aiohttp.ClientSession] = None) -> RugcheckClient:
    rc = (cfg or {}).get("rugcheck", {}) or {}
    return RugcheckClient(base_url=rc.get("base_url", "https://api.rugcheck.xyz"), session=session)

# ----------------------------------------------------------------------
# Risk rules
# ----------------------------------------------------------------------
def _is_honeypot(report: Dict[str, Any]) -> bool:
    if report.get("rugged"):
        return True
    for risk in report.get("risks") or []:
        name = str((risk or {}).get("name") or "").lower()
        if "honeypot" in name or "cannot sell" in name:
            return True
    return False


def apply_risk_rules(token: TradableToken, report: Optional[Dict[str, Any]]) -> TradableToken:
    """Mutates and returns ``token``. ``report`` None means RugCheck was not reachable."""
    risk = BASE_RISK
    if report is None:
        token.safety_reasons.append(RUGCHECK_UNAVAILABLE)
    else:
        token.freeze_authority = report.get("freezeAuthority") or token.freeze_authority
        token.mint_authority = report.get("mintAuthority") or token.mint_authority
        holders = report.get("totalHolders")
        if holders:
            token.holders = int(holders)

    if token.freeze_authority:
        risk += FREEZE_AUTHORITY_RISK
        token.safety_reasons.append("freeze authority enabled")
    if token.mint_authority:
        risk += MINT_AUTHORITY_RISK
        token.safety_reasons.append("mint authority enabled")
    if report is not None and _is_honeypot(report):
        risk = HONEYPOT_RISK
        token.can_sell = False
        token.safety_reasons.append("honeypot")

    token.risk_score = max(0, min(100, int(risk)))
    return token


async def annotate_tokens(client: Optional[RugcheckClient], tokens: Iterable[TradableToken]) -> List[TradableToken]:
    out: List[TradableToken] = []
    for tok in tokens:
        report: Optional[Dict[str, Any]] = None
        if client is not None:
            try:
                report = await client.get_report(tok.address)
            except Exception as e:
                logger.debug("RugCheck report for %s unavailable: %s", tok.address[:8], e)
                report = None
            else:
                report = report or {}
        out.append(apply_risk_rules(tok, report if client is not None else {}))
    return out


def sort_score(token: TradableToken) -> float:
    """Lower is better: early buyer position, low risk, deep liquidity."""
    return (token.buyer_position or 10) * 10 + token.risk_score - token.liquidity / 10.0
