# solana_sniper_bundle/sniper/functions_client.py
"""
Client for the external function RPC boundary (token-scanner,
trade-execution, confirm-transaction).

An auth failure triggers exactly one session refresh and one retry; a second
auth failure surfaces as ``AuthExpiredError``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import aiohttp

from solana_sniper_bundle.sniper.errors import (
    AuthExpiredError,
    FunctionInvokeError,
    extract_error_message,
    is_auth_error,
)

logger = logging.getLogger("TradingBot")

TokenGetter = Callable[[], Optional[str]]
Refresher = Callable[[], Awaitable[Optional[str]]]


class FunctionClient:
    def __init__(
        self,
        base_url: str,
        http: aiohttp.ClientSession,
        get_token: TokenGetter,
        refresh: Optional[Refresher] = None,
        timeout_s: float = 30.0,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.http = http
        self._get_token = get_token
        self._refresh = refresh
        self.timeout_s = float(timeout_s)

    async def _post(self, name: str, body: Dict[str, Any]) -> Tuple[int, Any]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        token = self._get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = f"{self.base_url}/{name}"
        async with self.http.post(
            url, json=body, headers=headers, timeout=aiohttp.ClientTimeout(total=self.timeout_s)
        ) as resp:
            text = await resp.text()
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = text
            return resp.status, data

    @staticmethod
    def _failure(status: int, data: Any) -> Optional[str]:
        if 200 <= status < 300:
            if isinstance(data, dict) and data.get("error"):
                return extract_error_message(status, data)
            return None
        return extract_error_message(status, data)

    async def invoke(self, name: str, body: Dict[str, Any]) -> Any:
        if not self.base_url:
            raise FunctionInvokeError(f"functions.base_url is not configured (calling {name})")
        try:
            status, data = await self._post(name, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FunctionInvokeError(f"{name}: {e or type(e).__name__}") from e

        err = self._failure(status, data)
        if err is None:
            return data
        if not (status == 401 or is_auth_error(err)):
            raise FunctionInvokeError(err, status)

        if self._refresh is None:
            raise AuthExpiredError(err)
        logger.info("%s: auth failed (%s), refreshing session once", name, err)
        try:
            await self._refresh()
        except Exception as e:
            raise AuthExpiredError(f"Session refresh failed: {e}") from e

        try:
            status, data = await self._post(name, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FunctionInvokeError(f"{name}: {e or type(e).__name__}") from e
        err = self._failure(status, data)
        if err is None:
            return data
        if status == 401 or is_auth_error(err):
            raise AuthExpiredError(err)
        raise FunctionInvokeError(err, status)
