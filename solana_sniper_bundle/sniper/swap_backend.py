# solana_sniper_bundle/sniper/swap_backend.py
"""
Swap execution + confirmation boundary.

Two interchangeable backends:

* ``JupiterSwapBackend`` talks to the Jupiter lite API directly, records the
  position in SQLite and polls ``getSignatureStatuses`` for confirmation.
* ``RemoteSwapBackend`` speaks the same contract through the functions RPC
  (``trade-execution`` / ``confirm-transaction``).

Failures raise ``SwapBackendError`` carrying a ``TradeErrorCode``.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
from cachetools import LRUCache
from solders.pubkey import Pubkey
from solders.signature import Signature
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from solana_sniper_bundle.common.constants import LAMPORTS_PER_SOL, SOL_MINT
from solana_sniper_bundle.sniper import database
from solana_sniper_bundle.sniper.errors import (
    FunctionInvokeError,
    SwapBackendError,
    TradeErrorCode,
    classify_error,
    describe_tx_error,
    extract_error_message,
)
from solana_sniper_bundle.sniper.functions_client import FunctionClient
from solana_sniper_bundle.sniper.lp_verifier import parse_mint
from solana_sniper_bundle.sniper.models import TradeParams, TradeQuote

logger = logging.getLogger("TradingBot")

JUPITER_QUOTE_URL = "https://lite-api.jup.ag/swap/v1/quote"
JUPITER_SWAP_URL = "https://lite-api.jup.ag/swap/v1/swap"

QUOTE_TIMEOUT_S = 15.0
SWAP_TIMEOUT_S = 20.0
STATUS_POLL_TIMEOUT_S = 5.0
STATUS_POLL_INTERVAL_S = 0.5
MAX_STATUS_POLLS = 30

# prioritizationFeeLamports per level
PRIORITY_FEES = {
    "low": 10_000,
    "medium": 50_000,
    "high": 200_000,
    "veryHigh": 1_000_000,
}

SOL_DECIMALS = 9
# Used only when the mint account cannot be read; never cached.
FALLBACK_TOKEN_DECIMALS = 6
MINT_FETCH_TIMEOUT_S = 5.0

# Mint decimals are immutable, so entries never need to expire.
_decimals_cache: LRUCache = LRUCache(maxsize=4_096)


def clear_decimals_cache() -> None:
    _decimals_cache.clear()


def explorer_url(signature: str) -> str:
    return f"https://solscan.io/tx/{signature}"


@dataclass
class ExecuteResponse:
    quote: TradeQuote
    swap_transaction: str            # base64 unsigned VersionedTransaction
    position_id: Optional[str] = None


class SwapBackend:
    """Quote / build / confirm contract used by the execution engine."""

    requires_auth = False

    async def quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> TradeQuote:
        raise NotImplementedError

    async def execute(
        self,
        params: TradeParams,
        wallet_address: str,
        slippage_bps: int,
        side: str = "buy",
        position_id: Optional[str] = None,
    ) -> ExecuteResponse:
        raise NotImplementedError

    async def confirm(
        self, signature: str, position_id: Optional[str], action: str, wallet_address: Optional[str] = None
    ) -> Dict[str, Any]:
        raise NotImplementedError

# ----------------------------------------------------------------------
# Jupiter (direct)
# ----------------------------------------------------------------------
class _TransientQuoteError(Exception):
    pass


def _quote_from_jupiter(raw: Dict[str, Any], in_decimals: int, out_decimals: int, slippage_bps: int) -> TradeQuote:
    in_amt = int(raw.get("inAmount") or 0)
    out_amt = int(raw.get("outAmount") or 0)
    labels = []
    for step in raw.get("routePlan") or []:
        label = ((step or {}).get("swapInfo") or {}).get("label")
        if label:
            labels.append(str(label))
    return TradeQuote(
        input_amount=in_amt,
        output_amount=out_amt,
        input_amount_decimal=in_amt / (10 ** in_decimals),
        output_amount_decimal=out_amt / (10 ** out_decimals),
        price_impact_pct=float(raw.get("priceImpactPct") or 0.0),
        slippage_bps=int(raw.get("slippageBps") or slippage_bps),
        route=" -> ".join(labels) or None,
    )


def _confirmation_level(status: Any) -> str:
    cs = getattr(status, "confirmation_status", None)
    if cs is None and isinstance(status, dict):
        cs = status.get("confirmationStatus")
    return str(cs or "").rsplit(".", 1)[-1].lower()


class JupiterSwapBackend(SwapBackend):
    def __init__(
        self,
        http: aiohttp.ClientSession,
        rpc,
        db_path: str,
        api_key: Optional[str] = None,
        max_status_polls: int = MAX_STATUS_POLLS,
        poll_interval_s: float = STATUS_POLL_INTERVAL_S,
    ):
        self.http = http
        self.rpc = rpc
        self.db_path = db_path
        self.api_key = api_key if api_key is not None else os.getenv("JUPITER_API_KEY")
        self.max_status_polls = int(max_status_polls)
        self.poll_interval_s = float(poll_interval_s)

    def _headers(self) -> Dict[str, str]:
        h = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            h["x-api-key"] = self.api_key
        return h

    @retry(
        reraise=True,
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((_TransientQuoteError, aiohttp.ClientError, asyncio.TimeoutError)),
    )
    async def _fetch_raw_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Dict[str, Any]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps)),
            "swapMode": "ExactIn",
        }
        async with self.http.get(
            JUPITER_QUOTE_URL, params=params, headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=QUOTE_TIMEOUT_S),
        ) as resp:
            text = await resp.text()
            if resp.status == 429 or resp.status >= 500:
                logger.warning("Jupiter quote %d for %s, retrying", resp.status, output_mint[:8])
                raise _TransientQuoteError(f"Jupiter quote failed: {resp.status}")
            if resp.status != 200:
                msg = extract_error_message(resp.status, text)
                raise SwapBackendError(f"Jupiter quote failed: {msg}")
            data = await resp.json(content_type=None)
        if not isinstance(data, dict):
            raise SwapBackendError("Jupiter quote failed: malformed response")
        if data.get("error"):
            raise SwapBackendError(f"Jupiter quote failed: {data['error']}")
        if int(data.get("outAmount") or 0) <= 0:
            raise SwapBackendError("No route found", TradeErrorCode.NO_ROUTE)
        return data

    async def _raw_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Dict[str, Any]:
        try:
            return await self._fetch_raw_quote(input_mint, output_mint, amount, slippage_bps)
        except _TransientQuoteError as e:
            raise SwapBackendError(str(e), TradeErrorCode.RATE_LIMITED) from e
        except asyncio.TimeoutError as e:
            raise SwapBackendError("Jupiter quote timed out", TradeErrorCode.TIMEOUT) from e
        except aiohttp.ClientError as e:
            raise SwapBackendError(f"Jupiter quote failed: {e}", TradeErrorCode.NETWORK_ERROR) from e

    async def mint_decimals(self, mint: str) -> int:
        """Decimals from the on-chain mint account, cached per mint."""
        if mint == SOL_MINT:
            return SOL_DECIMALS
        cached = _decimals_cache.get(mint)
        if cached is not None:
            return cached
        try:
            resp = await asyncio.wait_for(
                self.rpc.get_account_info(Pubkey.from_string(mint), encoding="base64"),
                timeout=MINT_FETCH_TIMEOUT_S,
            )
            acct = getattr(resp, "value", None)
            if acct is None:
                raise ValueError("mint account not found")
            decimals = int(parse_mint(bytes(acct.data), str(acct.owner))["decimals"])
        except Exception as e:
            logger.warning(
                "Mint decimals for %s unavailable (%s); assuming %d", mint[:8], e, FALLBACK_TOKEN_DECIMALS
            )
            return FALLBACK_TOKEN_DECIMALS
        _decimals_cache[mint] = decimals
        return decimals

    async def _to_quote(self, raw: Dict[str, Any], input_mint: str, output_mint: str, slippage_bps: int) -> TradeQuote:
        in_dec, out_dec = await asyncio.gather(self.mint_decimals(input_mint), self.mint_decimals(output_mint))
        return _quote_from_jupiter(raw, in_dec, out_dec, slippage_bps)

    async def quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> TradeQuote:
        raw = await self._raw_quote(input_mint, output_mint, amount, slippage_bps)
        return await self._to_quote(raw, input_mint, output_mint, slippage_bps)

    async def _build_swap(self, raw_quote: Dict[str, Any], wallet_address: str, priority_fee: int) -> str:
        body = {
            "quoteResponse": raw_quote,
            "userPublicKey": wallet_address,
            "wrapAndUnwrapSol": True,
            "prioritizationFeeLamports": int(priority_fee),
            "dynamicComputeUnitLimit": True,
        }
        try:
            async with self.http.post(
                JUPITER_SWAP_URL, json=body, headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=SWAP_TIMEOUT_S),
            ) as resp:
                text = await resp.text()
                if resp.status != 200:
                    logger.error("Jupiter swap build error: %d - %s", resp.status, text[:300])
                    raise SwapBackendError(f"Jupiter swap build failed: {extract_error_message(resp.status, text)}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise SwapBackendError("Jupiter swap build timed out", TradeErrorCode.TIMEOUT) from e
        except aiohttp.ClientError as e:
            raise SwapBackendError(f"Jupiter swap build failed: {e}", TradeErrorCode.NETWORK_ERROR) from e
        if not isinstance(data, dict) or data.get("error") or not data.get("swapTransaction"):
            err = (data or {}).get("error") if isinstance(data, dict) else "malformed response"
            raise SwapBackendError(f"Jupiter swap build failed: {err or 'missing swapTransaction'}")
        return str(data["swapTransaction"])

    async def execute(
        self,
        params: TradeParams,
        wallet_address: str,
        slippage_bps: int,
        side: str = "buy",
        position_id: Optional[str] = None,
    ) -> ExecuteResponse:
        raw = await self._raw_quote(params.input_mint, params.output_mint, params.amount, slippage_bps)
        quote = await self._to_quote(raw, params.input_mint, params.output_mint, slippage_bps)
        fee = PRIORITY_FEES.get(params.priority_level, PRIORITY_FEES["medium"])
        swap_tx = await self._build_swap(raw, wallet_address, fee)

        if side == "buy" and position_id is None:
            entry_price = (
                quote.input_amount_decimal / quote.output_amount_decimal if quote.output_amount_decimal else None
            )
            try:
                position_id = await database.insert_position(
                    self.db_path,
                    token_address=params.output_mint,
                    side="buy",
                    amount_in=quote.input_amount,
                    amount_out=quote.output_amount,
                    wallet_address=wallet_address,
                    token_symbol=params.token_symbol or "TOKEN",
                    token_name=params.token_name or "Unknown Token",
                    entry_price=entry_price,
                    profit_take_percent=params.profit_take_percent or 50,
                    stop_loss_percent=params.stop_loss_percent or 20,
                    status="pending",
                )
            except Exception as e:
                logger.error("Failed to create pending position for %s: %s", params.output_mint[:8], e)
                position_id = None

        return ExecuteResponse(quote=quote, swap_transaction=swap_tx, position_id=position_id)

    async def _poll_signature(self, signature: str) -> Dict[str, Any]:
        sig = Signature.from_string(signature)
        for _ in range(self.max_status_polls):
            try:
                resp = await asyncio.wait_for(
                    self.rpc.get_signature_statuses([sig], search_transaction_history=True),
                    timeout=STATUS_POLL_TIMEOUT_S,
                )
                statuses = list(getattr(resp, "value", None) or [])
                status = statuses[0] if statuses else None
                if status is not None:
                    err = getattr(status, "err", None)
                    if err is not None:
                        detail = describe_tx_error(err)
                        logger.error("Transaction %s failed on-chain: %s", signature[:12], detail)
                        return {"confirmed": False, "error": f"Transaction failed: {detail}"}
                    if _confirmation_level(status) in ("confirmed", "finalized"):
                        return {"confirmed": True, "slot": getattr(status, "slot", None)}
            except Exception as e:
                logger.debug("Signature status poll failed for %s: %s", signature[:12], e)
            await asyncio.sleep(self.poll_interval_s)
        return {"confirmed": False, "error": "Confirmation timeout"}

    async def confirm(
        self, signature: str, position_id: Optional[str], action: str, wallet_address: Optional[str] = None
    ) -> Dict[str, Any]:
        result = await self._poll_signature(signature)
        if position_id:
            if result["confirmed"]:
                status = "open" if action == "buy" else "closed"
                await database.update_position_status(self.db_path, position_id, status, tx_signature=signature)
                logger.info("Position %s marked %s", position_id, status)
            elif action == "buy":
                await database.update_position_status(
                    self.db_path, position_id, "swap_failed", tx_signature=signature, error=result.get("error")
                )
        return result

# ----------------------------------------------------------------------
# Functions RPC
# ----------------------------------------------------------------------
def _quote_from_wire(d: Dict[str, Any]) -> TradeQuote:
    d = dict(d or {})
    if "outputAmount" not in d and "outAmount" in d:
        d["outputAmount"] = d["outAmount"]
    return TradeQuote.from_dict(d)


class RemoteSwapBackend(SwapBackend):
    requires_auth = True

    def __init__(self, functions: FunctionClient):
        self.functions = functions

    async def _invoke(self, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = await self.functions.invoke(name, body)
        except FunctionInvokeError as e:
            raise SwapBackendError(str(e), classify_error(str(e))) from e
        if not isinstance(data, dict):
            raise SwapBackendError(f"{name}: malformed response")
        return data

    async def quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> TradeQuote:
        data = await self._invoke("trade-execution", {
            "action": "quote",
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": int(slippage_bps),
        })
        return _quote_from_wire(data.get("quote") or {})

    async def execute(
        self,
        params: TradeParams,
        wallet_address: str,
        slippage_bps: int,
        side: str = "buy",
        position_id: Optional[str] = None,
    ) -> ExecuteResponse:
        body: Dict[str, Any] = {
            "action": "execute",
            "inputMint": params.input_mint,
            "outputMint": params.output_mint,
            "amount": str(int(params.amount)),
            "slippageBps": int(slippage_bps),
            "userPublicKey": wallet_address,
            "priorityLevel": params.priority_level or "medium",
        }
        if side == "buy":
            body.update({
                "tokenSymbol": params.token_symbol,
                "tokenName": params.token_name,
                "profitTakePercent": params.profit_take_percent,
                "stopLossPercent": params.stop_loss_percent,
            })
        data = await self._invoke("trade-execution", body)
        swap_tx = data.get("swapTransaction")
        if not swap_tx:
            raise SwapBackendError("trade-execution returned no transaction")
        return ExecuteResponse(
            quote=_quote_from_wire(data.get("quote") or {}),
            swap_transaction=str(swap_tx),
            position_id=data.get("positionId") or position_id,
        )

    async def confirm(
        self, signature: str, position_id: Optional[str], action: str, wallet_address: Optional[str] = None
    ) -> Dict[str, Any]:
        try:
            data = await self._invoke("confirm-transaction", {
                "signature": signature,
                "positionId": position_id,
                "action": action,
                "walletAddress": wallet_address,
            })
        except SwapBackendError as e:
            logger.error("Confirmation error for %s: %s", signature[:12], e)
            return {"confirmed": False, "error": str(e)}
        return {"confirmed": bool(data.get("confirmed")), "error": data.get("error")}


def make_swap_backend(session) -> SwapBackend:
    """Pick the backend from ``functions.base_url``: remote when configured, Jupiter otherwise."""
    base = ((session.cfg or {}).get("functions") or {}).get("base_url")
    if base:
        return RemoteSwapBackend(session.functions)
    return JupiterSwapBackend(session.http, session.rpc, session.db_path)


def lamports(sol: float) -> int:
    return int(round(float(sol) * LAMPORTS_PER_SOL))
